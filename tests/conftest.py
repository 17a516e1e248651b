"""
tests/conftest.py — Shared fixtures and fakes for the Plany test suite.

Structured logs go to a throwaway directory; the logger singleton reads
PLANY_LOG_DIR when first created, so it is set before any plany import.
"""

from __future__ import annotations

import os
import tempfile

os.environ.setdefault("PLANY_LOG_DIR", tempfile.mkdtemp(prefix="plany-test-logs-"))

import threading  # noqa: E402
import time  # noqa: E402
from datetime import datetime, timezone  # noqa: E402
from typing import Callable, List, Optional  # noqa: E402

import pytest  # noqa: E402

from plany.core.clock import ManualClock  # noqa: E402
from plany.core.config import OrchestratorConfig  # noqa: E402
from plany.core.constants import C, EntryKind, EntryStatus  # noqa: E402
from plany.intent.classifier import Classification  # noqa: E402
from plany.intent.extractor import Action  # noqa: E402
from plany.orchestrator.orchestrator import TaskOrchestrator  # noqa: E402
from plany.store.event_store import EventStore  # noqa: E402
from plany.store.models import FoodAttributes, LogEntry, new_entry_id  # noqa: E402

BANANA = FoodAttributes(calories=105, protein=1, carbs=27, fat=0)


# ──────────────────────────────────────────────────────────────
# Fakes
# ──────────────────────────────────────────────────────────────

class ScriptedClient:
    """
    Enrichment client that plays back outcomes in order.

    Each outcome is either attributes to return or an exception to raise.
    The last outcome repeats once the script runs out.
    """

    def __init__(self, *outcomes) -> None:
        self._outcomes = list(outcomes) or [BANANA]
        self._lock = threading.Lock()
        self.calls: List[tuple] = []

    def estimate(self, query: str, timeout: float):
        with self._lock:
            self.calls.append((query, timeout))
            outcome = self._outcomes.pop(0) if len(self._outcomes) > 1 else self._outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class BlockingClient:
    """Enrichment client that blocks until ``release`` is set."""

    def __init__(self, result: FoodAttributes = BANANA) -> None:
        self.result = result
        self.started = threading.Event()
        self.release = threading.Event()

    def estimate(self, query: str, timeout: float):
        self.started.set()
        self.release.wait(5.0)
        return self.result


class StaticClassifier:
    def __init__(self, has_action: bool = True, confidence: float = 0.9) -> None:
        self.result = Classification(has_action=has_action, confidence=confidence)
        self.calls: List[str] = []

    def classify(self, text: str) -> Classification:
        self.calls.append(text)
        return self.result


class BlockingClassifier:
    """Classifier that blocks until ``release`` is set."""

    def __init__(self) -> None:
        self.started = threading.Event()
        self.release = threading.Event()

    def classify(self, text: str) -> Classification:
        self.started.set()
        self.release.wait(5.0)
        return Classification(has_action=True, confidence=0.9)


class ListExtractor:
    """Extractor returning a fixed list of actions, or raising *error*."""

    def __init__(self, actions: Optional[List[Action]] = None, error: Optional[Exception] = None) -> None:
        self.actions = actions if actions is not None else [
            Action(kind=EntryKind.FOOD, description="banana")
        ]
        self.error = error

    def extract(self, text: str) -> List[Action]:
        if self.error is not None:
            raise self.error
        return list(self.actions)


def food_placeholder(text: str = "banana", created_at: Optional[datetime] = None) -> LogEntry:
    """A FOOD entry as the controller would insert it."""
    return LogEntry(
        id=new_entry_id(),
        kind=EntryKind.FOOD,
        created_at=created_at or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc),
        primary_text=text,
        attributes=FoodAttributes.placeholder(),
        status=EntryStatus.PLACEHOLDER,
        notes=C.NOTE_PROCESSING,
    )


# ──────────────────────────────────────────────────────────────
# Fixtures
# ──────────────────────────────────────────────────────────────

@pytest.fixture()
def store() -> EventStore:
    """Fresh, empty Event Store."""
    return EventStore()


@pytest.fixture()
def clock() -> ManualClock:
    """Virtual clock starting at t=0."""
    return ManualClock()


@pytest.fixture()
def make_orchestrator(store: EventStore, clock: ManualClock):
    """
    Factory for orchestrators bound to the test store.

    Keyword overrides go to :class:`OrchestratorConfig` (``workers`` defaults
    to 1). Everything created is shut down after the test.
    """
    created: List[TaskOrchestrator] = []

    def _make(client, clock_override=None, **overrides) -> TaskOrchestrator:
        cfg = OrchestratorConfig(**{"workers": 1, **overrides})
        orch = TaskOrchestrator(store, client, cfg, clock_override or clock)
        created.append(orch)
        return orch

    yield _make
    for orch in created:
        orch.shutdown(timeout=1.0)


def wait_for(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.01) -> bool:
    """Poll *predicate* until it holds or *timeout* elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
