"""
tests/test_controller.py — pytest tests for plany.pipeline.controller.

Classifier, extractor and enrichment client are fakes from conftest; the
store and orchestrator are real.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List

import pytest

from conftest import (
    BANANA,
    BlockingClassifier,
    ListExtractor,
    ScriptedClient,
    StaticClassifier,
    wait_for,
)
from plany.core.clock import SystemClock
from plany.core.config import PipelineConfig
from plany.core.constants import C, EntryKind, EntryStatus, JobState, PipelineState
from plany.core.errors import ConfigurationError, DuplicateIdError, ExternalServiceError
from plany.intent.classifier import KeywordClassifier
from plany.intent.extractor import Action
from plany.pipeline import controller as controller_mod
from plany.pipeline.controller import (
    ON_ENTRY_CREATED,
    ON_JOB_ENQUEUED,
    ON_STATE_CHANGED,
    ON_SUBMISSION_FINISHED,
    PipelineController,
)
from plany.store.event_store import EventStore
from plany.store.models import (
    FoodAttributes,
    HydrationAttributes,
    SupplementAttributes,
    SymptomAttributes,
)


@pytest.fixture()
def orchestrator(make_orchestrator):
    return make_orchestrator(ScriptedClient(BANANA))


@pytest.fixture()
def make_controller(store, orchestrator, clock):
    created: List[PipelineController] = []

    def _make(classifier=None, extractor=None, clock_override=None, **overrides) -> PipelineController:
        ctrl = PipelineController(
            store,
            orchestrator,
            classifier or StaticClassifier(),
            extractor or ListExtractor(),
            PipelineConfig(**overrides),
            clock_override or clock,
        )
        created.append(ctrl)
        return ctrl

    yield _make
    for ctrl in created:
        ctrl.shutdown()


def _events(ctrl: PipelineController, event: str) -> List[Dict[str, Any]]:
    seen: List[Dict[str, Any]] = []
    ctrl.subscribe(event, seen.append)
    return seen


# ──────────────────────────────────────────────────────────────
# Wiring
# ──────────────────────────────────────────────────────────────

class TestWiring:

    def test_rejects_orchestrator_on_other_store(self, orchestrator) -> None:
        with pytest.raises(ConfigurationError):
            PipelineController(EventStore(), orchestrator, StaticClassifier(), ListExtractor())

    def test_shares_store_with_orchestrator(self, store, orchestrator, make_controller) -> None:
        ctrl = make_controller()
        assert ctrl.store is store
        assert ctrl.orchestrator.store is store


# ──────────────────────────────────────────────────────────────
# Happy path
# ──────────────────────────────────────────────────────────────

class TestSubmitFood:

    def test_banana_placeholder_then_enriched(self, store, orchestrator, make_controller) -> None:
        ctrl = make_controller()
        sub = ctrl.submit("I ate a banana")

        assert sub.result == "completed"
        assert sub.state is PipelineState.IDLE
        assert len(sub.entry_ids) == 1
        entry_id = sub.entry_ids[0]

        entry = store.get(entry_id)
        assert entry.kind is EntryKind.FOOD
        assert entry.primary_text == "banana"
        assert entry.status is EntryStatus.PLACEHOLDER
        assert entry.attributes.calories == 0
        assert entry.notes == C.NOTE_PROCESSING
        assert orchestrator.get_job(entry_id)["state"] == JobState.QUEUED.value

        orchestrator.process_next()

        after = store.get(entry_id)
        assert after.status is EntryStatus.ENRICHED
        assert after.attributes == BANANA

    def test_state_sequence(self, make_controller) -> None:
        ctrl = make_controller()
        seen = _events(ctrl, ON_STATE_CHANGED)
        sub = ctrl.submit("I ate a banana")
        assert [e["to"] for e in seen] == ["RECOGNIZING", "EXECUTING", "COMPLETED", "IDLE"]
        assert all(e["submission_id"] == sub.id for e in seen)

    def test_entry_visible_before_job_enqueued(self, store, orchestrator, make_controller) -> None:
        observed = []
        original = orchestrator.enqueue

        def _spy(job):
            observed.append(store.get(job.entry_id))
            original(job)

        orchestrator.enqueue = _spy
        extractor = ListExtractor([
            Action(kind=EntryKind.FOOD, description="2 slices of pizza"),
            Action(kind=EntryKind.FOOD, description="1 large coke"),
        ])
        ctrl = make_controller(extractor=extractor)
        ctrl.submit("I had pizza and a coke")

        assert len(observed) == 2
        assert all(entry is not None for entry in observed)

    def test_each_action_is_one_entry(self, store, orchestrator, make_controller) -> None:
        extractor = ListExtractor([
            Action(kind=EntryKind.FOOD, description="1 bowl of pasta"),
            Action(kind=EntryKind.HYDRATION, description="water", quantity=12, unit="oz"),
            Action(kind=EntryKind.FOOD, description="small apple"),
        ])
        ctrl = make_controller(extractor=extractor)
        jobs = _events(ctrl, ON_JOB_ENQUEUED)
        created = _events(ctrl, ON_ENTRY_CREATED)

        sub = ctrl.submit("pasta, water and an apple")

        assert len(sub.entry_ids) == 3
        assert len(store) == 3
        assert len(created) == 3
        assert len(jobs) == 2
        assert orchestrator.pending_count == 2

    def test_action_timestamp_becomes_created_at(self, store, make_controller) -> None:
        when = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)
        ctrl = make_controller(extractor=ListExtractor([
            Action(kind=EntryKind.FOOD, description="1 medium potato", timestamp=when),
        ]))
        sub = ctrl.submit("I had a potato for breakfast")
        assert store.get(sub.entry_ids[0]).created_at == when

    def test_created_at_defaults_to_clock(self, store, clock, make_controller) -> None:
        ctrl = make_controller()
        sub = ctrl.submit("I ate a banana")
        assert store.get(sub.entry_ids[0]).created_at == clock.wall()

    def test_meal_without_verb_is_logged(self, store, make_controller) -> None:
        ctrl = make_controller(classifier=KeywordClassifier())
        sub = ctrl.submit("two eggs and toast for breakfast")
        assert sub.result == "completed"
        assert len(store) == 1

    def test_finished_event(self, make_controller) -> None:
        ctrl = make_controller()
        finished = _events(ctrl, ON_SUBMISSION_FINISHED)
        sub = ctrl.submit("I ate a banana")
        assert finished == [{
            "submission_id": sub.id,
            "result": "completed",
            "reason": sub.reason,
            "entry_ids": sub.entry_ids,
        }]

    def test_failing_subscriber_does_not_break_submission(self, make_controller) -> None:
        ctrl = make_controller()

        def _boom(data):
            raise RuntimeError("subscriber failure")

        ctrl.subscribe(ON_STATE_CHANGED, _boom)
        assert ctrl.submit("I ate a banana").result == "completed"

    def test_unsubscribe(self, make_controller) -> None:
        ctrl = make_controller()
        seen: List[Dict[str, Any]] = []
        ctrl.subscribe(ON_STATE_CHANGED, seen.append)
        assert ctrl.unsubscribe(ON_STATE_CHANGED, seen.append) is True
        assert ctrl.unsubscribe(ON_STATE_CHANGED, seen.append) is False
        ctrl.submit("I ate a banana")
        assert seen == []


# ──────────────────────────────────────────────────────────────
# Entry kinds
# ──────────────────────────────────────────────────────────────

class TestEntryKinds:

    def test_every_kind_has_a_builder(self) -> None:
        assert set(controller_mod._ATTRIBUTE_BUILDERS) == set(EntryKind)

    @pytest.mark.parametrize("action, expected", [
        (Action(kind=EntryKind.FOOD, description="banana"), FoodAttributes()),
        (Action(kind=EntryKind.HYDRATION, description="water"), HydrationAttributes(amount=8.0, unit="oz")),
        (
            Action(kind=EntryKind.HYDRATION, description="500 ml water", quantity=500, unit="ml"),
            HydrationAttributes(amount=500.0, unit="ml"),
        ),
        (
            Action(kind=EntryKind.SUPPLEMENT, description="Prenatal Vitamin", dosage="1 tablet"),
            SupplementAttributes(name="Prenatal Vitamin", dosage="1 tablet"),
        ),
        (
            Action(kind=EntryKind.SYMPTOM, description="nausea", symptoms=["nausea"], severity=4),
            SymptomAttributes(symptoms=("nausea",), severity=4),
        ),
        (
            Action(kind=EntryKind.SYMPTOM, description="headache"),
            SymptomAttributes(symptoms=("headache",), severity=C.DEFAULT_SEVERITY),
        ),
    ])
    def test_build_entry(self, make_controller, action: Action, expected) -> None:
        entry = make_controller().build_entry(action)
        assert entry.attributes == expected

    @pytest.mark.parametrize("kind", [EntryKind.HYDRATION, EntryKind.SUPPLEMENT, EntryKind.SYMPTOM])
    def test_non_food_is_enriched_without_job(self, store, orchestrator, make_controller, kind) -> None:
        ctrl = make_controller(extractor=ListExtractor([Action(kind=kind, description="something")]))
        sub = ctrl.submit("log it")
        entry = store.get(sub.entry_ids[0])
        assert entry.status is EntryStatus.ENRICHED
        assert entry.notes == C.NOTE_VOICE
        assert orchestrator.pending_count == 0


# ──────────────────────────────────────────────────────────────
# No-op and errors
# ──────────────────────────────────────────────────────────────

class TestNoOpAndErrors:

    def test_no_actionable_intent(self, store, make_controller) -> None:
        ctrl = make_controller(classifier=StaticClassifier(has_action=False, confidence=0.0))
        seen = _events(ctrl, ON_STATE_CHANGED)
        sub = ctrl.submit("what a nice day")
        assert sub.result == "noop"
        assert sub.state is PipelineState.IDLE
        assert [e["to"] for e in seen] == ["RECOGNIZING", "COMPLETED", "IDLE"]
        assert len(store) == 0

    def test_low_confidence_is_noop(self, store, make_controller) -> None:
        ctrl = make_controller(classifier=StaticClassifier(has_action=True, confidence=0.3))
        sub = ctrl.submit("banana?")
        assert sub.result == "noop"
        assert "confidence" in sub.reason
        assert len(store) == 0

    def test_empty_extraction_is_noop(self, store, make_controller) -> None:
        ctrl = make_controller(extractor=ListExtractor([]))
        assert ctrl.submit("I ate").result == "noop"

    def test_empty_text_prompts_retry(self, make_controller) -> None:
        classifier = StaticClassifier()
        ctrl = make_controller(classifier=classifier, error_reset_s=60.0)
        sub = ctrl.submit("   ")
        assert sub.result == "error"
        assert sub.reason == C.RETRY_PROMPT
        assert sub.state is PipelineState.ERROR
        assert classifier.calls == []

        assert sub.acknowledge() is True
        assert sub.state is PipelineState.IDLE
        assert sub.acknowledge() is False

    def test_extractor_failure_is_error(self, store, make_controller) -> None:
        ctrl = make_controller(
            extractor=ListExtractor(error=ExternalServiceError("HTTP 500")),
            error_reset_s=60.0,
        )
        sub = ctrl.submit("I ate a banana")
        assert sub.result == "error"
        assert "HTTP 500" in sub.reason
        assert sub.state is PipelineState.ERROR
        assert len(store) == 0

    def test_unexpected_extractor_error_is_error(self, store, make_controller) -> None:
        """A bug below the pipeline still ends the submission in ERROR."""
        ctrl = make_controller(extractor=ListExtractor(error=RuntimeError("boom")), error_reset_s=60.0)
        finished = _events(ctrl, ON_SUBMISSION_FINISHED)
        sub = ctrl.submit("I ate a banana")
        assert sub.result == "error"
        assert sub.state is PipelineState.ERROR
        assert sub.reason.startswith("internal error")
        assert "boom" in sub.reason
        assert sub.wait(0.0)
        assert [f["result"] for f in finished] == ["error"]
        assert len(store) == 0

    def test_error_resets_to_idle_after_timeout(self, make_controller) -> None:
        ctrl = make_controller(error_reset_s=0.05)
        sub = ctrl.submit("")
        assert wait_for(lambda: sub.state is PipelineState.IDLE, timeout=2.0)
        assert sub.fsm.get_history()[-1]["reason"] == "error reset timeout"

    def test_duplicate_id_fails_only_that_submission(self, store, make_controller, monkeypatch) -> None:
        ctrl = make_controller(error_reset_s=60.0)

        def _dup(entry):
            raise DuplicateIdError(entry.id)

        monkeypatch.setattr(store, "insert", _dup)
        sub = ctrl.submit("I ate a banana")
        assert sub.result == "error"
        assert sub.state is PipelineState.ERROR

        monkeypatch.undo()
        assert ctrl.submit("I ate a banana").result == "completed"

    def test_phase_timeout(self, make_controller) -> None:
        classifier = BlockingClassifier()
        ctrl = make_controller(
            classifier=classifier,
            clock_override=SystemClock(),
            phase_timeout_s=0.2,
            error_reset_s=60.0,
        )
        try:
            sub = ctrl.submit("I ate a banana")
        finally:
            classifier.release.set()
        assert sub.result == "error"
        assert "timed out" in sub.reason
        assert sub.state is PipelineState.ERROR


# ──────────────────────────────────────────────────────────────
# Cancellation and concurrency
# ──────────────────────────────────────────────────────────────

class TestCancellation:

    def test_cancel_while_recognizing(self, make_controller) -> None:
        classifier = BlockingClassifier()
        ctrl = make_controller(classifier=classifier, clock_override=SystemClock(), error_reset_s=60.0)
        sub = ctrl.submit_async("I ate a banana")
        try:
            assert classifier.started.wait(2.0)
            assert ctrl.cancel(sub.id) is True
            assert sub.wait(2.0)
        finally:
            classifier.release.set()
        assert sub.result == "error"
        assert sub.reason == "cancelled"
        assert sub.state is PipelineState.ERROR

    def test_cancel_keeps_inserted_entries_and_cancels_jobs(
        self, store, orchestrator, make_controller
    ) -> None:
        extractor = ListExtractor([
            Action(kind=EntryKind.FOOD, description="banana"),
            Action(kind=EntryKind.FOOD, description="apple"),
        ])
        ctrl = make_controller(extractor=extractor, error_reset_s=60.0)
        ctrl.subscribe(ON_ENTRY_CREATED, lambda d: ctrl.cancel(d["submission_id"]))

        sub = ctrl.submit("banana and apple")

        assert sub.reason == "cancelled"
        assert len(sub.entry_ids) == 1
        entry = store.get(sub.entry_ids[0])
        assert entry is not None
        assert entry.status is EntryStatus.PLACEHOLDER
        assert orchestrator.pending_count == 0
        assert orchestrator.history()[-1]["state"] == "CANCELLED"

    def test_cancel_finished_submission(self, make_controller) -> None:
        ctrl = make_controller()
        sub = ctrl.submit("I ate a banana")
        assert ctrl.cancel(sub.id) is False
        assert ctrl.cancel("unknown") is False

    def test_concurrent_submissions(self, store, make_controller) -> None:
        ctrl = make_controller(clock_override=SystemClock())
        subs = [ctrl.submit_async(f"I ate banana {i}") for i in range(8)]
        assert all(s.wait(5.0) for s in subs)
        assert all(s.result == "completed" for s in subs)
        assert len(store) == 8
        assert len({s.id for s in subs}) == 8
        assert {s.id for s in ctrl.submissions()} >= {s.id for s in subs}
        assert ctrl.get_submission(subs[0].id) is subs[0]
