"""
plany/pipeline/controller.py — PipelineController: per-utterance state machine.

Turns one transcript into log entries and enrichment jobs::

    IDLE ─► RECOGNIZING ─► EXECUTING ─► COMPLETED ─► IDLE
      │          │             │            │
      └──────────┴─────────────┴────────────┴─► ERROR ─► IDLE (ack / reset timer)

Each :class:`Submission` owns its own FSM and cancellation token, so several
submissions can run at once. The phase timeout bounds only classification,
extraction and inserts; enrichment continues in the orchestrator after
``COMPLETED``.

For every action the entry is inserted into the store *before* its job is
handed to the orchestrator, and both components hold the same store.
"""

from __future__ import annotations

import threading
import time
import uuid
from collections import OrderedDict, defaultdict
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, TypeVar

from plany.core.cancellation import CancellationToken
from plany.core.clock import Clock, SystemClock
from plany.core.config import PipelineConfig
from plany.core.constants import C, EntryKind, EntryStatus, PipelineState
from plany.core.errors import (
    AlreadyInFlightError,
    ConfigurationError,
    DuplicateIdError,
    ExternalServiceError,
    ValidationError,
)
from plany.core.fsm import PipelineFSM
from plany.core.logger import get_logger
from plany.intent.classifier import Classifier
from plany.intent.extractor import Action, Extractor
from plany.orchestrator.orchestrator import TaskOrchestrator
from plany.store.event_store import EventStore
from plany.store.models import (
    REQUIRES_ENRICHMENT,
    Attributes,
    FoodAttributes,
    HydrationAttributes,
    LogEntry,
    SupplementAttributes,
    SymptomAttributes,
    new_entry_id,
)

_log = get_logger()

T = TypeVar("T")

# ── EventBus event-name constants ─────────────────────────────────────────────

ON_STATE_CHANGED = "ON_STATE_CHANGED"
"""Fired on every submission FSM transition (``submission_id, from, to, detail``)."""

ON_ENTRY_CREATED = "ON_ENTRY_CREATED"
"""Fired after an entry has been inserted into the store."""

ON_JOB_ENQUEUED = "ON_JOB_ENQUEUED"
"""Fired after an enrichment job has been accepted by the orchestrator."""

ON_SUBMISSION_FINISHED = "ON_SUBMISSION_FINISHED"
"""Fired once per submission when it reaches COMPLETED or ERROR."""

# Submission results
RESULT_COMPLETED = "completed"
RESULT_NOOP = "noop"
RESULT_ERROR = "error"

_MAX_TRACKED_SUBMISSIONS = 100


class _PhaseTimeout(Exception):
    """Internal: the synchronous phase budget ran out."""


class _SubmissionCancelled(Exception):
    """Internal: the caller cancelled the submission."""


# ── Submission ────────────────────────────────────────────────────────────────

class Submission:
    """
    Handle for one utterance travelling through the pipeline.

    Attributes:
        id: Submission identifier.
        raw_text: The transcript as submitted.
        entry_ids: Ids of entries inserted so far, in action order.
        result: ``"completed"``, ``"noop"`` or ``"error"`` once finished.
        reason: Caller-visible detail (error reason, no-op reason).
    """

    def __init__(self, raw_text: str, on_transition: Callable[..., None]) -> None:
        self.id: str = uuid.uuid4().hex
        self.raw_text = raw_text
        self.entry_ids: List[str] = []
        self.result: Optional[str] = None
        self.reason: str = ""
        self.cancel_jobs = True
        self.token = CancellationToken()
        self.fsm = PipelineFSM(
            on_transition=lambda f, t, r: on_transition(self, f, t, r)
        )
        self._done = threading.Event()

    @property
    def state(self) -> PipelineState:
        return self.fsm.current_state

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the submission has finished; return False on timeout."""
        return self._done.wait(timeout)

    def acknowledge(self) -> bool:
        """Dismiss an ERROR, returning the submission to IDLE."""
        return self.fsm.transition_if(PipelineState.ERROR, PipelineState.IDLE, "acknowledged")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "raw_text": self.raw_text,
            "state": self.state.value,
            "result": self.result,
            "reason": self.reason,
            "entry_ids": list(self.entry_ids),
            "history": [
                {"from": h["from"], "to": h["to"], "reason": h["reason"]}
                for h in self.fsm.get_history()
            ],
        }

    def __repr__(self) -> str:
        return f"Submission(id={self.id!r}, state={self.state.value}, result={self.result!r})"


# ── PipelineController ────────────────────────────────────────────────────────

class PipelineController:
    """
    Coordinates classification, extraction, entry creation and job submission.

    Args:
        store: The one Event Store of the process.
        orchestrator: Task orchestrator wired to the *same* store.
        classifier: Decides whether a transcript is actionable.
        extractor: Turns a transcript into :class:`Action` objects.
        config: Phase timeout, confidence threshold and hydration defaults.
        clock: Time source for phase deadlines and entry timestamps.

    Raises:
        ConfigurationError: If *orchestrator* writes to a different store.

    Example::

        ctrl = PipelineController(store, orch, KeywordClassifier(), extractor)
        ctrl.subscribe(ON_STATE_CHANGED, lambda d: print(d["to"], d["detail"]))
        sub = ctrl.submit("I ate a banana")
    """

    def __init__(
        self,
        store: EventStore,
        orchestrator: TaskOrchestrator,
        classifier: Classifier,
        extractor: Extractor,
        config: Optional[PipelineConfig] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        if orchestrator.store is not store:
            raise ConfigurationError(
                f"Orchestrator writes to store {id(orchestrator.store):#x} "
                f"but controller was given store {id(store):#x}"
            )
        self._store = store
        self._orchestrator = orchestrator
        self._classifier = classifier
        self._extractor = extractor
        self._cfg = config or PipelineConfig()
        self._clock: Clock = clock or SystemClock()

        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="plany-intent")
        self._subscribers: Dict[str, List[Callable[[Dict[str, Any]], None]]] = (
            defaultdict(list)
        )
        self._submissions: "OrderedDict[str, Submission]" = OrderedDict()
        self._lock = threading.Lock()

        _log.info("pipeline", "controller_ready", {
            "store": f"{id(store):#x}",
            "phase_timeout_s": self._cfg.phase_timeout_s,
            "min_confidence": self._cfg.min_confidence,
        })

    @property
    def store(self) -> EventStore:
        return self._store

    @property
    def orchestrator(self) -> TaskOrchestrator:
        return self._orchestrator

    # ── EventBus ──────────────────────────────────────────────────────────────

    def subscribe(self, event: str, callback: Callable[[Dict[str, Any]], None]) -> None:
        """
        Register *callback* to receive payloads whenever *event* is published.

        Callbacks run synchronously in the publishing thread, in registration
        order; exceptions are caught and logged.
        """
        with self._lock:
            self._subscribers[event].append(callback)
        _log.info("pipeline", "event_subscribed", {"event": event})

    def unsubscribe(self, event: str, callback: Callable[[Dict[str, Any]], None]) -> bool:
        """Remove *callback* from *event*; return False if it was not registered."""
        with self._lock:
            callbacks = self._subscribers.get(event, [])
            if callback not in callbacks:
                return False
            callbacks.remove(callback)
        _log.info("pipeline", "event_unsubscribed", {"event": event})
        return True

    def publish(self, event: str, data: Dict[str, Any]) -> None:
        with self._lock:
            callbacks = list(self._subscribers.get(event, []))
        for cb in callbacks:
            try:
                cb(data)
            except Exception as exc:  # noqa: BLE001
                _log.error("pipeline", "event_callback_error", {
                    "event": event,
                    "error": str(exc),
                })

    # ── Submissions ───────────────────────────────────────────────────────────

    def submit(self, raw_text: str) -> Submission:
        """Run one transcript through the pipeline in the calling thread."""
        sub = self._register(raw_text)
        self._run(sub)
        return sub

    def submit_async(self, raw_text: str) -> Submission:
        """Start processing *raw_text* on a daemon thread and return at once."""
        sub = self._register(raw_text)
        threading.Thread(
            target=self._run, args=(sub,), daemon=True, name=f"plany-sub-{sub.id[:8]}",
        ).start()
        return sub

    def get_submission(self, submission_id: str) -> Optional[Submission]:
        with self._lock:
            return self._submissions.get(submission_id)

    def submissions(self) -> List[Submission]:
        """Recently tracked submissions, oldest first."""
        with self._lock:
            return list(self._submissions.values())

    def cancel(self, submission_id: str, cancel_jobs: bool = True) -> bool:
        """
        Cancel a running submission.

        Entries already inserted stay in the store. With *cancel_jobs* their
        pending enrichment jobs are cancelled too and the entries stay (or go
        back to) ``PLACEHOLDER``.

        Returns:
            False if the submission is unknown or already finished.
        """
        sub = self.get_submission(submission_id)
        if sub is None or sub.done:
            return False
        sub.cancel_jobs = cancel_jobs
        sub.token.cancel()
        if cancel_jobs:
            self._cancel_jobs(sub)
        _log.info("pipeline", "submission_cancel_requested", {
            "submission_id": submission_id,
            "cancel_jobs": cancel_jobs,
        })
        return True

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    # ── Internal flow ─────────────────────────────────────────────────────────

    def _register(self, raw_text: str) -> Submission:
        sub = Submission(raw_text, self._on_fsm_transition)
        with self._lock:
            self._submissions[sub.id] = sub
            while len(self._submissions) > _MAX_TRACKED_SUBMISSIONS:
                self._submissions.popitem(last=False)
        return sub

    def _run(self, sub: Submission) -> None:
        t0 = time.perf_counter()
        deadline = self._clock.now() + self._cfg.phase_timeout_s
        try:
            text = sub.raw_text.strip()
            if not text:
                raise ValidationError(C.RETRY_PROMPT)

            sub.fsm.transition(PipelineState.RECOGNIZING, "submitted")
            classification = self._bounded(sub, deadline, self._classifier.classify, text)
            if not classification.has_action:
                self._finish(sub, RESULT_NOOP, "no actionable intent")
                return
            if classification.confidence < self._cfg.min_confidence:
                self._finish(
                    sub, RESULT_NOOP,
                    f"confidence {classification.confidence:.2f} below "
                    f"{self._cfg.min_confidence:.2f}",
                )
                return

            actions = self._bounded(sub, deadline, self._extractor.extract, text)
            if not actions:
                self._finish(sub, RESULT_NOOP, "no loggable actions")
                return

            sub.fsm.transition(PipelineState.EXECUTING, f"{len(actions)} action(s)")
            for action in actions:
                self._check(sub, deadline)
                self._execute(sub, action)

            self._finish(sub, RESULT_COMPLETED, f"logged {len(sub.entry_ids)}")

        except ValidationError as exc:
            self._fail(sub, str(exc))
        except _SubmissionCancelled:
            if sub.cancel_jobs:
                self._cancel_jobs(sub)
            self._fail(sub, "cancelled")
        except _PhaseTimeout:
            self._fail(sub, f"timed out after {self._cfg.phase_timeout_s:g}s")
        except DuplicateIdError as exc:
            self._fail(sub, f"could not store entry: {exc}")
        except ExternalServiceError as exc:
            self._fail(sub, f"could not understand request: {exc}")
        except Exception as exc:  # noqa: BLE001
            _log.error("pipeline", "submission_unhandled_error", {
                "submission_id": sub.id,
                "state": sub.state.value,
                "error": repr(exc),
            })
            if sub.fsm.can_transition(PipelineState.ERROR):
                self._fail(sub, f"internal error: {exc!r}")
        finally:
            sub._done.set()
            _log.perf("pipeline", "submission_done", (time.perf_counter() - t0) * 1_000.0, {
                "submission_id": sub.id,
                "result": sub.result,
                "entries": len(sub.entry_ids),
            })

    def _execute(self, sub: Submission, action: Action) -> None:
        """Insert one entry, then hand its enrichment job to the orchestrator."""
        entry = self.build_entry(action)
        self._store.insert(entry)
        sub.entry_ids.append(entry.id)
        _log.info("pipeline", "entry_inserted", {
            "submission_id": sub.id,
            "entry_id": entry.id,
            "kind": entry.kind.value,
            "status": entry.status.value,
        })
        self.publish(ON_ENTRY_CREATED, {"submission_id": sub.id, "entry": entry.to_dict()})

        if entry.kind not in REQUIRES_ENRICHMENT:
            return
        job = self._orchestrator.new_job(entry.id, entry.primary_text)
        try:
            self._orchestrator.enqueue(job)
        except AlreadyInFlightError:
            _log.warn("pipeline", "job_already_in_flight", {"entry_id": entry.id})
            return
        self.publish(ON_JOB_ENQUEUED, {"submission_id": sub.id, "entry_id": entry.id})

    def build_entry(self, action: Action) -> LogEntry:
        """Construct the initial :class:`LogEntry` for *action*."""
        attributes = _ATTRIBUTE_BUILDERS[action.kind](action, self._cfg)
        needs_enrichment = action.kind in REQUIRES_ENRICHMENT
        return LogEntry(
            id=new_entry_id(),
            kind=action.kind,
            created_at=self._timestamp(action),
            primary_text=action.description,
            attributes=attributes,
            status=EntryStatus.PLACEHOLDER if needs_enrichment else EntryStatus.ENRICHED,
            notes=C.NOTE_PROCESSING if needs_enrichment else C.NOTE_VOICE,
            components=tuple(action.components),
        )

    def _timestamp(self, action: Action) -> datetime:
        if action.timestamp is None:
            return self._clock.wall()
        if action.timestamp.tzinfo is None:
            return action.timestamp.replace(tzinfo=timezone.utc)
        return action.timestamp

    def _bounded(self, sub: Submission, deadline: float, fn: Callable[[str], T], text: str) -> T:
        """Run *fn(text)* off-thread, bounded by the phase deadline and the cancel token."""
        self._check(sub, deadline)
        future = self._executor.submit(fn, text)
        wake = threading.Event()
        future.add_done_callback(lambda _f: wake.set())
        sub.token.add_callback(wake.set)

        wake.wait(timeout=max(deadline - self._clock.now(), 0.0))
        if sub.token.is_cancelled:
            future.cancel()
            raise _SubmissionCancelled()
        if not future.done():
            future.cancel()
            raise _PhaseTimeout()
        return future.result()

    def _check(self, sub: Submission, deadline: float) -> None:
        if sub.token.is_cancelled:
            raise _SubmissionCancelled()
        if self._clock.now() >= deadline:
            raise _PhaseTimeout()

    def _cancel_jobs(self, sub: Submission) -> None:
        for entry_id in list(sub.entry_ids):
            self._orchestrator.cancel(entry_id)

    def _finish(self, sub: Submission, result: str, detail: str) -> None:
        sub.result = result
        sub.reason = detail
        sub.fsm.transition(PipelineState.COMPLETED, detail)
        self.publish(ON_SUBMISSION_FINISHED, {
            "submission_id": sub.id,
            "result": result,
            "reason": detail,
            "entry_ids": list(sub.entry_ids),
        })
        sub.fsm.transition(PipelineState.IDLE, "ready")

    def _fail(self, sub: Submission, reason: str) -> None:
        sub.result = RESULT_ERROR
        sub.reason = reason
        sub.fsm.transition(PipelineState.ERROR, reason)
        self.publish(ON_SUBMISSION_FINISHED, {
            "submission_id": sub.id,
            "result": RESULT_ERROR,
            "reason": reason,
            "entry_ids": list(sub.entry_ids),
        })
        timer = threading.Timer(
            self._cfg.error_reset_s,
            sub.fsm.transition_if,
            args=(PipelineState.ERROR, PipelineState.IDLE, "error reset timeout"),
        )
        timer.daemon = True
        timer.start()

    # ── FSM transition callback ───────────────────────────────────────────────

    def _on_fsm_transition(
        self,
        sub: Submission,
        from_state: PipelineState,
        to_state: PipelineState,
        reason: str,
    ) -> None:
        """Log every transition and forward it to ``ON_STATE_CHANGED`` subscribers."""
        log = _log.warn if to_state is PipelineState.ERROR else _log.info
        log("pipeline", "fsm_transition", {
            "submission_id": sub.id,
            "from": from_state.value,
            "to": to_state.value,
            "reason": reason,
        })
        self.publish(ON_STATE_CHANGED, {
            "submission_id": sub.id,
            "from": from_state.value,
            "to": to_state.value,
            "detail": reason,
        })


# ── Attribute construction per kind ───────────────────────────────────────────

def _food(action: Action, cfg: PipelineConfig) -> Attributes:
    return FoodAttributes.placeholder()


def _hydration(action: Action, cfg: PipelineConfig) -> Attributes:
    return HydrationAttributes(
        amount=action.quantity if action.quantity is not None else float(cfg.default_water_amount),
        unit=action.unit or cfg.default_water_unit,
    )


def _supplement(action: Action, cfg: PipelineConfig) -> Attributes:
    return SupplementAttributes(name=action.description, dosage=action.dosage)


def _symptom(action: Action, cfg: PipelineConfig) -> Attributes:
    return SymptomAttributes(
        symptoms=tuple(action.symptoms) or (action.description,),
        severity=action.severity if action.severity is not None else C.DEFAULT_SEVERITY,
    )


_ATTRIBUTE_BUILDERS: Dict[EntryKind, Callable[[Action, PipelineConfig], Attributes]] = {
    EntryKind.FOOD: _food,
    EntryKind.HYDRATION: _hydration,
    EntryKind.SUPPLEMENT: _supplement,
    EntryKind.SYMPTOM: _symptom,
}
