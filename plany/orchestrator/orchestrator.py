"""
plany/orchestrator/orchestrator.py — TaskOrchestrator: runs enrichment jobs.

Each job is dispatched at most once at a time, retried with backoff on
transient failures, bounded by a per-call timeout and a whole-job deadline,
and finished with exactly one terminal write through the Event Store::

    QUEUED ─► IN_FLIGHT ─┬─► SUCCEEDED        (attributes + ENRICHED)
       ▲                 ├─► FAILED_RETRYABLE ─► QUEUED (attempt+1, after backoff)
       │                 ├─► FAILED_TERMINAL  (FAILED)
       └── cancel()      ├─► TIMED_OUT        (TIMED_OUT)
                         └─► CANCELLED        (PLACEHOLDER again, or CANCELLED if asked)

``_jobs`` holds every non-terminal job keyed by entry id; a second enqueue for
the same id is rejected while one is present, which is what keeps at most one
job per entry in flight. Jobs leave ``_jobs`` only after their terminal store
write has completed.
"""

from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Deque, Dict, List, Optional, Tuple

from plany.core.clock import Clock, SystemClock
from plany.core.config import OrchestratorConfig
from plany.core.constants import C, EntryStatus, JobState
from plany.core.errors import (
    AlreadyInFlightError,
    EnrichmentError,
    EnrichmentErrorKind,
    EntryNotFoundError,
)
from plany.core.logger import get_logger
from plany.enrichment.client import EnrichmentClient
from plany.orchestrator.job import EnrichmentJob, RetryPolicy
from plany.store.event_store import EventStore
from plany.store.models import REQUIRES_ENRICHMENT, Attributes
from plany.store.mutations import Mutator, set_attributes_and_status, set_status

_log = get_logger()

_TERMINAL_EVENTS: Dict[JobState, str] = {
    JobState.SUCCEEDED: "job_succeeded",
    JobState.FAILED_TERMINAL: "job_failed",
    JobState.TIMED_OUT: "job_timed_out",
    JobState.CANCELLED: "job_cancelled",
}


class _Cancelled(Exception):
    """Internal signal: the in-flight call was cancelled cooperatively."""


class TaskOrchestrator:
    """
    Queue and worker pool for :class:`EnrichmentJob` instances.

    Jobs can be driven two ways:

    - :meth:`start` spawns ``config.workers`` daemon threads that dispatch due
      jobs as they become ready.
    - :meth:`process_next` runs one due job synchronously in the caller's
      thread. Together with a :class:`~plany.core.clock.ManualClock` this
      lets tests step through retries without sleeping.

    Args:
        store: The one Event Store every result is written to.
        client: Enrichment client invoked for each attempt.
        config: Worker count, retry policy and time bounds.
        clock: Time source for deadlines and backoff.

    Example::

        orch = TaskOrchestrator(store, MacroEstimator(cfg.enrichment), cfg.orchestrator)
        orch.start()
        orch.enqueue(orch.new_job(entry.id, entry.primary_text))
        ...
        orch.shutdown()
    """

    #: Longest a worker sleeps before re-checking the queue.
    _IDLE_POLL_S: float = 0.5

    def __init__(
        self,
        store: EventStore,
        client: EnrichmentClient,
        config: Optional[OrchestratorConfig] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._store = store
        self._client = client
        self._cfg = config or OrchestratorConfig()
        self._policy = RetryPolicy.from_config(self._cfg)
        self._clock: Clock = clock or SystemClock()

        self._cond = threading.Condition()
        self._jobs: Dict[str, EnrichmentJob] = {}
        self._queue: List[Tuple[float, int, EnrichmentJob]] = []
        self._seq = itertools.count()
        self._history: Deque[Dict[str, Any]] = deque(maxlen=self._cfg.history_size)

        # Calls run on their own pool so a worker can stop waiting on one
        # (timeout, cancellation) while the call itself winds down.
        self._pool_size = max(2, self._cfg.workers * 2)
        self._executor = ThreadPoolExecutor(
            max_workers=self._pool_size,
            thread_name_prefix="plany-estimate",
        )
        self._workers: List[threading.Thread] = []
        self._running = False
        self._abandoned = 0

        _log.info("orchestrator", "created", {
            "store": f"{id(store):#x}",
            "workers": self._cfg.workers,
            "max_attempts": self._policy.max_attempts,
        })

    # ── Properties ────────────────────────────────────────────────────────────

    @property
    def store(self) -> EventStore:
        """The Event Store this orchestrator writes to."""
        return self._store

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    @property
    def pending_count(self) -> int:
        """Number of jobs not yet terminal (queued, backing off or in flight)."""
        with self._cond:
            return len(self._jobs)

    @property
    def abandoned_calls(self) -> int:
        """Client calls given up on (timeout, cancel) that have not returned yet."""
        with self._cond:
            return self._abandoned

    # ── Submission ────────────────────────────────────────────────────────────

    def new_job(self, entry_id: str, query: str) -> EnrichmentJob:
        """Build a job whose deadline is ``job_deadline_s`` from now."""
        return EnrichmentJob(
            entry_id=entry_id,
            query=query,
            deadline=self._clock.now() + self._cfg.job_deadline_s,
        )

    def enqueue(self, job: EnrichmentJob) -> None:
        """
        Accept *job* for processing.

        Raises:
            AlreadyInFlightError: If a job for ``job.entry_id`` is queued,
                backing off or in flight.
            ValueError: If *job* is already terminal.
        """
        if job.is_terminal:
            raise ValueError(f"Cannot enqueue terminal job for {job.entry_id}")

        with self._cond:
            if job.entry_id in self._jobs:
                raise AlreadyInFlightError(job.entry_id)
            job.state = JobState.QUEUED
            self._jobs[job.entry_id] = job
            self._push_locked(job)
            self._cond.notify()

        _log.info("orchestrator", "job_enqueued", {
            "entry_id": job.entry_id,
            "query": job.query,
            "deadline_in_s": round(job.deadline - self._clock.now(), 3),
        })

    def resume_pending(self) -> int:
        """
        Enqueue a job for every entry still waiting on enrichment.

        Picks up entries a previous process left ``PLACEHOLDER`` or
        ``ENRICHING`` (for example after a restart from a snapshot). Entries
        that already have an active job are skipped.

        Returns:
            Number of jobs enqueued.
        """
        resumed = 0
        for entry in self._store.list():
            if entry.kind not in REQUIRES_ENRICHMENT:
                continue
            if entry.status not in (EntryStatus.PLACEHOLDER, EntryStatus.ENRICHING):
                continue
            try:
                self.enqueue(self.new_job(entry.id, entry.primary_text))
            except AlreadyInFlightError:
                continue
            resumed += 1
        _log.info("orchestrator", "jobs_resumed", {"count": resumed})
        return resumed

    def cancel(self, entry_id: str, mark_cancelled: bool = False) -> bool:
        """
        Cancel the active job for *entry_id*.

        A queued (or backing-off) job is removed immediately. An in-flight
        call is asked to stop; its result, if any, is discarded. An entry the
        job already moved to ``ENRICHING`` returns to ``PLACEHOLDER``; with
        *mark_cancelled* it is set to ``CANCELLED`` instead.

        Returns:
            True if a job was found and cancelled, False otherwise.
        """
        with self._cond:
            job = self._jobs.get(entry_id)
            if job is None:
                return False
            job.mark_cancelled = mark_cancelled
            dequeued = job.state is JobState.QUEUED
            if dequeued:
                job.state = JobState.IN_FLIGHT  # claimed; _finish moves it on
            # Set under the lock so a failed attempt cannot re-queue past it.
            job.cancel_token.cancel()

        if dequeued:
            self._finish(job, JobState.CANCELLED, self._cancel_mutator(job), "cancelled")
        _log.info("orchestrator", "cancel_requested", {
            "entry_id": entry_id,
            "was_queued": dequeued,
            "mark_cancelled": mark_cancelled,
        })
        return True

    # ── Introspection ─────────────────────────────────────────────────────────

    def get_job(self, entry_id: str) -> Optional[Dict[str, Any]]:
        """Snapshot of the active job for *entry_id*, or ``None``."""
        with self._cond:
            job = self._jobs.get(entry_id)
            return job.snapshot() if job is not None else None

    def history(self) -> List[Dict[str, Any]]:
        """Snapshots of the most recent terminal jobs, oldest first."""
        with self._cond:
            return list(self._history)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no job is active; return False on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: not self._jobs, timeout=timeout)

    # ── Processing ────────────────────────────────────────────────────────────

    def process_next(self) -> Optional[EnrichmentJob]:
        """
        Dispatch one due job in the calling thread.

        Returns:
            The job that was processed, or ``None`` if nothing is due.
        """
        with self._cond:
            job = self._take_due_locked()
        if job is None:
            return None
        self._run(job)
        return job

    def run_until_idle(self) -> int:
        """Process due jobs until none is due; return how many ran."""
        count = 0
        while self.process_next() is not None:
            count += 1
        return count

    def apply_result(self, job: EnrichmentJob, attributes: Attributes) -> bool:
        """
        Apply a successful estimate for *job*.

        Guarded by job state: only an in-flight job transitions to
        SUCCEEDED, so a second completion for the same job is ignored.

        Returns:
            True if the result was written, False if it was a duplicate.
        """
        applied = self._finish(
            job,
            JobState.SUCCEEDED,
            set_attributes_and_status(attributes, EntryStatus.ENRICHED, C.NOTE_VOICE),
        )
        if not applied:
            _log.warn("orchestrator", "duplicate_completion_ignored", {
                "entry_id": job.entry_id,
                "state": job.state.value,
            })
        return applied

    # ── Worker lifecycle ──────────────────────────────────────────────────────

    def start(self) -> None:
        """
        Spawn the worker threads.

        Raises:
            RuntimeError: If already running.
        """
        with self._cond:
            if self._running:
                raise RuntimeError("TaskOrchestrator is already running")
            self._running = True

        for i in range(self._cfg.workers):
            t = threading.Thread(
                target=self._worker_loop,
                daemon=True,
                name=f"plany-orch-{i}",
            )
            t.start()
            self._workers.append(t)
        _log.info("orchestrator", "workers_started", {"workers": self._cfg.workers})

    def shutdown(self, timeout: float = 5.0) -> None:
        """
        Stop the workers and release the call pool.

        Jobs still queued stay queued (their entries keep their current
        status); in-flight calls are asked to stop and their entries go back
        to ``PLACEHOLDER``. :meth:`resume_pending` picks both up after a restart.
        """
        with self._cond:
            self._running = False
            in_flight = [j for j in self._jobs.values() if j.state is JobState.IN_FLIGHT]
            self._cond.notify_all()

        for job in in_flight:
            job.cancel_token.cancel()
        for t in self._workers:
            t.join(timeout=timeout)
        self._workers.clear()
        self._executor.shutdown(wait=False, cancel_futures=True)
        _log.info("orchestrator", "shutdown", {"abandoned_in_flight": len(in_flight)})
        _log.flush()

    def _worker_loop(self) -> None:
        """Dispatch due jobs until :meth:`shutdown` is called."""
        while True:
            with self._cond:
                if not self._running:
                    return
                job = self._take_due_locked()
                if job is None:
                    self._cond.wait(timeout=self._idle_wait_locked())
                    continue
            try:
                self._run(job)
            except Exception as exc:  # noqa: BLE001
                _log.error("orchestrator", "worker_unhandled_error", {
                    "entry_id": job.entry_id,
                    "error": repr(exc),
                })
                self._finish(
                    job,
                    JobState.FAILED_TERMINAL,
                    set_status(EntryStatus.FAILED, C.NOTE_FAILED),
                    repr(exc),
                )

    # ── Job execution ─────────────────────────────────────────────────────────

    def _run(self, job: EnrichmentJob) -> None:
        """Execute one attempt of an in-flight job and route its outcome."""
        now = self._clock.now()
        if now >= job.deadline:
            self._time_out(job, "deadline elapsed before dispatch")
            return
        if job.cancel_token.is_cancelled:
            self._finish(job, JobState.CANCELLED, self._cancel_mutator(job), "cancelled")
            return

        if job.attempt == 0:
            try:
                self._store.update(job.entry_id, set_status(EntryStatus.ENRICHING))
            except EntryNotFoundError:
                self._finish(job, JobState.FAILED_TERMINAL, None, "entry not found")
                return
            job.entry_touched = True

        budget = min(self._cfg.call_timeout_s, job.deadline - now)
        _log.info("orchestrator", "job_dispatched", {
            "entry_id": job.entry_id,
            "attempt": job.attempt,
            "budget_s": round(budget, 3),
        })

        t0 = time.perf_counter()
        try:
            attributes = self._call(job, budget)
        except _Cancelled:
            self._finish(job, JobState.CANCELLED, self._cancel_mutator(job), "cancelled")
            return
        except EnrichmentError as exc:
            _log.perf("orchestrator", "estimate_failed", (time.perf_counter() - t0) * 1_000.0, {
                "entry_id": job.entry_id,
                "attempt": job.attempt,
                "kind": exc.kind.value,
            })
            self._handle_failure(job, exc)
            return

        _log.perf("orchestrator", "estimate_done", (time.perf_counter() - t0) * 1_000.0, {
            "entry_id": job.entry_id,
            "attempt": job.attempt,
        })
        self.apply_result(job, attributes)

    def _call(self, job: EnrichmentJob, budget: float) -> Attributes:
        """
        Invoke the client on the call pool and wait at most *budget* seconds.

        A call that overruns is abandoned, but the pool cannot interrupt it;
        it holds a pool thread until the client returns (see
        :attr:`abandoned_calls`).

        Raises:
            _Cancelled: The job's token was cancelled before or during the call.
            EnrichmentError: The client failed, or TIMEOUT if it did not
                answer within *budget*.
        """
        if job.cancel_token.is_cancelled:
            raise _Cancelled()
        future = self._executor.submit(self._client.estimate, job.query, budget)
        wake = threading.Event()
        future.add_done_callback(lambda _f: wake.set())
        job.cancel_token.add_callback(wake.set)

        wake.wait(timeout=max(budget, 0.0))

        if job.cancel_token.is_cancelled:
            self._abandon(job, future)
            raise _Cancelled()
        if not future.done():
            self._abandon(job, future)
            raise EnrichmentError(
                EnrichmentErrorKind.TIMEOUT, f"no response within {budget:.3f}s"
            )
        try:
            return future.result()
        except EnrichmentError:
            raise
        except Exception as exc:  # noqa: BLE001
            _log.error("orchestrator", "client_unexpected_error", {
                "entry_id": job.entry_id,
                "error": repr(exc),
            })
            raise EnrichmentError(EnrichmentErrorKind.INVALID_RESPONSE, repr(exc)) from exc

    def _handle_failure(self, job: EnrichmentJob, exc: EnrichmentError) -> None:
        """Route a failed attempt to retry, TIMED_OUT, FAILED_TERMINAL or CANCELLED."""
        if job.cancel_token.is_cancelled:
            self._finish(job, JobState.CANCELLED, self._cancel_mutator(job), "cancelled")
            return
        if exc.kind is EnrichmentErrorKind.TIMEOUT:
            self._time_out(job, str(exc))
            return

        if not (exc.retryable and self._policy.can_retry(job.attempt)):
            self._finish(
                job,
                JobState.FAILED_TERMINAL,
                set_status(EntryStatus.FAILED, C.NOTE_FAILED),
                str(exc),
            )
            return

        delay = self._policy.delay_for(job.attempt)
        retry_at = self._clock.now() + delay
        if retry_at >= job.deadline:
            self._time_out(job, f"retry at +{delay:.1f}s would pass deadline ({exc})")
            return

        with self._cond:
            if job.state is not JobState.IN_FLIGHT:
                return
            cancelled = job.cancel_token.is_cancelled
            if not cancelled:
                job.state = JobState.FAILED_RETRYABLE
                job.last_error = str(exc)
                job.attempt += 1
                job.not_before = retry_at
                job.state = JobState.QUEUED
                self._push_locked(job)
                self._cond.notify()

        if cancelled:
            self._finish(job, JobState.CANCELLED, self._cancel_mutator(job), "cancelled")
            return

        _log.info("orchestrator", "job_retry_scheduled", {
            "entry_id": job.entry_id,
            "next_attempt": job.attempt,
            "delay_s": delay,
            "error": str(exc),
        })

    def _time_out(self, job: EnrichmentJob, reason: str) -> None:
        self._finish(
            job,
            JobState.TIMED_OUT,
            set_status(EntryStatus.TIMED_OUT, C.NOTE_TIMED_OUT),
            reason,
        )

    def _finish(
        self,
        job: EnrichmentJob,
        state: JobState,
        mutator: Optional[Mutator],
        error: Optional[str] = None,
    ) -> bool:
        """
        Move an in-flight job to terminal *state* and write its entry once.

        The job stays registered in ``_jobs`` until the store write returns,
        so no second job for the entry can start in between.

        Returns:
            False if the job was not in flight (already finished).
        """
        with self._cond:
            if job.state is not JobState.IN_FLIGHT:
                return False
            job.state = state
            if error is not None:
                job.last_error = error

        try:
            if mutator is not None:
                self._store.update(job.entry_id, mutator)
        except EntryNotFoundError:
            _log.warn("orchestrator", "entry_missing_on_finish", {
                "entry_id": job.entry_id,
                "state": state.value,
            })
        finally:
            with self._cond:
                if self._jobs.get(job.entry_id) is job:
                    del self._jobs[job.entry_id]
                self._history.append(job.snapshot())
                self._cond.notify_all()

        log = _log.info if state is JobState.SUCCEEDED else _log.warn
        log("orchestrator", _TERMINAL_EVENTS[state], {
            "entry_id": job.entry_id,
            "attempt": job.attempt,
            "error": job.last_error,
        })
        return True

    @staticmethod
    def _cancel_mutator(job: EnrichmentJob) -> Optional[Mutator]:
        if job.mark_cancelled:
            return set_status(EntryStatus.CANCELLED, C.NOTE_CANCELLED)
        if job.entry_touched:
            return set_status(EntryStatus.PLACEHOLDER, C.NOTE_PROCESSING)
        return None

    def _abandon(self, job: EnrichmentJob, future: Future) -> None:
        """Stop waiting on *future*; count it while the client is still running."""
        if future.cancel():
            return
        with self._cond:
            self._abandoned += 1
            running = self._abandoned
        future.add_done_callback(self._release_abandoned)
        _log.warn("orchestrator", "abandoned_call_running", {
            "entry_id": job.entry_id,
            "running": running,
            "pool_size": self._pool_size,
        })

    def _release_abandoned(self, _future: Future) -> None:
        with self._cond:
            self._abandoned -= 1

    # ── Queue helpers (call with self._cond held) ─────────────────────────────

    def _push_locked(self, job: EnrichmentJob) -> None:
        heapq.heappush(self._queue, (job.not_before, next(self._seq), job))

    def _take_due_locked(self) -> Optional[EnrichmentJob]:
        """Pop the earliest due job and mark it IN_FLIGHT, skipping stale heap items."""
        now = self._clock.now()
        while self._queue:
            not_before, _, job = self._queue[0]
            if self._jobs.get(job.entry_id) is not job or job.state is not JobState.QUEUED:
                heapq.heappop(self._queue)
                continue
            if job.not_before != not_before:
                heapq.heappop(self._queue)
                continue
            if not_before > now:
                return None
            heapq.heappop(self._queue)
            job.state = JobState.IN_FLIGHT
            return job
        return None

    def _idle_wait_locked(self) -> float:
        """Seconds a worker may sleep before the next queued job becomes due."""
        if not self._queue:
            return self._IDLE_POLL_S
        delay = self._queue[0][0] - self._clock.now()
        return min(max(delay, 0.01), self._IDLE_POLL_S)
