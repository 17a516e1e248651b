"""
plany/orchestrator/job.py — Enrichment job record and retry policy.

Retries are data: a job carries its attempt counter and the earliest time it
may run again. Nothing sleeps or recurses; the orchestrator simply refuses to
dispatch a job before ``not_before``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from plany.core.cancellation import CancellationToken
from plany.core.config import OrchestratorConfig
from plany.core.constants import C, JobState


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff with a cap.

    Attributes:
        max_attempts: Total calls allowed per job, including the first.
        base_s: Delay before the first retry.
        factor: Multiplier applied per further retry.
        max_s: Upper bound on any single delay.
    """

    max_attempts: int = 3
    base_s: float = 2.0
    factor: float = 2.0
    max_s: float = 30.0

    @classmethod
    def from_config(cls, config: OrchestratorConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            base_s=config.backoff_base_s,
            factor=config.backoff_factor,
            max_s=config.backoff_max_s,
        )

    def can_retry(self, attempt: int) -> bool:
        """True if a job that just failed on *attempt* (0-based) may run again."""
        return attempt + 1 < self.max_attempts

    def delay_for(self, attempt: int) -> float:
        """Delay before the retry that follows failed *attempt* (0-based)."""
        return min(self.base_s * (self.factor ** attempt), self.max_s)


@dataclass
class EnrichmentJob:
    """
    One deferred enrichment for one entry.

    Owned exclusively by the :class:`~plany.orchestrator.orchestrator.TaskOrchestrator`
    once enqueued. Holds only ``entry_id`` as a back-reference into the store.

    Attributes:
        entry_id: The LogEntry this job must update.
        query: Text passed to the enrichment client.
        deadline: Monotonic time after which the job is abandoned (TimedOut).
        attempt: Retry counter, starts at 0.
        state: Current :class:`~plany.core.constants.JobState`.
        not_before: Earliest monotonic time the job may be dispatched.
        last_error: Description of the most recent failure, if any.
        entry_touched: True once the job has moved its entry to ENRICHING.
    """

    entry_id: str
    query: str
    deadline: float
    attempt: int = 0
    state: JobState = JobState.QUEUED
    not_before: float = 0.0
    last_error: Optional[str] = None
    cancel_token: CancellationToken = field(default_factory=CancellationToken, repr=False)
    mark_cancelled: bool = field(default=False, repr=False)
    entry_touched: bool = field(default=False, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.state in C.TERMINAL_JOB_STATES

    def snapshot(self) -> Dict[str, Any]:
        """Copy of the observable fields, safe to hand outside the orchestrator."""
        return {
            "entry_id": self.entry_id,
            "query": self.query,
            "attempt": self.attempt,
            "state": self.state.value,
            "deadline": self.deadline,
            "not_before": self.not_before,
            "last_error": self.last_error,
        }
