"""
plany/core/constants.py — Enumerations and fixed constants for Plany.

Entry kinds, entry statuses, enrichment job states and pipeline states live
here so every subsystem speaks the same vocabulary. Tunable values (timeouts,
retry policy) belong in :mod:`plany.core.config`, not here.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import ClassVar


# ──────────────────────────────────────────────────────────────
# Log entries
# ──────────────────────────────────────────────────────────────

class EntryKind(Enum):
    """Tagged variant of a log entry; selects the attribute set that applies."""

    FOOD = "FOOD"
    HYDRATION = "HYDRATION"
    SUPPLEMENT = "SUPPLEMENT"
    SYMPTOM = "SYMPTOM"


class EntryStatus(Enum):
    """Lifecycle status of a log entry as seen by observers."""

    PLACEHOLDER = "PLACEHOLDER"
    ENRICHING = "ENRICHING"
    ENRICHED = "ENRICHED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"
    CANCELLED = "CANCELLED"


# ──────────────────────────────────────────────────────────────
# Enrichment jobs
# ──────────────────────────────────────────────────────────────

class JobState(Enum):
    """State of one enrichment job inside the task orchestrator."""

    QUEUED = "QUEUED"
    IN_FLIGHT = "IN_FLIGHT"
    SUCCEEDED = "SUCCEEDED"
    FAILED_RETRYABLE = "FAILED_RETRYABLE"
    FAILED_TERMINAL = "FAILED_TERMINAL"
    TIMED_OUT = "TIMED_OUT"
    CANCELLED = "CANCELLED"


# ──────────────────────────────────────────────────────────────
# Pipeline FSM
# ──────────────────────────────────────────────────────────────

class PipelineState(Enum):
    """All valid states for a pipeline submission."""

    IDLE = "IDLE"
    RECOGNIZING = "RECOGNIZING"
    EXECUTING = "EXECUTING"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"


# ──────────────────────────────────────────────────────────────
# Frozen constants
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class PlanyConstants:
    """
    Fixed values shared across Plany.

    Use the class attributes directly; do not instantiate this class.

    Example::

        from plany.core.constants import C

        C.NOTE_PROCESSING          # "Processing nutrition data…"
        JobState.SUCCEEDED in C.TERMINAL_JOB_STATES   # True
    """

    # ── Entry notes ───────────────────────────────────────────
    NOTE_PROCESSING: ClassVar[str] = "Processing nutrition data…"
    """Shown on a FOOD placeholder while enrichment is pending."""

    NOTE_VOICE: ClassVar[str] = "Via voice command"
    """Shown once an entry's attributes are final."""

    NOTE_FAILED: ClassVar[str] = "Couldn't estimate nutrition"
    NOTE_TIMED_OUT: ClassVar[str] = "Nutrition estimate timed out"
    NOTE_CANCELLED: ClassVar[str] = "Nutrition estimate cancelled"

    # ── Defaults from the voice contract ─────────────────────
    DEFAULT_SEVERITY: ClassVar[int] = 3
    """Symptom severity used when none was spoken (scale 1–5)."""

    # ── Job state groups ─────────────────────────────────────
    TERMINAL_JOB_STATES: ClassVar[frozenset[JobState]] = frozenset({
        JobState.SUCCEEDED,
        JobState.FAILED_TERMINAL,
        JobState.TIMED_OUT,
        JobState.CANCELLED,
    })
    """States from which a job never transitions further."""

    TERMINAL_ENTRY_STATUSES: ClassVar[frozenset[EntryStatus]] = frozenset({
        EntryStatus.ENRICHED,
        EntryStatus.FAILED,
        EntryStatus.TIMED_OUT,
        EntryStatus.CANCELLED,
    })

    # ── Pipeline messages ────────────────────────────────────
    RETRY_PROMPT: ClassVar[str] = "Didn't catch that, please try again"
    """User-visible prompt for an empty or unusable transcript."""


#: Convenience alias: ``from plany.core.constants import C``
C = PlanyConstants
