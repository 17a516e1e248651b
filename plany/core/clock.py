"""
plany/core/clock.py — Time sources for deadlines and backoff.

Retry schedules and job deadlines are plain timestamps compared against a
clock, so tests can swap :class:`SystemClock` for :class:`ManualClock` and
advance time explicitly instead of sleeping.
"""

from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    """Anything that can report monotonic seconds and wall-clock time."""

    def now(self) -> float:
        ...

    def wall(self) -> datetime:
        ...


class SystemClock:
    """Real time: :func:`time.monotonic` for scheduling, UTC for timestamps."""

    def now(self) -> float:
        return time.monotonic()

    def wall(self) -> datetime:
        return datetime.now(tz=timezone.utc)


class ManualClock:
    """
    Virtual clock that only moves when :meth:`advance` is called.

    Args:
        start: Initial monotonic reading in seconds.
        wall_start: Wall-clock time corresponding to ``start``.
    """

    def __init__(
        self,
        start: float = 0.0,
        wall_start: datetime | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self._start = start
        self._now = start
        self._wall_start = wall_start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def now(self) -> float:
        with self._lock:
            return self._now

    def wall(self) -> datetime:
        with self._lock:
            return self._wall_start + timedelta(seconds=self._now - self._start)

    def advance(self, seconds: float) -> float:
        """
        Move the clock forward.

        Args:
            seconds: Non-negative amount to advance by.

        Returns:
            The new monotonic reading.

        Raises:
            ValueError: If ``seconds`` is negative.
        """
        if seconds < 0:
            raise ValueError(f"Cannot move clock backwards ({seconds})")
        with self._lock:
            self._now += seconds
            return self._now
