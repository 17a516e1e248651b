"""
plany/core/cancellation.py — Cooperative cancellation tokens.

A token is shared between the party that may cancel (caller, orchestrator)
and the party doing the waiting. Waiters register a wake-up callback instead
of polling.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, List

logger = logging.getLogger(__name__)


class CancellationToken:
    """
    One-shot, thread-safe cancellation flag with callbacks.

    Callbacks registered after cancellation run immediately in the
    registering thread.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._event = threading.Event()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> bool:
        """
        Request cancellation.

        Returns:
            True if this call performed the cancellation, False if the token
            was already cancelled.
        """
        with self._lock:
            if self._event.is_set():
                return False
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()

        for cb in callbacks:
            self._run(cb)
        return True

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Invoke *callback* once, when (or if already) cancelled."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        self._run(callback)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or *timeout* elapses; return the flag."""
        return self._event.wait(timeout)

    @staticmethod
    def _run(callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Cancellation callback raised: %s", exc)
