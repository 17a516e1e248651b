"""
plany/core/fsm.py — Strict finite state machine for pipeline submissions.

Thread-safe FSM with an explicit validated transition map, per-state enter
callbacks, bounded transition history, and structured logging. Each
submission owns one instance, so concurrent submissions never share state.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from plany.core.constants import PipelineState

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────────────────────
# Custom exception
# ──────────────────────────────────────────────────────────────

class InvalidTransitionError(RuntimeError):
    """
    Raised when a requested transition is not in the valid transition map.

    Args:
        from_state: Current state at the time of the illegal attempt.
        to_state: Requested (invalid) target state.
        reason: Caller-supplied reason string.
    """

    def __init__(
        self,
        from_state: PipelineState,
        to_state: PipelineState,
        reason: str = "",
    ) -> None:
        self.from_state = from_state
        self.to_state = to_state
        self.reason = reason
        super().__init__(
            f"Invalid transition {from_state.value} → {to_state.value}"
            + (f" (reason: {reason})" if reason else "")
        )


# ──────────────────────────────────────────────────────────────
# Valid transition map
# ──────────────────────────────────────────────────────────────

_VALID_TRANSITIONS: dict[PipelineState, list[PipelineState]] = {
    PipelineState.IDLE: [
        PipelineState.RECOGNIZING,
        PipelineState.ERROR,
    ],
    PipelineState.RECOGNIZING: [
        PipelineState.EXECUTING,
        PipelineState.COMPLETED,  # no actionable intent
        PipelineState.ERROR,
    ],
    PipelineState.EXECUTING: [
        PipelineState.COMPLETED,
        PipelineState.ERROR,
    ],
    PipelineState.COMPLETED: [
        PipelineState.IDLE,
        PipelineState.ERROR,
    ],
    PipelineState.ERROR: [
        PipelineState.IDLE,  # after acknowledgment or reset timeout
    ],
}

# Maximum number of transition records kept in history
_MAX_HISTORY = 50


# ──────────────────────────────────────────────────────────────
# FSM class
# ──────────────────────────────────────────────────────────────

class PipelineFSM:
    """
    Thread-safe finite state machine for one pipeline submission.

    Enforces the explicit transition map defined in :data:`_VALID_TRANSITIONS`.
    Illegal transitions raise :class:`InvalidTransitionError` immediately.
    The last 50 transitions are retained in :meth:`get_history`.

    Args:
        on_transition: Optional callback invoked after every successful
            transition with signature ``(from_state, to_state, reason)``.
    """

    def __init__(
        self,
        on_transition: Callable[[PipelineState, PipelineState, str], None] | None = None,
    ) -> None:
        """Initialise FSM in IDLE state."""
        self._state: PipelineState = PipelineState.IDLE
        self._lock = threading.Lock()
        self._history: list[dict] = []
        self._external_callback = on_transition
        self._last_transition: dict | None = None

    # ──────────────────────────────────────────
    # Public API
    # ──────────────────────────────────────────

    @property
    def current_state(self) -> PipelineState:
        """Return the current state (thread-safe read)."""
        with self._lock:
            return self._state

    def transition(self, new_state: PipelineState, reason: str = "") -> None:
        """
        Attempt a validated state transition.

        Records the transition in history, fires ``_on_enter_<to>`` and then
        notifies the external callback, both outside the lock.

        Args:
            new_state: Target state to transition to.
            reason: Human-readable reason for the transition (for logs/history).

        Raises:
            InvalidTransitionError: If the transition is not in the valid map.
        """
        with self._lock:
            from_state = self._state
            allowed = _VALID_TRANSITIONS.get(from_state, [])

            if new_state not in allowed:
                raise InvalidTransitionError(from_state, new_state, reason)

            self._state = new_state
            self._record(from_state, new_state, reason)

        logger.debug(
            "FSM: %s → %s%s",
            from_state.value,
            new_state.value,
            f" [{reason}]" if reason else "",
        )

        self._fire_on_enter(new_state)

        if self._external_callback is not None:
            try:
                self._external_callback(from_state, new_state, reason)
            except Exception as exc:  # noqa: BLE001
                logger.warning("FSM external callback raised: %s", exc)

    def transition_if(
        self,
        expected: PipelineState,
        new_state: PipelineState,
        reason: str = "",
    ) -> bool:
        """
        Transition only when the FSM is still in *expected*.

        Used by timers racing with callers (e.g. the error auto-reset racing
        an explicit acknowledgment). Returns False instead of raising when
        the state has already moved on.
        """
        with self._lock:
            if self._state is not expected:
                return False
        try:
            self.transition(new_state, reason)
        except InvalidTransitionError:
            return False
        return True

    def get_history(self) -> list[dict]:
        """
        Return a copy of the last (up to 50) transition records.

        Each record is a dict with keys ``from``, ``to``, ``reason`` and
        ``timestamp`` (Unix epoch float), oldest first.
        """
        with self._lock:
            return list(self._history)

    def can_transition(self, target: PipelineState) -> bool:
        """
        Check whether a transition to ``target`` is currently valid.

        Approximate read; use :meth:`transition` for authoritative validation.
        """
        return target in _VALID_TRANSITIONS.get(self._state, [])

    # ──────────────────────────────────────────
    # on_enter callbacks (override in subclass)
    # ──────────────────────────────────────────

    def _on_enter_error(self) -> None:
        """Called when the submission enters ERROR."""
        logger.debug("FSM enter: ERROR — awaiting acknowledgment")

    # ──────────────────────────────────────────
    # Internal helpers
    # ──────────────────────────────────────────

    def _record(self, from_state: PipelineState, to_state: PipelineState, reason: str) -> None:
        """Append a history record. Called with ``self._lock`` held."""
        record = {
            "from": from_state.value,
            "to": to_state.value,
            "reason": reason,
            "timestamp": time.time(),
        }
        self._history.append(record)
        if len(self._history) > _MAX_HISTORY:
            self._history.pop(0)
        self._last_transition = record

    def _fire_on_enter(self, state: PipelineState) -> None:
        """
        Dispatch to the on_enter callback for ``state``, if one is defined.

        Uses name-based dispatch so subclasses can override individual
        callbacks without touching this method.
        """
        method_name = f"_on_enter_{state.value.lower()}"
        method = getattr(self, method_name, None)
        if callable(method):
            try:
                method()
            except Exception as exc:  # noqa: BLE001
                logger.warning("on_enter callback %r raised: %s", method_name, exc)

    def __repr__(self) -> str:
        with self._lock:
            state_str = self._state.value
            if self._last_transition:
                last = f"{self._last_transition['from']}→{self._last_transition['to']}"
            else:
                last = "none"
        return f"PipelineFSM(state={state_str}, last={last})"
