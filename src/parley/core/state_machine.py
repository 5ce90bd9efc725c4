"""Request lifecycle state machine.

::

    idle -> sending -> streaming -> tool_calling -> continuation -+
                 |          |            |               |        |
                 +----------+------------+---------------+--> completed | error | cancelled -> idle

``completed``, ``error`` and ``cancelled`` are transient: they fall back
to ``idle`` after a short grace delay so the UI can settle.  Illegal
transitions are rejected and logged, never raised.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from parley.config import RequestSpec
from parley.core.cancellation import CancelToken
from parley.core.sinks import RenderSink
from parley.events.bus import EventBus
from parley.types import EventType, RequestState

_logger = logging.getLogger(__name__)

S = RequestState

TRANSITIONS: dict[RequestState, frozenset[RequestState]] = {
    S.IDLE: frozenset({S.SENDING}),
    S.SENDING: frozenset({S.STREAMING, S.ERROR, S.CANCELLED, S.COMPLETED}),
    S.STREAMING: frozenset({S.TOOL_CALLING, S.COMPLETED, S.ERROR, S.CANCELLED}),
    S.TOOL_CALLING: frozenset({S.CONTINUATION, S.COMPLETED, S.ERROR, S.CANCELLED}),
    S.CONTINUATION: frozenset({S.STREAMING, S.TOOL_CALLING, S.COMPLETED, S.ERROR, S.CANCELLED}),
    S.COMPLETED: frozenset({S.IDLE}),
    S.ERROR: frozenset({S.IDLE}),
    S.CANCELLED: frozenset({S.IDLE}),
}

_MAX_HISTORY = 20


@dataclass
class TransitionRecord:
    from_state: RequestState
    to_state: RequestState
    timestamp: float = field(default_factory=time.time)
    metadata: dict[str, Any] = field(default_factory=dict)


class RequestStateMachine:
    """Authoritative lifecycle controller for one conversation's requests.

    Metadata accepted by :meth:`transition`:

    - ``token`` / ``session_id`` when entering ``sending``
    - ``sink`` when entering ``streaming``
    """

    def __init__(self, spec: RequestSpec | None = None, event_bus: EventBus | None = None) -> None:
        self._spec = spec or RequestSpec()
        self._event_bus = event_bus
        self._state = S.IDLE
        self._history: list[TransitionRecord] = []
        self.token: CancelToken | None = None
        self.session_id: str | None = None
        self.sink: RenderSink | None = None
        self._lock_timer: asyncio.TimerHandle | None = None
        self._revert_timer: asyncio.TimerHandle | None = None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def state(self) -> RequestState:
        return self._state

    @property
    def history(self) -> list[TransitionRecord]:
        return list(self._history)

    def is_busy(self) -> bool:
        return self._state not in (S.IDLE, S.COMPLETED, S.ERROR, S.CANCELLED)

    def can_transition(self, to: RequestState) -> bool:
        return to in TRANSITIONS[self._state]

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def transition(self, to: RequestState | str, **metadata: Any) -> bool:
        """Move to *to*; returns False (state unchanged) when not allowed."""
        to = RequestState(to)
        if not self.can_transition(to):
            _logger.warning(
                "Rejected illegal request transition %s -> %s",
                self._state.value, to.value,
            )
            return False
        self._apply(to, metadata)
        return True

    def begin(self, token: CancelToken | None = None, session_id: str | None = None) -> bool:
        """Enter ``sending`` for a new request.

        A machine still settling in a transient state goes to ``idle``
        first.  Returns False while another request is in flight.
        """
        if self.is_busy():
            return False
        if self._state.is_transient:
            self.transition(S.IDLE, settled=True)
        return self.transition(S.SENDING, token=token, session_id=session_id)

    def force_reset(self, reason: str = "manual") -> None:
        """Return to ``idle`` regardless of the current state."""
        _logger.warning("Force reset of request state from %s (%s)", self._state.value, reason)
        if self.token is not None and not self.token.cancelled:
            self.token.cancel(f"force_reset:{reason}")
        self._clear_markers()
        self._apply(S.IDLE, {"forced": True, "reason": reason})
        if self._event_bus:
            self._event_bus.publish(EventType.REQUEST_FORCE_RESET, {"reason": reason})

    def cancel(self, reason: str = "user") -> bool:
        """Abort the in-flight request; False when there is nothing to cancel."""
        if self._state is S.IDLE:
            return False
        if self.token is not None:
            self.token.cancel(reason)
        if not self._state.is_transient:
            self.transition(S.CANCELLED, reason=reason)
        return True

    def close(self) -> None:
        """Cancel pending timers (context shutdown)."""
        self._cancel_lock_timer()
        self._cancel_revert_timer()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _apply(self, to: RequestState, metadata: dict[str, Any]) -> None:
        from_state = self._state
        self._state = to
        record_meta = {k: v for k, v in metadata.items() if k not in ("token", "sink")}
        self._history.append(TransitionRecord(from_state, to, metadata=record_meta))
        if len(self._history) > _MAX_HISTORY:
            self._history = self._history[-_MAX_HISTORY:]
        _logger.debug("Request state %s -> %s", from_state.value, to.value)

        self._cancel_revert_timer()
        if to is S.SENDING:
            self.token = metadata.get("token") or CancelToken()
            self.session_id = metadata.get("session_id")
            self._arm_lock_timer()
        elif to is S.STREAMING:
            self._cancel_lock_timer()
            if metadata.get("sink") is not None:
                self.sink = metadata["sink"]
        elif to is S.IDLE:
            self.token = None
            self.sink = None
            self.session_id = None
            self._cancel_lock_timer()
        elif to.is_transient:
            self._cancel_lock_timer()
            if to is S.CANCELLED:
                self._clear_markers()
            self._arm_revert_timer(to)

        if self._event_bus:
            self._event_bus.publish(EventType.REQUEST_STATE_CHANGED, {
                "from": from_state.value, "to": to.value, "metadata": record_meta,
            })

    def _clear_markers(self) -> None:
        if self.sink is None:
            return
        try:
            self.sink.clear_markers()
        except Exception:
            _logger.exception("Render sink failed to clear markers")

    @staticmethod
    def _loop() -> asyncio.AbstractEventLoop | None:
        try:
            return asyncio.get_running_loop()
        except RuntimeError:
            return None

    def _arm_lock_timer(self) -> None:
        self._cancel_lock_timer()
        loop = self._loop()
        if loop is None:
            _logger.debug("No running loop; send lock timeout not armed")
            return
        self._lock_timer = loop.call_later(
            self._spec.lock_timeout, self.force_reset, "timeout",
        )

    def _cancel_lock_timer(self) -> None:
        if self._lock_timer is not None:
            self._lock_timer.cancel()
            self._lock_timer = None

    def _arm_revert_timer(self, state: RequestState) -> None:
        loop = self._loop()
        if loop is None:
            return
        self._revert_timer = loop.call_later(self._spec.grace_delay, self._revert, state)

    def _cancel_revert_timer(self) -> None:
        if self._revert_timer is not None:
            self._revert_timer.cancel()
            self._revert_timer = None

    def _revert(self, expected: RequestState) -> None:
        self._revert_timer = None
        if self._state is expected:
            self.transition(S.IDLE, auto=True)
