"""Cancellation tokens passed by value into stream reads and tool calls."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

_logger = logging.getLogger(__name__)


class CancelledByToken(Exception):
    """Raised by :meth:`CancelToken.raise_if_cancelled`."""

    def __init__(self, reason: str = "") -> None:
        super().__init__(reason or "cancelled")
        self.reason = reason


class CancelToken:
    """Cooperative cancellation handle.

    ``cancel()`` is idempotent: cancelling an already-cancelled token is a
    no-op and returns False.  Callbacks run once, at the first cancel.
    Child tokens are cancelled with their parent but not the other way round.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._reason = ""
        self._callbacks: list[Callable[[str], None]] = []
        self._event: asyncio.Event | None = None
        self._detach_parent: Callable[[], None] | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> bool:
        if self._cancelled:
            return False
        self._cancelled = True
        self._reason = reason
        if self._event is not None:
            self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            try:
                cb(reason)
            except Exception:
                _logger.exception("Cancellation callback %r failed", cb)
        return True

    def add_callback(self, callback: Callable[[str], None]) -> Callable[[], None]:
        """Run *callback* on cancel (immediately if already cancelled).

        Returns a function that detaches the callback.
        """
        if self._cancelled:
            callback(self._reason)
            return lambda: None
        self._callbacks.append(callback)

        def _remove() -> None:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

        return _remove

    def child(self) -> CancelToken:
        token = CancelToken()
        token._detach_parent = self.add_callback(token.cancel)
        token.add_callback(lambda _reason: token.detach())
        return token

    def detach(self) -> None:
        """Stop following the parent token (no-op for root tokens)."""
        if self._detach_parent is not None:
            detach, self._detach_parent = self._detach_parent, None
            detach()

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise CancelledByToken(self._reason)

    async def wait(self) -> str:
        """Suspend until cancelled; returns the reason."""
        if self._event is None:
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        await self._event.wait()
        return self._reason

    def __repr__(self) -> str:
        state = f"cancelled={self._reason!r}" if self._cancelled else "active"
        return f"<CancelToken {state}>"
