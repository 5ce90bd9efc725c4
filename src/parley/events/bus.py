"""Async pub/sub EventBus scoped to one engine context."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable

from parley.types import Event, EventType

_logger = logging.getLogger(__name__)

# Sentinel used for wildcard subscriptions (receive all events)
_WILDCARD = "*"

# Type alias for handlers (sync or async callables taking an Event)
Handler = Callable[[Event], Any]


class EventBus:
    """Lightweight pub/sub event bus.

    Features:
    - Subscribe to a specific EventType or wildcard ``"*"`` for all events.
    - Handlers can be sync or async.
    - ``emit()`` awaits all matching handlers; ``publish()`` is the
      synchronous variant for callers outside a coroutine (async handlers
      are scheduled on the running loop).
    - Handler exceptions are logged and never propagate to the emitter.
    """

    def __init__(self, max_history: int = 200) -> None:
        self._handlers: dict[str, list[Handler]] = {}
        self._history: list[Event] = []
        self._max_history = max_history
        self._pending: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def subscribe(self, event_type: EventType | str, handler: Handler) -> None:
        """Register *handler* for *event_type* (or ``"*"`` for all)."""
        key = self._key(event_type)
        self._handlers.setdefault(key, []).append(handler)

    def unsubscribe(self, event_type: EventType | str, handler: Handler) -> None:
        """Remove *handler* from *event_type*."""
        handlers = self._handlers.get(self._key(event_type), [])
        try:
            handlers.remove(handler)
        except ValueError:
            pass

    async def emit(self, event_type: EventType, data: dict[str, Any] | None = None) -> Event:
        """Emit an event and wait for every matching handler."""
        event = self._record(event_type, data)
        handlers = self._matching(event)
        if handlers:
            await asyncio.gather(
                *(self._call_handler(h, event) for h in handlers),
                return_exceptions=True,
            )
        return event

    def publish(self, event_type: EventType, data: dict[str, Any] | None = None) -> Event:
        """Emit without awaiting.

        Sync handlers run immediately; awaitable results are scheduled on
        the running loop, or dropped with a warning when there is none.
        """
        event = self._record(event_type, data)
        for handler in self._matching(event):
            try:
                result = handler(event)
            except Exception:
                _logger.exception(
                    "EventBus handler %s raised for event %s",
                    getattr(handler, "__name__", handler),
                    event.type,
                )
                continue
            if inspect.isawaitable(result):
                self._schedule(result, handler, event)
        return event

    @property
    def history(self) -> list[Event]:
        """Return a copy of the event history."""
        return list(self._history)

    def clear(self) -> None:
        """Remove all handlers and history."""
        self._handlers.clear()
        self._history.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _record(self, event_type: EventType, data: dict[str, Any] | None) -> Event:
        event = Event(type=event_type, data=dict(data or {}))
        self._history.append(event)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]
        return event

    def _matching(self, event: Event) -> list[Handler]:
        handlers = list(self._handlers.get(self._key(event.type), []))
        handlers.extend(self._handlers.get(_WILDCARD, []))
        return handlers

    def _schedule(self, awaitable: Any, handler: Handler, event: Event) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            _logger.warning(
                "No running loop for async handler %s (%s); skipped",
                getattr(handler, "__name__", handler),
                event.type,
            )
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return

        async def _runner() -> None:
            try:
                await awaitable
            except Exception:
                _logger.exception(
                    "EventBus handler %s raised for event %s",
                    getattr(handler, "__name__", handler),
                    event.type,
                )

        task = loop.create_task(_runner())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    @staticmethod
    def _key(event_type: EventType | str) -> str:
        if isinstance(event_type, EventType):
            return event_type.value
        return str(event_type)

    @staticmethod
    async def _call_handler(handler: Handler, event: Event) -> None:
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            _logger.exception(
                "EventBus handler %s raised for event %s",
                getattr(handler, "__name__", handler),
                event.type,
            )
