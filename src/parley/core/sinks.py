"""Interfaces of the external collaborators the engine talks to."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Protocol, Sequence

from parley.core.cancellation import CancelToken
from parley.stream.reader import ByteReader
from parley.types import ContentPart, ProviderFormat, ToolCall, ToolResultEnvelope, Turn

_logger = logging.getLogger(__name__)


class RenderSink(Protocol):
    """Presentation layer; the engine only ever hands it data."""

    def on_incremental(self, text: str, thinking: str) -> None: ...

    def on_final(self, parts: list[ContentPart]) -> None: ...

    def clear_markers(self) -> None: ...


class MessageSink(Protocol):
    """Message store receiving finalized turns."""

    def save_turn(self, turn: Turn, session_id: str | None, *, continuation: bool) -> int: ...


# Builds the provider-specific messages carrying tool results.
MessageBuilder = Callable[[Sequence[ToolCall], Sequence[ToolResultEnvelope]], list[Any]]

# Re-issues a request with extra messages and returns the new reader.
ResendFn = Callable[[list[Any], ProviderFormat, CancelToken], Awaitable[ByteReader]]


class NullRenderSink:
    """Render sink that drops everything."""

    def on_incremental(self, text: str, thinking: str) -> None:
        pass

    def on_final(self, parts: list[ContentPart]) -> None:
        pass

    def clear_markers(self) -> None:
        pass


class RecordingRenderSink:
    """Render sink that keeps every call; handy for replays and tests."""

    def __init__(self) -> None:
        self.incremental: list[tuple[str, str]] = []
        self.finals: list[list[ContentPart]] = []
        self.markers_cleared = 0

    def on_incremental(self, text: str, thinking: str) -> None:
        self.incremental.append((text, thinking))

    def on_final(self, parts: list[ContentPart]) -> None:
        self.finals.append(list(parts))

    def clear_markers(self) -> None:
        self.markers_cleared += 1


class InMemoryMessageSink:
    """List-backed message store.

    Continuation saves update the last stored turn in place.
    """

    def __init__(self) -> None:
        self.turns: list[Turn] = []
        self.sessions: list[str | None] = []

    def save_turn(self, turn: Turn, session_id: str | None, *, continuation: bool) -> int:
        if continuation and self.turns:
            for i in range(len(self.turns) - 1, -1, -1):
                if self.turns[i] is turn:
                    return i
            self.turns[-1] = turn
            return len(self.turns) - 1
        self.turns.append(turn)
        self.sessions.append(session_id)
        _logger.debug("Stored turn #%d for session %s", len(self.turns) - 1, session_id)
        return len(self.turns) - 1
