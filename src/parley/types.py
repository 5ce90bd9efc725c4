"""Shared data types for parley."""

from __future__ import annotations

import enum
import json
import time
from dataclasses import dataclass, field
from typing import Any, Union

# Text stored on a turn that produced nothing but tool calls.
PLACEHOLDER_TEXT = "(calling tools)"

# Separator used when cumulative thinking / signatures are concatenated.
BLOCK_SEPARATOR = "\n\n---\n\n"


class ProviderFormat(enum.Enum):
    """Wire dialects understood by the stream parsers."""

    OPENAI = "openai"
    CLAUDE = "claude"
    GEMINI = "gemini"

    @classmethod
    def parse(cls, value: ProviderFormat | str) -> ProviderFormat:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(f"Unknown provider format: {value!r}") from None


# ---------------------------------------------------------------------------
# Content parts
# ---------------------------------------------------------------------------

@dataclass
class TextPart:
    value: str
    kind: str = field(default="text", init=False)


@dataclass
class ThinkingPart:
    value: str
    kind: str = field(default="thinking", init=False)


@dataclass
class ImagePart:
    uri: str
    alt: str = ""
    complete: bool = True
    kind: str = field(default="image", init=False)


ContentPart = Union[TextPart, ThinkingPart, ImagePart]


def merge_parts(parts: list[ContentPart]) -> list[ContentPart]:
    """Coalesce adjacent text/thinking parts of the same kind.

    Image parts are never merged.  Empty text parts are dropped.
    """
    merged: list[ContentPart] = []
    for part in parts:
        if isinstance(part, ImagePart):
            merged.append(part)
            continue
        if not part.value:
            continue
        last = merged[-1] if merged else None
        if last is not None and last.kind == part.kind:
            last.value += part.value
        else:
            merged.append(type(part)(part.value))
    return merged


def parts_to_wire(parts: list[ContentPart]) -> list[dict[str, Any]]:
    """Dict view of content parts, as handed to message stores."""
    out: list[dict[str, Any]] = []
    for part in parts:
        if isinstance(part, TextPart):
            out.append({"type": "text", "text": part.value})
        elif isinstance(part, ThinkingPart):
            out.append({"type": "thinking", "text": part.value})
        else:
            out.append({
                "type": "image_url",
                "url": part.uri,
                "alt": part.alt,
                "complete": part.complete,
            })
    return out


# ---------------------------------------------------------------------------
# Tool types
# ---------------------------------------------------------------------------

class ToolCallStatus(enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ToolCall:
    """A fully accumulated tool call."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    status: ToolCallStatus = ToolCallStatus.PENDING
    result: Any = None
    error: str = ""
    signature: str | None = None  # Gemini per-call thought signature

    def to_openai(self) -> dict[str, Any]:
        """OpenAI ``tool_calls`` entry, keeping the signature as a private field."""
        entry: dict[str, Any] = {
            "id": self.id,
            "type": "function",
            "function": {
                "name": self.name,
                "arguments": json.dumps(self.arguments, ensure_ascii=False),
            },
        }
        if self.signature:
            entry["_thoughtSignature"] = self.signature
        return entry


@dataclass
class ToolResultEnvelope:
    """Provider-agnostic result of one tool call."""

    tool_call_id: str
    original_id: str
    tool_name: str
    content: str
    is_error: bool = False

    def to_openai(self) -> dict[str, Any]:
        return {
            "role": "tool",
            "tool_call_id": self.tool_call_id,
            "content": self.content,
        }


# ---------------------------------------------------------------------------
# Turn
# ---------------------------------------------------------------------------

@dataclass
class StatsSnapshot:
    """Timing/throughput figures of a turn, formatted for display."""

    ttft: str = "-"
    total_time: str = "-"
    tokens: int = 0
    tps: str = "-"
    partial: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "ttft": self.ttft,
            "totalTime": self.total_time,
            "tokens": self.tokens,
            "tps": self.tps,
        }
        if self.partial:
            data["isPartial"] = True
        return data


@dataclass
class Turn:
    """One assistant response cycle, possibly spanning continuations."""

    format: ProviderFormat
    text: str = ""
    thinking: str = ""
    parts: list[ContentPart] = field(default_factory=list)
    tool_calls: list[ToolCall] = field(default_factory=list)
    stats: StatsSnapshot | None = None
    thought_signature: str | None = None
    thinking_signature: str | None = None
    encrypted_content: str | None = None
    grounding: dict[str, Any] | None = None
    finish_reason: str = ""
    is_error: bool = False
    error_data: dict[str, Any] | None = None
    truncated: bool = False
    finalized: bool = False
    continuation_count: int = 0
    storage_index: int | None = None

    # -- incremental building ------------------------------------------

    def append_text(self, value: str) -> None:
        if not value:
            return
        self.text += value
        last = self.parts[-1] if self.parts else None
        if isinstance(last, TextPart):
            last.value += value
        else:
            self.parts.append(TextPart(value))

    def append_thinking(self, value: str) -> None:
        if not value:
            return
        self.thinking += value
        last = self.parts[-1] if self.parts else None
        if isinstance(last, ThinkingPart):
            last.value += value
        else:
            self.parts.append(ThinkingPart(value))

    def add_image(self, image: ImagePart) -> None:
        self.parts.append(image)

    @property
    def visible_text(self) -> str:
        return "" if self.text == PLACEHOLDER_TEXT else self.text

    # -- continuation merge ----------------------------------------------

    def merge_continuation(self, other: Turn) -> None:
        """Fold a continuation turn into this one.

        Gemini thought signatures and OpenAI encrypted content must be
        fresh each round (latest wins); Claude thinking signatures are
        cumulative and appended.
        """
        prev_text = self.visible_text
        prev_thinking = self.thinking
        self.text = "\n\n".join(t for t in (prev_text, other.text) if t)
        self.thinking = BLOCK_SEPARATOR.join(
            t for t in (self.thinking, other.thinking) if t
        )

        kept = [
            p for p in self.parts
            if not (isinstance(p, TextPart) and p.value == PLACEHOLDER_TEXT)
        ]
        incoming = list(other.parts)
        if kept and incoming and isinstance(kept[-1], TextPart) \
                and isinstance(incoming[0], TextPart):
            kept.append(TextPart("\n\n"))
        # the parts carry the same separator as self.thinking
        if prev_thinking:
            for i, part in enumerate(incoming):
                if isinstance(part, ThinkingPart):
                    incoming[i] = ThinkingPart(BLOCK_SEPARATOR + part.value)
                    break
        self.parts = merge_parts(kept + incoming)

        if other.thought_signature:
            self.thought_signature = other.thought_signature
        if other.encrypted_content:
            self.encrypted_content = other.encrypted_content
        if other.thinking_signature:
            if self.thinking_signature:
                self.thinking_signature = (
                    self.thinking_signature + BLOCK_SEPARATOR + other.thinking_signature
                )
            else:
                self.thinking_signature = other.thinking_signature
        if other.tool_calls:
            self.tool_calls = list(other.tool_calls)
        if other.grounding:
            self.grounding = other.grounding
        if other.finish_reason:
            self.finish_reason = other.finish_reason
        if other.stats is not None:
            self.stats = other.stats
        self.is_error = self.is_error or other.is_error
        if other.error_data:
            self.error_data = other.error_data
        self.truncated = self.truncated or other.truncated
        self.continuation_count += 1


# ---------------------------------------------------------------------------
# Request lifecycle
# ---------------------------------------------------------------------------

class RequestState(enum.Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    TOOL_CALLING = "tool_calling"
    CONTINUATION = "continuation"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_transient(self) -> bool:
        return self in (RequestState.COMPLETED, RequestState.ERROR, RequestState.CANCELLED)


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

class EventType(enum.Enum):
    """Event types published on a context's EventBus."""

    # Request lifecycle
    REQUEST_STATE_CHANGED = "request.state_changed"
    REQUEST_FORCE_RESET = "request.force_reset"

    # Streaming
    STREAM_STARTED = "stream.started"
    STREAM_FINALIZED = "stream.finalized"
    STREAM_ERROR = "stream.error"
    STREAM_TRUNCATED = "stream.truncated"

    # Tool calling
    TOOL_CALLS_DETECTED = "tool.calls_detected"
    TOOL_RESULTS_SENT = "tool.results_sent"
    TOOL_EXECUTE_START = "tool.execute.start"
    TOOL_EXECUTE_SUCCESS = "tool.execute.success"
    TOOL_EXECUTE_ERROR = "tool.execute.error"
    TOOL_HISTORY_ADDED = "tool.history.added"
    TOOL_PERMISSIONS_UPDATED = "tool.permissions.updated"
    TOOL_RATE_LIMITED = "tool.rate_limited"


@dataclass
class Event:
    """Event published via the EventBus."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
