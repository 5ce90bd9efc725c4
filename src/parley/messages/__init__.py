"""Provider message envelopes for tool round trips."""

from parley.messages.builders import (
    ClaudeMessage,
    GeminiContent,
    OpenAIMessage,
    builder_for,
    enrich_tool_result,
)

__all__ = [
    "ClaudeMessage",
    "GeminiContent",
    "OpenAIMessage",
    "builder_for",
    "enrich_tool_result",
]
