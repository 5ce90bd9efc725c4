"""Parser lookup by provider format."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from parley.core.sinks import RenderSink
from parley.stream.base import StreamParser
from parley.stream.claude import ClaudeStreamParser
from parley.stream.gemini import GeminiStreamParser
from parley.stream.openai import OpenAIStreamParser
from parley.types import ProviderFormat

if TYPE_CHECKING:
    from parley.core.context import EngineContext

PARSERS: dict[ProviderFormat, type[StreamParser]] = {
    ProviderFormat.OPENAI: OpenAIStreamParser,
    ProviderFormat.CLAUDE: ClaudeStreamParser,
    ProviderFormat.GEMINI: GeminiStreamParser,
}


def create_parser(
    fmt: ProviderFormat | str,
    context: EngineContext,
    sink: RenderSink | None = None,
    **kwargs: Any,
) -> StreamParser:
    """Instantiate the parser for *fmt* (``markup_tools`` / ``stats`` pass through)."""
    return PARSERS[ProviderFormat.parse(fmt)](context, sink, **kwargs)
