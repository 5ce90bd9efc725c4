"""Incremental stream readers and delta parsers for parley."""

from parley.stream.accumulators import MarkupToolCallAccumulator, NativeToolCallAccumulator
from parley.stream.markdown_images import MarkdownImageParser
from parley.stream.reader import HttpxStreamReader, IterableReader, LineFramer
from parley.stream.stats import StreamStats, estimate_tokens
from parley.stream.think_tags import ThinkTagParser

__all__ = [
    "HttpxStreamReader",
    "IterableReader",
    "LineFramer",
    "MarkdownImageParser",
    "MarkupToolCallAccumulator",
    "NativeToolCallAccumulator",
    "StreamStats",
    "ThinkTagParser",
    "estimate_tokens",
]
