"""Shared fixtures for the parley test suite."""

from typing import Any, Iterable

import pytest

from parley.config import EngineConfig
from parley.core.context import EngineContext
from parley.core.sinks import RecordingRenderSink
from parley.events.bus import EventBus
from parley.stream.reader import IterableReader, chunk_text, sse_lines


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def config():
    return EngineConfig()


@pytest.fixture
def context(config):
    ctx = EngineContext(config)
    yield ctx
    ctx.close()


@pytest.fixture
def sink():
    return RecordingRenderSink()


@pytest.fixture
def make_reader():
    """Build an in-memory SSE reader from event dicts.

    ``chunk_size`` splits the body into reads of that many characters;
    ``done`` appends the ``[DONE]`` sentinel.
    """

    def _make(events: Iterable[Any], *, chunk_size: int = 0, done: bool = False) -> IterableReader:
        body = sse_lines(events)
        if done:
            body += "data: [DONE]\n\n"
        return IterableReader(chunk_text(body, chunk_size) if chunk_size else [body])

    return _make
