"""Incremental byte readers and line framing."""

from __future__ import annotations

import codecs
import json
import logging
from typing import Any, AsyncIterator, Iterable, Protocol, runtime_checkable

import httpx

_logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


@runtime_checkable
class ByteReader(Protocol):
    """An already-opened incremental byte stream.

    ``read()`` returns ``None`` once the stream is exhausted.
    """

    async def read(self) -> bytes | None: ...

    async def cancel(self) -> None: ...


class IterableReader:
    """In-memory reader over pre-recorded chunks (bytes or str)."""

    def __init__(self, chunks: Iterable[bytes | str]) -> None:
        self._chunks = iter(chunks)
        self.cancelled = False
        self.reads = 0

    async def read(self) -> bytes | None:
        if self.cancelled:
            return None
        try:
            chunk = next(self._chunks)
        except StopIteration:
            return None
        self.reads += 1
        return chunk.encode("utf-8") if isinstance(chunk, str) else chunk

    async def cancel(self) -> None:
        self.cancelled = True


class HttpxStreamReader:
    """Adapter over an opened ``httpx`` streaming response.

    Usage::

        async with client.stream("POST", url, json=payload) as resp:
            turn = await parser.run(HttpxStreamReader(resp))
    """

    def __init__(self, response: httpx.Response) -> None:
        self._response = response
        self._iter: AsyncIterator[bytes] | None = None
        self.cancelled = False

    async def read(self) -> bytes | None:
        if self.cancelled:
            return None
        if self._iter is None:
            self._iter = self._response.aiter_bytes()
        try:
            return await self._iter.__anext__()
        except StopAsyncIteration:
            return None
        except httpx.StreamClosed:
            return None

    async def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        await self._response.aclose()


class LineFramer:
    """Turn decoded byte chunks into complete payload lines.

    A chunk may end mid-line (or mid UTF-8 sequence); the remainder is kept
    for the next chunk.  ``data:`` prefixes are stripped, ``:`` comment
    lines and blank lines skipped.  With ``allow_bare`` set, lines without
    a ``data:`` prefix are passed through (bare JSON streams); otherwise
    non-data lines such as ``event:`` are ignored.
    """

    def __init__(self, allow_bare: bool = False) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._allow_bare = allow_bare
        self.done = False

    def feed(self, data: bytes) -> list[str]:
        self._buffer += self._decoder.decode(data)
        *complete, self._buffer = self._buffer.split("\n")
        return self._payloads(complete)

    def flush(self) -> list[str]:
        self._buffer += self._decoder.decode(b"", final=True)
        tail, self._buffer = self._buffer, ""
        return self._payloads([tail])

    def _payloads(self, lines: list[str]) -> list[str]:
        out: list[str] = []
        for raw in lines:
            if self.done:
                break
            line = raw.strip()
            if not line or line.startswith(":"):
                continue
            if line.startswith("data:"):
                payload = line[5:].strip()
            elif self._allow_bare:
                payload = line
            else:
                continue
            if payload == DONE_SENTINEL:
                self.done = True
                break
            if payload:
                out.append(payload)
        return out


def chunk_text(text: str, size: int) -> list[str]:
    """Split *text* into fixed-size pieces (used to simulate arbitrary reads)."""
    return [text[i:i + size] for i in range(0, len(text), size)] or [""]


def sse_lines(events: Iterable[Any]) -> str:
    """Render events (dicts are JSON-encoded) as an SSE body."""
    parts = []
    for event in events:
        payload = event if isinstance(event, str) else json.dumps(event)
        parts.append(f"data: {payload}\n\n")
    return "".join(parts)
