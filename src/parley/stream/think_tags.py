"""``<think>...</think>`` extraction for providers without a thinking channel."""

from __future__ import annotations

import re
from dataclasses import dataclass

_OPEN = "<think>"
_CLOSE = "</think>"


@dataclass
class ThinkDelta:
    display: str = ""
    thinking: str = ""


def _partial_suffix(buffer: str, tag: str) -> int:
    """Length of the longest suffix of *buffer* that is a proper prefix of *tag*."""
    for size in range(min(len(tag) - 1, len(buffer)), 0, -1):
        if tag.startswith(buffer[-size:]):
            return size
    return 0


class ThinkTagParser:
    """Streaming splitter of display text and ``<think>`` content.

    A chunk ending in a possible partial tag (``<thi``) is held back until
    the next chunk disambiguates it.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._in_think = False

    @property
    def in_think(self) -> bool:
        return self._in_think

    def feed(self, chunk: str) -> ThinkDelta:
        out = ThinkDelta()
        self._buffer += chunk
        while self._buffer:
            tag = _CLOSE if self._in_think else _OPEN
            idx = self._buffer.find(tag)
            if idx >= 0:
                self._emit(out, self._buffer[:idx])
                self._buffer = self._buffer[idx + len(tag):]
                self._in_think = not self._in_think
                continue
            keep = _partial_suffix(self._buffer, tag)
            cut = len(self._buffer) - keep
            self._emit(out, self._buffer[:cut])
            self._buffer = self._buffer[cut:]
            break
        return out

    def flush(self) -> ThinkDelta:
        """Release held-back text; an unterminated block counts as thinking."""
        out = ThinkDelta()
        self._emit(out, self._buffer)
        self._buffer = ""
        return out

    def reset(self) -> None:
        self._buffer = ""
        self._in_think = False

    def _emit(self, out: ThinkDelta, text: str) -> None:
        if not text:
            return
        if self._in_think:
            out.thinking += text
        else:
            out.display += text


_BLOCK = re.compile(r"<think>(.*?)(?:</think>|$)", re.DOTALL)


def parse_think_tags(text: str) -> tuple[str, str]:
    """Non-streaming split of *text* into ``(thinking, display)``.

    An unclosed ``<think>`` makes the rest of the text thinking.
    """
    if not text or _OPEN not in text:
        return "", (text or "").strip()
    thinking = "\n".join(m.strip() for m in _BLOCK.findall(text) if m.strip())
    display = _BLOCK.sub("", text).strip()
    return thinking, display
