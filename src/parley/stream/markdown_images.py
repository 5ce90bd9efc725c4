"""Streaming extraction of inline base64 markdown images.

Some providers return generated images as
``![alt](data:image/png;base64,...)`` inside the text channel, often
split over many deltas.  The extractor buffers a possible image prefix
until the closing parenthesis arrives, so one image always becomes one
:class:`ImagePart`.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from parley.types import ContentPart, ImagePart, TextPart

_IMAGE_TYPES = ("jpeg", "jpg", "png", "gif", "webp")

IMAGE_PATTERN = re.compile(
    r"!\[([^\]]*)\]\((data:image/(?:jpeg|jpg|png|gif|webp);base64,[^)]+)\)"
)
_DATA_PREFIXES = tuple(f"data:image/{t};base64," for t in _IMAGE_TYPES)


def _could_become_image(candidate: str) -> bool:
    """True if *candidate* (starting with ``!``) may still grow into an image."""
    if candidate == "!":
        return True
    if not candidate.startswith("!["):
        return False
    close = candidate.find("]", 2)
    if close < 0:
        return "\n" not in candidate
    rest = candidate[close + 1:]
    if not rest:
        return True
    if not rest.startswith("("):
        return False
    body = rest[1:]
    if ")" in body:
        return False
    for prefix in _DATA_PREFIXES:
        if len(body) <= len(prefix):
            if prefix.startswith(body):
                return True
        elif body.startswith(prefix):
            return True
    return False


@dataclass
class ImageDelta:
    parts: list[ContentPart] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(p.value for p in self.parts if isinstance(p, TextPart))

    @property
    def images(self) -> list[ImagePart]:
        return [p for p in self.parts if isinstance(p, ImagePart)]


class MarkdownImageParser:
    """Incremental splitter of text and markdown data-URI images."""

    def __init__(self) -> None:
        self._buffer = ""

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, chunk: str) -> ImageDelta:
        out = ImageDelta()
        self._buffer += chunk
        pos = 0
        for match in IMAGE_PATTERN.finditer(self._buffer):
            if match.start() > pos:
                out.parts.append(TextPart(self._buffer[pos:match.start()]))
            out.parts.append(ImagePart(uri=match.group(2), alt=match.group(1)))
            pos = match.end()
        remaining = self._buffer[pos:]

        # hold back from the leftmost "!" that may still open an image
        hold = len(remaining)
        start = remaining.find("!")
        while start >= 0:
            if _could_become_image(remaining[start:]):
                hold = start
                break
            start = remaining.find("!", start + 1)
        if hold > 0:
            out.parts.append(TextPart(remaining[:hold]))
        self._buffer = remaining[hold:]
        return out

    def flush(self) -> ImageDelta:
        """Release a held-back tail as plain text."""
        out = ImageDelta()
        if self._buffer:
            out.parts.append(TextPart(self._buffer))
        self._buffer = ""
        return out

    def discard(self) -> None:
        """Drop a held-back incomplete image (used on truncation/error)."""
        self._buffer = ""


def parse_markdown_images(text: str) -> list[ContentPart]:
    """Non-streaming split of *text* into text and image parts."""
    parts: list[ContentPart] = []
    pos = 0
    for match in IMAGE_PATTERN.finditer(text or ""):
        if match.start() > pos:
            parts.append(TextPart(text[pos:match.start()]))
        parts.append(ImagePart(uri=match.group(2), alt=match.group(1)))
        pos = match.end()
    if text and pos < len(text):
        parts.append(TextPart(text[pos:]))
    return parts
