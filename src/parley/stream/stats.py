"""Token estimation and per-turn stream statistics."""

from __future__ import annotations

import re
import time
from typing import Callable

from parley.types import PLACEHOLDER_TEXT, StatsSnapshot, TextPart, ThinkingPart, Turn

_CJK = re.compile("[\\u4e00-\\u9fff]")


def estimate_tokens(text: str) -> int:
    """Rough token count: one per CJK character plus one per other word."""
    if not text:
        return 0
    cjk = len(_CJK.findall(text))
    words = _CJK.sub(" ", text).split()
    return cjk + len(words)


def merged_turn_text(turn: Turn) -> str:
    """Text the final token count is computed over.

    Thinking and visible text joined by a newline; falls back to the
    content parts when the turn-level strings are empty.
    """
    text = turn.visible_text
    combined = "\n".join(t for t in (turn.thinking, text) if t)
    if combined:
        return combined
    pieces = [
        p.value for p in turn.parts
        if isinstance(p, (TextPart, ThinkingPart)) and p.value != PLACEHOLDER_TEXT
    ]
    return "\n".join(p for p in pieces if p)


class StreamStats:
    """Clock and counter for one streamed turn.

    Times come from *clock* (``time.monotonic`` by default) so tests can
    drive it deterministically.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self.request_start: float | None = None
        self.first_token: float | None = None
        self.end: float | None = None
        self.tokens = 0

    def start(self) -> None:
        self.request_start = self._clock()
        self.first_token = None
        self.end = None
        self.tokens = 0

    def record(self, text: str) -> None:
        """Count *text* as generated output, marking the first token."""
        if not text:
            return
        if self.first_token is None:
            self.first_token = self._clock()
        self.tokens += estimate_tokens(text)

    def mark_first_token(self) -> None:
        """Mark output that carries no countable text (e.g. an image)."""
        if self.first_token is None:
            self.first_token = self._clock()

    def stop(self) -> None:
        if self.end is None:
            self.end = self._clock()

    def recalculate(self, turn: Turn) -> int:
        """Replace the running counter with an estimate over the final text."""
        self.tokens = estimate_tokens(merged_turn_text(turn))
        return self.tokens

    @property
    def ttft(self) -> float | None:
        if self.request_start is None or self.first_token is None:
            return None
        return self.first_token - self.request_start

    def snapshot(self, partial: bool = False) -> StatsSnapshot:
        ttft = self.ttft
        ttft_s = f"{ttft:.2f}" if ttft is not None else "-"
        if partial:
            return StatsSnapshot(ttft=ttft_s, tokens=self.tokens, partial=True)

        total_s = "-"
        if self.request_start is not None and self.end is not None:
            total_s = f"{self.end - self.request_start:.2f}"

        tps_s = "-"
        if self.first_token is not None and self.end is not None:
            gen = self.end - self.first_token
            if gen > 0 and self.tokens > 0:
                tps_s = f"{self.tokens / gen:.1f}"

        return StatsSnapshot(ttft=ttft_s, total_time=total_s, tokens=self.tokens, tps=tps_s)
