"""Sliding-window rate limiting of tool calls.

Each tool may declare ``RateLimit(max_calls, unit)``; calls beyond
``max_calls`` within the trailing window are refused with the time left
until the oldest call leaves the window.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Callable

from parley.errors import RateLimitExceededError
from parley.tools.base import RateLimit

logger = logging.getLogger(__name__)

TIME_UNITS: dict[str, float] = {
    "minute": 60.0,
    "hour": 3600.0,
    "day": 86400.0,
}


@dataclass
class WindowEntry:
    """Call timestamps of one tool inside its window."""

    max_calls: int
    window: float
    timestamps: list[float] = field(default_factory=list)

    def prune(self, now: float) -> int:
        before = len(self.timestamps)
        self.timestamps = [ts for ts in self.timestamps if now - ts < self.window]
        return before - len(self.timestamps)


@dataclass
class RateLimitStatus:
    current: int
    max_calls: int
    window: float
    next_reset: float  # seconds until the oldest call leaves the window

    def human_next_reset(self) -> str:
        secs = self.next_reset
        if secs <= 0:
            return "available now"
        if secs < 60:
            return f"{secs:.0f}s"
        if secs < 3600:
            return f"{secs / 60:.0f}m"
        return f"{secs / 3600:.1f}h"


class SlidingWindowRateLimiter:
    """Per-tool sliding-window limiter."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._store: dict[str, WindowEntry] = {}

    def check(self, tool_id: str, limit: RateLimit | None) -> None:
        """Record a call of *tool_id*, or raise when over the limit."""
        if limit is None or limit.max_calls <= 0:
            return
        window = TIME_UNITS.get(limit.unit)
        if window is None:
            logger.warning("Unknown rate limit unit %r for %s; not limiting", limit.unit, tool_id)
            return

        entry = self._store.get(tool_id)
        if entry is None or entry.window != window or entry.max_calls != limit.max_calls:
            entry = self._store[tool_id] = WindowEntry(limit.max_calls, window)

        now = self._clock()
        entry.prune(now)
        if len(entry.timestamps) >= entry.max_calls:
            wait = window - (now - entry.timestamps[0])
            wait_s = math.ceil(wait)
            raise RateLimitExceededError(
                f'Rate limit: tool "{tool_id}" may run at most {limit.max_calls} '
                f"times per {limit.unit}; wait {wait_s}s before retrying",
                tool_id,
                retry_after=wait,
            )
        entry.timestamps.append(now)
        logger.debug(
            "Rate limit %s: %d/%d per %s",
            tool_id, len(entry.timestamps), entry.max_calls, limit.unit,
        )

    def status(self, tool_id: str) -> RateLimitStatus | None:
        entry = self._store.get(tool_id)
        if entry is None:
            return None
        now = self._clock()
        entry.prune(now)
        if not entry.timestamps:
            return RateLimitStatus(0, entry.max_calls, entry.window, 0.0)
        return RateLimitStatus(
            len(entry.timestamps),
            entry.max_calls,
            entry.window,
            max(0.0, entry.window - (now - entry.timestamps[0])),
        )

    def all_status(self) -> dict[str, RateLimitStatus]:
        result: dict[str, RateLimitStatus] = {}
        for tool_id in list(self._store):
            status = self.status(tool_id)
            if status is not None:
                result[tool_id] = status
        return result

    def reset(self, tool_id: str) -> None:
        if self._store.pop(tool_id, None) is not None:
            logger.info("Rate limit reset for %s", tool_id)

    def clear(self) -> None:
        count = len(self._store)
        self._store.clear()
        logger.info("Cleared rate limit data for %d tools", count)

    def cleanup(self) -> int:
        """Drop expired timestamps and empty entries; returns timestamps removed."""
        now = self._clock()
        removed = 0
        for tool_id in list(self._store):
            entry = self._store[tool_id]
            removed += entry.prune(now)
            if not entry.timestamps:
                del self._store[tool_id]
        if removed:
            logger.debug("Rate limiter cleanup removed %d expired timestamps", removed)
        return removed
