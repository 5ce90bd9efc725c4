"""Bounded record of tool executions."""

from __future__ import annotations

import itertools
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from parley.events.bus import EventBus
from parley.types import EventType

_logger = logging.getLogger(__name__)


@dataclass
class HistoryEntry:
    id: str
    tool_id: str
    tool_name: str
    arguments: dict[str, Any]
    success: bool
    duration_ms: float
    result: Any = None
    error: str = ""
    session_id: str | None = None
    timestamp: float = field(default_factory=time.time)

    @property
    def iso_time(self) -> str:
        return datetime.fromtimestamp(self.timestamp, tz=timezone.utc).isoformat()


@dataclass
class ToolStats:
    total: int = 0
    success: int = 0
    failed: int = 0
    avg_duration_ms: float = 0.0
    by_tool: dict[str, dict[str, Any]] = field(default_factory=dict)
    recent_errors: list[dict[str, Any]] = field(default_factory=list)


class ToolHistory:
    """Newest-first execution history capped at ``max_size`` entries."""

    def __init__(
        self,
        max_size: int = 500,
        enabled: bool = True,
        event_bus: EventBus | None = None,
    ) -> None:
        self.max_size = max_size
        self.enabled = enabled
        self._entries: list[HistoryEntry] = []
        self._event_bus = event_bus
        self._ids = itertools.count(1)

    def record(
        self,
        tool_id: str,
        tool_name: str,
        arguments: dict[str, Any],
        *,
        success: bool,
        duration_ms: float,
        result: Any = None,
        error: str = "",
        session_id: str | None = None,
    ) -> HistoryEntry | None:
        if not self.enabled:
            return None
        entry = HistoryEntry(
            id=f"hist_{int(time.time() * 1000)}_{next(self._ids)}",
            tool_id=tool_id,
            tool_name=tool_name,
            arguments=dict(arguments),
            success=success,
            duration_ms=duration_ms,
            result=result,
            error=error,
            session_id=session_id,
        )
        self._entries.insert(0, entry)
        del self._entries[self.max_size:]
        _logger.debug(
            "Recorded %s call (success=%s, %.0fms)", tool_name, success, duration_ms,
        )
        if self._event_bus:
            self._event_bus.publish(EventType.TOOL_HISTORY_ADDED, {"entry": entry})
        return entry

    def query(
        self,
        *,
        tool_name: str | None = None,
        success: bool | None = None,
        session_id: str | None = None,
        since: float | None = None,
        limit: int | None = None,
    ) -> list[HistoryEntry]:
        entries = self._entries
        if tool_name is not None:
            entries = [e for e in entries if e.tool_name == tool_name]
        if success is not None:
            entries = [e for e in entries if e.success == success]
        if session_id is not None:
            entries = [e for e in entries if e.session_id == session_id]
        if since is not None:
            entries = [e for e in entries if e.timestamp >= since]
        entries = list(entries)
        if limit:
            entries = entries[:limit]
        return entries

    def stats(self, **filters: Any) -> ToolStats:
        entries = self.query(**filters)
        stats = ToolStats(total=len(entries))
        total_duration = 0.0
        for e in entries:
            per_tool = stats.by_tool.setdefault(
                e.tool_name,
                {"total": 0, "success": 0, "failed": 0, "total_duration_ms": 0.0},
            )
            per_tool["total"] += 1
            per_tool["total_duration_ms"] += e.duration_ms
            total_duration += e.duration_ms
            if e.success:
                stats.success += 1
                per_tool["success"] += 1
            else:
                stats.failed += 1
                per_tool["failed"] += 1
                if len(stats.recent_errors) < 10:
                    stats.recent_errors.append({
                        "tool_name": e.tool_name,
                        "error": e.error,
                        "timestamp": e.timestamp,
                    })
        for per_tool in stats.by_tool.values():
            per_tool["avg_duration_ms"] = per_tool["total_duration_ms"] / per_tool["total"]
        if entries:
            stats.avg_duration_ms = total_duration / len(entries)
        return stats

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
