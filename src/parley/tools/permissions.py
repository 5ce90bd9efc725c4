"""Whitelist / blacklist control over which tools may run."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from parley.config import PermissionSpec
from parley.errors import PermissionSystemError
from parley.events.bus import EventBus
from parley.types import EventType

_logger = logging.getLogger(__name__)

WHITELIST = "whitelist"
BLACKLIST = "blacklist"


@dataclass
class PermissionDecision:
    allowed: bool
    reason: str
    message: str = ""


class PermissionManager:
    """Tool permission lists.

    Disabled by default (everything allowed).  In whitelist mode only
    listed tools run; in blacklist mode listed tools are refused.  Entries
    match either the tool id or its display name.
    """

    def __init__(self, spec: PermissionSpec | None = None, event_bus: EventBus | None = None) -> None:
        spec = spec or PermissionSpec()
        self.enabled = spec.enabled
        self._mode = spec.mode
        self._whitelist: list[str] = list(spec.whitelist)
        self._blacklist: list[str] = list(spec.blacklist)
        self._event_bus = event_bus

    @property
    def mode(self) -> str:
        return self._mode

    @property
    def whitelist(self) -> list[str]:
        return list(self._whitelist)

    @property
    def blacklist(self) -> list[str]:
        return list(self._blacklist)

    def check(self, tool_id: str, tool_name: str = "") -> PermissionDecision:
        if not self.enabled:
            return PermissionDecision(True, "permissions_disabled")
        tool_name = tool_name or tool_id
        if not isinstance(self._whitelist, list) or not isinstance(self._blacklist, list):
            raise PermissionSystemError("permission lists are corrupted", tool_id)

        if self._mode == WHITELIST:
            allowed = tool_id in self._whitelist or tool_name in self._whitelist
            return PermissionDecision(
                allowed,
                "whitelist_match" if allowed else "whitelist_reject",
                "" if allowed else f'Tool "{tool_name}" is not in the whitelist',
            )
        if self._mode == BLACKLIST:
            blocked = tool_id in self._blacklist or tool_name in self._blacklist
            return PermissionDecision(
                not blocked,
                "blacklist_reject" if blocked else "blacklist_pass",
                f'Tool "{tool_name}" is blacklisted' if blocked else "",
            )
        return PermissionDecision(True, "unknown_mode")

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def set_mode(self, mode: str) -> None:
        if mode not in (WHITELIST, BLACKLIST):
            raise ValueError(f"Unknown permission mode: {mode!r}")
        self._mode = mode
        self._changed("mode", mode)

    def set_enabled(self, enabled: bool) -> None:
        self.enabled = bool(enabled)
        self._changed("enabled", str(self.enabled))

    def add_to_whitelist(self, tool: str) -> None:
        if tool not in self._whitelist:
            self._whitelist.append(tool)
            self._changed("whitelist_add", tool)

    def remove_from_whitelist(self, tool: str) -> None:
        if tool in self._whitelist:
            self._whitelist.remove(tool)
            self._changed("whitelist_remove", tool)

    def add_to_blacklist(self, tool: str) -> None:
        if tool not in self._blacklist:
            self._blacklist.append(tool)
            self._changed("blacklist_add", tool)

    def remove_from_blacklist(self, tool: str) -> None:
        if tool in self._blacklist:
            self._blacklist.remove(tool)
            self._changed("blacklist_remove", tool)

    def reset(self) -> None:
        defaults = PermissionSpec()
        self.enabled = defaults.enabled
        self._mode = defaults.mode
        self._whitelist = []
        self._blacklist = []
        self._changed("reset", "")

    def _changed(self, action: str, tool: str) -> None:
        _logger.info("Tool permissions updated: %s %s", action, tool)
        if self._event_bus:
            self._event_bus.publish(EventType.TOOL_PERMISSIONS_UPDATED, {
                "action": action,
                "tool": tool,
                "mode": self._mode,
                "whitelist": list(self._whitelist),
                "blacklist": list(self._blacklist),
            })
