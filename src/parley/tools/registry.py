"""Tool registry with plugin discovery for parley."""

from __future__ import annotations

import logging
from importlib.metadata import entry_points
from typing import Any

from parley.tools.base import Tool
from parley.types import ProviderFormat

_logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "parley.tools"


class ToolRegistry:
    """Registry of available tools, keyed by tool id."""

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        """Register a tool instance (replacing any tool with the same id)."""
        if tool.tool_id in self._tools:
            _logger.info("Replacing registered tool %s", tool.tool_id)
        self._tools[tool.tool_id] = tool

    def unregister(self, tool_id: str) -> bool:
        return self._tools.pop(tool_id, None) is not None

    def get(self, tool_id: str) -> Tool | None:
        """Look up a tool by id, falling back to its display name."""
        tool = self._tools.get(tool_id)
        if tool is not None:
            return tool
        for candidate in self._tools.values():
            if candidate.name == tool_id:
                return candidate
        return None

    def list_tools(self) -> list[Tool]:
        return list(self._tools.values())

    def tool_names(self) -> list[str]:
        return [t.name for t in self._tools.values()]

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, tool_id: str) -> bool:
        return self.get(tool_id) is not None

    def discover(self) -> None:
        """Load tools from entry_points group ``parley.tools``.

        Each entry point should be a callable that returns a Tool instance
        or a Tool subclass (which will be instantiated).
        """
        for ep in entry_points().select(group=ENTRY_POINT_GROUP):
            try:
                obj = ep.load()
                if isinstance(obj, type) and issubclass(obj, Tool):
                    tool = obj()
                elif isinstance(obj, Tool):
                    tool = obj
                elif callable(obj):
                    tool = obj()
                else:
                    _logger.warning(
                        "Entry point %s did not return a Tool: %s", ep.name, type(obj)
                    )
                    continue
                self.register(tool)
                _logger.info("Discovered plugin tool: %s", tool.name)
            except Exception:
                _logger.exception("Failed to load tool plugin: %s", ep.name)

    def schemas(self, fmt: ProviderFormat | str = ProviderFormat.OPENAI) -> list[dict[str, Any]]:
        """Tool declarations in the shape *fmt* expects."""
        fmt = ProviderFormat.parse(fmt)
        if fmt is ProviderFormat.CLAUDE:
            return [t.to_claude_schema() for t in self._tools.values()]
        if fmt is ProviderFormat.GEMINI:
            return [{"functionDeclarations": [t.to_gemini_schema() for t in self._tools.values()]}]
        return [t.to_openai_schema() for t in self._tools.values()]
