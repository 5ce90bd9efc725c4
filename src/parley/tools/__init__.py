"""Tool system for parley."""

from parley.tools.base import FunctionTool, RateLimit, Tool
from parley.tools.executor import ToolExecutor
from parley.tools.registry import ToolRegistry

__all__ = ["FunctionTool", "RateLimit", "Tool", "ToolExecutor", "ToolRegistry"]
