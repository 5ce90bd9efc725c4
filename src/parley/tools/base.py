"""Async Tool abstract base class for parley."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from parley.core.cancellation import CancelToken


@dataclass(frozen=True)
class RateLimit:
    """At most ``max_calls`` per ``unit`` (minute, hour or day)."""

    max_calls: int
    unit: str = "minute"


class Tool(ABC):
    """Base class for all tools.

    Subclasses set ``name``, ``description`` and ``input_schema`` (JSON
    Schema) as class attributes and implement the async ``run()`` method.
    ``run()`` receives the decoded arguments and a cancellation token that
    is cancelled when the call times out or the request is aborted.
    """

    name: str
    description: str = ""
    input_schema: dict[str, Any] | None = None
    rate_limit: RateLimit | None = None

    @property
    def tool_id(self) -> str:
        return self.name

    @abstractmethod
    async def run(self, arguments: dict[str, Any], token: CancelToken) -> Any:
        """Execute the tool asynchronously."""

    def to_openai_schema(self) -> dict[str, Any]:
        """Convert to OpenAI function calling format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema or {"type": "object", "properties": {}},
            },
        }

    def to_claude_schema(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema or {"type": "object", "properties": {}},
        }

    def to_gemini_schema(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.input_schema or {"type": "object", "properties": {}},
        }


class FunctionTool(Tool):
    """Wrap a plain coroutine function ``fn(arguments, token)`` as a Tool."""

    def __init__(
        self,
        name: str,
        fn: Callable[[dict[str, Any], CancelToken], Awaitable[Any]],
        description: str = "",
        input_schema: dict[str, Any] | None = None,
        rate_limit: RateLimit | None = None,
    ) -> None:
        self.name = name
        self.description = description
        self.input_schema = input_schema
        self.rate_limit = rate_limit
        self._fn = fn

    async def run(self, arguments: dict[str, Any], token: CancelToken) -> Any:
        return await self._fn(arguments, token)
