"""Tests for ToolExecutor."""

import asyncio
from unittest.mock import MagicMock

import pytest

from parley.config import ToolSpec
from parley.core.cancellation import CancelledByToken, CancelToken
from parley.errors import (
    ArgumentValidationError,
    PermissionDeniedError,
    PermissionSystemError,
    RateLimitExceededError,
    ToolExecutionError,
    ToolNotFoundError,
    ToolTimeoutError,
)
from parley.tools.base import FunctionTool, RateLimit
from parley.tools.executor import ToolExecutor
from parley.tools.history import ToolHistory
from parley.tools.permissions import PermissionDecision
from parley.tools.registry import ToolRegistry
from parley.types import EventType

ECHO_SCHEMA = {
    "type": "object",
    "properties": {"text": {"type": "string"}},
    "required": ["text"],
}


async def _echo(arguments, token):
    return {"echo": arguments["text"]}


async def _slow(arguments, token):
    await asyncio.sleep(10)


async def _boom(arguments, token):
    raise ValueError("kaput")


def _executor(*tools, **kwargs):
    registry = ToolRegistry()
    for tool in tools:
        registry.register(tool)
    return ToolExecutor(registry, **kwargs)


class TestExecute:
    @pytest.mark.asyncio
    async def test_success_records_and_emits(self, bus):
        history = ToolHistory()
        executor = _executor(
            FunctionTool("echo", _echo, input_schema=ECHO_SCHEMA),
            history=history, event_bus=bus,
        )
        result = await executor.execute("echo", {"text": "hi"}, session_id="s1")

        assert result == {"echo": "hi"}
        assert [e.type for e in bus.history] == [
            EventType.TOOL_EXECUTE_START,
            EventType.TOOL_EXECUTE_SUCCESS,
            EventType.TOOL_HISTORY_ADDED,
        ]
        entry = history.query()[0]
        assert entry.success
        assert entry.session_id == "s1"

    @pytest.mark.asyncio
    async def test_not_found(self):
        with pytest.raises(ToolNotFoundError):
            await _executor().execute("missing", {})

    @pytest.mark.asyncio
    async def test_invalid_arguments(self, bus):
        history = ToolHistory()
        executor = _executor(
            FunctionTool("echo", _echo, input_schema=ECHO_SCHEMA),
            history=history, event_bus=bus,
        )
        with pytest.raises(ArgumentValidationError) as exc:
            await executor.execute("echo", {})
        assert "missing required field: text" in str(exc.value)
        assert not history.query()[0].success
        assert EventType.TOOL_EXECUTE_ERROR in [e.type for e in bus.history]

    @pytest.mark.asyncio
    async def test_tool_exception_wrapped(self):
        executor = _executor(FunctionTool("boom", _boom))
        with pytest.raises(ToolExecutionError) as exc:
            await executor.execute("boom", {})
        assert "ValueError: kaput" in str(exc.value)
        assert isinstance(exc.value.__cause__, ValueError)


class TestTimeout:
    @pytest.mark.asyncio
    async def test_default_timeout(self):
        executor = _executor(FunctionTool("slow", _slow), spec=ToolSpec(default_timeout=0.05))
        with pytest.raises(ToolTimeoutError, match="timed out after 0.05s"):
            await executor.execute("slow", {})

    @pytest.mark.asyncio
    async def test_timeout_capped_at_maximum(self):
        executor = _executor(FunctionTool("slow", _slow), spec=ToolSpec(max_timeout=0.05))
        with pytest.raises(ToolTimeoutError, match="after 0.05s"):
            await executor.execute("slow", {}, timeout=60)

    @pytest.mark.asyncio
    async def test_tool_sees_its_token_cancelled(self):
        seen = []

        async def watcher(arguments, token):
            token.add_callback(seen.append)
            await asyncio.sleep(10)

        executor = _executor(FunctionTool("watch", watcher), spec=ToolSpec(default_timeout=0.05))
        with pytest.raises(ToolTimeoutError):
            await executor.execute("watch", {})
        assert seen == ["timeout"]


class TestCancellation:
    @pytest.mark.asyncio
    async def test_parent_cancel_stops_tool(self):
        token = CancelToken()
        executor = _executor(FunctionTool("slow", _slow))

        async def cancel_soon():
            await asyncio.sleep(0.01)
            token.cancel("user")

        canceller = asyncio.create_task(cancel_soon())
        with pytest.raises(CancelledByToken) as exc:
            await executor.execute("slow", {}, token=token)
        await canceller
        assert exc.value.reason == "user"

    @pytest.mark.asyncio
    async def test_already_cancelled(self):
        token = CancelToken()
        token.cancel("early")
        with pytest.raises(CancelledByToken):
            await _executor(FunctionTool("echo", _echo)).execute("echo", {"text": "x"}, token=token)


class TestChecks:
    @pytest.mark.asyncio
    async def test_permission_denied(self):
        permissions = MagicMock()
        permissions.check.return_value = PermissionDecision(False, "blacklist_reject", "nope")
        executor = _executor(FunctionTool("echo", _echo), permissions=permissions)
        with pytest.raises(PermissionDeniedError, match="nope"):
            await executor.execute("echo", {"text": "x"})
        permissions.check.assert_called_once_with("echo", "echo")

    @pytest.mark.asyncio
    async def test_permission_system_error_propagates(self):
        permissions = MagicMock()
        permissions.check.side_effect = PermissionSystemError("broken", "echo")
        executor = _executor(FunctionTool("echo", _echo), permissions=permissions)
        with pytest.raises(PermissionSystemError):
            await executor.execute("echo", {"text": "x"})

    @pytest.mark.asyncio
    async def test_unexpected_permission_failure_allows(self):
        permissions = MagicMock()
        permissions.check.side_effect = RuntimeError("flaky")
        executor = _executor(FunctionTool("echo", _echo), permissions=permissions)
        assert await executor.execute("echo", {"text": "x"}) == {"echo": "x"}

    @pytest.mark.asyncio
    async def test_rate_limited(self, bus):
        executor = _executor(
            FunctionTool("echo", _echo, rate_limit=RateLimit(1, "minute")), event_bus=bus,
        )
        await executor.execute("echo", {"text": "x"})
        with pytest.raises(RateLimitExceededError):
            await executor.execute("echo", {"text": "x"})
        assert EventType.TOOL_RATE_LIMITED in [e.type for e in bus.history]


class TestBatch:
    @pytest.mark.asyncio
    async def test_batch_keeps_order(self):
        executor = _executor(
            FunctionTool("echo", _echo, input_schema=ECHO_SCHEMA),
            FunctionTool("boom", _boom),
        )
        outcomes = await executor.execute_batch([
            ("echo", {"text": "a"}),
            ("boom", {}),
            ("missing", {}),
        ])
        assert [o.success for o in outcomes] == [True, False, False]
        assert outcomes[0].result == {"echo": "a"}
        assert "kaput" in outcomes[1].error
        assert outcomes[2].tool_id == "missing"

    @pytest.mark.asyncio
    async def test_batch_propagates_permission_system_error(self):
        permissions = MagicMock()
        permissions.check.side_effect = PermissionSystemError("broken", "echo")
        executor = _executor(FunctionTool("echo", _echo), permissions=permissions)
        with pytest.raises(PermissionSystemError):
            await executor.execute_batch([("echo", {"text": "x"})])
