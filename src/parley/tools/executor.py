"""ToolExecutor: permission, rate-limit and schema checks, then a timed run.

Every attempt is recorded to the tool history and announced on the event
bus.  Failures raise a :class:`~parley.errors.ToolError` subclass; only
:class:`~parley.errors.PermissionSystemError` is meant to be fatal for the
caller.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any

from parley.config import ToolSpec
from parley.core.cancellation import CancelledByToken, CancelToken
from parley.errors import (
    ArgumentValidationError,
    PermissionDeniedError,
    PermissionSystemError,
    RateLimitExceededError,
    ToolError,
    ToolExecutionError,
    ToolNotFoundError,
    ToolTimeoutError,
)
from parley.events.bus import EventBus
from parley.tools.base import Tool
from parley.tools.history import ToolHistory
from parley.tools.permissions import PermissionManager
from parley.tools.rate_limiter import SlidingWindowRateLimiter
from parley.tools.registry import ToolRegistry
from parley.tools.validator import format_validation_errors, validate_arguments
from parley.types import EventType

_logger = logging.getLogger(__name__)


@dataclass
class BatchOutcome:
    """Result of one call in :meth:`ToolExecutor.execute_batch`."""

    tool_id: str
    success: bool
    result: Any = None
    error: str = ""


class ToolExecutor:
    """Runs registered tools through the check pipeline.

    Usage::

        executor = ToolExecutor(registry, permissions=pm, event_bus=bus)
        result = await executor.execute("weather", {"city": "Oslo"}, token=token)
    """

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        spec: ToolSpec | None = None,
        permissions: PermissionManager | None = None,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        history: ToolHistory | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._registry = registry
        self._spec = spec or ToolSpec()
        self._permissions = permissions
        self._rate_limiter = rate_limiter or SlidingWindowRateLimiter()
        self._history = history
        self._event_bus = event_bus

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    async def execute(
        self,
        tool_id: str,
        arguments: dict[str, Any],
        *,
        timeout: float | None = None,
        token: CancelToken | None = None,
        session_id: str | None = None,
    ) -> Any:
        """Execute *tool_id* with *arguments*.

        Parameters
        ----------
        timeout:
            Seconds before the call is aborted; defaults to the configured
            default and is capped at the configured maximum.
        token:
            Request-level cancellation token; the tool gets a child token.
        """
        tool = self._registry.get(tool_id)
        if tool is None:
            raise ToolNotFoundError(f"Tool not found: {tool_id}", tool_id)

        name = tool.name
        start = time.monotonic()
        await self._emit(EventType.TOOL_EXECUTE_START, {
            "tool_id": tool_id, "tool_name": name, "arguments": arguments,
        })

        try:
            self._check_permission(tool_id, name)
            self._check_rate_limit(tool)
            self._check_arguments(tool, arguments)
            result = await self._run_with_timeout(tool, arguments, timeout, token)
        except Exception as e:
            duration = (time.monotonic() - start) * 1000
            _logger.warning("Tool %s failed after %.0fms: %s", name, duration, e)
            await self._emit(EventType.TOOL_EXECUTE_ERROR, {
                "tool_id": tool_id, "error": str(e), "duration_ms": duration,
            })
            self._record(tool_id, name, arguments, False, duration, None, str(e), session_id)
            raise

        duration = (time.monotonic() - start) * 1000
        _logger.info("Tool %s succeeded in %.0fms", name, duration)
        await self._emit(EventType.TOOL_EXECUTE_SUCCESS, {
            "tool_id": tool_id, "result": result, "duration_ms": duration,
        })
        self._record(tool_id, name, arguments, True, duration, result, "", session_id)
        return result

    async def execute_batch(
        self,
        calls: list[tuple[str, dict[str, Any]]],
        *,
        timeout: float | None = None,
        token: CancelToken | None = None,
    ) -> list[BatchOutcome]:
        """Run *calls* concurrently; outcomes keep the input order."""

        async def _one(tool_id: str, args: dict[str, Any]) -> BatchOutcome:
            try:
                result = await self.execute(tool_id, args, timeout=timeout, token=token)
            except PermissionSystemError:
                raise
            except (ToolError, CancelledByToken) as e:
                return BatchOutcome(tool_id, False, error=str(e))
            return BatchOutcome(tool_id, True, result=result)

        return list(await asyncio.gather(*(_one(t, a) for t, a in calls)))

    # ------------------------------------------------------------------
    # Pipeline steps
    # ------------------------------------------------------------------

    def _check_permission(self, tool_id: str, name: str) -> None:
        if self._permissions is None:
            return
        try:
            decision = self._permissions.check(tool_id, name)
        except PermissionSystemError:
            _logger.error("Permission subsystem failure while checking %s", name)
            raise
        except Exception as e:
            _logger.warning("Permission check failed for %s, allowing: %s", name, e)
            return
        if not decision.allowed:
            raise PermissionDeniedError(
                decision.message or f"Not permitted to run tool: {name}", tool_id,
            )

    def _check_rate_limit(self, tool: Tool) -> None:
        try:
            self._rate_limiter.check(tool.tool_id, tool.rate_limit)
        except RateLimitExceededError as e:
            if self._event_bus:
                self._event_bus.publish(EventType.TOOL_RATE_LIMITED, {
                    "tool_id": tool.tool_id, "retry_after": e.retry_after,
                })
            raise

    @staticmethod
    def _check_arguments(tool: Tool, arguments: dict[str, Any]) -> None:
        validation = validate_arguments(arguments, tool.input_schema)
        if not validation.valid:
            raise ArgumentValidationError(
                format_validation_errors(validation.issues), tool.tool_id, validation.issues,
            )

    async def _run_with_timeout(
        self,
        tool: Tool,
        arguments: dict[str, Any],
        timeout: float | None,
        token: CancelToken | None,
    ) -> Any:
        limit = min(timeout or self._spec.default_timeout, self._spec.max_timeout)
        call_token = token.child() if token is not None else CancelToken()
        call_token.raise_if_cancelled()

        task = asyncio.ensure_future(tool.run(arguments, call_token))
        stop_following = call_token.add_callback(lambda _reason: task.cancel())
        try:
            return await asyncio.wait_for(task, timeout=limit)
        except asyncio.TimeoutError:
            call_token.cancel("timeout")
            raise ToolTimeoutError(
                f"Tool {tool.name} timed out after {limit:g}s", tool.tool_id,
            ) from None
        except asyncio.CancelledError:
            if call_token.cancelled:
                raise CancelledByToken(call_token.reason) from None
            raise
        except (ToolError, CancelledByToken):
            raise
        except Exception as e:
            raise ToolExecutionError(
                f"Tool {tool.name} failed: {type(e).__name__}: {e}", tool.tool_id,
            ) from e
        finally:
            stop_following()
            call_token.detach()
            if not task.done():
                task.cancel()

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def _record(
        self,
        tool_id: str,
        name: str,
        arguments: dict[str, Any],
        success: bool,
        duration: float,
        result: Any,
        error: str,
        session_id: str | None,
    ) -> None:
        if self._history is None:
            return
        try:
            self._history.record(
                tool_id, name, arguments,
                success=success, duration_ms=duration,
                result=result, error=error, session_id=session_id,
            )
        except Exception:
            _logger.exception("Recording tool history for %s failed", name)

    async def _emit(self, event_type: EventType, data: dict[str, Any]) -> None:
        if self._event_bus:
            await self._event_bus.emit(event_type, data)
