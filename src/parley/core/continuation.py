"""Continuation orchestrator: tool calls -> results -> follow-up stream.

    parser --(completed calls)--> handle()
        save partial turn -> tool_calling -> execute (parallel)
        -> build messages -> continuation -> resend -> parser(continuation)

The follow-up stream merges into the same :class:`~parley.types.Turn`.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any, Sequence

from parley.core.cancellation import CancelledByToken, CancelToken
from parley.core.sinks import MessageBuilder, NullRenderSink, RenderSink, ResendFn
from parley.errors import (
    ArgumentValidationError,
    PermissionDeniedError,
    PermissionSystemError,
    ToolError,
    ToolNotFoundError,
)
from parley.messages.builders import build_markup_tool_messages, builder_for, enrich_tool_result
from parley.stream.base import StreamFailure, TurnFinalizer
from parley.stream.factory import create_parser
from parley.stream.stats import StreamStats
from parley.types import (
    PLACEHOLDER_TEXT,
    EventType,
    ProviderFormat,
    RequestState,
    ToolCall,
    ToolCallStatus,
    ToolResultEnvelope,
    Turn,
)

if TYPE_CHECKING:
    from parley.core.context import EngineContext

_logger = logging.getLogger(__name__)


def tool_error_content(call: ToolCall, error: BaseException) -> str:
    """JSON result telling the model not to retry a failed call."""
    detail = str(error)
    lower = detail.lower()
    if isinstance(error, ArgumentValidationError) or "missing required" in lower:
        message = (
            f'Tool "{call.name}" call failed due to invalid or missing parameters. '
            "This is a parameter schema issue, not a temporary error. "
            "Do NOT retry this tool call. Please respond to the user explaining the issue. "
            f"Error details: {detail}"
        )
    elif isinstance(error, (ToolNotFoundError, PermissionDeniedError)) \
            or "not found" in lower or "not available" in lower:
        message = (
            f'Tool "{call.name}" is not available or not registered. '
            "This tool cannot be used. Do NOT retry this tool. "
            "Please respond to the user WITHOUT using this tool."
        )
    else:
        message = (
            f'Tool "{call.name}" execution failed: {detail}. '
            "This error cannot be fixed by retrying with the same parameters. "
            "Do NOT retry this tool call. Please respond to the user based on this error."
        )
    return json.dumps({
        "error": message,
        "is_error": True,
        "original_error": detail,
        "failed_args": call.arguments,
    }, ensure_ascii=False, default=str)


class ContinuationOrchestrator:
    """Runs a tool round trip and re-enters the matching stream parser.

    Parameters
    ----------
    context:
        Engine context providing the executor, id reconciler, state
        machine and message store.
    resend:
        Issues the follow-up request and returns its reader.
    builders:
        Per-format overrides of the tool-message builders.
    responses_api:
        Build OpenAI follow-ups for the Responses API.
    """

    def __init__(
        self,
        context: EngineContext,
        resend: ResendFn,
        *,
        builders: dict[ProviderFormat, MessageBuilder] | None = None,
        responses_api: bool = False,
    ) -> None:
        self._context = context
        self._resend = resend
        self._builders: dict[ProviderFormat, MessageBuilder] = {
            fmt: builder_for(fmt, responses_api=responses_api) for fmt in ProviderFormat
        }
        if builders:
            self._builders.update(builders)

    def builder(self, fmt: ProviderFormat, markup_tools: bool = False) -> MessageBuilder:
        return build_markup_tool_messages if markup_tools else self._builders[fmt]

    async def handle(
        self,
        turn: Turn,
        calls: Sequence[ToolCall],
        fmt: ProviderFormat | str,
        *,
        session_id: str | None = None,
        token: CancelToken | None = None,
        sink: RenderSink | None = None,
        stats: StreamStats | None = None,
        markup_tools: bool = False,
    ) -> Turn:
        """Execute *calls* and stream the continuation into *turn*."""
        fmt = ProviderFormat.parse(fmt)
        ctx = self._context
        token = token or CancelToken()
        sink = sink or NullRenderSink()
        stats = stats or StreamStats()
        machine = ctx.state_machine
        calls = list(calls)

        for call in calls:
            if not call.id:
                call.id = ctx.ids.mint(fmt)
        turn.tool_calls = calls

        # freeze what we have so far
        if not turn.visible_text:
            turn.text = PLACEHOLDER_TEXT
        turn.stats = stats.snapshot(partial=True)
        if ctx.message_sink is not None:
            turn.storage_index = ctx.message_sink.save_turn(
                turn, session_id, continuation=turn.storage_index is not None,
            )

        if machine.is_busy():
            machine.transition(RequestState.TOOL_CALLING)
        ctx.bus.publish(EventType.TOOL_CALLS_DETECTED, {
            "format": fmt.value,
            "calls": [{"id": c.id, "name": c.name, "arguments": c.arguments} for c in calls],
        })
        _logger.info("Executing %d tool call(s): %s", len(calls), ", ".join(c.name for c in calls))

        try:
            results = await self.execute_calls(calls, fmt, token=token, session_id=session_id)
        except PermissionSystemError:
            _logger.error("Permission subsystem failure; aborting request")
            machine.force_reset("permission_system_error")
            raise

        ctx.bus.publish(EventType.TOOL_RESULTS_SENT, {
            "tool_count": len(calls),
            "results": [
                {"tool_call_id": r.tool_call_id, "tool_name": r.tool_name, "is_error": r.is_error}
                for r in results
            ],
        })

        finalizer = TurnFinalizer(ctx, sink, stats)
        if token.cancelled:
            _logger.info("Request cancelled during tool execution (%s)", token.reason)
            if machine.is_busy():
                machine.transition(RequestState.CANCELLED, reason=token.reason)
            return finalizer.finalize(turn, session_id, continuation=True)

        messages = self.builder(fmt, markup_tools)(calls, results)
        if machine.is_busy():
            machine.transition(RequestState.CONTINUATION)
        try:
            reader = await self._resend(messages, fmt, token)
        except Exception as e:
            _logger.exception("Continuation request failed")
            failure = StreamFailure(
                code=getattr(e, "status_code", None),
                message=str(e) or type(e).__name__,
                error_type=type(e).__name__,
            )
            return finalizer.finalize(turn, session_id, continuation=True, failure=failure)

        parser = create_parser(fmt, ctx, sink, markup_tools=markup_tools, stats=stats)
        return await parser.run(
            reader, session_id=session_id, token=token, continuation=True, previous=turn,
        )

    async def execute_calls(
        self,
        calls: Sequence[ToolCall],
        fmt: ProviderFormat,
        *,
        token: CancelToken | None = None,
        session_id: str | None = None,
    ) -> list[ToolResultEnvelope]:
        """Run *calls* concurrently; results keep detection order."""
        return list(await asyncio.gather(*(
            self._execute_one(call, fmt, token, session_id) for call in calls
        )))

    async def _execute_one(
        self,
        call: ToolCall,
        fmt: ProviderFormat,
        token: CancelToken | None,
        session_id: str | None,
    ) -> ToolResultEnvelope:
        ctx = self._context
        mapped_id = ctx.ids.get_or_create_mapped_id(call.id, fmt)
        try:
            result: Any = await ctx.executor.execute(
                call.name, call.arguments, token=token, session_id=session_id,
            )
        except PermissionSystemError:
            raise
        except (ToolError, CancelledByToken) as e:
            call.status = ToolCallStatus.FAILED
            call.error = str(e)
            return ToolResultEnvelope(
                tool_call_id=mapped_id,
                original_id=call.id,
                tool_name=call.name,
                content=tool_error_content(call, e),
                is_error=True,
            )

        call.status = ToolCallStatus.COMPLETED
        call.result = result
        return ToolResultEnvelope(
            tool_call_id=mapped_id,
            original_id=call.id,
            tool_name=call.name,
            content=json.dumps(enrich_tool_result(result), ensure_ascii=False, default=str),
        )
