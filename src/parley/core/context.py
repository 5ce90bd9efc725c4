"""EngineContext: the explicit bundle of per-conversation engine state.

Everything that used to be process-wide (event bus, id tables,
signature backups, the request state machine, tool subsystems) lives on
one context object that is passed to parsers and the orchestrator.
"""

from __future__ import annotations

import logging

from parley.config import EngineConfig
from parley.core.cancellation import CancelToken
from parley.core.continuation import ContinuationOrchestrator
from parley.core.sinks import InMemoryMessageSink, MessageBuilder, MessageSink, RenderSink, ResendFn
from parley.core.state_machine import RequestStateMachine
from parley.errors import RequestInProgressError
from parley.events.bus import EventBus
from parley.reconcile.ids import IdReconciler
from parley.reconcile.signatures import SignatureStore
from parley.stream.base import StreamParser
from parley.stream.factory import create_parser
from parley.stream.reader import ByteReader
from parley.tools.executor import ToolExecutor
from parley.tools.history import ToolHistory
from parley.tools.permissions import PermissionManager
from parley.tools.rate_limiter import SlidingWindowRateLimiter
from parley.tools.registry import ToolRegistry
from parley.types import ProviderFormat, Turn

_logger = logging.getLogger(__name__)


class EngineContext:
    """Owns the collaborators of one conversation.

    Parameters
    ----------
    config:
        Engine configuration; defaults are used when omitted.
    message_sink:
        Store receiving finalized turns (in-memory list by default).
    resend:
        Follow-up request function.  Without it tool calls are recorded on
        the turn but never executed.
    registry:
        Tool registry; a fresh empty one by default.
    builders:
        Per-format overrides of the tool-message builders.

    Usage::

        ctx = EngineContext(config, resend=resend)
        turn = await ctx.stream(reader, "claude", sink=view)
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        message_sink: MessageSink | None = None,
        resend: ResendFn | None = None,
        registry: ToolRegistry | None = None,
        builders: dict[ProviderFormat, MessageBuilder] | None = None,
        responses_api: bool = False,
    ) -> None:
        self.config = config or EngineConfig()
        cfg = self.config
        self.bus = EventBus()
        self.ids = IdReconciler(cfg.ids.max_mappings, cfg.ids.evict_ratio)
        self.signatures = SignatureStore()
        self.state_machine = RequestStateMachine(cfg.request, self.bus)

        self.registry = registry or ToolRegistry()
        self.permissions = PermissionManager(cfg.permissions, self.bus)
        self.rate_limiter = SlidingWindowRateLimiter()
        self.history = ToolHistory(
            max_size=cfg.tools.max_history,
            enabled=cfg.tools.history_enabled,
            event_bus=self.bus,
        )
        self.executor = ToolExecutor(
            self.registry,
            spec=cfg.tools,
            permissions=self.permissions,
            rate_limiter=self.rate_limiter,
            history=self.history,
            event_bus=self.bus,
        )

        self.message_sink: MessageSink | None = (
            message_sink if message_sink is not None else InMemoryMessageSink()
        )
        self.orchestrator: ContinuationOrchestrator | None = None
        if resend is not None:
            self.orchestrator = ContinuationOrchestrator(
                self, resend, builders=builders, responses_api=responses_api,
            )

    def parser(self, fmt: ProviderFormat | str, sink: RenderSink | None = None, **kwargs) -> StreamParser:
        return create_parser(fmt, self, sink, **kwargs)

    async def stream(
        self,
        reader: ByteReader,
        fmt: ProviderFormat | str,
        *,
        sink: RenderSink | None = None,
        session_id: str | None = None,
        token: CancelToken | None = None,
        markup_tools: bool | None = None,
    ) -> Turn:
        """Run one request: ``sending`` -> parse (with tool round trips) -> final turn."""
        token = token or CancelToken()
        if not self.state_machine.begin(token=token, session_id=session_id):
            raise RequestInProgressError(
                f"cannot start a request while one is {self.state_machine.state.value}"
            )
        _logger.debug("Starting %s request (session %s)", fmt, session_id)
        parser = self.parser(fmt, sink, markup_tools=markup_tools)
        return await parser.run(reader, session_id=session_id, token=token)

    def cancel(self, reason: str = "user") -> bool:
        return self.state_machine.cancel(reason)

    def close(self) -> None:
        """Release timers and drop per-conversation tables."""
        self.state_machine.close()
        self.ids.clear()
        self.signatures.clear_backups()
        self.bus.clear()
