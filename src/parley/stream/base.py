"""Shared machinery of the per-provider stream parsers.

A parser consumes an already-opened :class:`~parley.stream.reader.ByteReader`,
frames it into JSON payloads and routes each decoded delta:

    thinking delta -> turn.thinking
    text delta     -> markup tools (markup mode) -> <think> tags -> markdown images
    image payload  -> ImagePart
    tool deltas    -> NativeToolCallAccumulator

At the end of the stream the turn is either finalized or, when completed
tool calls are present, handed to the context's continuation
orchestrator.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx

from parley.core.cancellation import CancelToken
from parley.core.sinks import NullRenderSink, RenderSink
from parley.errors import (
    StreamSizeExceeded,
    classify_stream_error,
    humanize_error,
    render_error_block,
    stream_error_message,
)
from parley.stream.accumulators import MarkupToolCallAccumulator, NativeToolCallAccumulator
from parley.stream.markdown_images import MarkdownImageParser
from parley.stream.reader import ByteReader, LineFramer
from parley.stream.stats import StreamStats
from parley.stream.think_tags import ThinkTagParser
from parley.types import (
    EventType,
    ImagePart,
    ProviderFormat,
    RequestState,
    TextPart,
    ToolCall,
    Turn,
    merge_parts,
)

if TYPE_CHECKING:
    from parley.core.context import EngineContext

_logger = logging.getLogger(__name__)

TRUNCATION_NOTICE = "[Response truncated: {kind} exceeded {limit:,} characters]"


@dataclass
class StreamFailure:
    """An in-band or transport error that ends a turn."""

    code: Any
    message: str
    error_type: str | None = None

    @property
    def error_class(self) -> str:
        return classify_stream_error(self.code, self.error_type)


class _Stop(enum.Enum):
    END = "end"
    ERROR = "error"
    TRUNCATED = "truncated"
    CANCELLED = "cancelled"


# ---------------------------------------------------------------------------
# Finalization
# ---------------------------------------------------------------------------

class TurnFinalizer:
    """Closes a turn exactly once: stats, storage, render, state."""

    def __init__(
        self,
        context: EngineContext,
        sink: RenderSink,
        stats: StreamStats,
    ) -> None:
        self._context = context
        self._sink = sink
        self._stats = stats

    def finalize(
        self,
        turn: Turn,
        session_id: str | None,
        *,
        continuation: bool = False,
        failure: StreamFailure | None = None,
    ) -> Turn:
        if turn.finalized:
            _logger.warning("Turn already finalized; ignoring second finalize")
            return turn

        if failure is not None:
            self._apply_failure(turn, failure)

        self._stats.stop()
        turn.parts = merge_parts([
            p for p in turn.parts if not (isinstance(p, ImagePart) and not p.complete)
        ])
        self._stats.recalculate(turn)
        turn.stats = self._stats.snapshot()
        turn.finalized = True

        turn.storage_index = self._save(turn, session_id, continuation)
        try:
            self._sink.on_final(list(turn.parts))
        except Exception:
            _logger.exception("Render sink failed on final content")

        machine = self._context.state_machine
        if machine.is_busy():
            machine.transition(RequestState.ERROR if turn.is_error else RequestState.COMPLETED)

        self._context.bus.publish(EventType.STREAM_FINALIZED, {
            "format": turn.format.value,
            "is_error": turn.is_error,
            "truncated": turn.truncated,
            "storage_index": turn.storage_index,
            "stats": turn.stats.to_dict(),
        })
        _logger.info(
            "Finalized %s turn (%d chars, %d tokens%s)",
            turn.format.value, len(turn.text), turn.stats.tokens,
            ", error" if turn.is_error else "",
        )
        return turn

    def _save(self, turn: Turn, session_id: str | None, continuation: bool) -> int | None:
        store = self._context.message_sink
        if store is None:
            return None
        return store.save_turn(
            turn, session_id, continuation=continuation or turn.storage_index is not None,
        )

    @staticmethod
    def _apply_failure(turn: Turn, failure: StreamFailure) -> None:
        summary = stream_error_message(failure.error_class, failure.message)
        human = humanize_error({
            "type": failure.error_type, "code": failure.code, "message": failure.message,
        })
        prefix = turn.visible_text
        turn.text = f"{prefix}\n\n{failure.message}" if prefix else failure.message
        block = render_error_block(human.title, human.hint, summary)
        turn.parts.append(TextPart(f"\n\n{block}" if turn.parts else block))
        turn.is_error = True
        turn.error_data = {"code": failure.code, "message": failure.message}


# ---------------------------------------------------------------------------
# Parser base
# ---------------------------------------------------------------------------

class StreamParser:
    """Base class of the provider parsers.

    Subclasses implement :meth:`handle_payload` and use the ``emit_*``
    helpers; one parser instance handles one :meth:`run` at a time.

    Parameters
    ----------
    context:
        Engine context (config, bus, state machine, message store,
        continuation orchestrator).
    sink:
        Render sink receiving incremental and final content.
    markup_tools:
        Overrides ``config.stream.markup_tools``.
    stats:
        Shared stats clock; continuation parsers reuse the first one.
    """

    format: ProviderFormat = ProviderFormat.OPENAI
    allow_bare_lines = False

    def __init__(
        self,
        context: EngineContext,
        sink: RenderSink | None = None,
        *,
        markup_tools: bool | None = None,
        stats: StreamStats | None = None,
    ) -> None:
        self._context = context
        self.sink = sink or NullRenderSink()
        spec = context.config.stream
        self.max_text_chars = spec.max_text_chars
        self.max_image_chars = spec.max_image_chars
        self.markup_tools = spec.markup_tools if markup_tools is None else markup_tools
        self.stats = stats or StreamStats()
        self._begin(None)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(
        self,
        reader: ByteReader,
        *,
        session_id: str | None = None,
        token: CancelToken | None = None,
        continuation: bool = False,
        previous: Turn | None = None,
    ) -> Turn:
        """Consume *reader* to the end and return the finalized turn.

        With ``continuation`` set the new content is merged into
        *previous* and that turn is returned.
        """
        if continuation and previous is None:
            raise ValueError("continuation run requires the previous turn")
        self._begin(previous if continuation else None)
        self.session_id = session_id
        machine = self._context.state_machine
        token = token or machine.token or CancelToken()
        self.token = token

        if not continuation:
            self.stats.start()
        if machine.state in (RequestState.SENDING, RequestState.CONTINUATION):
            machine.transition(RequestState.STREAMING, sink=self.sink)
        self._context.bus.publish(EventType.STREAM_STARTED, {
            "format": self.format.value, "continuation": continuation,
        })

        # unblocks a read that is waiting on the network
        cancelling: set[asyncio.Future[None]] = set()

        def cancel_reader(_reason: str) -> None:
            task = asyncio.ensure_future(self._cancel_reader(reader))
            cancelling.add(task)
            task.add_done_callback(cancelling.discard)

        stop_following = token.add_callback(cancel_reader)
        try:
            await self._consume(reader, token)
        except (httpx.HTTPError, OSError, asyncio.TimeoutError) as e:
            _logger.warning("%s stream transport error: %s", self.format.value, e)
            self._failure = StreamFailure(code=None, message=str(e) or type(e).__name__,
                                          error_type=type(e).__name__)
            self._stop = _Stop.ERROR
        finally:
            stop_following()
            if cancelling:
                await asyncio.gather(*cancelling)

        return await self._complete(reader)

    # ------------------------------------------------------------------
    # Hooks for subclasses
    # ------------------------------------------------------------------

    def handle_payload(self, data: dict[str, Any]) -> None:
        raise NotImplementedError

    def reset_provider_state(self) -> None:
        """Reset subclass state at the start of each run."""

    def decode_payload(self, payload: str) -> Any:
        return json.loads(payload)

    def finish_stream(self) -> None:
        """Called once the reader is exhausted, before completion."""

    # ------------------------------------------------------------------
    # Delta routing
    # ------------------------------------------------------------------

    def emit_thinking(self, text: str, *, count: bool = True) -> None:
        if not text:
            return
        if count:
            self.stats.record(text)
        self.turn.append_thinking(text)
        self._note_text(len(text))

    def emit_text(self, text: str) -> None:
        """Route a text delta through markup, ``<think>`` and image parsing."""
        if not text:
            return
        self.stats.record(text)
        if self.markup_tools:
            delta = self._markup.feed(text)
            if delta.error:
                _logger.warning("Markup tool parsing degraded: %s", delta.error)
            text = delta.display
        self._route_display(text)

    def emit_raw_text(self, text: str) -> None:
        """Append text verbatim, bypassing tag and image parsing."""
        if not text:
            return
        self.stats.record(text)
        self.turn.append_text(text)
        self._note_text(len(text))

    def emit_image(self, uri: str, *, alt: str = "", payload_chars: int | None = None) -> None:
        self.stats.mark_first_token()
        self.turn.add_image(ImagePart(uri=uri, alt=alt))
        self._note_image(len(uri) if payload_chars is None else payload_chars)

    def emit_error(self, code: Any, message: str, error_type: str | None = None) -> None:
        """End the stream with an in-band provider error."""
        _logger.error(
            "%s stream error (%s/%s): %s", self.format.value, code, error_type, message,
        )
        self._failure = StreamFailure(code=code, message=message or "Unknown error",
                                      error_type=error_type)
        self._stop = _Stop.ERROR

    def end_stream(self) -> None:
        """Provider signalled the end of the message; stop reading."""
        if self._stop is None:
            self._stop = _Stop.END

    @property
    def native_calls(self) -> NativeToolCallAccumulator:
        return self._native

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _begin(self, previous: Turn | None) -> None:
        self.turn = Turn(self.format)
        self.previous = previous
        self.session_id: str | None = None
        self.token: CancelToken | None = None
        self.finish_reason = ""
        self._native = NativeToolCallAccumulator()
        self._markup = MarkupToolCallAccumulator()
        self._think = ThinkTagParser()
        self._images = MarkdownImageParser()
        self._text_chars = 0
        self._image_chars = 0
        self._stop: _Stop | None = None
        self._failure: StreamFailure | None = None
        self._oversize: StreamSizeExceeded | None = None
        self._dirty = False
        self.reset_provider_state()

    async def _consume(self, reader: ByteReader, token: CancelToken) -> None:
        framer = LineFramer(allow_bare=self.allow_bare_lines)
        while self._stop is None:
            if token.cancelled:
                self._stop = _Stop.CANCELLED
                break
            chunk = await reader.read()
            if token.cancelled:
                self._stop = _Stop.CANCELLED
                break
            if chunk is None:
                self._dispatch_all(framer.flush())
                break
            self._dispatch_all(framer.feed(chunk))
            if framer.done:
                break

    def _dispatch_all(self, payloads: list[str]) -> None:
        for payload in payloads:
            if self._stop is not None:
                return
            try:
                data = self.decode_payload(payload)
            except ValueError as e:
                _logger.warning("Skipping unparsable %s line: %s", self.format.value, e)
                continue
            if not isinstance(data, dict):
                _logger.warning("Skipping non-object %s payload", self.format.value)
                continue
            try:
                self.handle_payload(data)
            except Exception:
                _logger.exception("Failed to handle %s payload; skipping", self.format.value)
                continue
            self._check_ceilings()
            if self._dirty and self._stop is None:
                self._render()

    def _route_display(self, text: str) -> None:
        if not text:
            return
        think = self._think.feed(text)
        if think.thinking:
            self.turn.append_thinking(think.thinking)
            self._note_text(len(think.thinking))
        self._route_images(think.display)

    def _route_images(self, text: str) -> None:
        if not text:
            return
        for part in self._images.feed(text).parts:
            if isinstance(part, ImagePart):
                self.turn.add_image(part)
                self._note_image(len(part.uri))
            else:
                self.turn.append_text(part.value)
                self._note_text(len(part.value))

    def _note_text(self, size: int) -> None:
        self._text_chars += size
        self._dirty = True

    def _note_image(self, size: int) -> None:
        self._image_chars += size
        self._dirty = True

    def _check_ceilings(self) -> None:
        if self._stop is not None:
            return
        if self._text_chars > self.max_text_chars:
            self._oversize = StreamSizeExceeded("text", self.max_text_chars)
        # a held-back markdown image counts before its closing ")" arrives
        elif self._image_chars + len(self._images.pending) > self.max_image_chars:
            self._oversize = StreamSizeExceeded("image data", self.max_image_chars)
        else:
            return
        _logger.warning("%s response truncated: %s", self.format.value, self._oversize)
        self._stop = _Stop.TRUNCATED

    def _render(self) -> None:
        self._dirty = False
        text, thinking = self.turn.text, self.turn.thinking
        if self.previous is not None:
            text = "\n\n".join(t for t in (self.previous.visible_text, text) if t)
            thinking = "\n\n---\n\n".join(t for t in (self.previous.thinking, thinking) if t)
        try:
            self.sink.on_incremental(text, thinking)
        except Exception:
            _logger.exception("Render sink failed on incremental update")

    def _flush_pipeline(self, *, keep_images: bool) -> None:
        if self.markup_tools:
            tail = self._markup.flush()
            self._route_display(tail)
        think = self._think.flush()
        if think.thinking:
            self.turn.append_thinking(think.thinking)
        if keep_images:
            self._route_images(think.display)
            for part in self._images.flush().parts:
                self.turn.append_text(part.value)
        else:
            self._route_images(think.display)
            self._images.discard()

    def _completed_calls(self) -> list[ToolCall]:
        native = self._native.completed_calls()
        markup = self._markup.completed_calls() if self.markup_tools else []
        if native and markup:
            _logger.warning(
                "%s stream carried both native (%d) and markup (%d) tool calls; using native",
                self.format.value, len(native), len(markup),
            )
        elif native and self.markup_tools:
            _logger.warning("Native tool calls received in markup mode; using them")
        return native or markup

    async def _complete(self, reader: ByteReader) -> Turn:
        stop = self._stop
        if stop in (_Stop.ERROR, _Stop.TRUNCATED, _Stop.CANCELLED):
            await self._cancel_reader(reader)

        if stop is _Stop.ERROR:
            self._flush_pipeline(keep_images=False)
            failure = self._failure
            self._context.bus.publish(EventType.STREAM_ERROR, {
                "format": self.format.value,
                "code": failure.code,
                "message": failure.message,
                "error_class": failure.error_class,
                "partial_text": self.turn.text,
            })
            return self._finalize(failure=failure)

        if stop is _Stop.TRUNCATED:
            self._flush_pipeline(keep_images=False)
            kind, limit = self._oversize.kind, self._oversize.limit
            notice = TRUNCATION_NOTICE.format(kind=kind, limit=limit)
            self.turn.parts.append(TextPart(f"\n\n{notice}"))
            self.turn.truncated = True
            self._context.bus.publish(EventType.STREAM_TRUNCATED, {
                "format": self.format.value,
                "kind": kind,
                "limit": limit,
            })
            return self._finalize()

        if stop is _Stop.CANCELLED:
            _logger.info("%s stream cancelled (%s)", self.format.value, self.token.reason)
            self._flush_pipeline(keep_images=False)
            machine = self._context.state_machine
            if machine.is_busy():
                machine.transition(RequestState.CANCELLED, reason=self.token.reason)
            return self._finalize()

        self.finish_stream()
        calls = self._completed_calls()
        if calls:
            return await self._handoff(calls)
        self._flush_pipeline(keep_images=True)
        return self._finalize()

    async def _handoff(self, calls: list[ToolCall]) -> Turn:
        self._flush_pipeline(keep_images=True)
        turn = self._merged()
        limit = self._context.config.request.max_continuations
        orchestrator = self._context.orchestrator
        if orchestrator is None or turn.continuation_count >= limit:
            if orchestrator is None:
                _logger.warning("No resend function configured; %d tool call(s) not executed", len(calls))
            else:
                _logger.warning("Continuation limit (%d) reached; not executing further tools", limit)
            turn.tool_calls = calls
            return self._finalizer().finalize(turn, self.session_id, continuation=self.previous is not None)
        return await orchestrator.handle(
            turn, calls, self.format,
            session_id=self.session_id,
            token=self.token,
            sink=self.sink,
            stats=self.stats,
            markup_tools=self.markup_tools,
        )

    def _merged(self) -> Turn:
        self.turn.finish_reason = self.finish_reason or self.turn.finish_reason
        if self.previous is None:
            return self.turn
        self.previous.merge_continuation(self.turn)
        return self.previous

    def _finalize(self, failure: StreamFailure | None = None) -> Turn:
        continuation = self.previous is not None
        turn = self._merged()
        return self._finalizer().finalize(
            turn, self.session_id, continuation=continuation, failure=failure,
        )

    def _finalizer(self) -> TurnFinalizer:
        return TurnFinalizer(self._context, self.sink, self.stats)

    async def _cancel_reader(self, reader: ByteReader) -> None:
        try:
            await reader.cancel()
        except Exception:
            _logger.exception("Failed to cancel %s reader", self.format.value)
