"""Claude (Anthropic Messages) stream parser."""

from __future__ import annotations

import json
import logging
from typing import Any

from parley.stream.base import StreamParser
from parley.types import BLOCK_SEPARATOR, ProviderFormat

_logger = logging.getLogger(__name__)


class ClaudeStreamParser(StreamParser):
    """Parse typed ``message_*`` / ``content_block_*`` events.

    Each thinking block keeps its own signature; blocks and signatures are
    joined with ``BLOCK_SEPARATOR`` so they can be split apart again when
    the turn is replayed to the provider.
    """

    format = ProviderFormat.CLAUDE

    def reset_provider_state(self) -> None:
        self._block_types: dict[int, str] = {}
        self._signatures: list[str] = []
        self._current_signature = ""

    def handle_payload(self, data: dict[str, Any]) -> None:
        event = data.get("type")
        if event == "error":
            error = data.get("error") or {}
            etype = error.get("type") or "unknown"
            self.emit_error(etype, str(error.get("message") or ""), etype)
        elif event == "content_block_start":
            self._block_start(data.get("index", 0), data.get("content_block") or {})
        elif event == "content_block_delta":
            self._block_delta(data.get("index", 0), data.get("delta") or {})
        elif event == "content_block_stop":
            self._block_stop(data.get("index", 0))
        elif event == "message_delta":
            stop_reason = (data.get("delta") or {}).get("stop_reason")
            if stop_reason:
                self.finish_reason = stop_reason
        elif event == "message_stop":
            self.end_stream()

    def _block_start(self, index: int, block: dict[str, Any]) -> None:
        kind = block.get("type", "")
        self._block_types[index] = kind
        if kind == "tool_use":
            initial = block.get("input")
            self.native_calls.add_fragment(
                index,
                call_id=block.get("id"),
                name=block.get("name"),
                # a non-empty start input is complete; otherwise deltas follow
                arguments=json.dumps(initial) if initial else None,
            )
        elif kind == "thinking":
            if self.turn.thinking:
                self.emit_thinking(BLOCK_SEPARATOR, count=False)
            self._current_signature = ""
            self.emit_thinking(block.get("thinking") or "")
        elif kind == "text" and block.get("text"):
            self.emit_text(block["text"])

    def _block_delta(self, index: int, delta: dict[str, Any]) -> None:
        kind = delta.get("type")
        if kind == "input_json_delta":
            self.native_calls.add_fragment(index, arguments=delta.get("partial_json"))
        elif kind == "thinking_delta":
            self.emit_thinking(delta.get("thinking") or "")
        elif kind == "signature_delta":
            self._current_signature += delta.get("signature") or ""
        elif kind == "text_delta":
            self.emit_text(delta.get("text") or "")

    def _block_stop(self, index: int) -> None:
        if self._block_types.pop(index, None) != "thinking":
            return
        if self._current_signature:
            self._signatures.append(self._current_signature)
            self.turn.thinking_signature = BLOCK_SEPARATOR.join(self._signatures)
        _logger.debug("Thinking block closed (signature %d chars)", len(self._current_signature))
        self._current_signature = ""
