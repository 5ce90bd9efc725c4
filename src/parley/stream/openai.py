"""OpenAI stream parser: Chat Completions and Responses API events."""

from __future__ import annotations

import logging
import re
from typing import Any

from parley.stream.base import StreamParser
from parley.types import ProviderFormat

_logger = logging.getLogger(__name__)

_DATA_URI = re.compile(r"^data:image/[^;]+;base64,(.+)$", re.DOTALL)


class OpenAIStreamParser(StreamParser):
    """Parse ``chat.completion.chunk`` deltas or ``response.*`` events.

    The dialect is detected per payload: typed ``response.*`` events (and
    bare ``output`` arrays) use the Responses API path, everything else is
    treated as a Chat Completions chunk.
    """

    format = ProviderFormat.OPENAI

    def reset_provider_state(self) -> None:
        self._arg_deltas: set[int] = set()

    def handle_payload(self, data: dict[str, Any]) -> None:
        if data.get("error"):
            self._error(data["error"])
            return
        event_type = data.get("type")
        if isinstance(event_type, str) and (event_type.startswith("response.") or event_type == "error"):
            self._responses_event(event_type, data)
        elif isinstance(data.get("output"), list):
            self._responses_output(data)
        else:
            self._chat_chunk(data)

    # ------------------------------------------------------------------
    # Chat Completions
    # ------------------------------------------------------------------

    def _chat_chunk(self, data: dict[str, Any]) -> None:
        choices = data.get("choices") or []
        if not choices:
            return
        choice = choices[0]
        delta = choice.get("delta") or {}

        reasoning = delta.get("reasoning_content") or delta.get("reasoning")
        if isinstance(reasoning, str):
            self.emit_thinking(reasoning)

        content = delta.get("content")
        if isinstance(content, str):
            self.emit_text(content)
        elif isinstance(content, list):
            self._content_array(content)

        if delta.get("tool_calls"):
            self.native_calls.feed(delta)

        if choice.get("finish_reason"):
            self.finish_reason = choice["finish_reason"]

    def _content_array(self, items: list[Any]) -> None:
        for item in items:
            if not isinstance(item, dict):
                continue
            if item.get("type") == "text":
                self.emit_raw_text(item.get("text") or "")
            elif item.get("type") == "image_url":
                image = item.get("image_url") or {}
                url = image.get("url")
                if not url or image.get("partial"):
                    continue
                match = _DATA_URI.match(url)
                self.emit_image(url, payload_chars=len(match.group(1)) if match else 0)

    # ------------------------------------------------------------------
    # Responses API
    # ------------------------------------------------------------------

    def _responses_event(self, event_type: str, data: dict[str, Any]) -> None:
        if event_type == "response.output_text.delta":
            self.emit_text(data.get("delta") or "")
        elif event_type in ("response.reasoning_summary_text.delta", "response.reasoning_text.delta"):
            self.emit_thinking(data.get("delta") or "")
        elif event_type == "response.output_item.added":
            item = data.get("item") or {}
            if item.get("type") == "function_call":
                self.native_calls.add_fragment(
                    data.get("output_index", 0),
                    call_id=item.get("call_id") or item.get("id"),
                    name=item.get("name"),
                )
        elif event_type == "response.function_call_arguments.delta":
            index = data.get("output_index", 0)
            self._arg_deltas.add(index)
            self.native_calls.add_fragment(index, arguments=data.get("delta"))
        elif event_type == "response.output_item.done":
            self._item_done(data.get("output_index", 0), data.get("item") or {})
        elif event_type == "response.completed":
            self._completed(data.get("response") or {})
        elif event_type in ("response.failed", "error"):
            response = data.get("response") or {}
            self._error(response.get("error") or data.get("error") or data)

    def _item_done(self, index: int, item: dict[str, Any]) -> None:
        if item.get("type") == "function_call":
            # arguments arrive whole here when no delta events were sent
            self.native_calls.add_fragment(
                index,
                call_id=item.get("call_id") or item.get("id"),
                arguments=None if index in self._arg_deltas else item.get("arguments"),
            )
        elif item.get("type") == "reasoning" and item.get("encrypted_content"):
            self.turn.encrypted_content = item["encrypted_content"]

    def _completed(self, response: dict[str, Any]) -> None:
        for item in response.get("output") or []:
            if item.get("type") == "reasoning" and item.get("encrypted_content"):
                self.turn.encrypted_content = item["encrypted_content"]
        if response.get("status"):
            self.finish_reason = response["status"]
        if not self.turn.text and response.get("output_text"):
            self.emit_text(response["output_text"])

    def _responses_output(self, data: dict[str, Any]) -> None:
        """Snapshot-style payloads carrying a whole ``output`` array."""
        for item in data["output"]:
            if not isinstance(item, dict):
                continue
            if item.get("type") == "reasoning" and isinstance(item.get("content"), str):
                self.emit_thinking(item["content"])
            elif item.get("type") == "message":
                content = item.get("content")
                text = item.get("text")
                if not text and isinstance(content, list) and content:
                    text = content[0].get("text") if isinstance(content[0], dict) else None
                if text:
                    self.emit_text(text)
                elif isinstance(content, list):
                    self._content_array(content)
        if data.get("output_text") and not self.turn.text:
            self.emit_text(data["output_text"])

    # ------------------------------------------------------------------

    def _error(self, error: Any) -> None:
        if isinstance(error, dict):
            code = error.get("code") or error.get("type")
            self.emit_error(code, str(error.get("message") or ""), error.get("type"))
        else:
            self.emit_error(None, str(error))
