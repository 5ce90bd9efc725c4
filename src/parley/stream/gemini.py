"""Gemini ``streamGenerateContent`` parser (SSE or bare JSON lines)."""

from __future__ import annotations

import json
import logging
from typing import Any

from parley.stream.base import StreamParser
from parley.types import ProviderFormat

_logger = logging.getLogger(__name__)


class GeminiStreamParser(StreamParser):
    format = ProviderFormat.GEMINI
    allow_bare_lines = True

    def reset_provider_state(self) -> None:
        self._call_index = 0

    def decode_payload(self, payload: str) -> Any:
        # JSON-array streams put one element per line between "[", "," and "]"
        payload = payload.strip().lstrip("[,").rstrip(",]").strip()
        if not payload:
            return {}
        return json.loads(payload)

    def handle_payload(self, data: dict[str, Any]) -> None:
        error = data.get("error")
        if error:
            if isinstance(error, dict):
                self.emit_error(error.get("code"), str(error.get("message") or ""), error.get("status"))
            else:
                self.emit_error(None, str(error))
            return

        candidates = data.get("candidates") or []
        candidate = candidates[0] if candidates else {}
        for part in (candidate.get("content") or {}).get("parts") or []:
            self._part(part)

        self._reasoning(data.get("reasoning"))
        self._reasoning(((data.get("metadata") or {}).get("gemini") or {}).get("reasoning"))

        if candidate.get("groundingMetadata"):
            self.turn.grounding = candidate["groundingMetadata"]
        if candidate.get("finishReason"):
            self.finish_reason = candidate["finishReason"]

    def _part(self, part: dict[str, Any]) -> None:
        signature = part.get("thoughtSignature")
        if signature:
            self.turn.thought_signature = signature

        if part.get("thought"):
            self.emit_thinking(part.get("text") or "")
        elif part.get("functionCall"):
            call = part["functionCall"]
            self.native_calls.add_fragment(
                self._call_index,
                call_id=call.get("id"),
                name=call.get("name"),
                arguments=json.dumps(call.get("args") or {}),
                signature=signature,
            )
            self._call_index += 1
        elif part.get("text"):
            self.emit_text(part["text"])
        elif part.get("inlineData"):
            inline = part["inlineData"]
            data = inline.get("data") or ""
            mime = inline.get("mimeType") or "image/png"
            self.emit_image(f"data:{mime};base64,{data}", payload_chars=len(data))

    def _reasoning(self, cumulative: Any) -> None:
        """Some proxies resend the whole reasoning so far; keep only the new tail."""
        if not isinstance(cumulative, str):
            return
        increment = cumulative[len(self.turn.thinking):]
        if increment:
            self.emit_thinking(increment)
