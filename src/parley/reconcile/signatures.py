"""Backup and restore of provider-opaque continuation signatures.

Messages are OpenAI-shaped dicts as kept by the message store.  Three
kinds of signature can be attached to an assistant message:

- ``tool_call``: Gemini per-call ``tool_calls[i]._thoughtSignature``
- ``thought``: Gemini message-level ``thoughtSignature``
- ``thinking``: Claude ``thinkingSignature``

Editing history invalidates the signatures after the edit point, so they
are cleared from a cut index onward and can be restored if the edit is
abandoned.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from typing import Any

_logger = logging.getLogger(__name__)

KIND_TOOL_CALL = "tool_call"
KIND_THOUGHT = "thought"
KIND_THINKING = "thinking"

_MESSAGE_FIELDS = {
    KIND_THOUGHT: "thoughtSignature",
    KIND_THINKING: "thinkingSignature",
}


@dataclass(frozen=True)
class SignatureRecord:
    turn_index: int
    kind: str
    signature: str
    part_index: int | None = None


class SignatureStore:
    """Per-cut-point backups of removed signatures.

    At most one backup exists per cut point; clearing again from the same
    index replaces it.  Restoring consumes the backup.
    """

    def __init__(self) -> None:
        self._backups: dict[int, list[SignatureRecord]] = {}

    @staticmethod
    def extract(message: dict[str, Any], tool_call_index: int = 0) -> str | None:
        """Signature a continuation request has to echo for *message*."""
        if not message:
            return None
        tool_calls = message.get("tool_calls") or []
        if 0 <= tool_call_index < len(tool_calls):
            sig = tool_calls[tool_call_index].get("_thoughtSignature")
            if sig:
                return sig
        return message.get("thoughtSignature") or message.get("thinkingSignature") or None

    def clear(
        self,
        messages: list[dict[str, Any]],
        from_index: int,
        backup: bool = True,
    ) -> int:
        """Remove every signature at or after *from_index*; returns the count."""
        removed: list[SignatureRecord] = []
        for i in range(max(0, from_index), len(messages)):
            msg = messages[i]
            for j, tc in enumerate(msg.get("tool_calls") or []):
                sig = tc.pop("_thoughtSignature", None)
                if sig:
                    removed.append(SignatureRecord(i, KIND_TOOL_CALL, sig, part_index=j))
            for kind, key in _MESSAGE_FIELDS.items():
                sig = msg.pop(key, None)
                if sig:
                    removed.append(SignatureRecord(i, kind, sig))

        if backup and removed:
            self._backups[from_index] = removed
        if removed:
            _logger.info("Cleared %d signatures from message #%d", len(removed), from_index)
        return len(removed)

    def restore(self, messages: list[dict[str, Any]], from_index: int) -> int:
        """Put back the signatures cleared at *from_index*; 0 when no backup."""
        records = self._backups.pop(from_index, None)
        if not records:
            return 0
        restored = 0
        for rec in records:
            if rec.turn_index >= len(messages):
                _logger.warning("Cannot restore signature for missing message #%d", rec.turn_index)
                continue
            msg = messages[rec.turn_index]
            if rec.kind == KIND_TOOL_CALL:
                tool_calls = msg.get("tool_calls") or []
                if rec.part_index is None or rec.part_index >= len(tool_calls):
                    _logger.warning(
                        "Cannot restore tool-call signature #%s on message #%d",
                        rec.part_index, rec.turn_index,
                    )
                    continue
                tool_calls[rec.part_index]["_thoughtSignature"] = rec.signature
            else:
                msg[_MESSAGE_FIELDS[rec.kind]] = rec.signature
            restored += 1
        return restored

    def has_backup(self, from_index: int) -> bool:
        return from_index in self._backups

    def clear_backups(self) -> None:
        self._backups.clear()


def has_signatures(messages: list[dict[str, Any]], from_index: int = 0) -> bool:
    for msg in messages[max(0, from_index):]:
        if msg.get("thoughtSignature") or msg.get("thinkingSignature"):
            return True
        if any(tc.get("_thoughtSignature") for tc in msg.get("tool_calls") or []):
            return True
    return False


def sanitize_for_export(message: dict[str, Any]) -> dict[str, Any]:
    """Copy of *message* without private (``_``-prefixed) tool-call fields."""
    clean = copy.deepcopy(message)
    if clean.get("tool_calls"):
        clean["tool_calls"] = [
            {k: v for k, v in tc.items() if not k.startswith("_")}
            for tc in clean["tool_calls"]
        ]
    return clean
