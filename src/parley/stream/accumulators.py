"""Tool-call accumulation from streaming deltas.

Two variants:

- :class:`NativeToolCallAccumulator` reassembles provider-native tool
  calls whose id/name/arguments arrive as indexed fragments.
- :class:`MarkupToolCallAccumulator` finds ``<tool_use>`` markup inside
  the text channel, for providers/models without native tool calling.
"""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any
from xml.sax.saxutils import escape

from parley.types import ToolCall

_logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Native accumulator
# ---------------------------------------------------------------------------

class NativeToolCallAccumulator:
    """Accumulate native tool calls from streaming deltas.

    Each index accumulates ``{id, name, arguments}``: the id is replaced
    when a fragment carries one, name and argument fragments are
    concatenated.  A call is complete only when it has a name and its
    argument text parses as JSON.
    """

    def __init__(self) -> None:
        self._calls: dict[int, dict[str, Any]] = {}

    def feed(self, delta: dict[str, Any]) -> None:
        """Process ``delta.tool_calls`` from a single OpenAI-style chunk."""
        tc_list = delta.get("tool_calls")
        if not tc_list:
            return
        for position, tc in enumerate(tc_list):
            func = tc.get("function") or {}
            self.add_fragment(
                tc.get("index", position),
                call_id=tc.get("id"),
                name=func.get("name"),
                arguments=func.get("arguments"),
            )

    def add_fragment(
        self,
        index: int,
        call_id: str | None = None,
        name: str | None = None,
        arguments: str | None = None,
        signature: str | None = None,
    ) -> None:
        entry = self._calls.setdefault(
            index, {"id": "", "name": "", "arguments": "", "signature": None},
        )
        if call_id:
            entry["id"] = call_id
        if name:
            entry["name"] += name
        if arguments:
            entry["arguments"] += arguments
        if signature:
            entry["signature"] = signature

    def has_calls(self) -> bool:
        return bool(self._calls)

    def __len__(self) -> int:
        return len(self._calls)

    def completed_calls(self) -> list[ToolCall]:
        """Parse accumulated fragments; incomplete calls are logged and skipped."""
        result: list[ToolCall] = []
        for idx in sorted(self._calls):
            entry = self._calls[idx]
            name = entry["name"]
            raw_args = entry["arguments"]
            if not name:
                _logger.warning("Dropping tool call #%d without a name", idx)
                continue
            try:
                args = json.loads(raw_args) if raw_args.strip() else {}
            except json.JSONDecodeError as e:
                _logger.warning(
                    "Dropping tool call #%d (%s): arguments are not valid JSON: %s",
                    idx, name, e,
                )
                continue
            if not isinstance(args, dict):
                _logger.warning("Dropping tool call #%d (%s): arguments are not an object", idx, name)
                continue
            result.append(ToolCall(
                id=entry["id"], name=name, arguments=args, signature=entry["signature"],
            ))
        return result

    def reset(self) -> None:
        self._calls.clear()


# ---------------------------------------------------------------------------
# Structured-markup accumulator
# ---------------------------------------------------------------------------

TOOL_OPEN = "<tool_use>"
TOOL_CLOSE = "</tool_use>"
THINK_OPEN = "<thinking>"
THINK_CLOSE = "</thinking>"

_MAX_BUFFER = 50_000
_MAX_TOOL_BLOCK = 10_000
_MAX_THINK_BLOCK = 20_000

_TOOL_BLOCK = re.compile(
    r"<tool_use>\s*<name>(.*?)</name>\s*<arguments>(.*?)</arguments>\s*</tool_use>",
    re.DOTALL,
)


def extract_markup_tool_calls(text: str, id_prefix: str = "markup_tool") -> list[ToolCall]:
    """Non-streaming extraction of every ``<tool_use>`` block in *text*."""
    calls: list[ToolCall] = []
    if not text:
        return calls
    stamp = int(time.time() * 1000)
    for match in _TOOL_BLOCK.finditer(text):
        name = match.group(1).strip()
        raw_args = match.group(2).strip()
        try:
            args = json.loads(raw_args) if raw_args else {}
        except json.JSONDecodeError as e:
            _logger.warning("Invalid arguments for markup tool call %s: %s", name, e)
            continue
        if not name or not isinstance(args, dict):
            continue
        calls.append(ToolCall(id=f"{id_prefix}_{stamp}_{len(calls)}", name=name, arguments=args))
    return calls


@dataclass
class MarkupDelta:
    display: str = ""
    has_calls: bool = False
    error: str | None = None


def _held_suffix(buffer: str, markers: tuple[str, ...]) -> int:
    """Length of the longest buffer suffix that is a proper prefix of a marker."""
    best = 0
    for marker in markers:
        for size in range(min(len(marker) - 1, len(buffer)), best, -1):
            if marker.startswith(buffer[-size:]):
                best = size
                break
    return best


class MarkupToolCallAccumulator:
    """Strip ``<tool_use>``/``<thinking>`` markup from a text stream.

    ``feed()`` returns only the newly visible text.  Markers split across
    chunks are held back until complete.  Oversized blocks are dropped and
    reported via ``MarkupDelta.error``; the stream itself continues.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._mode = "text"  # "text" | "tool" | "thinking"
        self._block = ""
        self._calls: list[ToolCall] = []
        self._thinking: list[str] = []
        self._display = ""
        self._seq = 0

    @property
    def display_text(self) -> str:
        return self._display

    def completed_calls(self) -> list[ToolCall]:
        return list(self._calls)

    def thinking_blocks(self) -> list[str]:
        return list(self._thinking)

    def feed(self, chunk: str) -> MarkupDelta:
        if not chunk:
            return MarkupDelta(has_calls=bool(self._calls))
        try:
            return self._feed(chunk)
        except Exception as e:
            _logger.exception("Markup tool-call parsing failed; continuing as plain text")
            self._mode = "text"
            self._block = ""
            self._buffer = ""
            return MarkupDelta(has_calls=bool(self._calls), error=str(e))

    def flush(self) -> str:
        """Return held-back text at stream end.

        An unterminated tool block is dropped; unterminated thinking is kept
        as a thinking block.
        """
        tail = ""
        if self._mode == "text":
            tail = self._buffer
        elif self._mode == "thinking":
            content = (self._block + self._buffer).strip()
            if content:
                self._thinking.append(content)
        else:
            _logger.warning("Discarding unterminated <tool_use> block at stream end")
        self._buffer = ""
        self._block = ""
        self._mode = "text"
        self._display += tail
        return tail

    def reset(self) -> None:
        self._buffer = ""
        self._mode = "text"
        self._block = ""
        self._calls.clear()
        self._thinking.clear()
        self._display = ""
        self._seq = 0

    # ------------------------------------------------------------------

    def _feed(self, chunk: str) -> MarkupDelta:
        out = MarkupDelta()
        self._buffer += chunk

        if len(self._buffer) > _MAX_BUFFER:
            _logger.error("Markup buffer exceeded %d chars, possible malformed markup", _MAX_BUFFER)
            self._buffer = self._buffer[-1000:]
            self._mode = "text"
            self._block = ""
            out.error = "Buffer overflow, possible malformed markup"

        while self._buffer:
            if self._mode == "text":
                positions = [
                    (self._buffer.find(m), m) for m in (TOOL_OPEN, THINK_OPEN)
                ]
                found = [(i, m) for i, m in positions if i >= 0]
                if found:
                    idx, marker = min(found)
                    out.display += self._buffer[:idx]
                    self._buffer = self._buffer[idx + len(marker):]
                    self._mode = "tool" if marker == TOOL_OPEN else "thinking"
                    self._block = ""
                    continue
                keep = _held_suffix(self._buffer, (TOOL_OPEN, THINK_OPEN))
                cut = len(self._buffer) - keep
                out.display += self._buffer[:cut]
                self._buffer = self._buffer[cut:]
                break

            close = TOOL_CLOSE if self._mode == "tool" else THINK_CLOSE
            idx = self._buffer.find(close)
            if idx >= 0:
                self._block += self._buffer[:idx]
                self._buffer = self._buffer[idx + len(close):]
                self._close_block()
                self._mode = "text"
                continue

            keep = _held_suffix(self._buffer, (close,))
            cut = len(self._buffer) - keep
            self._block += self._buffer[:cut]
            self._buffer = self._buffer[cut:]
            limit = _MAX_TOOL_BLOCK if self._mode == "tool" else _MAX_THINK_BLOCK
            if len(self._block) > limit:
                _logger.error("Single %s block exceeded %d chars, skipped", self._mode, limit)
                out.error = f"Single {self._mode} block too large"
                self._mode = "text"
                self._block = ""
                self._buffer = ""
            break

        self._display += out.display
        out.has_calls = bool(self._calls)
        return out

    def _close_block(self) -> None:
        if self._mode == "thinking":
            content = self._block.strip()
            if content:
                self._thinking.append(content)
        else:
            calls = extract_markup_tool_calls(
                TOOL_OPEN + self._block + TOOL_CLOSE, id_prefix=f"markup_tool_{self._seq}",
            )
            if calls:
                self._calls.extend(calls)
            else:
                _logger.warning("No tool call could be extracted from <tool_use> block")
            self._seq += 1
        self._block = ""


def tools_to_markup_prompt(tools: list[dict[str, Any]]) -> str:
    """Describe *tools* (OpenAI, Claude or MCP schemas) for a system prompt."""
    if not tools:
        return ""
    if len(tools) > 20:
        _logger.warning("%d tools described in markup; the system prompt may get long", len(tools))

    lines = [
        "",
        "In this environment you have access to a set of tools you can use to answer the user's question.",
        "",
        "## Tool Use Formatting",
        "",
        "Tool use is formatted using XML-style tags. The tool name is enclosed in opening and closing tags, "
        "and the arguments are a JSON object. Here's the structure:",
        "",
        TOOL_OPEN,
        "  <name>{tool_name}</name>",
        "  <arguments>{json_arguments}</arguments>",
        TOOL_CLOSE,
        "",
        "## Available Tools",
        "",
    ]
    for tool in tools:
        func = tool.get("function") or {}
        name = tool.get("name") or func.get("name")
        if not name:
            continue
        description = tool.get("description") or func.get("description") or "No description"
        schema = (
            tool.get("inputSchema") or tool.get("input_schema")
            or tool.get("parameters") or func.get("parameters") or {}
        )
        lines.extend([
            "<tool>",
            f"  <name>{escape(name)}</name>",
            f"  <description>{escape(description)}</description>",
            f"  <arguments>{escape(json.dumps({'jsonSchema': schema}, ensure_ascii=False))}</arguments>",
            "</tool>",
            "",
        ])
    lines.append(
        "Call one tool at a time or several in sequence; the results come back "
        "inside <tool_use_result> tags."
    )
    return "\n".join(lines)
