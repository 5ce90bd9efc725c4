"""Provider message envelopes carrying tool calls and their results.

Each builder takes the detected calls plus their result envelopes (same
order) and returns the messages to append before re-sending.  Markup
mode replaces native tool messages with plain ``<tool_use>`` /
``<tool_use_result>`` text for any provider.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Sequence, Union

from parley.core.sinks import MessageBuilder
from parley.reconcile.signatures import sanitize_for_export
from parley.types import ProviderFormat, ToolCall, ToolResultEnvelope

_logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------

@dataclass
class OpenAIMessage:
    role: str
    content: Any = ""
    tool_calls: list[dict[str, Any]] | None = None
    tool_call_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls is not None:
            data["tool_calls"] = self.tool_calls
        if self.tool_call_id is not None:
            data["tool_call_id"] = self.tool_call_id
        data.update(self.extra)
        return data


@dataclass
class ClaudeMessage:
    role: str
    content: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "content": list(self.content)}


@dataclass
class GeminiContent:
    role: str  # "user" | "model"
    parts: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "parts": list(self.parts)}


ProviderMessage = Union[OpenAIMessage, ClaudeMessage, GeminiContent]


# ---------------------------------------------------------------------------
# Result helpers
# ---------------------------------------------------------------------------

def enrich_tool_result(result: Any) -> Any:
    """Flatten an MCP ``content`` array into ``{text, image|images}``.

    Other keys of *result* are kept; results without a usable content
    array are returned unchanged.
    """
    if not isinstance(result, dict) or not isinstance(result.get("content"), list):
        return result
    texts: list[str] = []
    images: list[dict[str, str]] = []
    for item in result["content"]:
        if not isinstance(item, dict):
            continue
        if item.get("type") == "text" and item.get("text"):
            texts.append(item["text"])
        elif item.get("type") == "image" and item.get("data"):
            mime = item.get("mimeType") or item.get("media_type") or "image/png"
            images.append({"type": "image_url", "url": f"data:{mime};base64,{item['data']}"})
    if not texts and not images:
        return result

    converted = dict(result)
    if texts:
        converted["text"] = "\n".join(texts)
    if len(images) == 1:
        converted["image"] = images[0]["url"]
    elif images:
        converted["images"] = images
    return converted


def _decode(content: str) -> Any:
    try:
        return json.loads(content)
    except (TypeError, ValueError):
        return content


def _name_for(index: int, result: ToolResultEnvelope, calls: Sequence[ToolCall]) -> str:
    if result.tool_name:
        return result.tool_name
    if index < len(calls):
        return calls[index].name
    for call in calls:
        if call.id in (result.original_id, result.tool_call_id):
            return call.name
    return "unknown"


def _arguments_json(call: ToolCall) -> str:
    return json.dumps(call.arguments, ensure_ascii=False)


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def build_openai_tool_messages(
    calls: Sequence[ToolCall], results: Sequence[ToolResultEnvelope],
) -> list[OpenAIMessage]:
    """Chat Completions: assistant ``tool_calls`` message then ``tool`` messages.

    Private signature fields stay on the stored turn and are not sent.
    """
    assistant = sanitize_for_export({"tool_calls": [c.to_openai() for c in calls]})
    messages = [OpenAIMessage(role="assistant", content="", tool_calls=assistant["tool_calls"])]
    for result in results:
        messages.append(OpenAIMessage(role="tool", content=result.content, tool_call_id=result.tool_call_id))
    return messages


def _responses_output(content: str) -> list[dict[str, Any]]:
    value = _decode(content)
    parts: list[dict[str, Any]] = []
    if isinstance(value, dict):
        if value.get("text"):
            parts.append({"type": "input_text", "text": value["text"]})
        image = value.get("image")
        if isinstance(image, str):
            url = image if image.startswith("data:") else f"data:image/png;base64,{image}"
            parts.append({"type": "input_image", "image_url": url})
        elif isinstance(image, dict) and image.get("data"):
            mime = image.get("mimeType", "image/png")
            parts.append({"type": "input_image", "image_url": f"data:{mime};base64,{image['data']}"})
        rest = {k: v for k, v in value.items() if k not in ("text", "image")}
        if rest:
            parts.append({"type": "input_text", "text": json.dumps(rest, ensure_ascii=False)})
    if not parts:
        text = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)
        parts.append({"type": "input_text", "text": text})
    return parts


def build_openai_responses_tool_messages(
    calls: Sequence[ToolCall], results: Sequence[ToolResultEnvelope],
) -> list[OpenAIMessage]:
    """Responses API: ``function_calls`` assistant item then ``function_call_output`` items."""
    messages = [OpenAIMessage(role="assistant", content="", extra={
        "function_calls": [
            {"id": c.id, "type": "function", "name": c.name, "arguments": _arguments_json(c)}
            for c in calls
        ],
    })]
    for result in results:
        messages.append(OpenAIMessage(role="tool", content=_responses_output(result.content), extra={
            "type": "function_call_output",
            "function_call_id": result.tool_call_id,
        }))
    return messages


def build_claude_tool_messages(
    calls: Sequence[ToolCall], results: Sequence[ToolResultEnvelope],
) -> list[ClaudeMessage]:
    """Assistant ``tool_use`` blocks then one user message of ``tool_result`` blocks."""
    assistant = ClaudeMessage(role="assistant", content=[
        {"type": "tool_use", "id": c.id, "name": c.name, "input": dict(c.arguments)}
        for c in calls
    ])
    user = ClaudeMessage(role="user", content=[
        {
            "type": "tool_result",
            "tool_use_id": r.tool_call_id,
            "content": r.content,
            **({"is_error": True} if r.is_error else {}),
        }
        for r in results
    ])
    return [assistant, user]


def build_gemini_tool_messages(
    calls: Sequence[ToolCall], results: Sequence[ToolResultEnvelope],
) -> list[GeminiContent]:
    """Model ``functionCall`` parts then user ``functionResponse`` parts.

    A call's thought signature rides on its ``functionCall`` part; Gemini
    rejects the follow-up request without it.
    """
    model_parts: list[dict[str, Any]] = []
    for call in calls:
        part: dict[str, Any] = {"functionCall": {"name": call.name, "args": dict(call.arguments)}}
        if call.signature:
            part["thoughtSignature"] = call.signature
        model_parts.append(part)

    response_parts: list[dict[str, Any]] = []
    for i, result in enumerate(results):
        value = _decode(result.content)
        response: dict[str, Any] = {
            "name": _name_for(i, result, calls),
            "response": {"result": value},
        }
        # minted ids mean the provider never sent one
        if result.tool_call_id and not result.tool_call_id.startswith("gemini_"):
            response["id"] = result.tool_call_id
        response_parts.append({"functionResponse": response})

    return [GeminiContent(role="model", parts=model_parts), GeminiContent(role="user", parts=response_parts)]


def build_markup_tool_messages(
    calls: Sequence[ToolCall], results: Sequence[ToolResultEnvelope],
) -> list[OpenAIMessage]:
    """Plain-text tool round trip for models without native tool calling."""
    call_text = "\n".join(
        f"<tool_use>\n  <name>{c.name}</name>\n  <arguments>{_arguments_json(c)}</arguments>\n</tool_use>"
        for c in calls
    )
    result_text = "\n".join(
        f"<tool_use_result>\n  <name>{_name_for(i, r, calls)}</name>\n"
        f"  <result>{r.content}</result>\n</tool_use_result>"
        for i, r in enumerate(results)
    )
    return [
        OpenAIMessage(role="assistant", content=call_text),
        OpenAIMessage(role="user", content=result_text),
    ]


_BUILDERS: dict[ProviderFormat, MessageBuilder] = {
    ProviderFormat.OPENAI: build_openai_tool_messages,
    ProviderFormat.CLAUDE: build_claude_tool_messages,
    ProviderFormat.GEMINI: build_gemini_tool_messages,
}


def builder_for(
    fmt: ProviderFormat | str, *, markup: bool = False, responses_api: bool = False,
) -> MessageBuilder:
    """Resolve the message builder for *fmt*."""
    fmt = ProviderFormat.parse(fmt)
    if markup:
        return build_markup_tool_messages
    if responses_api and fmt is ProviderFormat.OPENAI:
        return build_openai_responses_tool_messages
    return _BUILDERS[fmt]


def messages_to_dicts(messages: Sequence[Any]) -> list[dict[str, Any]]:
    """Wire form of builder output; plain dicts pass through."""
    out = []
    for message in messages:
        out.append(message.to_dict() if hasattr(message, "to_dict") else dict(message))
    return out
