"""Tests for the provider tool-message builders."""

import json

from parley.messages.builders import (
    build_claude_tool_messages,
    build_gemini_tool_messages,
    build_markup_tool_messages,
    build_openai_responses_tool_messages,
    build_openai_tool_messages,
    builder_for,
    enrich_tool_result,
    messages_to_dicts,
)
from parley.types import ToolCall, ToolResultEnvelope


def _pair(call_id="call_1", content='{"ok": true}', is_error=False, signature=None):
    call = ToolCall(id=call_id, name="lookup", arguments={"q": "x"}, signature=signature)
    result = ToolResultEnvelope(
        tool_call_id=call_id, original_id=call_id, tool_name="lookup",
        content=content, is_error=is_error,
    )
    return [call], [result]


class TestEnrich:
    def test_mcp_content_flattened(self):
        result = enrich_tool_result({
            "content": [
                {"type": "text", "text": "line 1"},
                {"type": "text", "text": "line 2"},
                {"type": "image", "data": "QUJD", "mimeType": "image/jpeg"},
            ],
            "meta": 1,
        })
        assert result["text"] == "line 1\nline 2"
        assert result["image"] == "data:image/jpeg;base64,QUJD"
        assert result["meta"] == 1

    def test_multiple_images(self):
        result = enrich_tool_result({"content": [
            {"type": "image", "data": "A"}, {"type": "image", "data": "B"},
        ]})
        assert [i["url"] for i in result["images"]] == [
            "data:image/png;base64,A", "data:image/png;base64,B",
        ]

    def test_passthrough(self):
        assert enrich_tool_result("plain") == "plain"
        assert enrich_tool_result({"content": []}) == {"content": []}


class TestOpenAI:
    def test_chat_completions(self):
        calls, results = _pair(signature="sig")
        assistant, tool = messages_to_dicts(build_openai_tool_messages(calls, results))
        assert assistant["role"] == "assistant"
        assert assistant["tool_calls"][0]["function"] == {"name": "lookup", "arguments": '{"q": "x"}'}
        assert "_thoughtSignature" not in assistant["tool_calls"][0]
        assert calls[0].signature == "sig"
        assert tool == {"role": "tool", "content": '{"ok": true}', "tool_call_id": "call_1"}

    def test_responses_api(self):
        calls, results = _pair(content=json.dumps({"text": "hi", "image": "QUJD", "n": 2}))
        assistant, output = messages_to_dicts(build_openai_responses_tool_messages(calls, results))
        assert assistant["function_calls"][0]["arguments"] == '{"q": "x"}'
        assert output["type"] == "function_call_output"
        assert output["function_call_id"] == "call_1"
        assert output["content"] == [
            {"type": "input_text", "text": "hi"},
            {"type": "input_image", "image_url": "data:image/png;base64,QUJD"},
            {"type": "input_text", "text": '{"n": 2}'},
        ]

    def test_responses_plain_string(self):
        calls, results = _pair(content="just text")
        output = build_openai_responses_tool_messages(calls, results)[1]
        assert output.content == [{"type": "input_text", "text": "just text"}]


class TestClaude:
    def test_blocks(self):
        calls, results = _pair(call_id="toolu_1", is_error=True)
        assistant, user = build_claude_tool_messages(calls, results)
        assert assistant.to_dict()["content"] == [
            {"type": "tool_use", "id": "toolu_1", "name": "lookup", "input": {"q": "x"}},
        ]
        assert user.role == "user"
        assert user.content == [
            {"type": "tool_result", "tool_use_id": "toolu_1", "content": '{"ok": true}', "is_error": True},
        ]


class TestGemini:
    def test_parts(self):
        calls, results = _pair(call_id="fc-1", signature="ts")
        model, user = build_gemini_tool_messages(calls, results)
        assert model.to_dict() == {
            "role": "model",
            "parts": [{"functionCall": {"name": "lookup", "args": {"q": "x"}}, "thoughtSignature": "ts"}],
        }
        assert user.parts == [{"functionResponse": {
            "name": "lookup", "response": {"result": {"ok": True}}, "id": "fc-1",
        }}]

    def test_minted_id_omitted(self):
        calls, results = _pair(call_id="gemini_1_1_abc", content="not json")
        response = build_gemini_tool_messages(calls, results)[1].parts[0]["functionResponse"]
        assert "id" not in response
        assert response["response"] == {"result": "not json"}


class TestMarkup:
    def test_text_round_trip(self):
        calls, results = _pair()
        assistant, user = build_markup_tool_messages(calls, results)
        assert assistant.content == (
            '<tool_use>\n  <name>lookup</name>\n  <arguments>{"q": "x"}</arguments>\n</tool_use>'
        )
        assert user.content == (
            '<tool_use_result>\n  <name>lookup</name>\n  <result>{"ok": true}</result>\n</tool_use_result>'
        )


class TestBuilderFor:
    def test_lookup(self):
        assert builder_for("claude") is build_claude_tool_messages
        assert builder_for("gemini", markup=True) is build_markup_tool_messages
        assert builder_for("openai", responses_api=True) is build_openai_responses_tool_messages
        assert builder_for("claude", responses_api=True) is build_claude_tool_messages

    def test_dicts_pass_through(self):
        assert messages_to_dicts([{"role": "user"}]) == [{"role": "user"}]
