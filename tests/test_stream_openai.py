"""Tests for the OpenAI stream parser (Chat Completions and Responses API)."""

import pytest

from parley.config import EngineConfig, StreamSpec
from parley.core.context import EngineContext
from parley.types import EventType, ImagePart, RequestState, TextPart, ThinkingPart

PNG = "data:image/png;base64,ABCD"


def chunk(content=None, *, reasoning=None, tool_calls=None, finish=None):
    delta = {}
    if content is not None:
        delta["content"] = content
    if reasoning is not None:
        delta["reasoning_content"] = reasoning
    if tool_calls is not None:
        delta["tool_calls"] = tool_calls
    return {"choices": [{"delta": delta, "finish_reason": finish}]}


@pytest.fixture
def small_context():
    def _make(**stream):
        ctx = EngineContext(EngineConfig(stream=StreamSpec(**stream)))
        contexts.append(ctx)
        return ctx

    contexts = []
    yield _make
    for ctx in contexts:
        ctx.close()


class TestChatCompletions:
    @pytest.mark.asyncio
    async def test_text_stream(self, context, sink, make_reader):
        reader = make_reader([chunk("Hel"), chunk("lo", finish="stop")], done=True)
        turn = await context.stream(reader, "openai", sink=sink, session_id="s1")

        assert turn.text == "Hello"
        assert turn.parts == [TextPart("Hello")]
        assert turn.finish_reason == "stop"
        assert turn.finalized
        assert turn.stats.tokens > 0
        assert sink.incremental == [("Hel", ""), ("Hello", "")]
        assert sink.finals == [[TextPart("Hello")]]
        assert context.message_sink.turns == [turn]
        assert context.message_sink.sessions == ["s1"]
        assert context.state_machine.state is RequestState.COMPLETED

    @pytest.mark.asyncio
    async def test_reasoning_then_text(self, context, make_reader):
        reader = make_reader([chunk(reasoning="hmm"), chunk("ok")])
        turn = await context.stream(reader, "openai")
        assert turn.thinking == "hmm"
        assert turn.parts == [ThinkingPart("hmm"), TextPart("ok")]

    @pytest.mark.asyncio
    async def test_arbitrary_chunking(self, context, make_reader):
        events = [chunk("héllo "), chunk("wörld ✓")]
        turn = await context.stream(make_reader(events, chunk_size=5), "openai")
        assert turn.text == "héllo wörld ✓"

    @pytest.mark.asyncio
    async def test_think_tags_across_deltas(self, context, make_reader):
        reader = make_reader([chunk("<thi"), chunk("nk>plan</th"), chunk("ink>Answer")])
        turn = await context.stream(reader, "openai")
        assert turn.thinking == "plan"
        assert turn.text == "Answer"

    @pytest.mark.asyncio
    async def test_markdown_image(self, context, make_reader):
        reader = make_reader([chunk("see ![c](data:image/png;"), chunk("base64,ABCD)"), chunk(" done")])
        turn = await context.stream(reader, "openai")
        assert turn.parts == [TextPart("see "), ImagePart(PNG, alt="c"), TextPart(" done")]

    @pytest.mark.asyncio
    async def test_content_array(self, context, make_reader):
        reader = make_reader([chunk([
            {"type": "text", "text": "A"},
            {"type": "image_url", "image_url": {"url": PNG}},
            {"type": "image_url", "image_url": {"url": "data:image/png;base64,zz", "partial": True}},
        ])])
        turn = await context.stream(reader, "openai")
        assert turn.parts == [TextPart("A"), ImagePart(PNG)]

    @pytest.mark.asyncio
    async def test_bad_lines_skipped(self, context, make_reader, caplog):
        reader = make_reader(["{not json", "[1, 2]", chunk("fine")])
        turn = await context.stream(reader, "openai")
        assert turn.text == "fine"
        assert "unparsable" in caplog.text

    @pytest.mark.asyncio
    async def test_tool_calls_without_resend(self, context, make_reader):
        reader = make_reader([
            chunk(tool_calls=[{"index": 0, "id": "call_1",
                               "function": {"name": "get_weather", "arguments": '{"ci'}}]),
            chunk(tool_calls=[{"index": 0, "function": {"arguments": 'ty": "Oslo"}'}}],
                  finish="tool_calls"),
        ])
        turn = await context.stream(reader, "openai")

        assert len(turn.tool_calls) == 1
        call = turn.tool_calls[0]
        assert (call.id, call.name, call.arguments) == ("call_1", "get_weather", {"city": "Oslo"})
        assert turn.finish_reason == "tool_calls"
        assert context.state_machine.state is RequestState.COMPLETED

    @pytest.mark.asyncio
    async def test_incomplete_tool_call_dropped(self, context, make_reader):
        reader = make_reader([
            chunk("text"),
            chunk(tool_calls=[{"index": 0, "id": "c", "function": {"name": "f", "arguments": '{"a":'}}]),
        ])
        turn = await context.stream(reader, "openai")
        assert turn.tool_calls == []
        assert turn.text == "text"


class TestCeilings:
    @pytest.mark.asyncio
    async def test_text_truncation(self, small_context, make_reader):
        ctx = small_context(max_text_chars=10)
        reader = make_reader([chunk("12345"), chunk("67890"), chunk("abcde"), chunk("fghij")])
        turn = await ctx.stream(reader, "openai")

        assert turn.truncated
        assert turn.text == "1234567890abcde"
        assert turn.parts == [
            TextPart("1234567890abcde\n\n[Response truncated: text exceeded 10 characters]"),
        ]
        assert reader.cancelled
        assert EventType.STREAM_TRUNCATED in [e.type for e in ctx.bus.history]
        assert ctx.state_machine.state is RequestState.COMPLETED

    @pytest.mark.asyncio
    async def test_image_truncation(self, small_context, make_reader):
        ctx = small_context(max_image_chars=3)
        reader = make_reader([chunk([{"type": "image_url", "image_url": {"url": PNG}}]), chunk("late")])
        turn = await ctx.stream(reader, "openai")
        assert turn.truncated
        assert turn.parts[-1] == TextPart("\n\n[Response truncated: image data exceeded 3 characters]")
        assert "late" not in turn.text

    @pytest.mark.asyncio
    async def test_unterminated_image_counts_toward_ceiling(self, small_context, make_reader):
        ctx = small_context(max_text_chars=100, max_image_chars=1000)
        events = [chunk("hi ![a](data:image/png;base64,")] + [chunk("A" * 1000) for _ in range(50)]
        reader = make_reader(events)
        turn = await ctx.stream(reader, "openai")

        assert turn.truncated
        assert reader.cancelled
        assert turn.text == "hi "
        assert turn.parts == [
            TextPart("hi \n\n[Response truncated: image data exceeded 1,000 characters]"),
        ]


class TestErrors:
    @pytest.mark.asyncio
    async def test_in_band_error(self, context, sink, make_reader):
        reader = make_reader([
            chunk("partial"),
            {"error": {"message": "Too many requests", "type": "requests",
                       "code": "rate_limit_exceeded"}},
            chunk("never"),
        ])
        turn = await context.stream(reader, "openai", sink=sink)

        assert turn.is_error
        assert turn.text == "partial\n\nToo many requests"
        assert turn.error_data == {"code": "rate_limit_exceeded", "message": "Too many requests"}
        assert "Rate limited" in turn.parts[-1].value
        error_event = [e for e in context.bus.history if e.type is EventType.STREAM_ERROR][0]
        assert error_event.data["error_class"] == "rate_limit"
        assert error_event.data["partial_text"] == "partial"
        assert context.state_machine.state is RequestState.ERROR
        assert len(sink.finals) == 1

    @pytest.mark.asyncio
    async def test_responses_failed_event(self, context, make_reader):
        reader = make_reader([{
            "type": "response.failed",
            "response": {"error": {"code": "server_error", "message": "boom"}},
        }])
        turn = await context.stream(reader, "openai")
        assert turn.is_error
        assert turn.text == "boom"


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_mid_stream(self, context, sink):
        class CancellingReader:
            def __init__(self):
                self.reads = 0
                self.cancelled = False

            async def read(self):
                self.reads += 1
                if self.reads == 1:
                    return b'data: {"choices": [{"delta": {"content": "first"}}]}\n\n'
                context.cancel("user")
                return b'data: {"choices": [{"delta": {"content": "second"}}]}\n\n'

            async def cancel(self):
                self.cancelled = True

        reader = CancellingReader()
        turn = await context.stream(reader, "openai", sink=sink)

        assert turn.text == "first"
        assert turn.finalized
        assert reader.cancelled
        assert sink.markers_cleared == 1
        assert context.state_machine.state is RequestState.CANCELLED

    @pytest.mark.asyncio
    async def test_failing_reader_cancel_is_logged(self, context, caplog):
        class BrokenCancelReader:
            def __init__(self):
                self.cancel_calls = 0

            async def read(self):
                context.cancel("user")
                return b'data: {"choices": [{"delta": {"content": "x"}}]}\n\n'

            async def cancel(self):
                self.cancel_calls += 1
                raise RuntimeError("socket already closed")

        reader = BrokenCancelReader()
        turn = await context.stream(reader, "openai")

        assert turn.finalized
        assert reader.cancel_calls == 2
        assert caplog.text.count("Failed to cancel openai reader") == 2


class TestResponsesApi:
    @pytest.mark.asyncio
    async def test_event_stream(self, context, make_reader):
        reader = make_reader([
            {"type": "response.output_item.added", "output_index": 0, "item": {"type": "reasoning"}},
            {"type": "response.reasoning_summary_text.delta", "output_index": 0, "delta": "think"},
            {"type": "response.output_item.done", "output_index": 0,
             "item": {"type": "reasoning", "encrypted_content": "enc123"}},
            {"type": "response.output_text.delta", "output_index": 1, "delta": "Hi"},
            {"type": "response.output_item.added", "output_index": 2,
             "item": {"type": "function_call", "call_id": "call_9", "name": "lookup"}},
            {"type": "response.function_call_arguments.delta", "output_index": 2, "delta": '{"q":'},
            {"type": "response.function_call_arguments.delta", "output_index": 2, "delta": '"x"}'},
            {"type": "response.output_item.done", "output_index": 2,
             "item": {"type": "function_call", "call_id": "call_9", "name": "lookup",
                      "arguments": '{"q":"x"}'}},
            {"type": "response.completed", "response": {"status": "completed"}},
        ])
        turn = await context.stream(reader, "openai")

        assert turn.thinking == "think"
        assert turn.text == "Hi"
        assert turn.encrypted_content == "enc123"
        assert turn.finish_reason == "completed"
        assert [(c.id, c.name, c.arguments) for c in turn.tool_calls] == [
            ("call_9", "lookup", {"q": "x"}),
        ]

    @pytest.mark.asyncio
    async def test_arguments_only_in_done_event(self, context, make_reader):
        reader = make_reader([
            {"type": "response.output_item.added", "output_index": 0,
             "item": {"type": "function_call", "call_id": "c1", "name": "f"}},
            {"type": "response.output_item.done", "output_index": 0,
             "item": {"type": "function_call", "call_id": "c1", "arguments": '{"a": 1}'}},
        ])
        turn = await context.stream(reader, "openai")
        assert turn.tool_calls[0].arguments == {"a": 1}

    @pytest.mark.asyncio
    async def test_output_snapshot(self, context, make_reader):
        reader = make_reader([{"output": [
            {"type": "reasoning", "content": "why"},
            {"type": "message", "content": [{"type": "output_text", "text": "answer"}]},
        ]}])
        turn = await context.stream(reader, "openai")
        assert (turn.thinking, turn.text) == ("why", "answer")


class TestMarkupTools:
    @pytest.mark.asyncio
    async def test_markup_tool_call(self, context, make_reader):
        reader = make_reader([
            chunk("Let me check.<tool_"),
            chunk('use><name>get_weather</name><arguments>{"city": "Oslo"}'),
            chunk("</arguments></tool_use>"),
        ])
        turn = await context.stream(reader, "openai", markup_tools=True)

        assert turn.text == "Let me check."
        assert [(c.name, c.arguments) for c in turn.tool_calls] == [("get_weather", {"city": "Oslo"})]
        assert turn.tool_calls[0].id.startswith("markup_tool_0_")

    @pytest.mark.asyncio
    async def test_native_calls_preferred(self, context, make_reader, caplog):
        reader = make_reader([
            chunk('<tool_use><name>markup</name><arguments>{}</arguments></tool_use>'),
            chunk(tool_calls=[{"index": 0, "id": "n1", "function": {"name": "native", "arguments": "{}"}}]),
        ])
        turn = await context.stream(reader, "openai", markup_tools=True)
        assert [c.name for c in turn.tool_calls] == ["native"]
        assert "using native" in caplog.text

    @pytest.mark.asyncio
    async def test_markup_ignored_when_disabled(self, context, make_reader):
        text = '<tool_use><name>x</name><arguments>{}</arguments></tool_use>'
        turn = await context.stream(make_reader([chunk(text)]), "openai")
        assert turn.tool_calls == []
        assert "<tool_use>" in turn.text
