"""Tests for the parley command line."""

import json

import pytest
from click.testing import CliRunner

from parley.cli import main
from parley.stream.reader import sse_lines

OPENAI_BODY = sse_lines([
    {"choices": [{"delta": {"reasoning_content": "short plan"}}]},
    {"choices": [{"delta": {"content": "Hello there"}, "finish_reason": "stop"}]},
]) + "data: [DONE]\n\n"

CLAUDE_TOOL_BODY = sse_lines([
    {"type": "content_block_start", "index": 0,
     "content_block": {"type": "tool_use", "id": "toolu_1", "name": "search", "input": {"q": "cats"}}},
    {"type": "content_block_stop", "index": 0},
    {"type": "message_stop"},
])


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "parley.yaml"
    path.write_text("log_level: ERROR\n")
    return str(path)


class TestEstimate:
    def test_text(self, runner, config_file):
        result = runner.invoke(main, ["-c", config_file, "estimate", "hello world"])
        assert result.exit_code == 0
        assert result.stdout.strip() == "2"

    def test_file(self, runner, config_file, tmp_path):
        path = tmp_path / "in.txt"
        path.write_text("one two three")
        result = runner.invoke(main, ["-c", config_file, "estimate", "--file", str(path)])
        assert result.stdout.strip() == "3"

    def test_missing_input(self, runner, config_file):
        result = runner.invoke(main, ["-c", config_file, "estimate"])
        assert result.exit_code == 2


class TestReplay:
    def test_json_output(self, runner, config_file, tmp_path):
        path = tmp_path / "body.sse"
        path.write_text(OPENAI_BODY)
        result = runner.invoke(main, ["-c", config_file, "replay", str(path), "-f", "openai",
                                      "--chunk-size", "7", "--json"])
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["text"] == "Hello there"
        assert data["thinking"] == "short plan"
        assert data["finish_reason"] == "stop"
        assert data["parts"][1] == {"type": "text", "text": "Hello there"}
        assert data["stats"]["tokens"] == 4

    def test_stdin(self, runner, config_file):
        result = runner.invoke(main, ["-c", config_file, "replay", "-", "-f", "claude", "--json"],
                               input=CLAUDE_TOOL_BODY)
        assert result.exit_code == 0, result.output
        calls = json.loads(result.stdout)["tool_calls"]
        assert calls == [{"id": "toolu_1", "name": "search", "arguments": {"q": "cats"},
                          "status": "pending"}]

    def test_rich_output(self, runner, config_file, tmp_path):
        path = tmp_path / "body.sse"
        path.write_text(OPENAI_BODY)
        result = runner.invoke(main, ["-c", config_file, "replay", str(path), "-f", "openai"])
        assert result.exit_code == 0, result.output
        assert "Hello there" in result.stdout
        assert "tokens=4" in result.stdout

    def test_unknown_format_rejected(self, runner, config_file, tmp_path):
        path = tmp_path / "body.sse"
        path.write_text(OPENAI_BODY)
        result = runner.invoke(main, ["-c", config_file, "replay", str(path), "-f", "cohere"])
        assert result.exit_code == 2


class TestMain:
    def test_bad_config(self, runner, tmp_path):
        path = tmp_path / "parley.yaml"
        path.write_text("stream: [unclosed\n")
        result = runner.invoke(main, ["-c", str(path), "estimate", "x"])
        assert result.exit_code == 1
        assert "Cannot parse" in result.output

    def test_version(self, runner):
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output
