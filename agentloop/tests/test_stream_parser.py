"""Tests for stream-json output parsing."""

import json

from agentloop.stream_parser import OutputEmitter, ParsedLine, parse_stream_line


def assistant_line(*texts: str) -> str:
    """Build an assistant message line with one text block per text."""
    content = [{"type": "text", "text": text} for text in texts]
    return json.dumps({"type": "assistant", "message": {"content": content}})


class TestParseStreamLine:
    """Tests for parse_stream_line()."""

    def test_assistant_text(self):
        """The first text block of an assistant message is extracted."""
        parsed = parse_stream_line(assistant_line("Reading the task list"))

        assert parsed == ParsedLine("assistant_text", "Reading the task list")

    def test_assistant_without_text_blocks(self):
        """Tool-use-only assistant messages have nothing to display."""
        line = json.dumps(
            {"type": "assistant", "message": {"content": [{"type": "tool_use", "name": "Bash"}]}}
        )

        assert parse_stream_line(line).kind == "none"

    def test_assistant_skips_empty_text(self):
        """Empty text blocks are skipped in favour of the next one."""
        parsed = parse_stream_line(assistant_line("", "second"))

        assert parsed.text == "second"

    def test_final_result(self):
        """A successful result line carries the final text."""
        line = json.dumps({"type": "result", "subtype": "success", "result": "All done"})

        assert parse_stream_line(line) == ParsedLine("final_result", "All done")

    def test_failed_result_is_ignored(self):
        """Only successful results are displayed."""
        line = json.dumps({"type": "result", "subtype": "error", "result": "nope"})

        assert parse_stream_line(line).kind == "none"

    def test_other_json_is_ignored(self):
        """System events produce nothing."""
        assert parse_stream_line('{"type": "system", "subtype": "init"}').kind == "none"

    def test_non_json_is_raw(self):
        """Plain text lines pass through stripped."""
        assert parse_stream_line("  plain text  ") == ParsedLine("raw", "plain text")

    def test_json_non_object_is_raw(self):
        """JSON that is not an object is treated as raw text."""
        assert parse_stream_line("[1, 2]").kind == "raw"

    def test_blank_line(self):
        """Blank lines produce nothing."""
        assert parse_stream_line("   ").kind == "none"


class TestOutputEmitter:
    """Tests for OutputEmitter."""

    def test_forwards_text(self):
        """Accepted text reaches the callback immediately without throttling."""
        received: list[str] = []
        emitter = OutputEmitter(received.append)

        assert emitter.emit(ParsedLine("assistant_text", "hello")) is True
        assert received == ["hello"]

    def test_deduplicates_consecutive_text(self):
        """The same text twice in a row is forwarded once."""
        received: list[str] = []
        emitter = OutputEmitter(received.append)

        emitter.emit(ParsedLine("assistant_text", "same"))
        accepted = emitter.emit(ParsedLine("final_result", "same"))

        assert accepted is False
        assert received == ["same"]

    def test_ignores_none(self):
        """Lines with nothing to display are rejected."""
        received: list[str] = []
        emitter = OutputEmitter(received.append)

        assert emitter.emit(ParsedLine("none")) is False
        assert received == []

    def test_throttle_buffers_until_window_passes(self):
        """Text inside the throttle window is delivered with the next emit after it."""
        now = [0.0]
        received: list[str] = []
        emitter = OutputEmitter(received.append, throttle_ms=100, clock=lambda: now[0])

        emitter.emit(ParsedLine("raw", "a"))
        now[0] = 0.05
        emitter.emit(ParsedLine("raw", "b"))
        assert received == ["a"]

        now[0] = 0.2
        emitter.emit(ParsedLine("raw", "c"))
        assert received == ["a", "b\nc"]

    def test_flush_delivers_pending(self):
        """flush() delivers buffered text."""
        now = [0.0]
        received: list[str] = []
        emitter = OutputEmitter(received.append, throttle_ms=1000, clock=lambda: now[0])

        emitter.emit(ParsedLine("raw", "a"))
        emitter.emit(ParsedLine("raw", "b"))
        emitter.flush()

        assert received == ["a", "b"]

    def test_no_callback(self):
        """An emitter without a callback still accepts text."""
        emitter = OutputEmitter(None)

        assert emitter.emit(ParsedLine("raw", "text")) is True
