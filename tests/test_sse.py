"""
Tests for the incremental event-stream parser.

This module verifies that:
1. Text deltas accumulate across arbitrary chunk boundaries, including
   splits inside multi-byte characters
2. Tool calls are rebuilt from partial JSON fragments, finalized on
   content block stop, and read back unchanged from the mcp_calls envelope
3. OpenAI function call events are reconstructed and de-duplicated
4. Error events and idle streams fail the parse
5. Each event type is logged once
"""

import json

import pytest

from stepflow.runtime.cancellation import CancellationToken
from stepflow.runtime.errors import StepCancelledError, StreamProtocolError, StreamStalledError
from stepflow.runtime.providers.mcp_calls import parse_mcp_calls
from stepflow.runtime.providers.normalizers import encode_mcp_calls
from stepflow.runtime.providers.sse import SseStreamParser, split_sse_event
from stepflow.runtime.types import ToolCall


def sse(*payloads, named=True):
    """Encode payloads as an event stream body."""
    blocks = []
    for payload in payloads:
        prefix = f"event: {payload['type']}\n" if named else ""
        blocks.append(f"{prefix}data: {json.dumps(payload)}\n\n")
    return "".join(blocks).encode("utf-8")


def chunked(body, size):
    return [body[i : i + size] for i in range(0, len(body), size)]


def text_delta(text, index=0):
    return {"type": "content_block_delta", "index": index, "delta": {"type": "text_delta", "text": text}}


def json_delta(fragment, index=1):
    return {"type": "content_block_delta", "index": index, "delta": {"type": "input_json_delta", "partial_json": fragment}}


TOOL_FRAGMENTS = ['{"server', '_id":"figma","tool":"get', '_file","arguments":{}}']


# ============================================================================
# Event Splitting Tests
# ============================================================================


class TestSplitEvent:
    """Tests for split_sse_event."""

    def test_multiline_data(self):
        """Test data lines are rejoined and comments dropped."""
        event = split_sse_event(": keepalive\nevent: message\ndata: a\ndata: b")

        assert event.event == "message"
        assert event.data == "a\nb"

    def test_comment_only(self):
        """Test a comment-only block is not an event."""
        assert split_sse_event(": ping") is None


# ============================================================================
# Claude Stream Tests
# ============================================================================


class TestClaudeStream:
    """Tests for Claude message streams."""

    def test_text_across_chunks(self):
        """Test text deltas survive one-byte chunks and CRLF line endings."""
        body = sse(text_delta("Hé"), text_delta("llo ✓")).replace(b"\n", b"\r\n")
        parser = SseStreamParser("Claude", 90_000)

        result = parser.parse(chunked(body, 1))

        assert result.text == "Héllo ✓"
        assert result.event_count == 2
        assert result.tool_calls == []

    def test_tool_call_from_fragments(self):
        """Test partial JSON fragments assemble into one tool call."""
        body = sse(
            {
                "type": "content_block_start",
                "index": 1,
                "content_block": {"type": "tool_use", "name": "mcp_call", "input": {}},
            },
            *[json_delta(fragment) for fragment in TOOL_FRAGMENTS],
            {"type": "content_block_stop", "index": 1},
            {"type": "message_stop"},
        )

        result = SseStreamParser("Claude", 90_000).parse(chunked(body, 7))

        assert result.tool_calls == [ToolCall(server_id="figma", tool="get_file", arguments={})]

    def test_tool_call_without_block_start(self):
        """Test fragments without a block start still finalize on stop."""
        body = sse(*[json_delta(fragment) for fragment in TOOL_FRAGMENTS], {"type": "content_block_stop", "index": 1})

        result = SseStreamParser("Claude", 90_000).parse([body])

        assert [call.tool for call in result.tool_calls] == ["get_file"]

    def test_tool_call_survives_mcp_calls_envelope(self):
        """Test a streamed tool call reads back unchanged from the mcp_calls envelope."""
        fragments = ['{"server_id":"figma","tool":"get_file","argu', 'ments":{"node":{"ids":[1,2]},"depth":', "3}}"]
        body = sse(*[json_delta(fragment) for fragment in fragments], {"type": "content_block_stop", "index": 1})

        streamed = SseStreamParser("Claude", 90_000).parse(chunked(body, 5)).tool_calls
        parsed = parse_mcp_calls(encode_mcp_calls(streamed))

        assert parsed == streamed
        assert [(call.server_id, call.tool, call.arguments) for call in parsed] == [
            ("figma", "get_file", {"node": {"ids": [1, 2]}, "depth": 3})
        ]

    def test_other_tools_ignored(self):
        """Test tool_use blocks for other tools are discarded."""
        body = sse(
            {"type": "content_block_start", "index": 1, "content_block": {"type": "tool_use", "name": "web_search"}},
            *[json_delta(fragment) for fragment in TOOL_FRAGMENTS],
            {"type": "content_block_stop", "index": 1},
        )

        assert SseStreamParser("Claude", 90_000).parse([body]).tool_calls == []

    def test_unterminated_final_event(self):
        """Test a trailing event without a blank line is flushed at the end."""
        body = sse(text_delta("tail")).rstrip(b"\n")

        assert SseStreamParser("Claude", 90_000).parse([body]).text == "tail"

    def test_done_and_garbage_ignored(self):
        """Test [DONE] and non-JSON data are skipped."""
        body = b"data: [DONE]\n\ndata: not json\n\n" + sse(text_delta("ok"))

        assert SseStreamParser("Claude", 90_000).parse([body]).text == "ok"

    def test_error_event(self):
        """Test an error event raises with the provider message."""
        body = sse({"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})

        with pytest.raises(StreamProtocolError, match="Claude stream error: Overloaded"):
            SseStreamParser("Claude", 90_000).parse([body])

    def test_event_types_logged_once(self):
        """Test each event type is logged the first time it is seen."""
        lines = []
        body = sse(text_delta("a"), text_delta("b"), {"type": "message_stop"})

        SseStreamParser("Claude", 90_000, log=lines.append).parse([body])

        assert lines == ["Claude stream event: content_block_delta", "Claude stream event: message_stop"]


# ============================================================================
# OpenAI Stream Tests
# ============================================================================


class TestOpenAIStream:
    """Tests for OpenAI response streams."""

    def test_function_call_dedupe(self):
        """Test argument deltas and the done item yield a single call."""
        arguments = "".join(TOOL_FRAGMENTS)
        body = sse(
            {"type": "response.output_text.delta", "delta": "Checking"},
            *[
                {"type": "response.function_call_arguments.delta", "item_id": "fc_1", "delta": fragment}
                for fragment in TOOL_FRAGMENTS
            ],
            {"type": "response.function_call_arguments.done", "item_id": "fc_1", "arguments": arguments},
            {
                "type": "response.output_item.done",
                "item": {"type": "function_call", "name": "mcp_call", "arguments": arguments},
            },
            named=False,
        )

        result = SseStreamParser("OpenAI", 90_000).parse(chunked(body, 11))

        assert result.text == "Checking"
        assert result.tool_calls == [ToolCall(server_id="figma", tool="get_file", arguments={})]

    def test_completed_output_text(self):
        """Test response.completed text is used when no deltas arrived."""
        body = sse({"type": "response.completed", "response": {"output_text": "final", "output": []}})

        assert SseStreamParser("OpenAI", 90_000).parse([body]).text == "final"

    def test_failed_response(self):
        """Test response.failed raises with the nested error message."""
        body = sse({"type": "response.failed", "response": {"error": {"message": "quota"}}})

        with pytest.raises(StreamProtocolError, match="OpenAI stream error: quota"):
            SseStreamParser("OpenAI", 90_000).parse([body])


# ============================================================================
# Stall And Cancellation Tests
# ============================================================================


class FakeClock:
    """Clock advancing one second per reading."""

    def __init__(self):
        self.now = 0.0

    def __call__(self):
        self.now += 1.0
        return self.now


class TestStallAndCancel:
    """Tests for idle detection and cancellation."""

    def test_stalled_stream(self):
        """Test bytes without complete events past the idle timeout stall."""
        parser = SseStreamParser("Claude", 2_500, clock=FakeClock())

        with pytest.raises(StreamStalledError, match="Claude stream stalled: no events for 2500ms"):
            parser.parse([b": ping\n"] * 10)

    def test_events_reset_idle_timer(self):
        """Test steady events never stall."""
        parser = SseStreamParser("Claude", 1_500, clock=FakeClock())

        result = parser.parse([sse(text_delta(str(i))) for i in range(5)])

        assert result.text == "01234"

    def test_cancelled_token(self):
        """Test a cancelled token stops the parse with its reason."""
        token = CancellationToken()
        token.cancel("Stopped by user")

        with pytest.raises(StepCancelledError, match="Stopped by user"):
            SseStreamParser("Claude", 90_000).parse([sse(text_delta("x"))], token)
