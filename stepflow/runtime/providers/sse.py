"""
sse.py - Incremental server-sent-event parser for provider streams.

The parser consumes raw byte chunks, decodes them incrementally, splits
events on blank lines and dispatches each ``data:`` payload by its provider
event type. It accumulates:

- text deltas, in arrival order
- tool calls, reconstructed from partial JSON argument deltas and finalized
  only when their content block (or function call item) is done

A stream that produces bytes but no complete event for longer than the idle
timeout fails with StreamStalledError. Reads that block with no bytes at all
are bounded by the HTTP client's read timeout, which the API runner sets to
the same idle timeout.
"""

from __future__ import annotations

import codecs
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from ..cancellation import CancellationToken
from ..errors import StreamProtocolError, StreamStalledError
from ..types import ToolCall
from .normalizers import MCP_TOOL_NAME, dedupe_tool_calls, tool_call_from_payload

logger = logging.getLogger(__name__)

LogFn = Callable[[str], None]


@dataclass
class SseEvent:
    event: str
    data: str


@dataclass
class StreamResult:
    text: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    event_count: int = 0


def split_sse_event(raw: str) -> Optional[SseEvent]:
    """Parse one raw event block; ``data:`` lines are rejoined with newlines."""
    name = ""
    data_lines: List[str] = []
    for line in raw.split("\n"):
        if not line or line.startswith(":"):
            continue
        key, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if key == "event":
            name = value.strip()
        elif key == "data":
            data_lines.append(value)
    if not data_lines and not name:
        return None
    return SseEvent(event=name, data="\n".join(data_lines))


@dataclass
class _ToolBuffer:
    name: Optional[str] = None
    initial_input: Optional[Dict[str, Any]] = None
    partial_json: str = ""


class SseStreamParser:
    """Stateful parser for one provider stream.

    Args:
        provider_label: "Claude" or "OpenAI", used in errors and log lines.
        idle_timeout_ms: Max time between complete events.
        log: Callback for provider progress lines.
        clock: Monotonic clock in seconds (injectable for tests).
    """

    def __init__(
        self,
        provider_label: str,
        idle_timeout_ms: int,
        log: Optional[LogFn] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.provider_label = provider_label
        self.idle_timeout_ms = idle_timeout_ms
        self._log = log or (lambda line: None)
        self._clock = clock
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._text: List[str] = []
        self._calls: List[ToolCall] = []
        self._tool_buffers: Dict[Tuple[str, Any], _ToolBuffer] = {}
        self._logged_events: Set[str] = set()
        self._completed_text: Optional[str] = None
        self._event_count = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def parse(self, chunks: Iterable[bytes], token: Optional[CancellationToken] = None) -> StreamResult:
        last_event_at = self._clock()
        for chunk in chunks:
            if token is not None:
                token.raise_if_cancelled()
            produced = self.feed(chunk)
            now = self._clock()
            if produced:
                last_event_at = now
            elif (now - last_event_at) * 1000 > self.idle_timeout_ms:
                raise StreamStalledError(
                    f"{self.provider_label} stream stalled: no events for {self.idle_timeout_ms}ms"
                )
        self.feed(b"", final=True)
        return self.result()

    def feed(self, chunk: bytes, final: bool = False) -> int:
        """Feed raw bytes; returns the number of complete events dispatched."""
        self._buffer += self._decoder.decode(chunk, final=final)
        # A trailing CR may be the first half of a CRLF split across chunks.
        held = ""
        if not final and self._buffer.endswith("\r"):
            self._buffer, held = self._buffer[:-1], "\r"
        self._buffer = self._buffer.replace("\r\n", "\n").replace("\r", "\n")
        dispatched = 0
        while "\n\n" in self._buffer:
            raw, self._buffer = self._buffer.split("\n\n", 1)
            event = split_sse_event(raw)
            if event is not None:
                self._dispatch(event)
                dispatched += 1
        if final and self._buffer.strip():
            event = split_sse_event(self._buffer)
            self._buffer = ""
            if event is not None:
                self._dispatch(event)
                dispatched += 1
        self._buffer += held
        return dispatched

    def result(self) -> StreamResult:
        text = "".join(self._text)
        if not text and self._completed_text:
            text = self._completed_text
        return StreamResult(text=text, tool_calls=dedupe_tool_calls(self._calls), event_count=self._event_count)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _dispatch(self, event: SseEvent) -> None:
        data = event.data.strip()
        if not data or data == "[DONE]":
            return
        try:
            payload = json.loads(data)
        except ValueError:
            logger.debug("Ignoring non-JSON %s stream payload: %s", self.provider_label, data[:120])
            return
        if not isinstance(payload, dict):
            return

        event_type = str(payload.get("type") or event.event or "")
        self._event_count += 1
        if event_type and event_type not in self._logged_events:
            self._logged_events.add(event_type)
            self._log(f"{self.provider_label} stream event: {event_type}")

        if event_type in ("error", "response.error", "response.failed"):
            raise StreamProtocolError(f"{self.provider_label} stream error: {_error_message(payload)}")

        if event_type.startswith("response."):
            self._dispatch_openai(event_type, payload)
        else:
            self._dispatch_claude(event_type, payload)

    def _dispatch_claude(self, event_type: str, payload: Dict[str, Any]) -> None:
        index = payload.get("index", 0)
        key = ("claude", index)
        if event_type == "content_block_start":
            block = payload.get("content_block") or {}
            if isinstance(block, dict) and block.get("type") == "tool_use":
                self._tool_buffers[key] = _ToolBuffer(
                    name=block.get("name"),
                    initial_input=block.get("input") if isinstance(block.get("input"), dict) else None,
                )
        elif event_type == "content_block_delta":
            delta = payload.get("delta") or {}
            if not isinstance(delta, dict):
                return
            if delta.get("type") == "text_delta" and isinstance(delta.get("text"), str):
                self._text.append(delta["text"])
            elif delta.get("type") == "input_json_delta" and isinstance(delta.get("partial_json"), str):
                self._tool_buffers.setdefault(key, _ToolBuffer()).partial_json += delta["partial_json"]
        elif event_type == "content_block_stop":
            buffer = self._tool_buffers.pop(key, None)
            if buffer is not None:
                self._finalize(buffer)

    def _dispatch_openai(self, event_type: str, payload: Dict[str, Any]) -> None:
        if event_type == "response.output_text.delta":
            delta = payload.get("delta")
            if isinstance(delta, str):
                self._text.append(delta)
        elif event_type == "response.function_call_arguments.delta":
            key = ("openai", payload.get("item_id") or payload.get("output_index", 0))
            delta = payload.get("delta")
            if isinstance(delta, str):
                self._tool_buffers.setdefault(key, _ToolBuffer(name=MCP_TOOL_NAME)).partial_json += delta
        elif event_type == "response.function_call_arguments.done":
            key = ("openai", payload.get("item_id") or payload.get("output_index", 0))
            buffer = self._tool_buffers.pop(key, _ToolBuffer(name=MCP_TOOL_NAME))
            if isinstance(payload.get("arguments"), str):
                buffer.partial_json = payload["arguments"]
            self._finalize(buffer)
        elif event_type in ("response.output_item.added", "response.output_item.done"):
            self._accept_openai_item(payload.get("item"))
        elif event_type == "response.completed":
            response = payload.get("response") or {}
            if isinstance(response, dict):
                if isinstance(response.get("output_text"), str):
                    self._completed_text = response["output_text"]
                for item in response.get("output") or []:
                    self._accept_openai_item(item)

    def _accept_openai_item(self, item: Any) -> None:
        if not isinstance(item, dict) or item.get("type") != "function_call":
            return
        arguments = item.get("arguments")
        if item.get("name") != MCP_TOOL_NAME or not isinstance(arguments, str) or not arguments.strip():
            return
        self._finalize(_ToolBuffer(name=MCP_TOOL_NAME, partial_json=arguments))

    def _finalize(self, buffer: _ToolBuffer) -> None:
        if buffer.name is not None and buffer.name != MCP_TOOL_NAME:
            return
        payload: Any = buffer.initial_input
        if buffer.partial_json.strip():
            try:
                payload = json.loads(buffer.partial_json)
            except ValueError:
                logger.warning(
                    "Discarding %s tool call with unparseable arguments: %s",
                    self.provider_label,
                    buffer.partial_json[:200],
                )
                return
        call = tool_call_from_payload(payload)
        if call is not None:
            self._calls.append(call)


def _error_message(payload: Dict[str, Any]) -> str:
    error = payload.get("error")
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"]
    if isinstance(error, str):
        return error
    response = payload.get("response")
    if isinstance(response, dict):
        return _error_message(response)
    message = payload.get("message")
    return message if isinstance(message, str) else "unknown stream error"
