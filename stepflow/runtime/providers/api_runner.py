"""
api_runner.py - HTTP execution path for provider steps.

One POST per step turn, against ``/responses`` (OpenAI) or ``/messages``
(Claude). Requests ask for a streamed body; a ``text/event-stream`` response
is decoded by SseStreamParser, anything else is read as a single JSON body.

Failure handling in this layer:
- non-2xx responses raise ProviderApiError with the parsed retry-after hint
- retryable statuses that carry a short retry-after hint are retried here
- a Claude OAuth bearer rejected with 401 is retried once with x-api-key

Broader fallbacks (reduced Claude option sets, CLI fallback) live in the
executor.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, Optional

import httpx

from stepflow.config.runtime_config import DEFAULT_CLAUDE_BASE_URL, DEFAULT_OPENAI_BASE_URL, RuntimeSettings

from ..errors import ProviderApiError, ProviderError, StepCancelledError, StreamStalledError
from .models import EMPTY_OUTPUT_MESSAGE, ProviderRequest
from .normalizers import (
    MCP_TOOL_DESCRIPTION,
    MCP_TOOL_NAME,
    MCP_TOOL_PARAMETERS,
    build_claude_system_prompt,
    encode_mcp_calls,
    extract_claude_text,
    extract_claude_tool_calls,
    extract_openai_text,
    extract_openai_tool_calls,
    gate_result_schema,
    map_claude_effort,
    map_openai_effort,
    requires_gate_result_schema,
)
from .sse import SseStreamParser

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
EFFORT_BETA = "effort-2025-11-24"
CONTEXT_1M_BETA = "context-1m-2025-08-07"

RETRYABLE_STATUS_CODES = frozenset({408, 409, 425, 429, 500, 502, 503, 504})
MAX_RETRY_AFTER_MS = 60_000
ERROR_BODY_PREVIEW_CHARS = 320
CONNECT_TIMEOUT_S = 30.0


@dataclass(frozen=True)
class ClaudeApiOptions:
    """Reduced feature sets tried when a full Claude request fails."""

    disable_1m_context: bool = False
    disable_effort: bool = False


def parse_retry_after_ms(value: Optional[str], now: Optional[datetime] = None) -> Optional[int]:
    """Parse a retry-after header (delta seconds or HTTP-date) into milliseconds."""
    if value is None or not value.strip():
        return None
    text = value.strip()
    try:
        seconds = float(text)
    except ValueError:
        try:
            when = parsedate_to_datetime(text)
        except (TypeError, ValueError):
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        current = now or datetime.now(timezone.utc)
        return max(0, int((when - current).total_seconds() * 1000))
    return max(0, int(seconds * 1000))


def _is_retryable_status(status_code: int) -> bool:
    return status_code in RETRYABLE_STATUS_CODES or status_code >= 500


def build_openai_payload(request: ProviderRequest) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "model": request.model,
        "input": [
            {"role": "system", "content": request.step.prompt},
            {"role": "user", "content": request.context},
        ],
        "reasoning": {"effort": map_openai_effort(request.step.reasoning_effort)},
        "stream": True,
    }
    if requires_gate_result_schema(request):
        payload["text"] = {
            "format": {
                "type": "json_schema",
                "name": "gate_result",
                "strict": True,
                "schema": gate_result_schema(),
            }
        }
    if request.mcp_server_ids:
        payload["tools"] = [
            {
                "type": "function",
                "name": MCP_TOOL_NAME,
                "description": MCP_TOOL_DESCRIPTION,
                "parameters": MCP_TOOL_PARAMETERS,
            }
        ]
        payload["tool_choice"] = "auto"
        payload["parallel_tool_calls"] = False
    return payload


def build_claude_headers(
    request: ProviderRequest, credential: str, options: ClaudeApiOptions, use_api_key_header: bool = False
) -> Dict[str, str]:
    headers = {"Content-Type": "application/json", "anthropic-version": ANTHROPIC_VERSION}
    betas = []
    if not options.disable_effort:
        betas.append(EFFORT_BETA)
    if request.step.use_1m_context and not options.disable_1m_context:
        betas.append(CONTEXT_1M_BETA)
    if betas:
        headers["anthropic-beta"] = ",".join(betas)
    if request.provider.auth_mode == "oauth" and not use_api_key_header:
        headers["Authorization"] = f"Bearer {credential}"
    else:
        headers["x-api-key"] = credential
    return headers


def build_claude_payload(request: ProviderRequest, options: ClaudeApiOptions) -> Dict[str, Any]:
    step = request.step
    payload: Dict[str, Any] = {
        "model": request.model,
        "max_tokens": max(1200, min(6400, int(step.context_window_tokens * 0.02))),
        "system": build_claude_system_prompt(step, request.output_mode),
        "messages": [{"role": "user", "content": request.context}],
        "stream": True,
    }
    output_config: Dict[str, Any] = {}
    if not options.disable_effort:
        output_config["effort"] = map_claude_effort(step.reasoning_effort)
    if requires_gate_result_schema(request):
        output_config["format"] = {"type": "json_schema", "schema": gate_result_schema()}
    if output_config:
        payload["output_config"] = output_config
    if request.mcp_server_ids:
        payload["tools"] = [
            {
                "name": MCP_TOOL_NAME,
                "description": MCP_TOOL_DESCRIPTION,
                "input_schema": MCP_TOOL_PARAMETERS,
            }
        ]
        payload["tool_choice"] = {"type": "auto"}
    return payload


class ProviderApiRunner:
    """Executes provider steps over HTTP.

    Args:
        settings: Runtime settings (idle timeout, retry attempts).
        transport: Optional httpx transport; tests pass httpx.MockTransport.
        clock: Monotonic clock handed to the stream parser.
    """

    def __init__(
        self,
        settings: RuntimeSettings,
        transport: Optional[httpx.BaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self._transport = transport
        self._clock = clock

    # =========================================================================
    # Provider entry points
    # =========================================================================

    def execute_openai(self, request: ProviderRequest, credential: str) -> str:
        endpoint = f"{(request.provider.base_url or DEFAULT_OPENAI_BASE_URL).rstrip('/')}/responses"
        headers = {"Content-Type": "application/json", "Authorization": f"Bearer {credential}"}
        payload = build_openai_payload(request)
        return self._send_with_retry("OpenAI", endpoint, headers, payload, request)

    def execute_claude(
        self, request: ProviderRequest, credential: str, options: Optional[ClaudeApiOptions] = None
    ) -> str:
        options = options or ClaudeApiOptions()
        endpoint = f"{(request.provider.base_url or DEFAULT_CLAUDE_BASE_URL).rstrip('/')}/messages"
        payload = build_claude_payload(request, options)
        headers = build_claude_headers(request, credential, options)
        try:
            return self._send_with_retry("Claude", endpoint, headers, payload, request)
        except ProviderApiError as exc:
            if exc.status_code != 401 or request.provider.auth_mode != "oauth":
                raise
            request.log(
                "Claude OAuth bearer token was rejected (401); retrying with x-api-key header "
                "for setup-token compatibility."
            )
            headers = build_claude_headers(request, credential, options, use_api_key_header=True)
            return self._send_with_retry("Claude", endpoint, headers, payload, request)

    # =========================================================================
    # Transport
    # =========================================================================

    def _send_with_retry(
        self,
        label: str,
        endpoint: str,
        headers: Dict[str, str],
        payload: Dict[str, Any],
        request: ProviderRequest,
    ) -> str:
        max_retries = self.settings.api_retry_max_attempts
        attempt = 0
        while True:
            try:
                return self._send(label, endpoint, headers, payload, request)
            except ProviderApiError as exc:
                retry_after_ms = exc.retry_after_ms
                if (
                    attempt >= max_retries
                    or not _is_retryable_status(exc.status_code)
                    or retry_after_ms is None
                    or retry_after_ms > MAX_RETRY_AFTER_MS
                ):
                    raise
                attempt += 1
                request.log(
                    f"{label} request returned {exc.status_code}; retrying after "
                    f"retry_after_ms={retry_after_ms} (retry {attempt}/{max_retries})"
                )
                logger.info(
                    "%s API status %d, retrying in %dms (retry %d/%d)",
                    label,
                    exc.status_code,
                    retry_after_ms,
                    attempt,
                    max_retries,
                )
                if request.token.wait(retry_after_ms / 1000.0):
                    raise StepCancelledError(request.token.reason or "Cancelled") from exc

    def _send(
        self,
        label: str,
        endpoint: str,
        headers: Dict[str, str],
        payload: Dict[str, Any],
        request: ProviderRequest,
    ) -> str:
        request.token.raise_if_cancelled()
        idle_ms = self.settings.stream_idle_timeout_ms
        timeout = httpx.Timeout(CONNECT_TIMEOUT_S, read=idle_ms / 1000.0)
        try:
            with httpx.Client(transport=self._transport, timeout=timeout) as client:
                with client.stream("POST", endpoint, headers=headers, json=payload) as response:
                    unregister = request.token.add_callback(lambda _reason: response.close())
                    try:
                        return self._consume(label, response, request)
                    finally:
                        unregister()
        except httpx.ReadTimeout as exc:
            if request.token.cancelled:
                raise StepCancelledError(request.token.reason or "Cancelled") from exc
            raise StreamStalledError(f"{label} stream stalled: no data for {idle_ms}ms") from exc
        except (httpx.HTTPError, httpx.StreamError) as exc:
            if request.token.cancelled:
                raise StepCancelledError(request.token.reason or "Cancelled") from exc
            raise ProviderError(f"{label} request failed: {exc}") from exc

    def _consume(self, label: str, response: httpx.Response, request: ProviderRequest) -> str:
        request_id = response.headers.get("x-request-id") or response.headers.get("request-id")
        if request_id:
            request.log(f"{label} request id: {request_id}")

        if response.status_code < 200 or response.status_code >= 300:
            body = response.read().decode("utf-8", errors="replace")
            raise ProviderApiError(
                f"{label} request failed ({response.status_code}): {body[:ERROR_BODY_PREVIEW_CHARS]}",
                status_code=response.status_code,
                retry_after_ms=parse_retry_after_ms(response.headers.get("retry-after")),
            )

        content_type = response.headers.get("content-type", "")
        if "text/event-stream" in content_type:
            parser = SseStreamParser(
                label,
                self.settings.stream_idle_timeout_ms,
                log=request.log,
                clock=self._clock,
            )
            result = parser.parse(response.iter_bytes(), request.token)
            if result.tool_calls:
                return encode_mcp_calls(result.tool_calls)
            return result.text.strip() or EMPTY_OUTPUT_MESSAGE

        response.read()
        try:
            body = response.json()
        except ValueError:
            logger.warning("%s returned a non-JSON body; treating as empty output", label)
            return EMPTY_OUTPUT_MESSAGE
        if label == "Claude":
            calls = extract_claude_tool_calls(body)
            text = extract_claude_text(body)
        else:
            calls = extract_openai_tool_calls(body)
            text = extract_openai_text(body)
        if calls:
            return encode_mcp_calls(calls)
        return text.strip() or EMPTY_OUTPUT_MESSAGE
