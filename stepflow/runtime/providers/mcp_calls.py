"""Reading ``mcp_calls`` envelopes back out of step output, and formatting results."""

from __future__ import annotations

import json
from typing import Any, List, Sequence

from ..policy.output_parsing import extract_first_json_object
from ..types import ToolCall, ToolResult

_CALL_LIST_KEYS = ("mcp_calls", "mcpCalls", "tool_calls")


def _first_str(record: dict, *keys: str) -> str:
    for key in keys:
        value = record.get(key)
        if value is not None:
            return value.strip() if isinstance(value, str) else ""
    return ""


def parse_mcp_calls(output: str) -> List[ToolCall]:
    """Tool calls requested by a step output, or [] when it is final prose.

    The whole output is tried first, then the first JSON object in it.
    """
    trimmed = (output or "").strip()
    if not trimmed:
        return []

    payload: Any = None
    for candidate in (trimmed, extract_first_json_object(trimmed)):
        if not candidate:
            continue
        try:
            payload = json.loads(candidate)
        except ValueError:
            continue
        break
    if not isinstance(payload, dict):
        return []

    calls = None
    for key in _CALL_LIST_KEYS:
        if isinstance(payload.get(key), list):
            calls = payload[key]
            break
    if calls is None:
        return []

    parsed: List[ToolCall] = []
    for record in calls:
        if not isinstance(record, dict):
            continue
        server_id = _first_str(record, "server_id", "serverId", "server")
        tool = _first_str(record, "tool", "name")
        if not server_id or not tool:
            continue
        arguments = record.get("arguments", record.get("args"))
        parsed.append(ToolCall(server_id=server_id, tool=tool, arguments=arguments if isinstance(arguments, dict) else {}))
    return parsed


def format_mcp_results(results: Sequence[ToolResult]) -> str:
    return json.dumps({"mcp_results": [result.to_dict() for result in results]}, indent=2, default=str)
