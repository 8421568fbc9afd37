"""Prompt composition, effort mapping and response text extraction."""

from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Optional, Sequence

from ..policy.gate_result import GATE_RESULT_SCHEMA, is_gate_result_contract_step
from ..types import OutputFormat, PipelineStep, ReasoningEffort, StepRole, ToolCall
from .models import (
    EMPTY_OUTPUT_MESSAGE,
    ProviderRequest,
    decode_claude_response,
    decode_openai_response,
)

MCP_TOOL_NAME = "mcp_call"
MCP_TOOL_DESCRIPTION = (
    "Call a tool on an external MCP server. Use server_id for the server, tool for the tool "
    "name and arguments for the tool input."
)
MCP_TOOL_PARAMETERS: Dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "required": ["server_id", "tool", "arguments"],
    "properties": {
        "server_id": {"type": "string"},
        "tool": {"type": "string"},
        "arguments": {"type": "object"},
    },
}

_HTML_FILE_RE = re.compile(r"\.html?$", re.IGNORECASE)
_DECK_SIGNALS = ("assets-manifest.json", "pdf-content.json", "frame-map.json")


def map_claude_effort(value: ReasoningEffort) -> str:
    if value in (ReasoningEffort.MINIMAL, ReasoningEffort.LOW):
        return "low"
    if value in (ReasoningEffort.HIGH, ReasoningEffort.XHIGH):
        return "high"
    return "medium"


def map_openai_effort(value: ReasoningEffort) -> str:
    if value == ReasoningEffort.XHIGH:
        return "high"
    return value.value


def requires_gate_result_schema(request: ProviderRequest) -> bool:
    return request.output_mode == OutputFormat.JSON and is_gate_result_contract_step(request.step)


def gate_result_schema() -> Dict[str, Any]:
    return json.loads(json.dumps(GATE_RESULT_SCHEMA))


def _is_deck_html_synthesis(request: ProviderRequest) -> bool:
    if not any(_HTML_FILE_RE.search(f.strip()) for f in request.step.required_output_files):
        return False
    corpus = f"{request.step.prompt}\n{request.context}".lower()
    return all(signal in corpus for signal in _DECK_SIGNALS)


def compose_cli_prompt(request: ProviderRequest) -> str:
    """Render the single prompt handed to a CLI provider."""
    step = request.step
    if request.output_mode == OutputFormat.JSON:
        output_instruction = (
            "Return STRICT JSON only. No markdown fences. No prose before or after the JSON object. "
            "All human-readable summary fields must be in English."
        )
    else:
        output_instruction = "Return only the step output in concise markdown."

    sections: List[str] = [
        f"System instructions:\n{step.prompt}",
        "",
        "Runtime safety policy in this prompt overrides conflicting task wording when they disagree.",
        "",
        "Runtime options:\n"
        f"- reasoning_effort={step.reasoning_effort.value}\n"
        f"- fast_mode={'on' if step.fast_mode else 'off'}\n"
        f"- one_million_context={'on' if step.use_1m_context else 'off'}\n"
        f"- context_window_tokens={step.context_window_tokens:,}",
    ]

    if step.role == StepRole.ORCHESTRATOR:
        sections += [
            "",
            "Execution contract:\n"
            "This is a single orchestrator turn, not a full end-to-end run.\n"
            "Do not simulate downstream stages yourself.\n"
            "Return only the immediate orchestration decision, routing/status update, and what should run next.",
        ]

    discipline = [
        "Tool discipline:",
        "- Use file tools (Read/Write/Edit/Grep/Glob) for file operations.",
        "- Do NOT write/copy artifacts via shell redirection or copy commands (cat >, cp, mv, tee).",
        "- Do NOT create or run ad-hoc scripts for artifact transformation.",
        "- For large files, avoid full-file reads; use targeted reads and only inspect the slices needed.",
        "- Never repeat the same write/copy action after success; if validation passes, proceed to final output.",
    ]
    sections += ["", "Execution discipline:\n" + "\n".join(discipline)]
    sections += [
        "",
        "Artifact contract:\n"
        "- Never modify artifacts produced by other steps unless the current step lists them in "
        "required_output_files.\n"
        "- If those artifacts are missing or inconsistent, report FAIL with reasons instead of rewriting them.",
        "",
        "Language requirement: any summary or status summary text must be written in English.",
    ]

    if _is_deck_html_synthesis(request):
        sections += [
            "",
            "Deck synthesis contract:\n"
            "- If target HTML already exists, read it first and edit it page-by-page instead of rebuilding.\n"
            "- Prefer assets-manifest file references for backgrounds; do not full-read large base64 blobs.\n"
            "- Keep one visible slide container per frame (`class=\"slide\"` or `id=\"slide-N\"`).",
        ]

    sections += ["", f"Task:\n{request.task}", "", f"Context:\n{request.context}", "", output_instruction]
    return "\n".join(sections)


def build_claude_system_prompt(step: PipelineStep, output_mode: OutputFormat) -> str:
    notes = [step.prompt]
    if step.fast_mode:
        notes.append("Fast mode requested: prioritize lower latency with concise output when possible.")
    if step.use_1m_context:
        notes.append("1M context mode requested for compatible Sonnet/Opus models.")
    if output_mode == OutputFormat.JSON:
        notes.append("Output must be STRICT JSON only, as a single object, with no markdown fences or extra narration.")
    notes.append("Language requirement: any summary or status-summary text must be in English.")
    return "\n\n".join(notes)


def extract_claude_text(body: Any) -> str:
    decoded = decode_claude_response(body)
    if decoded is None:
        return EMPTY_OUTPUT_MESSAGE
    segments = [block.text for block in decoded.content if isinstance(block.text, str)]
    return "\n".join(segments) if segments else EMPTY_OUTPUT_MESSAGE


def extract_openai_text(body: Any) -> str:
    decoded = decode_openai_response(body)
    if decoded is None:
        return EMPTY_OUTPUT_MESSAGE
    if decoded.output_text is not None:
        return decoded.output_text
    chunks = [
        content.text
        for item in decoded.output
        for content in item.content
        if isinstance(content.text, str)
    ]
    return "\n".join(chunks) if chunks else EMPTY_OUTPUT_MESSAGE


def tool_call_from_payload(payload: Any) -> Optional[ToolCall]:
    """Accept a tool payload only when it names both a server and a tool."""
    if not isinstance(payload, dict):
        return None
    server_id = payload.get("server_id")
    tool = payload.get("tool")
    if not isinstance(server_id, str) or not server_id.strip():
        return None
    if not isinstance(tool, str) or not tool.strip():
        return None
    arguments = payload.get("arguments")
    return ToolCall(
        server_id=server_id.strip(),
        tool=tool.strip(),
        arguments=arguments if isinstance(arguments, dict) else {},
    )


def extract_claude_tool_calls(body: Any) -> List[ToolCall]:
    decoded = decode_claude_response(body)
    if decoded is None:
        return []
    calls = []
    for block in decoded.content:
        if block.type == "tool_use" and block.name == MCP_TOOL_NAME:
            call = tool_call_from_payload(block.input)
            if call is not None:
                calls.append(call)
    return dedupe_tool_calls(calls)


def extract_openai_tool_calls(body: Any) -> List[ToolCall]:
    decoded = decode_openai_response(body)
    if decoded is None:
        return []
    calls = []
    for item in decoded.output:
        if item.type != "function_call" or item.name != MCP_TOOL_NAME or not item.arguments:
            continue
        try:
            call = tool_call_from_payload(json.loads(item.arguments))
        except ValueError:
            continue
        if call is not None:
            calls.append(call)
    return dedupe_tool_calls(calls)


def dedupe_tool_calls(calls: Sequence[ToolCall]) -> List[ToolCall]:
    seen = set()
    unique: List[ToolCall] = []
    for call in calls:
        signature = call.signature()
        if signature in seen:
            continue
        seen.add(signature)
        unique.append(call)
    return unique


def encode_mcp_calls(calls: Sequence[ToolCall]) -> str:
    """The ``{"mcp_calls": [...]}`` envelope returned instead of prose."""
    return json.dumps({"mcp_calls": [call.to_dict() for call in calls]})
