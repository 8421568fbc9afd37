"""Parsing helpers for step output text.

Provider output is free text that may carry a JSON object (bare, fenced, or
embedded in prose) and legacy ``WORKFLOW_STATUS:`` markers. These helpers are
the serialization boundary: everything past them works with parsed values and
the WorkflowOutcome enum.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from ..types import WorkflowOutcome

_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_WORKFLOW_STATUS_RE = re.compile(
    r"WORKFLOW_STATUS\s*:\s*(PASS|FAIL|NEUTRAL|COMPLETE|NEEDS[_\s-]?INPUT)", re.IGNORECASE
)
_STATUS_MARKER_LINE_RE = re.compile(r"WORKFLOW_STATUS|NEXT_ACTION", re.IGNORECASE)


def extract_first_json_object(text: str) -> Optional[str]:
    """Return the first balanced ``{...}`` substring, string- and escape-aware."""
    start = text.find("{")
    if start == -1:
        return None

    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return None


def parse_json_output(output: str) -> Optional[Dict[str, Any]]:
    """Parse the first JSON object found in output.

    Candidates, in order: the whole trimmed output, each fenced block, and
    the first balanced object in the text.
    """
    candidates: List[str] = []
    trimmed = (output or "").strip()
    if trimmed:
        candidates.append(trimmed)
    for match in _FENCED_JSON_RE.finditer(output or ""):
        content = match.group(1).strip()
        if content and content not in candidates:
            candidates.append(content)
    first = extract_first_json_object(output or "")
    if first and first not in candidates:
        candidates.append(first)

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def _split_path(raw_path: str) -> List[str]:
    path = raw_path.strip()
    path = re.sub(r"^\$?\.", "", path)
    path = re.sub(r"\[(\d+)\]", r".\1", path)
    return [segment.strip() for segment in path.split(".") if segment.strip()]


def resolve_path_value(payload: Any, raw_path: str) -> Tuple[bool, Any]:
    """Resolve ``$.a.b[0].c`` or ``a.b.0.c`` against a JSON value.

    Returns:
        (found, value)
    """
    if not raw_path or not raw_path.strip():
        return False, None

    current = payload
    for segment in _split_path(raw_path):
        if isinstance(current, list):
            if not segment.isdigit():
                return False, None
            index = int(segment)
            if index >= len(current):
                return False, None
            current = current[index]
        elif isinstance(current, dict):
            if segment not in current:
                return False, None
            current = current[segment]
        else:
            return False, None
    return True, current


def normalize_step_status(value: Any) -> Optional[str]:
    """Normalize a status string to pass|fail|neutral|needs_input, else None."""
    if not isinstance(value, str):
        return None
    normalized = re.sub(r"[\s-]+", "_", value.strip().lower())
    if normalized in ("pass", "fail", "neutral", "needs_input"):
        return normalized
    return None


def normalize_status_markers(output: str) -> str:
    """Strip markdown emphasis around status markers (``**WORKFLOW_STATUS:** pass``)."""
    lines = []
    for line in (output or "").splitlines():
        if _STATUS_MARKER_LINE_RE.search(line):
            line = line.replace("*", "").replace("`", "")
        lines.append(line)
    return "\n".join(lines)


def explicit_workflow_status(output: str) -> Optional[str]:
    """Return the upper-cased WORKFLOW_STATUS marker value, if present."""
    match = _WORKFLOW_STATUS_RE.search(normalize_status_markers(output))
    if not match:
        return None
    return re.sub(r"[\s-]+", "_", match.group(1).strip()).upper()


def infer_declared_outcome(output: str, parsed_json: Optional[Dict[str, Any]] = None) -> Optional[WorkflowOutcome]:
    """Outcome the step declared about itself, if it declared one.

    Looks at a ``WORKFLOW_STATUS:`` marker first, then ``workflow_status`` or
    ``status`` in the output JSON. COMPLETE counts as pass.
    """
    marker = explicit_workflow_status(output)
    if marker in ("PASS", "COMPLETE"):
        return WorkflowOutcome.PASS
    if marker == "FAIL":
        return WorkflowOutcome.FAIL
    if marker == "NEUTRAL":
        return WorkflowOutcome.NEUTRAL

    payload = parsed_json if parsed_json is not None else parse_json_output(output)
    if payload:
        for key in ("workflow_status", "status"):
            value = payload.get(key)
            if not isinstance(value, str):
                continue
            status = value.strip().lower()
            if status in ("pass", "complete"):
                return WorkflowOutcome.PASS
            if status == "fail":
                return WorkflowOutcome.FAIL
            if status == "neutral":
                return WorkflowOutcome.NEUTRAL
    return None


@dataclass(frozen=True)
class InputRequestSignal:
    needs_input: bool
    summary: Optional[str] = None


def extract_input_request_signal(
    output: str,
    parsed_json: Optional[Dict[str, Any]] = None,
) -> InputRequestSignal:
    """Detect a step asking for user input (NEEDS_INPUT marker or input_requests JSON)."""
    if explicit_workflow_status(output) == "NEEDS_INPUT":
        return InputRequestSignal(needs_input=True)

    payload = parsed_json if parsed_json is not None else parse_json_output(output)
    if payload:
        status = normalize_step_status(payload.get("status"))
        if status is None:
            status = normalize_step_status(payload.get("workflow_status"))
        summary = payload.get("summary")
        summary = summary.strip() if isinstance(summary, str) and summary.strip() else None
        requests = payload.get("input_requests", payload.get("requests"))
        has_requests = isinstance(requests, list) and any(isinstance(entry, dict) for entry in requests)
        if status == "needs_input" or has_requests:
            return InputRequestSignal(needs_input=True, summary=summary)

    return InputRequestSignal(needs_input=False)
