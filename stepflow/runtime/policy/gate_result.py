"""GateResult contract for gate-producing steps.

Review and tester steps, and steps whose name mentions delivery, must emit a
strict JSON GateResult object. The same JSON schema is attached to provider
requests (structured output / ``--json-schema``) and used here to validate
what came back.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import jsonschema

from ..types import REVIEW_ROLES, PipelineStep
from .output_parsing import explicit_workflow_status, normalize_status_markers, parse_json_output

WORKFLOW_STATUSES = ("PASS", "FAIL", "NEUTRAL", "COMPLETE", "NEEDS_INPUT")
NEXT_ACTIONS = ("continue", "retry_step", "retry_stage", "escalate", "stop")

GATE_RESULT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "required": ["workflow_status", "next_action", "reasons"],
    "properties": {
        "workflow_status": {"type": "string", "enum": list(WORKFLOW_STATUSES)},
        "next_action": {"type": "string", "enum": list(NEXT_ACTIONS)},
        "stage": {"type": "string"},
        "step_role": {"type": "string"},
        "gate_target": {"type": "string"},
        "summary": {"type": "string"},
        "reasons": {
            "type": "array",
            "items": {
                "type": "object",
                "additionalProperties": False,
                "required": ["code", "message"],
                "properties": {
                    "code": {"type": "string"},
                    "message": {"type": "string"},
                    "severity": {"type": "string", "enum": ["critical", "high", "medium", "low"]},
                },
            },
        },
    },
}

# Output validation tolerates extra top-level fields; provider requests do not.
_VALIDATION_SCHEMA: Dict[str, Any] = {**GATE_RESULT_SCHEMA, "additionalProperties": True}

_DELIVERY_NAME_RE = re.compile(r"\bdeliver(y|ed|ing)?\b", re.IGNORECASE)
_NEXT_ACTION_RE = re.compile(r"NEXT_ACTION\s*:\s*([a-z_]+)", re.IGNORECASE)


def is_gate_result_contract_step(step: PipelineStep) -> bool:
    return step.role in REVIEW_ROLES or bool(_DELIVERY_NAME_RE.search(step.name))


@dataclass(frozen=True)
class GateResultContract:
    workflow_status: str
    next_action: str
    stage: str = ""
    step_role: str = ""
    gate_target: str = ""
    summary: str = ""


@dataclass(frozen=True)
class GateResultParse:
    """Outcome of looking for a GateResult in step output.

    ``source`` is "json" for a schema-valid JSON object, "text" for legacy
    status markers, or "" when nothing was found.
    """

    contract: Optional[GateResultContract]
    source: str = ""
    errors: Tuple[str, ...] = ()


def validate_gate_result(payload: Dict[str, Any]) -> List[str]:
    """Return schema violation messages for a GateResult payload (empty when valid)."""
    validator = jsonschema.Draft7Validator(_VALIDATION_SCHEMA)
    return [error.message for error in sorted(validator.iter_errors(payload), key=lambda e: list(e.path))]


def parse_gate_result_contract(
    output: str,
    parsed_json: Optional[Dict[str, Any]] = None,
) -> GateResultParse:
    """Find a GateResult contract in step output.

    A schema-valid JSON object wins. Otherwise legacy ``WORKFLOW_STATUS:`` /
    ``NEXT_ACTION:`` text markers are reported with source "text", which
    gate-producing steps are not allowed to rely on.
    """
    payload = parsed_json if parsed_json is not None else parse_json_output(output)
    errors: List[str] = []
    if payload is not None and "workflow_status" in payload:
        normalized = dict(payload)
        if isinstance(normalized.get("workflow_status"), str):
            normalized["workflow_status"] = normalized["workflow_status"].strip().upper()
        if isinstance(normalized.get("next_action"), str):
            normalized["next_action"] = normalized["next_action"].strip().lower()
        errors = validate_gate_result(normalized)
        if not errors:
            return GateResultParse(
                contract=GateResultContract(
                    workflow_status=normalized["workflow_status"],
                    next_action=normalized["next_action"],
                    stage=str(normalized.get("stage") or ""),
                    step_role=str(normalized.get("step_role") or ""),
                    gate_target=str(normalized.get("gate_target") or ""),
                    summary=str(normalized.get("summary") or ""),
                ),
                source="json",
            )

    status = explicit_workflow_status(output)
    if status:
        action_match = _NEXT_ACTION_RE.search(normalize_status_markers(output))
        return GateResultParse(
            contract=GateResultContract(
                workflow_status=status,
                next_action=action_match.group(1).lower() if action_match else "continue",
            ),
            source="text",
            errors=tuple(errors),
        )

    return GateResultParse(contract=None, errors=tuple(errors))


def build_status_signal_output(output: str, parsed_json: Optional[Dict[str, Any]]) -> str:
    """Render JSON status fields as text markers so regex gates can match them."""
    payload = parsed_json if parsed_json is not None else parse_json_output(output)
    if not payload:
        return ""
    lines = []
    status = payload.get("workflow_status") or payload.get("status")
    if isinstance(status, str) and status.strip():
        lines.append(f"WORKFLOW_STATUS: {status.strip().upper()}")
    action = payload.get("next_action")
    if isinstance(action, str) and action.strip():
        lines.append(f"NEXT_ACTION: {action.strip().lower()}")
    return "\n".join(lines)
