"""
gates.py - Post-execution contract and quality gate evaluation.

Three groups of results are produced for one step attempt:

1. Step contracts (kind "step_contract", always blocking): JSON output format,
   required output fields, the GateResult contract for gate-producing steps,
   required output files, required-artifact freshness and the delivery
   completion invariant.
2. Pipeline quality gates that target the step (or any step): regex,
   JSON field and artifact gates. Manual approval gates are resolved
   separately through ``evaluate_manual_approval_results``.
3. Policy profile contracts (see profiles.py).

A gate that cannot be evaluated (empty pattern, invalid regex, empty path)
fails closed.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..storage import StepStoragePaths
from ..types import (
    ARTIFACT_ROLES,
    Approval,
    ApprovalStatus,
    GateKind,
    GateResultStatus,
    OutputFormat,
    PipelineStep,
    QualityGate,
    QualityGateResult,
    StepRole,
)
from .artifacts import ArtifactStateCheck, check_artifact_state, did_artifact_change
from .gate_result import build_status_signal_output, is_gate_result_contract_step, parse_gate_result_contract
from .output_parsing import normalize_status_markers, parse_json_output, resolve_path_value
from .profiles import STEP_CONTRACT_KIND

logger = logging.getLogger(__name__)

_REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL}
_ALLOWED_FLAGS = "gimsuy"
_WORKFLOW_STATUS_WORD_RE = re.compile(r"\bWORKFLOW_STATUS\b", re.IGNORECASE)
_COMPLETE_WORD_RE = re.compile(r"\bCOMPLETE\b", re.IGNORECASE)
_COMPLETE_MARKER_RE = re.compile(r"WORKFLOW_STATUS\s*:\s*COMPLETE", re.IGNORECASE)

BLOCKED_SUMMARY_HEADER = "QUALITY_GATES_BLOCKED:"


@dataclass
class StepContractEvaluation:
    parsed_json: Optional[Dict[str, Any]]
    gate_results: List[QualityGateResult] = field(default_factory=list)


def _contract_result(
    gate_id: str, gate_name: str, passed: bool, message: str, details: str
) -> QualityGateResult:
    return QualityGateResult(
        gate_id=gate_id,
        gate_name=gate_name,
        kind=STEP_CONTRACT_KIND,
        status=GateResultStatus.PASS if passed else GateResultStatus.FAIL,
        blocking=True,
        message=message,
        details=details,
    )


def evaluate_step_contracts(
    step: PipelineStep,
    output: str,
    storage_paths: StepStoragePaths,
    run_inputs: Mapping[str, str],
) -> StepContractEvaluation:
    """Evaluate the contracts a step declares about its own output."""
    results: List[QualityGateResult] = []
    parsed_json: Optional[Dict[str, Any]] = None

    if step.output_format == OutputFormat.JSON:
        parsed_json = parse_json_output(output)
        valid = parsed_json is not None
        results.append(
            _contract_result(
                f"contract-json-format-{step.id}",
                "Step output must be valid JSON",
                valid,
                "Step produced valid JSON output."
                if valid
                else "Step is configured for JSON output but the output is not valid JSON.",
                "JSON parser check passed." if valid else output[:400],
            )
        )

    if step.required_output_fields:
        if parsed_json is None:
            parsed_json = parse_json_output(output)
        for field_path in step.required_output_fields:
            gate_id = f"contract-json-field-{step.id}-{field_path}"
            gate_name = f"Required field: {field_path}"
            if parsed_json is None:
                results.append(
                    _contract_result(
                        gate_id,
                        gate_name,
                        False,
                        f'Cannot verify required field "{field_path}" because output is not valid JSON.',
                        "Step output JSON parse failed.",
                    )
                )
                continue
            found, value = resolve_path_value(parsed_json, field_path)
            results.append(
                _contract_result(
                    gate_id,
                    gate_name,
                    found,
                    f'Required field "{field_path}" is present.'
                    if found
                    else f'Required field "{field_path}" is missing from output JSON.',
                    f"Value: {json.dumps(value)[:260]}" if found else "Path lookup failed.",
                )
            )

    if is_gate_result_contract_step(step):
        check = parse_gate_result_contract(output, parsed_json)
        strict = check.contract is not None and check.source == "json"
        if strict:
            message = "Step emitted strict GateResult JSON contract."
        elif check.contract is not None:
            message = "Legacy text status markers are not accepted for this step; emit strict GateResult JSON."
        else:
            message = "Step did not emit strict GateResult JSON contract."
        details = (
            f"source={check.source}, workflow_status={check.contract.workflow_status}, "
            f"next_action={check.contract.next_action}"
            if check.contract is not None
            else "Expected fields: workflow_status, next_action, reasons[]"
        )
        results.append(
            _contract_result(
                f"contract-gate-result-{step.id}", "Step emits GateResult contract", strict, message, details
            )
        )

    for template in step.required_output_files:
        state = check_artifact_state(template, storage_paths, run_inputs)
        results.append(
            _contract_result(
                f"contract-artifact-{step.id}-{template}",
                f"Required artifact: {template}",
                state.exists,
                f"Required artifact exists: {state.found_path}"
                if state.exists
                else f"Required artifact is missing: {template}",
                state.describe_paths(),
            )
        )

    return StepContractEvaluation(parsed_json=parsed_json, gate_results=results)


def requires_fresh_artifacts(step: PipelineStep) -> bool:
    return step.role in ARTIFACT_ROLES and bool(step.required_output_files)


def evaluate_artifact_freshness(
    step: PipelineStep,
    before: Sequence[ArtifactStateCheck],
    after: Sequence[ArtifactStateCheck],
) -> List[QualityGateResult]:
    """Report, per required artifact, whether this attempt updated it.

    Freshness is informational: an unchanged artifact that still exists is
    reported as already up-to-date and does not fail the step.
    """
    if not requires_fresh_artifacts(step):
        return []

    before_by_template = {state.template: state for state in before}
    results: List[QualityGateResult] = []
    for state in after:
        if not state.exists:
            continue
        prior = before_by_template.get(state.template, ArtifactStateCheck(template=state.template))
        changed = did_artifact_change(prior, state)
        results.append(
            _contract_result(
                f"contract-artifact-updated-{step.id}-{state.template}",
                f"Required artifact updated: {state.template}",
                True,
                f"Required artifact was updated in this attempt: {state.found_path}"
                if changed
                else f"Required artifact already up-to-date: {state.found_path}",
                state.describe_paths(),
            )
        )
    return results


def evaluate_delivery_completion(
    step: PipelineStep,
    output: str,
    parsed_json: Optional[Dict[str, Any]],
    outgoing_link_count: int,
) -> List[QualityGateResult]:
    """COMPLETE may only come from the final delivery stage.

    Applies when the step emitted a schema-valid JSON GateResult with
    workflow_status COMPLETE.
    """
    check = parse_gate_result_contract(output, parsed_json)
    if check.contract is None or check.source != "json" or check.contract.workflow_status != "COMPLETE":
        return []

    contract = check.contract
    metadata_ok = (
        contract.stage.strip().lower() == "final"
        and contract.step_role.strip().lower() == "delivery"
        and contract.gate_target.strip().lower() == "delivery"
    )
    final_stage = step.role == StepRole.EXECUTOR and outgoing_link_count == 0
    passed = metadata_ok and final_stage
    return [
        _contract_result(
            f"contract-delivery-complete-target-{step.id}",
            "Delivery completion target invariant",
            passed,
            "COMPLETE status was emitted on final delivery stage with explicit stage/role/target metadata."
            if passed
            else "COMPLETE status must only be emitted by final delivery stage and include "
            "stage=final, step_role=delivery, gate_target=delivery.",
            f"reported_stage={contract.stage or '(missing)'}, "
            f"reported_step_role={contract.step_role or '(missing)'}, "
            f"reported_gate_target={contract.gate_target or '(missing)'}, "
            f"step_role={step.role.value}, outgoing_links={outgoing_link_count}",
        )
    ]


# =============================================================================
# Pipeline quality gates
# =============================================================================


def normalize_regex_flags(raw_flags: str) -> str:
    """Keep known regex flag letters, de-duplicated, in first-seen order."""
    kept: List[str] = []
    for flag in raw_flags or "":
        if flag in _ALLOWED_FLAGS and flag not in kept:
            kept.append(flag)
    return "".join(kept)


def _python_flags(flags: str) -> int:
    value = 0
    for flag in flags:
        value |= _REGEX_FLAGS.get(flag, 0)
    return value


def _gate_result(gate: QualityGate, passed: bool, message: str, details: str) -> QualityGateResult:
    return QualityGateResult(
        gate_id=gate.id,
        gate_name=gate.name,
        kind=gate.kind.value,
        status=GateResultStatus.PASS if passed else GateResultStatus.FAIL,
        blocking=gate.blocking,
        message=gate.message or message,
        details=details,
    )


def _evaluate_regex_gate(
    gate: QualityGate, output: str, normalized_output: str, derived_output: str
) -> QualityGateResult:
    if not gate.pattern.strip():
        return _gate_result(
            gate, False, f'Regex gate "{gate.name}" has empty pattern.', "Define a regex pattern for this gate."
        )

    try:
        regex = re.compile(gate.pattern, _python_flags(normalize_regex_flags(gate.flags)))
    except re.error as exc:
        logger.warning("Invalid regex in quality gate %s: %s", gate.id, exc)
        return _gate_result(gate, False, f'Invalid regex in gate "{gate.name}".', str(exc))

    matched = (
        bool(regex.search(output))
        or (normalized_output != output and bool(regex.search(normalized_output)))
        or (bool(derived_output) and bool(regex.search(derived_output)))
    )
    must_match = gate.kind == GateKind.REGEX_MUST_MATCH
    if (
        not matched
        and must_match
        and _WORKFLOW_STATUS_WORD_RE.search(gate.pattern)
        and not _COMPLETE_WORD_RE.search(gate.pattern)
        and _COMPLETE_MARKER_RE.search(normalized_output)
    ):
        matched = True

    passed = matched if must_match else not matched
    if passed:
        message = f'Gate "{gate.name}" passed.'
    elif must_match:
        message = f'Output did not match required regex for gate "{gate.name}".'
    else:
        message = f'Output matched blocked regex for gate "{gate.name}".'
    return _gate_result(gate, passed, message, f"pattern={gate.pattern} flags={gate.flags or '(none)'}")


def _evaluate_json_gate(
    gate: QualityGate,
    output: str,
    parsed_json: Optional[Dict[str, Any]],
    storage_paths: StepStoragePaths,
    run_inputs: Mapping[str, str],
) -> QualityGateResult:
    json_path = gate.json_path.strip()
    if not json_path:
        return _gate_result(
            gate, False, f'JSON path is empty for gate "{gate.name}".', "Set jsonPath in gate configuration."
        )

    missing_message = f'JSON path "{gate.json_path}" is missing.'
    present_message = f'JSON path "{gate.json_path}" exists.'

    artifact_template = gate.artifact_path.strip()
    if artifact_template:
        state = check_artifact_state(artifact_template, storage_paths, run_inputs)
        if not state.exists:
            if state.disabled_storage:
                details = "Storage policy disabled the required artifact path."
            elif state.paths:
                details = f"Artifact missing for json_field_exists. Checked paths: {' | '.join(state.paths)}"
            else:
                details = "Artifact path could not be resolved."
            return _gate_result(gate, False, missing_message, details)

        try:
            payload = json.loads(Path(state.found_path).read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            return _gate_result(
                gate, False, missing_message, f"Artifact JSON parse failed ({state.found_path}): {exc}"
            )

        found, _ = resolve_path_value(payload, gate.json_path)
        return _gate_result(
            gate,
            found,
            present_message if found else missing_message,
            f"path={gate.json_path} source=artifact file={state.found_path}",
        )

    if parsed_json is None:
        parsed_json = parse_json_output(output)
    found = resolve_path_value(parsed_json, gate.json_path)[0] if parsed_json is not None else False
    return _gate_result(
        gate,
        found,
        present_message if found else missing_message,
        f"path={gate.json_path} source=output" if parsed_json is not None else "Output is not valid JSON.",
    )


def _evaluate_artifact_gate(
    gate: QualityGate, storage_paths: StepStoragePaths, run_inputs: Mapping[str, str]
) -> QualityGateResult:
    if not gate.artifact_path.strip():
        return _gate_result(
            gate,
            False,
            f'Artifact path is empty for gate "{gate.name}".',
            "Set artifactPath in gate configuration.",
        )

    state = check_artifact_state(gate.artifact_path, storage_paths, run_inputs)
    if state.disabled_storage:
        details = "Storage policy disabled the required artifact path."
    else:
        details = state.describe_paths()
    return _gate_result(
        gate,
        state.exists,
        f"Artifact found: {state.found_path}" if state.exists else f"Artifact missing: {gate.artifact_path}",
        details,
    )


def evaluate_pipeline_quality_gates(
    step: PipelineStep,
    output: str,
    parsed_json: Optional[Dict[str, Any]],
    quality_gates: Sequence[QualityGate],
    storage_paths: StepStoragePaths,
    run_inputs: Mapping[str, str],
) -> List[QualityGateResult]:
    """Evaluate every non-approval pipeline gate that targets the step."""
    relevant = [gate for gate in quality_gates if gate.applies_to(step.id)]
    if not relevant:
        return []

    normalized_output = normalize_status_markers(output)
    derived_output = build_status_signal_output(output, parsed_json)
    results: List[QualityGateResult] = []

    for gate in relevant:
        if gate.kind == GateKind.MANUAL_APPROVAL:
            continue
        if gate.kind in (GateKind.REGEX_MUST_MATCH, GateKind.REGEX_MUST_NOT_MATCH):
            results.append(_evaluate_regex_gate(gate, output, normalized_output, derived_output))
        elif gate.kind == GateKind.JSON_FIELD_EXISTS:
            results.append(_evaluate_json_gate(gate, output, parsed_json, storage_paths, run_inputs))
        elif gate.kind == GateKind.ARTIFACT_EXISTS:
            results.append(_evaluate_artifact_gate(gate, storage_paths, run_inputs))
        else:
            results.append(
                _gate_result(
                    gate,
                    False,
                    f'Unsupported quality gate kind "{gate.kind.value}".',
                    "Gate kind is not supported by the evaluator.",
                )
            )
    return results


# =============================================================================
# Manual approvals
# =============================================================================


def manual_approval_gates(step: PipelineStep, quality_gates: Sequence[QualityGate]) -> List[QualityGate]:
    return [g for g in quality_gates if g.kind == GateKind.MANUAL_APPROVAL and g.applies_to(step.id)]


def evaluate_manual_approval_results(
    gates: Sequence[QualityGate],
    approvals: Mapping[str, Approval],
) -> List[QualityGateResult]:
    """Turn resolved approvals into gate results.

    Args:
        gates: Manual approval gates for the step.
        approvals: Approval records keyed by gate id for this attempt.
    """
    results: List[QualityGateResult] = []
    for gate in gates:
        custom_message = gate.message.strip()
        approval = approvals.get(gate.id)
        if approval is None:
            results.append(
                QualityGateResult(
                    gate_id=gate.id,
                    gate_name=gate.name,
                    kind=gate.kind.value,
                    status=GateResultStatus.FAIL,
                    blocking=gate.blocking,
                    message=custom_message or f'Manual approval rejected for "{gate.name}".',
                    details="Manual approval record missing.",
                )
            )
            continue
        approved = approval.status == ApprovalStatus.APPROVED
        details = f"decision={approval.status.value}"
        if approval.note.strip():
            details += f" note={approval.note.strip()}"
        results.append(
            QualityGateResult(
                gate_id=gate.id,
                gate_name=gate.name,
                kind=gate.kind.value,
                status=GateResultStatus.PASS if approved else GateResultStatus.FAIL,
                blocking=gate.blocking,
                message=custom_message
                or (
                    f'Manual approval granted for "{gate.name}".'
                    if approved
                    else f'Manual approval rejected for "{gate.name}".'
                ),
                details=details,
            )
        )
    return results


# =============================================================================
# Summaries
# =============================================================================


def blocking_failures(results: Sequence[QualityGateResult]) -> List[QualityGateResult]:
    return [r for r in results if r.failed and r.blocking]


def format_blocking_gate_failures(results: Sequence[QualityGateResult]) -> str:
    """``QUALITY_GATES_BLOCKED:`` summary appended to blocked step output."""
    failures = blocking_failures(results)
    if not failures:
        return ""
    lines = [BLOCKED_SUMMARY_HEADER]
    for index, result in enumerate(failures, start=1):
        line = f"{index}. {result.gate_name}: {result.message}"
        if result.details:
            line += f" ({result.details})"
        lines.append(line)
    return "\n".join(lines)


def summarize_blocking_failures(results: Sequence[QualityGateResult]) -> str:
    """One-line summary for the run log: ``name: message | name: message``."""
    return " | ".join(f"{r.gate_name}: {r.message}" for r in blocking_failures(results))
