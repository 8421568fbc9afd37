"""Outcome folding and conditional routing."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from ..types import LinkCondition, PipelineLink, QualityGateResult, WorkflowOutcome
from .output_parsing import infer_declared_outcome


def resolve_workflow_outcome(
    output: str,
    parsed_json: Optional[Dict[str, Any]],
    gate_results: Sequence[QualityGateResult],
    needs_input: bool = False,
) -> WorkflowOutcome:
    """Fold gate results and the step's own status into one outcome.

    fail on a blocking gate failure or an input request; neutral when any
    other gate failed; otherwise the outcome the step declared
    (WORKFLOW_STATUS / workflow_status), defaulting to pass.
    """
    if needs_input or any(r.failed and r.blocking for r in gate_results):
        return WorkflowOutcome.FAIL
    if any(r.failed for r in gate_results):
        return WorkflowOutcome.NEUTRAL

    declared = infer_declared_outcome(output, parsed_json)
    return declared if declared is not None else WorkflowOutcome.PASS


def route_matches_condition(condition: str, outcome: WorkflowOutcome) -> bool:
    if condition == LinkCondition.ON_PASS.value:
        return outcome == WorkflowOutcome.PASS
    if condition == LinkCondition.ON_FAIL.value:
        return outcome == WorkflowOutcome.FAIL
    return True


def select_routed_links(
    outgoing: Sequence[PipelineLink],
    outcome: WorkflowOutcome,
    has_blocking_failure: bool,
) -> List[PipelineLink]:
    """Links to follow after a step; a blocking failure follows only on_fail links."""
    if outcome == WorkflowOutcome.FAIL and has_blocking_failure:
        return [link for link in outgoing if link.condition == LinkCondition.ON_FAIL.value]
    return [link for link in outgoing if route_matches_condition(link.condition, outcome)]
