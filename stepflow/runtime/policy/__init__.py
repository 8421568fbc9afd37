# stepflow/runtime/policy package
# Quality gate and caching policy engine: skip decisions before a step runs,
# contract and gate evaluation after it runs, outcome folding and routing.

from .artifacts import ArtifactStateCheck, check_artifact_state, check_artifacts_state, did_artifact_change
from .gates import (
    evaluate_artifact_freshness,
    evaluate_delivery_completion,
    evaluate_manual_approval_results,
    evaluate_pipeline_quality_gates,
    evaluate_step_contracts,
    format_blocking_gate_failures,
)
from .outcome import resolve_workflow_outcome, route_matches_condition, select_routed_links
from .profiles import (
    PolicyProfile,
    evaluate_profile_contracts,
    list_policy_profiles,
    resolve_profiles_for_step,
)
from .skip_policy import SkipBypassReason, SkipDecision, decide_skip, resolve_skip_bypass_reason

__all__ = [
    "ArtifactStateCheck",
    "check_artifact_state",
    "check_artifacts_state",
    "did_artifact_change",
    "evaluate_artifact_freshness",
    "evaluate_delivery_completion",
    "evaluate_manual_approval_results",
    "evaluate_pipeline_quality_gates",
    "evaluate_step_contracts",
    "format_blocking_gate_failures",
    "resolve_workflow_outcome",
    "route_matches_condition",
    "select_routed_links",
    "PolicyProfile",
    "evaluate_profile_contracts",
    "list_policy_profiles",
    "resolve_profiles_for_step",
    "SkipBypassReason",
    "SkipDecision",
    "decide_skip",
    "resolve_skip_bypass_reason",
]
