"""
types - Core type definitions for the stepflow runtime.

Pipeline snapshot types are immutable; run state types are mutated only by
the scheduler through the run store.

Usage:
    from stepflow.runtime.types import (
        Pipeline, PipelineStep, PipelineLink, QualityGate, RuntimeLimits,
        Run, StepRun, RunStatus, WorkflowOutcome, QualityGateResult,
        ToolCall,
    )
"""

from __future__ import annotations

from ._ids import RunId, StepId, generate_event_id, generate_run_id, make_approval_id
from ._time import now_iso, now_utc
from .pipeline import (
    ANY_STEP,
    ARTIFACT_ROLES,
    REVIEW_ROLES,
    GateKind,
    LinkCondition,
    OutputFormat,
    Pipeline,
    PipelineLink,
    PipelineStep,
    ProviderId,
    QualityGate,
    ReasoningEffort,
    RuntimeLimits,
    StepRole,
)
from .runs import (
    Approval,
    ApprovalStatus,
    GateResultStatus,
    QualityGateResult,
    Run,
    RunEvent,
    RunStatus,
    StepRun,
    StepRunStatus,
    TriggerReason,
    WorkflowOutcome,
    run_event_from_dict,
    run_event_to_dict,
)
from .tools import ToolCall, ToolResult

__all__ = [
    "RunId",
    "StepId",
    "generate_event_id",
    "generate_run_id",
    "make_approval_id",
    "now_iso",
    "now_utc",
    "ANY_STEP",
    "ARTIFACT_ROLES",
    "REVIEW_ROLES",
    "GateKind",
    "LinkCondition",
    "OutputFormat",
    "Pipeline",
    "PipelineLink",
    "PipelineStep",
    "ProviderId",
    "QualityGate",
    "ReasoningEffort",
    "RuntimeLimits",
    "StepRole",
    "Approval",
    "ApprovalStatus",
    "GateResultStatus",
    "QualityGateResult",
    "Run",
    "RunEvent",
    "RunStatus",
    "StepRun",
    "StepRunStatus",
    "TriggerReason",
    "WorkflowOutcome",
    "run_event_from_dict",
    "run_event_to_dict",
    "ToolCall",
    "ToolResult",
]
