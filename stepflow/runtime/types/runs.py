"""Run types for execution lifecycle and event tracking.

This module contains types for representing runs, step runs, gate
results, manual approvals, and run events.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ._ids import RunId, StepId, generate_event_id
from ._time import _datetime_to_iso, _iso_to_datetime, now_utc


class RunStatus(str, Enum):
    """Status of a run's execution lifecycle."""

    QUEUED = "queued"
    RUNNING = "running"
    PAUSED = "paused"
    AWAITING_APPROVAL = "awaiting_approval"  # Blocked on a manual approval gate
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)

    @property
    def is_active(self) -> bool:
        return self in (
            RunStatus.QUEUED,
            RunStatus.RUNNING,
            RunStatus.PAUSED,
            RunStatus.AWAITING_APPROVAL,
        )


class StepRunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class WorkflowOutcome(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    NEUTRAL = "neutral"


class TriggerReason(str, Enum):
    """Why a step was queued."""

    ENTRY_STEP = "entry_step"
    CYCLE_BOOTSTRAP = "cycle_bootstrap"
    ROUTE = "route"
    DELEGATE = "delegate"
    SKIP_IF_ARTIFACTS = "skip_if_artifacts"
    DISCONNECTED_FALLBACK = "disconnected_fallback"


class GateResultStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass
class QualityGateResult:
    """Result of one gate or synthetic contract check for one step attempt.

    Attributes:
        gate_id: Gate id, or a synthetic ``contract-*`` id.
        gate_name: Human-readable name used in blocking summaries.
        kind: Gate kind value, or "step_contract" for synthetic checks.
        status: pass or fail.
        blocking: Whether a failure blocks the step (outcome fail).
        message: Short human message.
        details: Free-text details (paths, decision notes).
    """

    gate_id: str
    gate_name: str
    kind: str
    status: GateResultStatus
    blocking: bool
    message: str
    details: str = ""

    @property
    def failed(self) -> bool:
        return self.status == GateResultStatus.FAIL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "gate_id": self.gate_id,
            "gate_name": self.gate_name,
            "kind": self.kind,
            "status": self.status.value,
            "blocking": self.blocking,
            "message": self.message,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QualityGateResult":
        return cls(
            gate_id=data.get("gate_id", ""),
            gate_name=data.get("gate_name", ""),
            kind=data.get("kind", ""),
            status=GateResultStatus(data.get("status", "fail")),
            blocking=bool(data.get("blocking", True)),
            message=data.get("message", ""),
            details=data.get("details", ""),
        )


@dataclass
class Approval:
    """A pending or resolved manual approval for one gate on one step attempt."""

    id: str
    gate_id: str
    gate_name: str
    step_id: StepId
    step_name: str
    message: str
    status: ApprovalStatus = ApprovalStatus.PENDING
    blocking: bool = True
    note: str = ""
    requested_at: datetime = field(default_factory=now_utc)
    resolved_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "gate_id": self.gate_id,
            "gate_name": self.gate_name,
            "step_id": self.step_id,
            "step_name": self.step_name,
            "message": self.message,
            "status": self.status.value,
            "blocking": self.blocking,
            "note": self.note,
            "requested_at": _datetime_to_iso(self.requested_at),
            "resolved_at": _datetime_to_iso(self.resolved_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Approval":
        return cls(
            id=data.get("id", ""),
            gate_id=data.get("gate_id", ""),
            gate_name=data.get("gate_name", ""),
            step_id=data.get("step_id", ""),
            step_name=data.get("step_name", ""),
            message=data.get("message", ""),
            status=ApprovalStatus(data.get("status", "pending")),
            blocking=bool(data.get("blocking", True)),
            note=data.get("note", ""),
            requested_at=_iso_to_datetime(data.get("requested_at")) or now_utc(),
            resolved_at=_iso_to_datetime(data.get("resolved_at")),
        )


@dataclass
class StepRun:
    """Execution record for one step within a run.

    Attributes:
        step_id: The step this record tracks.
        status: pending, running, completed or failed.
        attempts: How many times the step has been dispatched.
        workflow_outcome: Outcome of the latest attempt, once known.
        input_context: Context text composed for the latest attempt.
        output: Raw output text of the latest attempt.
        error: Error text of the latest failed attempt.
        quality_gate_results: Gate and contract results of the latest attempt.
        triggered_by_step_id: Step that caused this dispatch, if any.
        triggered_by_reason: Why the step was queued.
        started_at: When the latest attempt started.
        finished_at: When the latest attempt finished.
    """

    step_id: StepId
    status: StepRunStatus = StepRunStatus.PENDING
    attempts: int = 0
    workflow_outcome: Optional[WorkflowOutcome] = None
    input_context: str = ""
    output: str = ""
    error: Optional[str] = None
    quality_gate_results: List[QualityGateResult] = field(default_factory=list)
    triggered_by_step_id: Optional[StepId] = None
    triggered_by_reason: Optional[TriggerReason] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_id": self.step_id,
            "status": self.status.value,
            "attempts": self.attempts,
            "workflow_outcome": self.workflow_outcome.value if self.workflow_outcome else None,
            "input_context": self.input_context,
            "output": self.output,
            "error": self.error,
            "quality_gate_results": [r.to_dict() for r in self.quality_gate_results],
            "triggered_by_step_id": self.triggered_by_step_id,
            "triggered_by_reason": (
                self.triggered_by_reason.value if self.triggered_by_reason else None
            ),
            "started_at": _datetime_to_iso(self.started_at),
            "finished_at": _datetime_to_iso(self.finished_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepRun":
        outcome = data.get("workflow_outcome")
        reason = data.get("triggered_by_reason")
        return cls(
            step_id=data.get("step_id", ""),
            status=StepRunStatus(data.get("status", "pending")),
            attempts=int(data.get("attempts", 0)),
            workflow_outcome=WorkflowOutcome(outcome) if outcome else None,
            input_context=data.get("input_context", ""),
            output=data.get("output", ""),
            error=data.get("error"),
            quality_gate_results=[
                QualityGateResult.from_dict(r) for r in data.get("quality_gate_results", [])
            ],
            triggered_by_step_id=data.get("triggered_by_step_id"),
            triggered_by_reason=TriggerReason(reason) if reason else None,
            started_at=_iso_to_datetime(data.get("started_at")),
            finished_at=_iso_to_datetime(data.get("finished_at")),
        )


@dataclass
class Run:
    """Mutable state of one pipeline run."""

    id: RunId
    pipeline_id: str
    task: str
    inputs: Dict[str, str] = field(default_factory=dict)
    scenario: Optional[str] = None
    status: RunStatus = RunStatus.QUEUED
    steps: List[StepRun] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)
    approvals: List[Approval] = field(default_factory=list)
    created_at: datetime = field(default_factory=now_utc)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def step(self, step_id: StepId) -> Optional[StepRun]:
        for step_run in self.steps:
            if step_run.step_id == step_id:
                return step_run
        return None

    def pending_approvals(self, step_id: Optional[StepId] = None) -> List[Approval]:
        return [
            a
            for a in self.approvals
            if a.status == ApprovalStatus.PENDING and (step_id is None or a.step_id == step_id)
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pipeline_id": self.pipeline_id,
            "task": self.task,
            "inputs": dict(self.inputs),
            "scenario": self.scenario,
            "status": self.status.value,
            "steps": [s.to_dict() for s in self.steps],
            "logs": list(self.logs),
            "approvals": [a.to_dict() for a in self.approvals],
            "created_at": _datetime_to_iso(self.created_at),
            "started_at": _datetime_to_iso(self.started_at),
            "finished_at": _datetime_to_iso(self.finished_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Run":
        return cls(
            id=data.get("id", ""),
            pipeline_id=data.get("pipeline_id", ""),
            task=data.get("task", ""),
            inputs={str(k): str(v) for k, v in (data.get("inputs") or {}).items()},
            scenario=data.get("scenario"),
            status=RunStatus(data.get("status", "queued")),
            steps=[StepRun.from_dict(s) for s in data.get("steps", [])],
            logs=list(data.get("logs", [])),
            approvals=[Approval.from_dict(a) for a in data.get("approvals", [])],
            created_at=_iso_to_datetime(data.get("created_at")) or now_utc(),
            started_at=_iso_to_datetime(data.get("started_at")),
            finished_at=_iso_to_datetime(data.get("finished_at")),
        )


@dataclass
class RunEvent:
    """A single event in a run's timeline.

    Attributes:
        run_id: The run this event belongs to.
        ts: Timestamp of the event.
        kind: Event type ("log", "run_status", "step_status", "approval").
        event_id: Globally unique, time-ordered identifier (ULID).
        seq: Monotonic sequence number within the run (assigned by the store).
        step_id: Optional step identifier.
        payload: Event-specific data.
    """

    run_id: RunId
    ts: datetime
    kind: str
    event_id: str = field(default_factory=generate_event_id)
    seq: int = 0
    step_id: Optional[StepId] = None
    payload: Dict[str, Any] = field(default_factory=dict)


def run_event_to_dict(event: RunEvent) -> Dict[str, Any]:
    """Convert RunEvent to a dictionary for serialization."""
    return {
        "run_id": event.run_id,
        "ts": _datetime_to_iso(event.ts),
        "kind": event.kind,
        "event_id": event.event_id,
        "seq": event.seq,
        "step_id": event.step_id,
        "payload": dict(event.payload),
    }


def run_event_from_dict(data: Dict[str, Any]) -> RunEvent:
    """Parse RunEvent from a dictionary.

    Events written without an event_id get a fresh one.
    """
    return RunEvent(
        run_id=data.get("run_id", ""),
        ts=_iso_to_datetime(data.get("ts")) or now_utc(),
        kind=data.get("kind", ""),
        event_id=data.get("event_id") or generate_event_id(),
        seq=data.get("seq", 0),
        step_id=data.get("step_id"),
        payload=dict(data.get("payload", {})),
    )
