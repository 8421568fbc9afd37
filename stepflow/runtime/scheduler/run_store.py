"""
run_store.py - Thread-safe in-memory run store with disk snapshots.

The RunStore owns every mutable Run. Each transition runs under the store
lock, appends its human-readable line to ``Run.logs``, mirrors it to
``events.jsonl`` as a RunEvent, and rewrites ``state.json`` atomically.

The log line texts are part of the observable contract of the runtime:

    Run started at <iso>
    Run completed at <iso>
    Run failed: <reason>
    Run stopped: <reason>
    <step> started (attempt N)
    <step> completed (<outcome>)
    <step> failed: <error>
    <step> paused (attempt N)

Usage:
    from stepflow.runtime.scheduler import RunStore

    store = RunStore(settings.storage)
    run = store.create_run(pipeline, "Build the deck", inputs={"output_dir": "/tmp/out"})
    store.pause_run(run.id)
    store.resolve_approval(run.id, approval_id, "approved", note="looks good")
"""

from __future__ import annotations

import copy
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from stepflow.config.runtime_config import StorageConfig

from .. import storage
from ..run_inputs import normalize_run_inputs
from ..storage import StorageFlags
from ..types import (
    Approval,
    ApprovalStatus,
    Pipeline,
    PipelineStep,
    QualityGate,
    QualityGateResult,
    Run,
    RunEvent,
    RunId,
    RunStatus,
    StepId,
    StepRun,
    StepRunStatus,
    TriggerReason,
    WorkflowOutcome,
    generate_run_id,
    make_approval_id,
    now_iso,
    now_utc,
)

logger = logging.getLogger(__name__)

STOPPED_BY_USER = "Stopped by user"

_PAUSABLE = (RunStatus.QUEUED, RunStatus.RUNNING, RunStatus.AWAITING_APPROVAL)


@dataclass(frozen=True)
class StepStart:
    """Provenance and context recorded when a step attempt starts."""

    attempt: int
    context: str = ""
    triggered_by_step_id: Optional[StepId] = None
    triggered_by_reason: Optional[TriggerReason] = None


def scheduled_steps(pipeline: Pipeline, scenario: Optional[str]) -> List[PipelineStep]:
    """Steps a run schedules: all of them, or those tagged for the scenario."""
    if not scenario:
        return list(pipeline.steps)
    return [step for step in pipeline.steps if not step.scenarios or scenario in step.scenarios]


def pipeline_snapshot(pipeline: Pipeline) -> Dict[str, Any]:
    """JSON-ready copy of a pipeline for ``pipeline-snapshot.json``."""
    return {
        "id": pipeline.id,
        "name": pipeline.name,
        "steps": [
            {
                "id": step.id,
                "name": step.name,
                "role": step.role.value,
                "provider_id": step.provider_id.value,
                "model": step.model,
                "output_format": step.output_format.value,
                "required_output_files": list(step.required_output_files),
                "skip_if_artifacts": list(step.skip_if_artifacts),
                "scenarios": list(step.scenarios),
            }
            for step in pipeline.steps
        ],
        "links": [
            {
                "id": link.id,
                "source_step_id": link.source_step_id,
                "target_step_id": link.target_step_id,
                "condition": link.condition,
            }
            for link in pipeline.links
        ],
        "quality_gates": [
            {"id": gate.id, "name": gate.name, "kind": gate.kind.value, "target_step_id": gate.target_step_id}
            for gate in pipeline.quality_gates
        ],
        "runtime": {
            "max_loops": pipeline.runtime.max_loops,
            "max_step_executions": pipeline.runtime.max_step_executions,
            "stage_timeout_ms": pipeline.runtime.stage_timeout_ms,
        },
    }


class RunStore:
    """Owner of run state for the process.

    Args:
        storage_config: Where run snapshots and events are written.
        persist: Write ``state.json`` and ``events.jsonl`` (off for pure
            in-memory use).
    """

    def __init__(self, storage_config: StorageConfig, persist: bool = True):
        self.storage_config = storage_config
        self._persist = persist
        self._lock = threading.RLock()
        self._runs: Dict[RunId, Run] = {}
        self._storage_flags: Dict[RunId, Dict[StepId, StorageFlags]] = {}
        self._event_seq: Dict[RunId, int] = {}

    # =========================================================================
    # Creation and queries
    # =========================================================================

    def create_run(
        self,
        pipeline: Pipeline,
        task: str,
        inputs: Optional[Dict[str, Any]] = None,
        scenario: Optional[str] = None,
        run_id: Optional[RunId] = None,
    ) -> Run:
        """Create a queued run with a pending StepRun per scheduled step."""
        steps = scheduled_steps(pipeline, scenario)
        run = Run(
            id=run_id or generate_run_id(),
            pipeline_id=pipeline.id,
            task=task,
            inputs=normalize_run_inputs(inputs or {}),
            scenario=scenario or None,
            steps=[StepRun(step_id=step.id) for step in steps],
        )
        with self._lock:
            self._runs[run.id] = run
            self._storage_flags[run.id] = {}
            self._event_seq[run.id] = 0
            if self._persist:
                storage.write_pipeline_snapshot(
                    run.id,
                    {"captured_at": now_iso(), "pipeline": pipeline_snapshot(pipeline)},
                    self.storage_config,
                )
            self._emit(run, "run_status", {"status": run.status.value})
            self._save(run)
            return copy.deepcopy(run)

    def get_run(self, run_id: RunId) -> Optional[Run]:
        """A detached copy of the run, or None."""
        with self._lock:
            run = self._runs.get(run_id)
            return copy.deepcopy(run) if run is not None else None

    def list_runs(self) -> List[Run]:
        with self._lock:
            return [copy.deepcopy(run) for run in self._runs.values()]

    def status(self, run_id: RunId) -> Optional[RunStatus]:
        with self._lock:
            run = self._runs.get(run_id)
            return run.status if run is not None else None

    def events(self, run_id: RunId) -> List[RunEvent]:
        return storage.read_events(run_id, self.storage_config)

    # =========================================================================
    # Internals
    # =========================================================================

    def _require(self, run_id: RunId) -> Run:
        run = self._runs.get(run_id)
        if run is None:
            raise KeyError(f"Run not found: {run_id}")
        return run

    def _step_run(self, run: Run, step_id: StepId) -> StepRun:
        step_run = run.step(step_id)
        if step_run is None:
            step_run = StepRun(step_id=step_id)
            run.steps.append(step_run)
        return step_run

    def _emit(self, run: Run, kind: str, payload: Dict[str, Any], step_id: Optional[StepId] = None) -> None:
        if not self._persist:
            return
        self._event_seq[run.id] = self._event_seq.get(run.id, 0) + 1
        event = RunEvent(
            run_id=run.id,
            ts=now_utc(),
            kind=kind,
            seq=self._event_seq[run.id],
            step_id=step_id,
            payload=payload,
        )
        storage.append_event(run.id, event, self.storage_config)

    def _log(self, run: Run, message: str, step_id: Optional[StepId] = None) -> None:
        run.logs.append(message)
        self._emit(run, "log", {"message": message}, step_id=step_id)

    def _set_status(self, run: Run, status: RunStatus) -> None:
        if run.status == status:
            return
        run.status = status
        if status.is_terminal:
            run.finished_at = now_utc()
        self._emit(run, "run_status", {"status": status.value})

    def _save(self, run: Run) -> None:
        if not self._persist:
            return
        state = run.to_dict()
        state["storage_flags"] = {
            step_id: {"shared": flags.shared, "isolated": flags.isolated}
            for step_id, flags in self._storage_flags.get(run.id, {}).items()
        }
        try:
            storage.write_run_state(run.id, state, self.storage_config)
        except OSError as e:
            logger.warning("Failed to write state for run '%s': %s", run.id, e)

    def _update(self, run_id: RunId, mutate: Callable[[Run], Any]) -> Any:
        with self._lock:
            run = self._require(run_id)
            result = mutate(run)
            self._save(run)
            return result

    # =========================================================================
    # Run log
    # =========================================================================

    def append_log(self, run_id: RunId, message: str, step_id: Optional[StepId] = None) -> None:
        self._update(run_id, lambda run: self._log(run, message, step_id))

    # =========================================================================
    # Run transitions
    # =========================================================================

    def mark_run_start(self, run_id: RunId) -> None:
        """Move a queued run to running.

        Terminal runs are untouched; paused and awaiting_approval runs keep
        their status.
        """

        def _mutate(run: Run) -> None:
            if run.status.is_terminal:
                return
            if run.started_at is None:
                run.started_at = now_utc()
            if run.status in (RunStatus.PAUSED, RunStatus.AWAITING_APPROVAL):
                return
            self._set_status(run, RunStatus.RUNNING)
            self._log(run, f"Run started at {now_iso()}")

        self._update(run_id, _mutate)

    def mark_run_completed(self, run_id: RunId) -> None:
        def _mutate(run: Run) -> None:
            if run.status == RunStatus.CANCELLED:
                return
            self._set_status(run, RunStatus.COMPLETED)
            self._log(run, f"Run completed at {now_iso()}")

        self._update(run_id, _mutate)

    def mark_run_failed(self, run_id: RunId, reason: str) -> None:
        def _mutate(run: Run) -> None:
            if run.status == RunStatus.CANCELLED:
                return
            self._set_status(run, RunStatus.FAILED)
            self._log(run, f"Run failed: {reason}")

        self._update(run_id, _mutate)

    def cancel_run(self, run_id: RunId, reason: str = STOPPED_BY_USER) -> bool:
        """Cancel an active run; running steps fail with the reason.

        Returns:
            True if the run was active and is now cancelled.
        """

        def _mutate(run: Run) -> bool:
            if not run.status.is_active:
                return False
            for step_run in run.steps:
                if step_run.status == StepRunStatus.RUNNING:
                    step_run.status = StepRunStatus.FAILED
                    step_run.workflow_outcome = WorkflowOutcome.FAIL
                    step_run.error = reason
                    step_run.finished_at = now_utc()
                    self._emit(run, "step_status", {"status": "failed", "error": reason}, step_run.step_id)
            self._set_status(run, RunStatus.CANCELLED)
            self._log(run, f"Run stopped: {reason}")
            return True

        with self._lock:
            if run_id not in self._runs:
                return False
            return self._update(run_id, _mutate)

    def pause_run(self, run_id: RunId) -> bool:
        def _mutate(run: Run) -> bool:
            if run.status not in _PAUSABLE:
                return False
            self._set_status(run, RunStatus.PAUSED)
            self._log(run, "Run paused by user.")
            return True

        with self._lock:
            if run_id not in self._runs:
                return False
            return self._update(run_id, _mutate)

    def resume_run(self, run_id: RunId) -> bool:
        """Resume a paused run; it waits for approvals again if any are pending."""

        def _mutate(run: Run) -> bool:
            if run.status != RunStatus.PAUSED:
                return False
            next_status = RunStatus.AWAITING_APPROVAL if run.pending_approvals() else RunStatus.RUNNING
            self._set_status(run, next_status)
            self._log(run, "Run resumed by user.")
            return True

        with self._lock:
            if run_id not in self._runs:
                return False
            return self._update(run_id, _mutate)

    def recover_from_awaiting_approval(self, run_id: RunId) -> bool:
        def _mutate(run: Run) -> bool:
            if run.status != RunStatus.AWAITING_APPROVAL or run.pending_approvals():
                return False
            self._set_status(run, RunStatus.RUNNING)
            self._log(run, "Recovered from awaiting_approval state with no pending approvals.")
            return True

        return self._update(run_id, _mutate)

    # =========================================================================
    # Step transitions
    # =========================================================================

    def mark_step_running(self, run_id: RunId, step: PipelineStep, start: StepStart) -> None:
        def _mutate(run: Run) -> None:
            step_run = self._step_run(run, step.id)
            step_run.status = StepRunStatus.RUNNING
            step_run.attempts = start.attempt
            step_run.input_context = start.context
            step_run.error = None
            step_run.quality_gate_results = []
            step_run.triggered_by_step_id = start.triggered_by_step_id
            step_run.triggered_by_reason = start.triggered_by_reason
            step_run.started_at = now_utc()
            step_run.finished_at = None
            self._emit(run, "step_status", {"status": "running", "attempt": start.attempt}, step.id)
            self._log(run, f"{step.label} started (attempt {start.attempt})", step.id)

        self._update(run_id, _mutate)

    def mark_step_completed(
        self,
        run_id: RunId,
        step: PipelineStep,
        output: str,
        gate_results: Sequence[QualityGateResult],
        outcome: WorkflowOutcome,
        attempt: int,
        notes: Sequence[str] = (),
    ) -> None:
        def _mutate(run: Run) -> None:
            step_run = self._step_run(run, step.id)
            step_run.status = StepRunStatus.COMPLETED
            step_run.attempts = attempt
            step_run.output = output
            step_run.quality_gate_results = list(gate_results)
            step_run.workflow_outcome = outcome
            step_run.error = None
            step_run.finished_at = now_utc()
            self._emit(run, "step_status", {"status": "completed", "outcome": outcome.value}, step.id)
            self._log(run, f"{step.label} completed ({outcome.value})", step.id)
            for note in notes:
                self._log(run, note, step.id)

        self._update(run_id, _mutate)

    def mark_step_skipped(
        self,
        run_id: RunId,
        step: PipelineStep,
        output: str,
        attempt: int,
        triggered_by_step_id: Optional[StepId],
        triggered_by_reason: Optional[TriggerReason],
    ) -> None:
        """Record a cache hit: completed with outcome pass, no provider call."""

        def _mutate(run: Run) -> None:
            step_run = self._step_run(run, step.id)
            now = now_utc()
            step_run.status = StepRunStatus.COMPLETED
            step_run.attempts = attempt
            step_run.output = output
            step_run.quality_gate_results = []
            step_run.workflow_outcome = WorkflowOutcome.PASS
            step_run.error = None
            step_run.triggered_by_step_id = triggered_by_step_id
            step_run.triggered_by_reason = triggered_by_reason
            step_run.started_at = now
            step_run.finished_at = now
            self._emit(run, "step_status", {"status": "completed", "outcome": "pass", "skipped": True}, step.id)

        self._update(run_id, _mutate)

    def mark_step_failed(self, run_id: RunId, step: PipelineStep, error: str, attempt: int) -> None:
        """Fail the step and the run with it."""

        def _mutate(run: Run) -> None:
            step_run = self._step_run(run, step.id)
            step_run.status = StepRunStatus.FAILED
            step_run.attempts = attempt
            step_run.workflow_outcome = WorkflowOutcome.FAIL
            step_run.error = error
            step_run.finished_at = now_utc()
            self._emit(run, "step_status", {"status": "failed", "error": error}, step.id)
            self._log(run, f"{step.label} failed: {error}", step.id)
            if run.status != RunStatus.CANCELLED:
                self._set_status(run, RunStatus.FAILED)

        self._update(run_id, _mutate)

    def mark_step_paused(self, run_id: RunId, step: PipelineStep, attempt: int) -> None:
        """Return an interrupted step to pending so a resume re-dispatches it."""

        def _mutate(run: Run) -> None:
            step_run = self._step_run(run, step.id)
            step_run.status = StepRunStatus.PENDING
            step_run.attempts = attempt
            step_run.workflow_outcome = WorkflowOutcome.NEUTRAL
            step_run.finished_at = None
            self._emit(run, "step_status", {"status": "pending", "attempt": attempt}, step.id)
            self._log(run, f"{step.label} paused (attempt {attempt})", step.id)

        self._update(run_id, _mutate)

    # =========================================================================
    # Manual approvals
    # =========================================================================

    def request_approvals(
        self,
        run_id: RunId,
        step: PipelineStep,
        gates: Sequence[QualityGate],
        attempt: int,
    ) -> List[str]:
        """Create pending approvals for one step attempt (idempotent).

        Returns:
            Approval ids in gate order.
        """
        approval_ids = [make_approval_id(gate.id, step.id, attempt) for gate in gates]

        def _mutate(run: Run) -> None:
            existing = {approval.id for approval in run.approvals}
            added: List[str] = []
            for gate, approval_id in zip(gates, approval_ids):
                if approval_id in existing:
                    continue
                run.approvals.append(
                    Approval(
                        id=approval_id,
                        gate_id=gate.id,
                        gate_name=gate.name,
                        step_id=step.id,
                        step_name=step.label,
                        message=gate.message.strip() or f'Manual approval required for "{gate.name}".',
                        blocking=gate.blocking,
                    )
                )
                added.append(gate.name)
                self._emit(run, "approval", {"approval_id": approval_id, "status": "pending"}, step.id)

            pending_current = any(
                approval.id in approval_ids and approval.status == ApprovalStatus.PENDING
                for approval in run.approvals
            )
            if pending_current and run.status in (RunStatus.QUEUED, RunStatus.RUNNING):
                self._set_status(run, RunStatus.AWAITING_APPROVAL)
            if added:
                self._log(run, f"{step.label} is waiting for manual approval: {', '.join(added)}", step.id)

        self._update(run_id, _mutate)
        return approval_ids

    def resolve_approval(
        self,
        run_id: RunId,
        approval_id: str,
        decision: str,
        note: str = "",
    ) -> Optional[Approval]:
        """Record an approved/rejected decision for a pending approval.

        Returns:
            The updated approval, or None when the run or a pending approval
            with that id does not exist.

        Raises:
            ValueError: If the decision is not "approved" or "rejected".
        """
        status = ApprovalStatus(decision)
        if status == ApprovalStatus.PENDING:
            raise ValueError("Approval decision must be approved or rejected")

        def _mutate(run: Run) -> Optional[Approval]:
            for approval in run.approvals:
                if approval.id != approval_id:
                    continue
                if approval.status != ApprovalStatus.PENDING:
                    return None
                approval.status = status
                approval.note = note.strip()
                approval.resolved_at = now_utc()
                self._emit(run, "approval", {"approval_id": approval_id, "status": status.value}, approval.step_id)
                self._log(
                    run,
                    f'Manual approval {status.value} for "{approval.gate_name}" on {approval.step_name}',
                    approval.step_id,
                )
                return copy.deepcopy(approval)
            return None

        with self._lock:
            if run_id not in self._runs:
                return None
            return self._update(run_id, _mutate)

    def finish_approval_wait(self, run_id: RunId, step: PipelineStep) -> None:
        def _mutate(run: Run) -> None:
            if run.status != RunStatus.AWAITING_APPROVAL or run.pending_approvals():
                return
            self._set_status(run, RunStatus.RUNNING)
            self._log(run, f"{step.label} manual approvals resolved; resuming execution.", step.id)

        self._update(run_id, _mutate)

    def mark_awaiting_approval(self, run_id: RunId) -> None:
        def _mutate(run: Run) -> None:
            if run.status in (RunStatus.QUEUED, RunStatus.RUNNING):
                self._set_status(run, RunStatus.AWAITING_APPROVAL)

        self._update(run_id, _mutate)

    # =========================================================================
    # Storage flags
    # =========================================================================

    def storage_flags(self, run_id: RunId, step_id: StepId) -> Optional[StorageFlags]:
        with self._lock:
            return self._storage_flags.get(run_id, {}).get(step_id)

    def record_storage_flags(self, run_id: RunId, step_id: StepId, flags: StorageFlags) -> None:
        with self._lock:
            self._storage_flags.setdefault(run_id, {})[step_id] = flags
