"""
Run control endpoints for the stepflow API.

Provides REST endpoints for:
- Starting new runs from a pipeline payload
- Getting run state and events
- Pausing/resuming runs
- Canceling runs
- Resolving manual approvals
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Header, HTTPException, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from stepflow.config.pipeline_loader import pipeline_from_dict
from stepflow.config.runtime_config import load_runtime_settings
from stepflow.runtime.errors import PipelineValidationError
from stepflow.runtime.scheduler import STOPPED_BY_USER, PipelineRunner
from stepflow.runtime.types import Run, RunStatus, now_iso, run_event_to_dict

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/runs", tags=["runs"])


# =============================================================================
# Pydantic Models
# =============================================================================


class RunStartRequest(BaseModel):
    """Request to start a new run."""

    pipeline: Dict[str, Any] = Field(..., description="Pipeline snapshot (steps, links, gates, runtime)")
    task: str = Field(..., description="Task text handed to every step")
    inputs: Dict[str, Any] = Field(default_factory=dict, description="Run inputs")
    scenario: Optional[str] = Field(None, description="Only schedule steps tagged for this scenario")


class RunStartResponse(BaseModel):
    """Response when starting a new run."""

    run_id: str
    pipeline_id: str
    status: str
    created_at: str
    events_url: str


class RunSummary(BaseModel):
    """Run summary for list endpoint."""

    run_id: str
    pipeline_id: str
    status: str
    task: str
    created_at: Optional[str] = None


class RunListResponse(BaseModel):
    """Response for list runs endpoint."""

    runs: List[RunSummary]


class RunActionResponse(BaseModel):
    """Generic response for run actions."""

    run_id: str
    status: str
    message: str
    timestamp: str


class CancelRequest(BaseModel):
    """Optional body for cancel."""

    reason: str = Field(STOPPED_BY_USER, description="Reason recorded in the run log")


class ApprovalRequest(BaseModel):
    """Decision for a pending manual approval."""

    decision: Literal["approved", "rejected"]
    note: str = Field("", description="Reviewer note")


class ApprovalResponse(BaseModel):
    """Resolved approval."""

    run_id: str
    approval_id: str
    gate_id: str
    step_id: str
    status: str
    note: str


# =============================================================================
# Runner
# =============================================================================

# Global runner (initialized on first use or by create_app)
_runner: Optional[PipelineRunner] = None


def set_runner(runner: Optional[PipelineRunner]) -> None:
    global _runner
    _runner = runner


def _get_runner() -> PipelineRunner:
    """Get or create the global runner."""
    global _runner
    if _runner is None:
        _runner = PipelineRunner(load_runtime_settings())
    return _runner


def _not_found(run_id: str) -> HTTPException:
    return HTTPException(
        status_code=404,
        detail={
            "error": "run_not_found",
            "message": f"Run '{run_id}' not found",
            "details": {"run_id": run_id},
        },
    )


def _invalid_state(action: str, run: Run) -> HTTPException:
    return HTTPException(
        status_code=409,
        detail={
            "error": "invalid_state",
            "message": f"Cannot {action} run with status '{run.status.value}'",
            "details": {"current_status": run.status.value},
        },
    )


def _require_run(run_id: str) -> Run:
    run = _get_runner().get_run(run_id)
    if run is None:
        raise _not_found(run_id)
    return run


def _compute_etag(state: Dict[str, Any]) -> str:
    content = json.dumps(state, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(content.encode()).hexdigest()[:16]


def _action_response(run_id: str, message: str) -> RunActionResponse:
    status = _get_runner().store.status(run_id)
    return RunActionResponse(
        run_id=run_id,
        status=status.value if status is not None else "unknown",
        message=message,
        timestamp=now_iso(),
    )


# =============================================================================
# Run Endpoints
# =============================================================================


@router.post("", response_model=RunStartResponse, status_code=201)
async def start_run(request: RunStartRequest):
    """Start a new run.

    The pipeline payload is normalized and validated, then the run executes
    in the background.

    Raises:
        400: Pipeline payload is invalid.
    """
    try:
        pipeline = pipeline_from_dict(request.pipeline)
    except PipelineValidationError as e:
        raise HTTPException(
            status_code=400,
            detail={
                "error": "invalid_pipeline",
                "message": str(e),
                "details": {},
            },
        )

    run = _get_runner().start_run(
        pipeline,
        request.task,
        inputs=request.inputs,
        scenario=request.scenario,
        background=True,
    )
    state = run.to_dict()
    return RunStartResponse(
        run_id=run.id,
        pipeline_id=run.pipeline_id,
        status=state["status"],
        created_at=state["created_at"],
        events_url=f"/api/runs/{run.id}/events",
    )


@router.get("", response_model=RunListResponse)
async def list_runs(limit: int = 20):
    """List recent runs, newest first."""
    runs = sorted(_get_runner().list_runs(), key=lambda r: r.created_at, reverse=True)[:limit]
    return RunListResponse(
        runs=[
            RunSummary(
                run_id=run.id,
                pipeline_id=run.pipeline_id,
                status=run.status.value,
                task=run.task,
                created_at=run.to_dict()["created_at"],
            )
            for run in runs
        ]
    )


@router.get("/{run_id}")
async def get_run(
    run_id: str,
    if_none_match: Optional[str] = Header(None, alias="If-None-Match"),
):
    """Get run state.

    Raises:
        404: Run not found.
        304: Not modified (if ETag matches).
    """
    state = _require_run(run_id).to_dict()
    etag = _compute_etag(state)
    if if_none_match and if_none_match.strip('"') == etag:
        return Response(status_code=304)
    return JSONResponse(content=state, headers={"ETag": f'"{etag}"'})


@router.get("/{run_id}/events")
async def get_run_events(run_id: str):
    """Get the run's event timeline, in sequence order."""
    _require_run(run_id)
    events = _get_runner().store.events(run_id)
    return {"run_id": run_id, "events": [run_event_to_dict(event) for event in events]}


@router.post("/{run_id}/pause", response_model=RunActionResponse)
async def pause_run(run_id: str):
    """Pause a run; interrupted steps return to pending.

    Raises:
        404: Run not found.
        409: Run is not in a pausable state.
    """
    run = _require_run(run_id)
    if not _get_runner().pause(run_id):
        raise _invalid_state("pause", run)
    logger.info("Paused run %s", run_id)
    return _action_response(run_id, "Run paused")


@router.post("/{run_id}/resume", response_model=RunActionResponse)
async def resume_run(run_id: str):
    """Resume a paused run from where it stopped.

    Raises:
        404: Run not found.
        409: Run is not paused.
    """
    run = _require_run(run_id)
    if run.status != RunStatus.PAUSED or not _get_runner().resume(run_id):
        raise _invalid_state("resume", run)
    logger.info("Resumed run %s", run_id)
    return _action_response(run_id, "Run resumed")


@router.delete("/{run_id}", response_model=RunActionResponse)
async def cancel_run(run_id: str, request: Optional[CancelRequest] = None):
    """Cancel an active run.

    Raises:
        404: Run not found.
        409: Run already finished.
    """
    run = _require_run(run_id)
    reason = (request.reason if request is not None else "").strip() or STOPPED_BY_USER
    if not _get_runner().cancel(run_id, reason):
        raise _invalid_state("cancel", run)
    logger.info("Cancelled run %s: %s", run_id, reason)
    return _action_response(run_id, f"Run stopped: {reason}")


@router.post("/{run_id}/approvals/{approval_id}", response_model=ApprovalResponse)
async def resolve_approval(run_id: str, approval_id: str, request: ApprovalRequest):
    """Approve or reject a pending manual approval.

    Raises:
        404: Run not found, or no pending approval with that id.
    """
    _require_run(run_id)
    approval = _get_runner().resolve_approval(run_id, approval_id, request.decision, request.note)
    if approval is None:
        raise HTTPException(
            status_code=404,
            detail={
                "error": "approval_not_found",
                "message": f"No pending approval '{approval_id}' on run '{run_id}'",
                "details": {"run_id": run_id, "approval_id": approval_id},
            },
        )
    return ApprovalResponse(
        run_id=run_id,
        approval_id=approval.id,
        gate_id=approval.gate_id,
        step_id=approval.step_id,
        status=approval.status.value,
        note=approval.note,
    )
