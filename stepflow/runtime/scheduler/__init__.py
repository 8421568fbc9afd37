# stepflow/runtime/scheduler package
# Step scheduler / graph executor: dispatch queue, run store, context
# composition, single-step execution and the pipeline runner.
#
# Usage:
#     from stepflow.runtime.scheduler import PipelineRunner
#     runner = PipelineRunner(settings)
#     run = runner.start_run(pipeline, "Build the deck")

from .context import TimelineEntry, build_delegation_notes, clamp_context_to_window, compose_context
from .queue import QueueItem, StepQueue
from .run_store import STOPPED_BY_USER, RunStore, StepStart, scheduled_steps
from .runner import PAUSED_BY_USER, SKIPPED_OUTPUT, PipelineRunner
from .step_execution import (
    DispatchStatus,
    StepDispatch,
    StepExecutionOutcome,
    StepExecutionOutput,
    StepExecutor,
    ToolInvoker,
)

__all__ = [
    "TimelineEntry",
    "build_delegation_notes",
    "clamp_context_to_window",
    "compose_context",
    "QueueItem",
    "StepQueue",
    "STOPPED_BY_USER",
    "RunStore",
    "StepStart",
    "scheduled_steps",
    "PAUSED_BY_USER",
    "SKIPPED_OUTPUT",
    "PipelineRunner",
    "DispatchStatus",
    "StepDispatch",
    "StepExecutionOutcome",
    "StepExecutionOutput",
    "StepExecutor",
    "ToolInvoker",
]
