# stepflow/runtime package
# Execution core: run a pipeline of LLM-backed steps to completion.
#
# Core components:
#   - types: Pipeline snapshot and run state dataclasses
#   - policy: Quality gates, step contracts and skip-if caching policy
#   - providers: Provider execution adapter (HTTP streaming and CLI paths)
#   - scheduler: Dispatch queue, run store and the pipeline runner
#   - storage: Storage path resolution and run persistence
#
# Usage:
#     from stepflow.runtime import PipelineRunner
#     runner = PipelineRunner(load_runtime_settings())
#     run = runner.start_run(pipeline, "Build the deck")

from .cancellation import CancellationToken
from .errors import StepCancelledError, StepflowError
from .scheduler import PipelineRunner, RunStore

__all__ = [
    "CancellationToken",
    "StepCancelledError",
    "StepflowError",
    "PipelineRunner",
    "RunStore",
]
