"""
Test fixtures and helpers for stepflow tests.

Provides settings and run-store fixtures rooted in tmp_path, a scripted
provider that stands in for the provider executor, and small builders for
pipeline snapshots.
"""

import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Union

import pytest

from stepflow.config.runtime_config import RuntimeSettings, StorageConfig
from stepflow.runtime.cancellation import CancellationToken
from stepflow.runtime.errors import StepCancelledError
from stepflow.runtime.providers.models import ProviderRequest
from stepflow.runtime.scheduler import RunStore, StepDispatch
from stepflow.runtime.storage import resolve_step_storage_paths
from stepflow.runtime.types import (
    Pipeline,
    PipelineLink,
    PipelineStep,
    QualityGate,
    RuntimeLimits,
)

# ============================================================================
# Settings and Store Fixtures
# ============================================================================


@pytest.fixture
def settings(tmp_path):
    """Runtime settings with storage under tmp_path and a fast poll interval."""
    return RuntimeSettings(
        run_control_poll_ms=10,
        storage=StorageConfig(root_path=str(tmp_path / "storage")),
    )


@pytest.fixture
def store(settings):
    """A persisting run store over the tmp storage root."""
    return RunStore(settings.storage)


def shared_path(settings: RuntimeSettings, pipeline_id: str) -> Path:
    """Shared storage folder a pipeline's steps resolve to."""
    return Path(settings.storage.root_path).resolve() / "shared" / pipeline_id


# ============================================================================
# Pipeline Builders
# ============================================================================


def make_step(step_id: str, name: Optional[str] = None, **kwargs) -> PipelineStep:
    """Build a step; the name defaults to 'Step <ID>'."""
    return PipelineStep(id=step_id, name=name or f"Step {step_id.upper()}", **kwargs)


def make_link(source: str, target: str, condition: str = "always") -> PipelineLink:
    return PipelineLink(source_step_id=source, target_step_id=target, condition=condition, id=f"{source}-{target}")


def make_pipeline(
    steps: Sequence[PipelineStep],
    links: Sequence[PipelineLink] = (),
    gates: Sequence[QualityGate] = (),
    runtime: Optional[RuntimeLimits] = None,
    pipeline_id: str = "test-pipeline",
) -> Pipeline:
    return Pipeline(
        id=pipeline_id,
        name="Test Pipeline",
        steps=tuple(steps),
        links=tuple(links),
        quality_gates=tuple(gates),
        runtime=runtime or RuntimeLimits(),
    )


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll until predicate() is truthy or the timeout elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


# ============================================================================
# Scripted Provider
# ============================================================================

Response = Union[str, Exception, Callable[[ProviderRequest], str]]


class ScriptedProvider:
    """Provider executor stand-in returning scripted outputs per step id.

    Each step id maps to a single response or a list consumed one per call
    (the last entry repeats). A response is a string, an exception to raise,
    or a callable receiving the request.
    """

    def __init__(self, responses: Optional[Dict[str, Union[Response, List[Response]]]] = None, default: str = "done"):
        self.responses = dict(responses or {})
        self.default = default
        self.requests: List[ProviderRequest] = []
        self.started: Dict[str, threading.Event] = {}
        self._calls: Dict[str, int] = {}
        self._lock = threading.Lock()

    def calls(self, step_id: str) -> int:
        with self._lock:
            return self._calls.get(step_id, 0)

    def requests_for(self, step_id: str) -> List[ProviderRequest]:
        with self._lock:
            return [request for request in self.requests if request.step.id == step_id]

    def started_event(self, step_id: str) -> threading.Event:
        with self._lock:
            return self.started.setdefault(step_id, threading.Event())

    def execute(self, request: ProviderRequest) -> str:
        step_id = request.step.id
        with self._lock:
            self.requests.append(request)
            index = self._calls.get(step_id, 0)
            self._calls[step_id] = index + 1
            event = self.started.setdefault(step_id, threading.Event())
        event.set()

        scripted = self.responses.get(step_id, self.default)
        if isinstance(scripted, list):
            scripted = scripted[min(index, len(scripted) - 1)]
        if isinstance(scripted, Exception):
            raise scripted
        if callable(scripted):
            return scripted(request)
        return scripted


def block_until_cancelled(request: ProviderRequest) -> str:
    """Scripted response that waits for the request token like a long provider call."""
    if not request.token.wait(10):
        raise AssertionError("Provider call was never cancelled")
    raise StepCancelledError(request.token.reason or "Cancelled")


@pytest.fixture
def provider():
    return ScriptedProvider()


# ============================================================================
# Dispatch Builder
# ============================================================================


def make_dispatch(
    store: RunStore,
    settings: RuntimeSettings,
    pipeline: Pipeline,
    step_id: str,
    run_id: Optional[str] = None,
    token: Optional[CancellationToken] = None,
    inputs: Optional[Dict[str, str]] = None,
    log: Optional[List[str]] = None,
    context: str = "Task:\nBuild it",
) -> StepDispatch:
    """Build a dispatch for one step, creating a run in the store if needed."""
    if run_id is None:
        run_id = store.create_run(pipeline, "Build it", inputs=inputs).id
    step = pipeline.step_by_id()[step_id]
    messages = log if log is not None else []
    return StepDispatch(
        run_id=run_id,
        step=step,
        attempt=1,
        context=context,
        task="Build it",
        stage_timeout_ms=pipeline.runtime.stage_timeout_ms,
        run_inputs=dict(inputs or {}),
        outgoing_links=pipeline.outgoing_links().get(step_id, []),
        quality_gates=pipeline.quality_gates,
        step_by_id=pipeline.step_by_id(),
        storage_paths=resolve_step_storage_paths(step, pipeline.id, run_id, settings.storage),
        token=token or CancellationToken(),
        log=messages.append,
    )

