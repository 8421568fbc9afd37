"""
runner.py - Pipeline runner: drives a run over the step graph to completion.

The runner owns one scheduling thread per active run. That thread dequeues
steps, decides skips, composes context, and submits dispatches to a shared
ThreadPoolExecutor bounded by ``max_parallel_dispatches``. The same step is
never in flight twice. Completed dispatches are folded back on the
scheduling thread, which routes outgoing links and extends the queue.

Run control:
- cancel: cancels the run token; every in-flight dispatch stops and the run
  ends ``cancelled``.
- pause: in-flight dispatches (other than those waiting on a manual
  approval) are cancelled with "Paused by user", their steps return to
  pending and are requeued at the front; the run stays ``paused``.
- resume: continues from the same queue and attempt counters.

Usage:
    from stepflow.runtime.scheduler import PipelineRunner

    runner = PipelineRunner(settings)
    run = runner.start_run(pipeline, "Build the deck", inputs={"output_dir": "/tmp/out"})
    runner.pause(run.id)
    runner.resume(run.id)
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

from stepflow.config.runtime_config import RuntimeSettings

from ..cancellation import CancellationToken
from ..policy import check_artifacts_state, decide_skip, select_routed_links
from ..policy.gates import format_blocking_gate_failures, summarize_blocking_failures
from ..providers import ProviderExecutor
from ..storage import ensure_step_storage, resolve_step_storage_paths, resolve_storage_flags
from ..types import (
    Approval,
    Pipeline,
    PipelineLink,
    PipelineStep,
    Run,
    RunId,
    RunStatus,
    StepId,
    TriggerReason,
    WorkflowOutcome,
)
from .context import MAX_DELEGATES, TimelineEntry, compose_context
from .queue import QueueItem, StepQueue
from .run_store import STOPPED_BY_USER, RunStore, StepStart, scheduled_steps
from .step_execution import (
    DispatchStatus,
    StepDispatch,
    StepExecutionOutcome,
    StepExecutor,
    ToolInvoker,
)

logger = logging.getLogger(__name__)

PAUSED_BY_USER = "Paused by user"
# Consumers match the first line only; SKIP_REASON is informational.
SKIPPED_OUTPUT = "STEP_STATUS: SKIPPED\nSKIP_REASON: required artifacts already exist"


@dataclass
class _InFlight:
    item: QueueItem
    step: PipelineStep
    attempt: int
    token: CancellationToken
    paused: bool = False


@dataclass
class _RunSession:
    """Scheduling state of one run, kept across pause and resume."""

    run_id: RunId
    task: str
    pipeline: Pipeline
    steps: List[PipelineStep]
    step_by_id: Dict[StepId, PipelineStep]
    outgoing: Dict[StepId, List[PipelineLink]]
    incoming: Dict[StepId, List[PipelineLink]]
    queue: StepQueue
    token: CancellationToken
    run_inputs: Dict[str, str]
    orchestrator_prompt: Optional[str]
    timeline: List[TimelineEntry] = field(default_factory=list)
    latest_output: Dict[StepId, str] = field(default_factory=dict)
    completed_order: List[StepId] = field(default_factory=list)
    fresh_producers: Set[StepId] = field(default_factory=set)
    in_flight: Dict[StepId, _InFlight] = field(default_factory=dict)
    executions: int = 0
    started: bool = False
    driving: bool = False
    thread: Optional[threading.Thread] = None
    lock: threading.Lock = field(default_factory=threading.Lock)


class PipelineRunner:
    """Executes pipeline runs against the run store.

    Args:
        settings: Runtime settings.
        store: Run store; a new one over ``settings.storage`` by default.
        provider_executor: Adapter used by the default step executor.
        tool_invoker: Optional MCP tool dispatcher.
        step_executor: Replaces the whole dispatch pipeline (tests).
    """

    def __init__(
        self,
        settings: RuntimeSettings,
        store: Optional[RunStore] = None,
        provider_executor: Optional[ProviderExecutor] = None,
        tool_invoker: Optional[ToolInvoker] = None,
        step_executor: Optional[StepExecutor] = None,
    ):
        self.settings = settings
        self.store = store or RunStore(settings.storage)
        self.step_executor = step_executor or StepExecutor(
            settings,
            self.store,
            provider_executor or ProviderExecutor(settings),
            tool_invoker=tool_invoker,
        )
        self._pool = ThreadPoolExecutor(
            max_workers=settings.max_parallel_dispatches,
            thread_name_prefix="stepflow-dispatch",
        )
        self._sessions: Dict[RunId, _RunSession] = {}
        self._lock = threading.Lock()

    # =========================================================================
    # Public API
    # =========================================================================

    def start_run(
        self,
        pipeline: Pipeline,
        task: str,
        inputs: Optional[Mapping[str, Any]] = None,
        scenario: Optional[str] = None,
        background: bool = False,
    ) -> Run:
        """Create a run and execute it.

        With ``background=True`` the run executes on its own thread and the
        returned snapshot is the freshly created run; otherwise this blocks
        until the run is terminal or paused.
        """
        run = self.store.create_run(pipeline, task, inputs=dict(inputs or {}), scenario=scenario)
        session = self._new_session(run, pipeline)
        with self._lock:
            self._sessions[run.id] = session
        logger.info("Starting run %s for pipeline %s", run.id, pipeline.id)

        if background:
            self._spawn(session)
            return run

        self._claim_driver(session)
        self._drive(session)
        return self.store.get_run(run.id) or run

    def get_run(self, run_id: RunId) -> Optional[Run]:
        return self.store.get_run(run_id)

    def list_runs(self) -> List[Run]:
        return self.store.list_runs()

    def cancel(self, run_id: RunId, reason: str = STOPPED_BY_USER) -> bool:
        """Stop a run; in-flight steps fail with the reason."""
        cancelled = self.store.cancel_run(run_id, reason)
        session = self._session(run_id)
        if session is not None:
            session.token.cancel(reason)
        return cancelled

    def pause(self, run_id: RunId) -> bool:
        """Pause a run, interrupting dispatches that are not waiting on approvals."""
        session = self._session(run_id)
        if not self.store.pause_run(run_id):
            return False
        if session is None:
            return True

        run = self.store.get_run(run_id)
        with session.lock:
            in_flight = list(session.in_flight.values())
        for flight in in_flight:
            if run is not None and run.pending_approvals(flight.step.id):
                continue
            flight.paused = True
            flight.token.cancel(PAUSED_BY_USER)
        return True

    def resume(self, run_id: RunId, background: bool = True) -> bool:
        """Resume a paused run from the frontier where it stopped."""
        session = self._session(run_id)
        if session is None:
            return self.store.resume_run(run_id)

        with session.lock:
            if not self.store.resume_run(run_id):
                return False
            if session.driving:
                return True
            session.driving = True

        if background:
            self._spawn(session, claimed=True)
        else:
            self._drive(session)
        return True

    def resolve_approval(
        self, run_id: RunId, approval_id: str, decision: str, note: str = ""
    ) -> Optional[Approval]:
        return self.store.resolve_approval(run_id, approval_id, decision, note)

    def wait(self, run_id: RunId, timeout: Optional[float] = None) -> Optional[RunStatus]:
        """Join the run's scheduling thread, if any, and return its status."""
        session = self._session(run_id)
        thread = session.thread if session is not None else None
        if thread is not None:
            thread.join(timeout)
        return self.store.status(run_id)

    def shutdown(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
        for session in sessions:
            session.token.cancel(STOPPED_BY_USER)
        self._pool.shutdown(wait=True)

    # =========================================================================
    # Session setup
    # =========================================================================

    def _session(self, run_id: RunId) -> Optional[_RunSession]:
        with self._lock:
            return self._sessions.get(run_id)

    def _new_session(self, run: Run, pipeline: Pipeline) -> _RunSession:
        steps = scheduled_steps(pipeline, run.scenario)
        step_ids = {step.id for step in steps}
        outgoing: Dict[StepId, List[PipelineLink]] = {}
        incoming: Dict[StepId, List[PipelineLink]] = {}
        for link in pipeline.links:
            if link.source_step_id not in step_ids or link.target_step_id not in step_ids:
                continue
            outgoing.setdefault(link.source_step_id, []).append(link)
            incoming.setdefault(link.target_step_id, []).append(link)

        run_id = run.id
        orchestrator = next((step for step in steps if step.is_orchestrator), None)
        return _RunSession(
            run_id=run_id,
            task=run.task,
            pipeline=pipeline,
            steps=steps,
            step_by_id={step.id: step for step in steps},
            outgoing=outgoing,
            incoming=incoming,
            queue=StepQueue(steps, pipeline.runtime.max_loops, lambda message: self.store.append_log(run_id, message)),
            token=CancellationToken(),
            run_inputs=dict(run.inputs),
            orchestrator_prompt=orchestrator.prompt if orchestrator is not None else None,
        )

    def _claim_driver(self, session: _RunSession) -> None:
        with session.lock:
            session.driving = True

    def _spawn(self, session: _RunSession, claimed: bool = False) -> None:
        if not claimed:
            self._claim_driver(session)
        thread = threading.Thread(
            target=self._drive,
            args=(session,),
            name=f"stepflow-run-{session.run_id}",
            daemon=True,
        )
        session.thread = thread
        thread.start()

    def _bootstrap(self, session: _RunSession) -> bool:
        run_id = session.run_id
        if not session.steps:
            self.store.mark_run_failed(run_id, "Pipeline has no steps")
            return False

        entry_steps = [step for step in session.steps if not session.incoming.get(step.id)]
        if entry_steps:
            for step in entry_steps:
                session.queue.enqueue(step.id, TriggerReason.ENTRY_STEP, log_reason="entry step")
        else:
            orchestrator = next((step for step in session.steps if step.is_orchestrator), session.steps[0])
            session.queue.enqueue(orchestrator.id, TriggerReason.CYCLE_BOOTSTRAP, log_reason="cycle bootstrap")

        self.store.mark_run_start(run_id)
        session.started = True
        return True

    # =========================================================================
    # Scheduling loop
    # =========================================================================

    def _release(self, session: _RunSession) -> None:
        with session.lock:
            session.driving = False

    def _drive(self, session: _RunSession) -> None:
        """Run the scheduling loop; every exit path releases the driver flag."""
        try:
            self._schedule(session)
        except Exception as e:  # noqa: BLE001
            logger.exception("Scheduler crashed for run %s", session.run_id)
            session.token.cancel(str(e) or "Scheduler error")
            self.store.mark_run_failed(session.run_id, f"Scheduler error: {e}")
            self._release(session)

    def _schedule(self, session: _RunSession) -> None:
        run_id = session.run_id
        if session.token.cancelled or (not session.started and not self._bootstrap(session)):
            self._release(session)
            return

        poll_s = self.settings.run_control_poll_ms / 1000.0
        futures: Dict[Future, _InFlight] = {}
        cap = session.pipeline.runtime.max_step_executions

        while True:
            status = self.store.status(run_id)
            if status is None or status.is_terminal:
                self._abandon(session, futures, status)
                self._release(session)
                return

            if status == RunStatus.PAUSED:
                if not futures:
                    with session.lock:
                        if self.store.status(run_id) == RunStatus.PAUSED:
                            session.driving = False
                            logger.info("Run %s paused", run_id)
                            return
                    continue
            else:
                while len(futures) < self.settings.max_parallel_dispatches and session.queue.has_dispatchable():
                    if session.executions >= cap:
                        self.store.mark_run_failed(run_id, f"Execution cap reached ({cap} stages)")
                        break
                    submitted = self._dispatch_next(session)
                    if submitted is not None:
                        futures[submitted[0]] = submitted[1]
                    if self.store.status(run_id) != status:
                        break

                if not futures and session.queue.is_idle():
                    if self.store.status(run_id) != status:
                        continue
                    fallback = session.queue.next_unvisited_step()
                    if fallback is None:
                        self.store.mark_run_completed(run_id)
                        logger.info("Run %s completed", run_id)
                        self._release(session)
                        return
                    session.queue.enqueue(
                        fallback.id,
                        TriggerReason.DISCONNECTED_FALLBACK,
                        queued_by_step_id=self._fallback_source(session, fallback),
                        log_reason="disconnected fallback",
                    )
                    continue

            if not futures:
                continue

            done, _ = wait(list(futures), timeout=poll_s, return_when=FIRST_COMPLETED)
            for future in done:
                flight = futures.pop(future)
                self._complete(session, flight, future.result())

    def _abandon(self, session: _RunSession, futures: Dict[Future, _InFlight], status: Optional[RunStatus]) -> None:
        """Stop in-flight dispatches once the run reached a terminal state."""
        if not futures:
            return
        reason = STOPPED_BY_USER if status == RunStatus.CANCELLED else "Run ended"
        session.token.cancel(reason)
        wait(list(futures))
        for flight in futures.values():
            session.queue.finish(flight.step.id)
            flight.token.close()
            with session.lock:
                session.in_flight.pop(flight.step.id, None)
            if status != RunStatus.CANCELLED:
                self.store.mark_step_failed(session.run_id, flight.step, reason, flight.attempt)

    def _fallback_source(self, session: _RunSession, step: PipelineStep) -> Optional[StepId]:
        sources = {link.source_step_id for link in session.incoming.get(step.id, [])}
        for step_id in reversed(session.completed_order):
            if step_id in sources:
                return step_id
        for step_id in reversed(session.completed_order):
            completed = session.step_by_id.get(step_id)
            if completed is not None and completed.is_orchestrator:
                return step_id
        return None

    # =========================================================================
    # Dispatch
    # =========================================================================

    def _log(self, session: _RunSession, step: Optional[PipelineStep] = None) -> Callable[[str], None]:
        step_id = step.id if step is not None else None
        return lambda message: self.store.append_log(session.run_id, message, step_id)

    def _fresh_upstream_names(self, session: _RunSession, step: PipelineStep) -> List[str]:
        """Labels of steps anywhere upstream that produced fresh artifacts, nearest first."""
        names: List[str] = []
        seen: Set[StepId] = {step.id}
        frontier = [link.source_step_id for link in session.incoming.get(step.id, [])]
        while frontier:
            upstream: List[StepId] = []
            for source_id in frontier:
                if source_id in seen:
                    continue
                seen.add(source_id)
                if source_id in session.fresh_producers:
                    label = session.step_by_id[source_id].label
                    if label not in names:
                        names.append(label)
                upstream.extend(link.source_step_id for link in session.incoming.get(source_id, []))
            frontier = upstream
        return names

    def _dispatch_next(self, session: _RunSession) -> Optional[tuple]:
        run_id = session.run_id
        item = session.queue.dequeue()
        if item is None:
            return None
        step = session.step_by_id[item.step_id]
        attempt = session.queue.next_attempt(step.id)

        prior = self.store.storage_flags(run_id, step.id)
        paths = resolve_step_storage_paths(step, session.pipeline.id, run_id, self.settings.storage, prior)
        self.store.record_storage_flags(run_id, step.id, resolve_storage_flags(step, prior))
        try:
            ensure_step_storage(paths)
        except OSError as e:
            session.queue.record_attempt(step.id, attempt)
            session.queue.finish(step.id)
            self.store.mark_step_failed(run_id, step, f"Failed to prepare storage: {e}", attempt)
            return None

        if step.skip_if_artifacts:
            states = check_artifacts_state(step.skip_if_artifacts, paths, session.run_inputs)
            decision = decide_skip(
                step,
                states,
                session.run_inputs,
                session.orchestrator_prompt,
                self._fresh_upstream_names(session, step),
            )
            if decision.log_line:
                self.store.append_log(run_id, decision.log_line, step.id)
            if decision.skip:
                self._complete_skipped(session, item, step, attempt)
                return None

        context = compose_context(
            step,
            session.task,
            session.timeline,
            session.latest_output,
            session.incoming.get(step.id, []),
            session.step_by_id,
            attempt,
            paths,
            session.run_inputs,
        )
        session.queue.record_attempt(step.id, attempt)
        session.executions += 1
        self.store.mark_step_running(
            run_id,
            step,
            StepStart(
                attempt=attempt,
                context=context,
                triggered_by_step_id=item.queued_by_step_id,
                triggered_by_reason=item.reason,
            ),
        )

        token = session.token.child()
        flight = _InFlight(item=item, step=step, attempt=attempt, token=token)
        with session.lock:
            session.in_flight[step.id] = flight
        dispatch = StepDispatch(
            run_id=run_id,
            step=step,
            attempt=attempt,
            context=context,
            task=session.task,
            stage_timeout_ms=session.pipeline.runtime.stage_timeout_ms,
            run_inputs=session.run_inputs,
            outgoing_links=session.outgoing.get(step.id, []),
            quality_gates=session.pipeline.quality_gates,
            step_by_id=session.step_by_id,
            storage_paths=paths,
            token=token,
            log=self._log(session, step),
        )
        logger.debug("Dispatching %s (attempt %d) for run %s", step.id, attempt, run_id)
        return self._pool.submit(self.step_executor.run, dispatch), flight

    def _complete_skipped(self, session: _RunSession, item: QueueItem, step: PipelineStep, attempt: int) -> None:
        session.queue.record_attempt(step.id, attempt)
        session.queue.finish(step.id)
        self.store.mark_step_skipped(
            session.run_id, step, SKIPPED_OUTPUT, attempt, item.queued_by_step_id, item.reason
        )
        self._record_output(session, step, SKIPPED_OUTPUT)

        for link in select_routed_links(session.outgoing.get(step.id, []), WorkflowOutcome.PASS, False):
            session.queue.enqueue(
                link.target_step_id,
                TriggerReason.SKIP_IF_ARTIFACTS,
                queued_by_step_id=step.id,
                log_reason=f"{step.label} -> {link.condition or 'always'}",
            )

    def _record_output(self, session: _RunSession, step: PipelineStep, output: str) -> None:
        session.latest_output[step.id] = output
        session.timeline.append(TimelineEntry(step_id=step.id, step_name=step.name, output=output))
        session.completed_order.append(step.id)

    # =========================================================================
    # Completion
    # =========================================================================

    def _complete(self, session: _RunSession, flight: _InFlight, outcome: StepExecutionOutcome) -> None:
        run_id = session.run_id
        step = flight.step
        session.queue.finish(step.id)
        flight.token.close()
        with session.lock:
            session.in_flight.pop(step.id, None)

        if session.token.cancelled:
            return

        if outcome.status == DispatchStatus.CANCELLED:
            if flight.paused:
                session.queue.release_attempt(step.id, flight.attempt)
                session.queue.requeue_front(flight.item)
                session.executions -= 1
                self.store.mark_step_paused(run_id, step, flight.attempt)
                return
            self.store.mark_step_failed(run_id, step, outcome.message or "Step cancelled", flight.attempt)
            return

        if outcome.status != DispatchStatus.SUCCESS or outcome.execution is None:
            self.store.mark_step_failed(run_id, step, outcome.message or "Step aborted", flight.attempt)
            return

        execution = outcome.execution
        output = execution.output
        if execution.has_blocking_failure:
            summary = format_blocking_gate_failures(execution.gate_results)
            if summary:
                output = f"{output}\n\n{summary}"

        self._record_output(session, step, output)
        if step.required_output_files or step.skip_if_artifacts:
            session.fresh_producers.add(step.id)

        self.store.mark_step_completed(
            run_id,
            step,
            output,
            execution.gate_results,
            execution.workflow_outcome,
            flight.attempt,
            notes=execution.delegation_notes,
        )

        if execution.needs_input:
            self.store.append_log(run_id, f"{step.label} requires user input; stopping run for remediation.", step.id)
            reason = f"{step.label} requested additional input"
            if execution.input_summary:
                reason = f"{reason}: {execution.input_summary}"
            self.store.mark_run_failed(run_id, reason)
            return

        if execution.has_blocking_failure:
            self.store.append_log(
                run_id,
                f"{step.label} blocked by quality gates -> {summarize_blocking_failures(execution.gate_results)}",
                step.id,
            )

        if execution.outgoing_links and not execution.routed_links:
            self.store.append_log(
                run_id,
                f"{step.label} produced {execution.workflow_outcome.value}; no conditional route matched",
                step.id,
            )

        delegates = 0
        if step.enable_delegation and len(execution.routed_links) > 1:
            delegates = max(1, min(MAX_DELEGATES, step.delegation_count))
        for index, link in enumerate(execution.routed_links):
            session.queue.enqueue(
                link.target_step_id,
                TriggerReason.DELEGATE if index < delegates else TriggerReason.ROUTE,
                queued_by_step_id=step.id,
                log_reason=f"{step.label} -> {link.condition or 'always'}",
            )
