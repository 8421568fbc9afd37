"""
step_execution.py - One step dispatch: provider rounds, gates, approvals.

A dispatch runs in three phases:

1. Provider rounds. The provider is called with the composed context plus
   tool, input-request and GateResult guidance. If the output is an
   ``mcp_calls`` envelope the calls are dispatched through the injected
   ToolInvoker and the results are fed back as a new round (at most
   MAX_TOOL_ROUNDS follow-up rounds, MAX_CALLS_PER_ROUND calls each).
   Every round runs under a stage-timeout child token.
2. Post-execution evaluation, in result order: step contracts, delivery
   completion invariant, required-artifact freshness, policy profile
   contracts, pipeline gates, manual approvals (blocking wait).
3. Outcome and routing: fail on a blocking failure or an input request,
   otherwise the declared/inferred outcome; routed links are selected
   from it.

``StepExecutor.run`` never raises for step-level problems: it classifies
the dispatch as success, cancelled (the run token fired), aborted (a
cancellation with its own reason, e.g. the stage timeout) or failed.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional, Protocol, Sequence

from stepflow.config.runtime_config import RuntimeSettings

from ..cancellation import CancellationToken
from ..errors import StepCancelledError, error_message
from ..policy import (
    check_artifacts_state,
    evaluate_artifact_freshness,
    evaluate_delivery_completion,
    evaluate_manual_approval_results,
    evaluate_pipeline_quality_gates,
    evaluate_profile_contracts,
    evaluate_step_contracts,
    resolve_workflow_outcome,
    select_routed_links,
)
from ..policy.gate_result import is_gate_result_contract_step
from ..policy.gates import blocking_failures, manual_approval_gates, requires_fresh_artifacts
from ..policy.output_parsing import extract_input_request_signal
from ..providers import ProviderExecutor, ProviderRequest, format_mcp_results, parse_mcp_calls
from ..providers.retry_policy import resolve_effective_stage_timeout_ms
from ..run_inputs import replace_input_tokens
from ..storage import StepStoragePaths
from ..types import (
    Approval,
    ApprovalStatus,
    OutputFormat,
    PipelineLink,
    PipelineStep,
    QualityGate,
    QualityGateResult,
    RunId,
    RunStatus,
    ToolCall,
    ToolResult,
    WorkflowOutcome,
)
from .context import build_delegation_notes
from .run_store import RunStore

logger = logging.getLogger(__name__)

MAX_TOOL_ROUNDS = 2
MAX_CALLS_PER_ROUND = 4

NO_MCP_GUIDANCE = "No MCP servers are enabled for this step."

INPUT_REQUEST_GUIDANCE = "\n".join(
    [
        "If execution is blocked by missing user-provided values, do NOT guess.",
        "Return STRICT JSON so the run can request those values:",
        "{",
        '  "status": "needs_input",',
        '  "summary": "short reason",',
        '  "input_requests": [',
        "    {",
        '      "key": "input_key",',
        '      "label": "Human label",',
        '      "type": "text|multiline|secret|path|url|select",',
        '      "required": true,',
        '      "reason": "why needed"',
        "    }",
        "  ]",
        "}",
        'The "summary" field must always be written in English.',
        "Use input_requests only when blocked and additional user data is required.",
    ]
)

GATE_RESULT_GUIDANCE = "\n".join(
    [
        "Status contract requirement (STRICT JSON):",
        "Return a single JSON object with this exact structure:",
        "{",
        '  "workflow_status": "PASS|FAIL|NEUTRAL|COMPLETE|NEEDS_INPUT",',
        '  "next_action": "continue|retry_step|retry_stage|escalate|stop",',
        '  "stage": "draft|pre_final|final",',
        '  "step_role": "orchestrator|extractor|builder|reviewer|remediator|renderer|delivery",',
        '  "gate_target": "step|stage|delivery",',
        '  "summary": "short summary",',
        '  "reasons": [',
        '    { "code": "machine_code", "message": "human-readable reason", "severity": "critical|high|medium|low" }',
        "  ]",
        "}",
        'The "summary" and each "reasons[*].message" value must be in English.',
        "When workflow_status is COMPLETE, set stage=final, step_role=delivery, and gate_target=delivery.",
        "Do not output markdown fences when output mode is JSON.",
    ]
)

MCP_CONTINUE_INSTRUCTIONS = (
    "Use these MCP results to continue. If more MCP calls are required, invoke mcp_call again "
    "(or return updated mcp_calls JSON on fallback runtimes).\n"
    "Otherwise return final output for this step."
)


class ToolInvoker(Protocol):
    """Executes tool calls on external MCP servers for the scheduler."""

    def invoke(self, call: ToolCall, timeout_ms: int, token: CancellationToken) -> ToolResult:
        ...


def build_mcp_guidance(server_ids: Sequence[str]) -> str:
    if not server_ids:
        return NO_MCP_GUIDANCE
    return "\n".join(
        [
            "MCP tools are available for this step.",
            f"Allowed MCP server ids: {', '.join(server_ids)}",
            "When native tool-calling is available, invoke tool mcp_call with {server_id, tool, arguments}.",
            "Fallback only (for non-tool runtimes): return STRICT JSON:",
            '{ "mcp_calls": [ { "server_id": "server-id", "tool": "tool_name", "arguments": { } } ] }',
            "If you can finish without MCP calls, return the final step output directly.",
        ]
    )


def resolve_output_mode(step: PipelineStep) -> OutputFormat:
    if step.output_format == OutputFormat.JSON or is_gate_result_contract_step(step):
        return OutputFormat.JSON
    return OutputFormat.MARKDOWN


@dataclass
class StepDispatch:
    """Everything one dispatch of one step needs.

    Attributes:
        run_id: Run the dispatch belongs to.
        step: Step to execute.
        attempt: 1-based attempt number for the step.
        context: Composed context text.
        task: Run task text.
        stage_timeout_ms: Pipeline stage budget (escalated per step).
        run_inputs: Normalized run inputs.
        outgoing_links: Links leaving the step.
        quality_gates: All pipeline gates.
        step_by_id: Step lookup for delegation notes.
        storage_paths: Resolved storage paths for this dispatch.
        token: Dispatch token, a child of the run token.
        log: Run log callback.
    """

    run_id: RunId
    step: PipelineStep
    attempt: int
    context: str
    task: str
    stage_timeout_ms: int
    run_inputs: Mapping[str, str]
    outgoing_links: Sequence[PipelineLink]
    quality_gates: Sequence[QualityGate]
    step_by_id: Mapping[str, PipelineStep]
    storage_paths: StepStoragePaths
    token: CancellationToken
    log: Callable[[str], None]


@dataclass
class StepExecutionOutput:
    """Evaluated result of a successful dispatch."""

    output: str
    gate_results: List[QualityGateResult]
    has_blocking_failure: bool
    needs_input: bool
    workflow_outcome: WorkflowOutcome
    outgoing_links: List[PipelineLink]
    routed_links: List[PipelineLink]
    input_summary: Optional[str] = None
    delegation_notes: List[str] = field(default_factory=list)


class DispatchStatus(str, Enum):
    SUCCESS = "success"
    CANCELLED = "cancelled"
    ABORTED = "aborted"
    FAILED = "failed"


@dataclass
class StepExecutionOutcome:
    status: DispatchStatus
    execution: Optional[StepExecutionOutput] = None
    message: str = ""


class StepExecutor:
    """Runs single step dispatches for the pipeline runner.

    Args:
        settings: Runtime settings (poll interval).
        store: Run store, used for manual approvals.
        provider_executor: Adapter that produces step output.
        tool_invoker: Optional MCP tool dispatcher. Without one, tool
            guidance is omitted and no server is enabled.
        clock: Monotonic clock in seconds (for round timing logs).
    """

    def __init__(
        self,
        settings: RuntimeSettings,
        store: RunStore,
        provider_executor: ProviderExecutor,
        tool_invoker: Optional[ToolInvoker] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.store = store
        self.provider_executor = provider_executor
        self.tool_invoker = tool_invoker
        self._clock = clock

    def _elapsed_ms(self, started: float) -> int:
        return int((self._clock() - started) * 1000)

    # =========================================================================
    # Classification
    # =========================================================================

    def run(self, dispatch: StepDispatch) -> StepExecutionOutcome:
        try:
            return StepExecutionOutcome(status=DispatchStatus.SUCCESS, execution=self.evaluate(dispatch))
        except StepCancelledError as error:
            if dispatch.token.cancelled:
                return StepExecutionOutcome(status=DispatchStatus.CANCELLED, message=error.reason)
            return StepExecutionOutcome(status=DispatchStatus.ABORTED, message=error.reason or "Step aborted")
        except Exception as error:  # noqa: BLE001
            if dispatch.token.cancelled:
                return StepExecutionOutcome(status=DispatchStatus.CANCELLED, message=dispatch.token.reason or "")
            logger.debug("Step %s failed", dispatch.step.id, exc_info=True)
            return StepExecutionOutcome(
                status=DispatchStatus.FAILED,
                message=error_message(error) or "Unknown step execution error",
            )

    # =========================================================================
    # Provider rounds
    # =========================================================================

    def _allowed_server_ids(self, step: PipelineStep) -> List[str]:
        if self.tool_invoker is None:
            return []
        allowed: List[str] = []
        for server_id in step.enabled_mcp_server_ids:
            server_id = server_id.strip()
            if server_id and server_id not in allowed:
                allowed.append(server_id)
        return allowed

    def _dispatch_calls(
        self,
        calls: Sequence[ToolCall],
        allowed: Sequence[str],
        timeout_ms: int,
        dispatch: StepDispatch,
    ) -> List[ToolResult]:
        results: List[ToolResult] = []
        for call in calls[:MAX_CALLS_PER_ROUND]:
            if dispatch.token.cancelled:
                raise StepCancelledError(dispatch.token.reason or "Run stopped by user")
            started = self._clock()
            dispatch.log(f"MCP call started: server={call.server_id}, tool={call.tool}")

            if call.server_id not in allowed or self.tool_invoker is None:
                dispatch.log(
                    f"MCP call rejected in {self._elapsed_ms(started)}ms: server {call.server_id} not enabled"
                )
                results.append(
                    ToolResult(
                        server_id=call.server_id,
                        tool=call.tool,
                        ok=False,
                        error=f'MCP server "{call.server_id}" is not enabled for this step',
                    )
                )
                continue

            try:
                result = self.tool_invoker.invoke(call, timeout_ms, dispatch.token)
            except StepCancelledError:
                raise
            except Exception as error:  # noqa: BLE001
                result = ToolResult(server_id=call.server_id, tool=call.tool, ok=False, error=error_message(error))
            dispatch.log(
                f"MCP call {'finished' if result.ok else 'failed'} in {self._elapsed_ms(started)}ms: "
                f"server={call.server_id}, tool={call.tool}"
            )
            results.append(result)
        return results

    def execute_step(self, dispatch: StepDispatch) -> str:
        """Call the provider, running tool rounds until it returns final output."""
        step = dispatch.step
        provider = self.settings.provider(step.provider_id.value)
        output_mode = resolve_output_mode(step)
        timeout_ms = resolve_effective_stage_timeout_ms(step, dispatch.stage_timeout_ms, provider.default_model)
        executable_step = dataclasses.replace(step, prompt=replace_input_tokens(step.prompt, dispatch.run_inputs))
        allowed = self._allowed_server_ids(step)

        guidance = [build_mcp_guidance(allowed), "", INPUT_REQUEST_GUIDANCE]
        if is_gate_result_contract_step(step):
            guidance.extend(["", GATE_RESULT_GUIDANCE])
        guidance_text = "\n".join(guidance)
        working_context = f"{dispatch.context}\n\n{guidance_text}"
        model = step.model or provider.default_model

        dispatch.log(
            f"Execution config: provider={provider.id}, model={model}, timeout={timeout_ms}ms, "
            f"effort={step.reasoning_effort.value}, fastMode={'on' if step.fast_mode else 'off'}, "
            f"outputMode={output_mode.value}, contextChars={len(working_context)}"
        )

        last_output = ""
        for round_index in range(MAX_TOOL_ROUNDS + 1):
            if dispatch.token.cancelled:
                raise StepCancelledError(dispatch.token.reason or "Run stopped by user")
            round_number = round_index + 1
            started = self._clock()
            dispatch.log(f"Provider round {round_number} started")

            stage_token = dispatch.token.child(
                timeout_ms=timeout_ms,
                reason=f"{step.label} ({step.role.value}) timed out after {timeout_ms}ms",
            )
            try:
                output = self.provider_executor.execute(
                    ProviderRequest(
                        provider=provider,
                        step=executable_step,
                        context=working_context,
                        task=dispatch.task,
                        output_mode=output_mode,
                        mcp_server_ids=tuple(allowed),
                        token=stage_token,
                        log=dispatch.log,
                        stage_timeout_ms=timeout_ms,
                    )
                )
            except Exception as error:
                dispatch.log(
                    f"Provider round {round_number} failed in {self._elapsed_ms(started)}ms: {error_message(error)}"
                )
                raise
            finally:
                stage_token.close()
            dispatch.log(
                f"Provider round {round_number} finished in {self._elapsed_ms(started)}ms "
                f"(outputChars={len(output)})"
            )

            last_output = output
            calls = parse_mcp_calls(output)
            if not calls:
                dispatch.log(f"Provider round {round_number} completed with final output (no MCP calls).")
                return output

            dispatch.log(f"Provider round {round_number} requested {len(calls)} MCP call(s).")
            results = self._dispatch_calls(calls, allowed, timeout_ms, dispatch)
            working_context = "\n".join(
                [
                    dispatch.context,
                    "",
                    guidance_text,
                    "",
                    f"MCP round {round_number} results:",
                    format_mcp_results(results),
                    "",
                    MCP_CONTINUE_INSTRUCTIONS,
                ]
            )

        dispatch.log(f"Maximum MCP rounds reached; returning last output (chars={len(last_output)}).")
        return last_output

    # =========================================================================
    # Manual approvals
    # =========================================================================

    def wait_for_manual_approvals(
        self, dispatch: StepDispatch, gates: Sequence[QualityGate]
    ) -> List[QualityGateResult]:
        """Block until every approval for this attempt is resolved.

        Raises:
            StepCancelledError: If the dispatch is cancelled or the run leaves
                the waiting states (cancelled, failed, completed).
        """
        if not gates:
            return []

        step = dispatch.step
        approval_ids = self.store.request_approvals(dispatch.run_id, step, gates, dispatch.attempt)
        poll_s = self.settings.run_control_poll_ms / 1000.0

        while True:
            dispatch.token.raise_if_cancelled()
            run = self.store.get_run(dispatch.run_id)
            if run is None:
                raise StepCancelledError("Run not found")
            if run.status == RunStatus.CANCELLED:
                raise StepCancelledError("Run stopped by user")
            if run.status == RunStatus.FAILED:
                raise StepCancelledError("Run failed while waiting for manual approval")
            if run.status == RunStatus.COMPLETED:
                raise StepCancelledError("Run completed unexpectedly while waiting for manual approval")

            by_id = {approval.id: approval for approval in run.approvals}
            pending = any(
                approval_id not in by_id or by_id[approval_id].status == ApprovalStatus.PENDING
                for approval_id in approval_ids
            )
            if not pending and run.status != RunStatus.PAUSED:
                self.store.finish_approval_wait(dispatch.run_id, step)
                break
            if pending and run.status not in (RunStatus.PAUSED, RunStatus.AWAITING_APPROVAL):
                self.store.mark_awaiting_approval(dispatch.run_id)
            dispatch.token.wait(poll_s)

        run = self.store.get_run(dispatch.run_id)
        approvals: Dict[str, Approval] = {}
        if run is not None:
            wanted = dict(zip(approval_ids, gates))
            for approval in run.approvals:
                gate = wanted.get(approval.id)
                if gate is not None:
                    approvals[gate.id] = approval
        return evaluate_manual_approval_results(gates, approvals)

    # =========================================================================
    # Evaluation
    # =========================================================================

    def evaluate(self, dispatch: StepDispatch) -> StepExecutionOutput:
        """Execute the step and fold every gate into an outcome."""
        step = dispatch.step
        paths = dispatch.storage_paths
        inputs = dispatch.run_inputs
        outgoing = list(dispatch.outgoing_links)

        before = (
            check_artifacts_state(step.required_output_files, paths, inputs) if requires_fresh_artifacts(step) else []
        )

        output = self.execute_step(dispatch)

        contracts = evaluate_step_contracts(step, output, paths, inputs)
        delivery = evaluate_delivery_completion(step, output, contracts.parsed_json, len(outgoing))
        after = check_artifacts_state(step.required_output_files, paths, inputs) if step.required_output_files else []
        freshness = evaluate_artifact_freshness(step, before, after)
        profile_results = evaluate_profile_contracts(step, after)
        pipeline_results = evaluate_pipeline_quality_gates(
            step, output, contracts.parsed_json, dispatch.quality_gates, paths, inputs
        )
        approval_results = self.wait_for_manual_approvals(
            dispatch, manual_approval_gates(step, dispatch.quality_gates)
        )

        gate_results = [
            *contracts.gate_results,
            *delivery,
            *freshness,
            *profile_results,
            *pipeline_results,
            *approval_results,
        ]
        has_blocking_failure = bool(blocking_failures(gate_results))
        signal = extract_input_request_signal(output, contracts.parsed_json)
        outcome = resolve_workflow_outcome(output, contracts.parsed_json, gate_results, signal.needs_input)

        if signal.needs_input:
            return StepExecutionOutput(
                output=output,
                gate_results=gate_results,
                has_blocking_failure=has_blocking_failure,
                needs_input=True,
                workflow_outcome=outcome,
                outgoing_links=[],
                routed_links=[],
                input_summary=signal.summary,
            )

        routed = select_routed_links(outgoing, outcome, has_blocking_failure)
        return StepExecutionOutput(
            output=output,
            gate_results=gate_results,
            has_blocking_failure=has_blocking_failure,
            needs_input=False,
            workflow_outcome=outcome,
            outgoing_links=outgoing,
            routed_links=routed,
            delegation_notes=build_delegation_notes(step, routed, len(outgoing), dispatch.step_by_id),
        )
