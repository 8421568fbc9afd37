"""Context composition for a step dispatch, and delegation notes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Mapping, Sequence

from ..run_inputs import format_run_inputs_summary, replace_input_tokens
from ..storage import ISOLATED_TOKEN, RUN_TOKEN, SHARED_TOKEN, StepStoragePaths
from ..types import PipelineLink, PipelineStep

MIN_CONTEXT_WINDOW_TOKENS = 16_000
MAX_CONTEXT_WINDOW_TOKENS = 1_000_000
DEFAULT_CONTEXT_WINDOW_TOKENS = 272_000
CHARS_PER_TOKEN = 4
MAX_DELEGATES = 8


@dataclass(frozen=True)
class TimelineEntry:
    """Output of one completed dispatch, in completion order."""

    step_id: str
    step_name: str
    output: str


def clamp_context_to_window(context: str, context_window_tokens: int) -> str:
    """Trim oversize context to the step's window, keeping 55% head and 40% tail."""
    tokens = context_window_tokens or DEFAULT_CONTEXT_WINDOW_TOKENS
    safe_tokens = max(MIN_CONTEXT_WINDOW_TOKENS, min(MAX_CONTEXT_WINDOW_TOKENS, int(tokens)))
    budget = safe_tokens * CHARS_PER_TOKEN
    if len(context) <= budget:
        return context

    lead = int(budget * 0.55)
    trail = int(budget * 0.4)
    return (
        f"{context[:lead]}\n\n[Context trimmed for configured window: {safe_tokens:,} tokens]\n\n"
        f"{context[len(context) - trail:]}"
    )


def _list_or_none(values: Sequence[str]) -> str:
    return ", ".join(values) if values else "none"


def compose_context(
    step: PipelineStep,
    task: str,
    timeline: Sequence[TimelineEntry],
    latest_output_by_step: Mapping[str, str],
    incoming_links: Sequence[PipelineLink],
    step_by_id: Mapping[str, PipelineStep],
    attempt: int,
    storage_paths: StepStoragePaths,
    run_inputs: Mapping[str, str],
) -> str:
    """Build the context text handed to the provider for one attempt.

    Without a context template the context lists the task, inputs, previous
    and incoming outputs and storage info. A template may use ``{{task}}``,
    ``{{attempt}}``, ``{{previous_output}}``, ``{{incoming_outputs}}``,
    ``{{upstream_outputs}}``, ``{{all_outputs}}``, ``{{run_inputs}}``,
    ``{{storage_policy}}``, ``{{mcp_servers}}``, the storage path tokens and
    ``{{input.<key>}}``; storage info is always appended.
    """
    rendered_task = replace_input_tokens(task, run_inputs)
    previous_output = timeline[-1].output if timeline else "No previous output"
    all_outputs = "\n\n".join(
        f"Step {index} ({entry.step_name}):\n{entry.output}" for index, entry in enumerate(timeline, start=1)
    )

    incoming_parts: List[str] = []
    for link in incoming_links:
        source = step_by_id.get(link.source_step_id)
        output = latest_output_by_step.get(link.source_step_id)
        if source is None or not output:
            continue
        incoming_parts.append(f"{source.name}:\n{output}")
    incoming_outputs = "\n\n".join(incoming_parts)

    storage_enabled = storage_paths.shared_enabled or storage_paths.isolated_enabled
    storage_policy = "\n".join(
        [
            f"storage_enabled: {'true' if storage_enabled else 'false'}",
            f"shared_storage: {'rw' if storage_paths.shared_enabled else 'disabled'}",
            f"isolated_storage: {'rw' if storage_paths.isolated_enabled else 'disabled'}",
        ]
    )
    inputs_summary = format_run_inputs_summary(run_inputs)
    mcp_servers = ", ".join(step.enabled_mcp_server_ids) if step.enabled_mcp_server_ids else "None"
    output_contract = "\n".join(
        [
            f"output_format: {step.output_format.value}",
            f"required_output_fields: {_list_or_none(step.required_output_fields)}",
            f"required_output_files: {_list_or_none(step.required_output_files)}",
        ]
    )
    storage_info = "\n".join(
        [
            "Storage paths:",
            f"- shared_storage_path: {storage_paths.shared_storage_path}",
            f"- isolated_storage_path: {storage_paths.isolated_storage_path}",
            f"- run_storage_path: {storage_paths.run_storage_path}",
            "",
            "Run inputs:",
            inputs_summary,
            "",
            f"MCP servers enabled for this step: {mcp_servers}",
            "",
            "Storage policy:",
            storage_policy,
            "",
            "Output contract:",
            output_contract,
        ]
    )

    if not step.context_template.strip():
        fallback = "\n".join(
            [
                f"Task:\n{rendered_task}",
                "",
                f"Run inputs:\n{inputs_summary}",
                "",
                f"Attempt:\n{attempt}",
                "",
                f"Previous output:\n{previous_output}",
                "",
                f"Incoming outputs:\n{incoming_outputs or 'None'}",
                "",
                f"All completed outputs:\n{all_outputs or 'None'}",
                "",
                storage_info,
            ]
        )
        return clamp_context_to_window(fallback, step.context_window_tokens)

    replacements: Dict[str, str] = {
        "{{task}}": rendered_task,
        "{{attempt}}": str(attempt),
        "{{previous_output}}": previous_output,
        "{{incoming_outputs}}": incoming_outputs or "None",
        "{{upstream_outputs}}": incoming_outputs or "None",
        "{{all_outputs}}": all_outputs or "None",
        "{{run_inputs}}": inputs_summary,
        SHARED_TOKEN: storage_paths.shared_storage_path,
        ISOLATED_TOKEN: storage_paths.isolated_storage_path,
        RUN_TOKEN: storage_paths.run_storage_path,
        "{{storage_policy}}": storage_policy,
        "{{mcp_servers}}": mcp_servers,
    }
    rendered = step.context_template
    for token, value in replacements.items():
        rendered = rendered.replace(token, value)
    rendered = replace_input_tokens(rendered, run_inputs)
    return clamp_context_to_window(f"{rendered}\n\n{storage_info}", step.context_window_tokens)


def build_delegation_notes(
    step: PipelineStep,
    routed_links: Sequence[PipelineLink],
    outgoing_count: int,
    step_by_id: Mapping[str, PipelineStep],
) -> List[str]:
    """Run log notes describing an orchestrator's fan-out for this attempt."""
    if not step.enable_delegation:
        return []
    if outgoing_count == 0:
        return ["Delegation enabled, but this agent has no connected downstream steps."]
    if not routed_links:
        return ["Delegation enabled, but no downstream step was routed for this outcome."]

    max_delegates = max(1, min(MAX_DELEGATES, step.delegation_count))
    notes: List[str] = []
    for index, link in enumerate(routed_links[:max_delegates], start=1):
        target = step_by_id.get(link.target_step_id)
        notes.append(f"Subagent-{index} dispatched to {target.name if target else link.target_step_id}.")
    return notes
