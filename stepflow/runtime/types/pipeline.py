"""Pipeline definition types.

A pipeline is handed to the runtime as an immutable snapshot: steps, the
conditional links between them, quality gates, and runtime limits. The
runtime never mutates these objects; provider fallbacks derive modified
copies with ``dataclasses.replace``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

ANY_STEP = "any_step"


class StepRole(str, Enum):
    """What a step does in the pipeline."""

    ANALYSIS = "analysis"
    PLANNER = "planner"
    ORCHESTRATOR = "orchestrator"
    EXECUTOR = "executor"
    TESTER = "tester"
    REVIEW = "review"


class ProviderId(str, Enum):
    OPENAI = "openai"
    CLAUDE = "claude"


class ReasoningEffort(str, Enum):
    MINIMAL = "minimal"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    XHIGH = "xhigh"


class OutputFormat(str, Enum):
    MARKDOWN = "markdown"
    JSON = "json"


class LinkCondition(str, Enum):
    """Well-known link conditions. Links may carry other condition strings."""

    ALWAYS = "always"
    ON_PASS = "on_pass"
    ON_FAIL = "on_fail"


class GateKind(str, Enum):
    REGEX_MUST_MATCH = "regex_must_match"
    REGEX_MUST_NOT_MATCH = "regex_must_not_match"
    JSON_FIELD_EXISTS = "json_field_exists"
    ARTIFACT_EXISTS = "artifact_exists"
    MANUAL_APPROVAL = "manual_approval"


# Artifact-producing roles get stricter freshness and execution discipline.
ARTIFACT_ROLES = frozenset({StepRole.ANALYSIS, StepRole.EXECUTOR, StepRole.PLANNER})
REVIEW_ROLES = frozenset({StepRole.REVIEW, StepRole.TESTER})


@dataclass(frozen=True)
class PipelineStep:
    """One node in the pipeline graph, bound to one provider call.

    Attributes:
        id: Unique step identifier within the pipeline.
        name: Display name used in run logs.
        role: Step role (drives prompt contracts, timeouts and storage defaults).
        prompt: System prompt text for the provider.
        provider_id: Which provider executes this step.
        model: Model id ("" means the provider default).
        reasoning_effort: Requested effort, mapped per provider.
        fast_mode: Prefer low latency.
        use_1m_context: Request the extended context window.
        context_window_tokens: Context window size used to bound composed context.
        context_template: Template for the composed step context.
        enable_delegation: Orchestrator fan-out switch.
        delegation_count: Max parallel delegated dispatches.
        enable_isolated_storage: Explicit isolated storage flag (None = not set).
        enable_shared_storage: Explicit shared storage flag (None = not set).
        enabled_mcp_server_ids: External tool servers this step may call.
        output_format: markdown or json.
        required_output_fields: JSON paths that must exist in JSON output.
        required_output_files: Path templates that must exist after execution.
        skip_if_artifacts: Path templates whose existence allows skipping.
        scenarios: Run scenarios that include this step (empty = all).
        policy_profile_ids: Explicit policy profile ids.
        cache_bypass_input_keys: Run input keys that force execution.
        cache_bypass_orchestrator_prompt_patterns: Regexes matched against the
            orchestrator prompt that force execution.
    """

    id: str
    name: str
    role: StepRole = StepRole.EXECUTOR
    prompt: str = ""
    provider_id: ProviderId = ProviderId.CLAUDE
    model: str = ""
    reasoning_effort: ReasoningEffort = ReasoningEffort.MEDIUM
    fast_mode: bool = False
    use_1m_context: bool = False
    context_window_tokens: int = 272_000
    context_template: str = ""
    enable_delegation: bool = False
    delegation_count: int = 1
    enable_isolated_storage: Optional[bool] = None
    enable_shared_storage: Optional[bool] = None
    enabled_mcp_server_ids: Tuple[str, ...] = ()
    output_format: OutputFormat = OutputFormat.MARKDOWN
    required_output_fields: Tuple[str, ...] = ()
    required_output_files: Tuple[str, ...] = ()
    skip_if_artifacts: Tuple[str, ...] = ()
    scenarios: Tuple[str, ...] = ()
    policy_profile_ids: Tuple[str, ...] = ()
    cache_bypass_input_keys: Tuple[str, ...] = ()
    cache_bypass_orchestrator_prompt_patterns: Tuple[str, ...] = ()

    @property
    def label(self) -> str:
        """Name used in run log lines."""
        name = " ".join(self.name.split())
        return name or self.id

    @property
    def is_orchestrator(self) -> bool:
        return self.role == StepRole.ORCHESTRATOR


@dataclass(frozen=True)
class PipelineLink:
    """A conditional edge between two steps."""

    source_step_id: str
    target_step_id: str
    condition: str = LinkCondition.ALWAYS.value
    id: str = ""


@dataclass(frozen=True)
class QualityGate:
    """A pass/fail check applied to a step's output or artifacts."""

    id: str
    name: str
    kind: GateKind
    target_step_id: str = ANY_STEP
    blocking: bool = True
    pattern: str = ""
    flags: str = ""
    json_path: str = ""
    artifact_path: str = ""
    message: str = ""

    def applies_to(self, step_id: str) -> bool:
        return self.target_step_id == ANY_STEP or self.target_step_id == step_id


@dataclass(frozen=True)
class RuntimeLimits:
    """Loop, execution-count and per-stage time bounds for a run."""

    max_loops: int = 2
    max_step_executions: int = 18
    stage_timeout_ms: int = 240_000


@dataclass(frozen=True)
class Pipeline:
    """Immutable pipeline snapshot for one run."""

    id: str
    name: str
    steps: Tuple[PipelineStep, ...]
    links: Tuple[PipelineLink, ...] = ()
    quality_gates: Tuple[QualityGate, ...] = ()
    runtime: RuntimeLimits = field(default_factory=RuntimeLimits)

    def step_by_id(self) -> Dict[str, PipelineStep]:
        return {step.id: step for step in self.steps}

    def outgoing_links(self) -> Dict[str, List[PipelineLink]]:
        outgoing: Dict[str, List[PipelineLink]] = {}
        for link in self.links:
            outgoing.setdefault(link.source_step_id, []).append(link)
        return outgoing

    def incoming_links(self) -> Dict[str, List[PipelineLink]]:
        incoming: Dict[str, List[PipelineLink]] = {}
        for link in self.links:
            incoming.setdefault(link.target_step_id, []).append(link)
        return incoming
