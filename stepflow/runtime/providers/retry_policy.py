"""Timeout budgets and the one-shot timeout fallback for Claude CLI calls."""

from __future__ import annotations

import dataclasses
import logging
from typing import Optional

from stepflow.config.runtime_config import RuntimeSettings

from ..errors import StepCancelledError, is_timeout_error
from ..types import ARTIFACT_ROLES, REVIEW_ROLES, PipelineStep, ProviderId, ReasoningEffort, StepRole
from .models import ProviderRequest

logger = logging.getLogger(__name__)

CONTEXT_TRIM_MARKER = "[Context trimmed for timeout fallback]"
ORCHESTRATOR_RETRY_CONTEXT_CHARS = 120_000
DEFAULT_RETRY_CONTEXT_CHARS = 220_000
RETRY_CONTEXT_WINDOW_CAP = 220_000

# Part of the stage budget kept back for the timeout fallback attempt.
MIN_FALLBACK_RESERVE_MS = 30_000
FALLBACK_RESERVE_RATIO = 0.25

HEAVY_CONTEXT_WINDOW_TOKENS = 500_000
DEFAULT_STAGE_TIMEOUT_MS = 240_000
STAGE_TIMEOUT_CEILING_MS = 18_000_000


def _model_for(step: PipelineStep, provider_default_model: str) -> str:
    return (step.model or provider_default_model or "").strip()


def _fallback_reserve_ms(stage_timeout_ms: int) -> int:
    return max(MIN_FALLBACK_RESERVE_MS, int(stage_timeout_ms * FALLBACK_RESERVE_RATIO))


def resolve_claude_cli_attempt_timeout_ms(
    step: PipelineStep,
    provider_default_model: str,
    settings: RuntimeSettings,
    stage_timeout_ms: Optional[int] = None,
) -> int:
    """Per-attempt CLI timeout: orchestrator, heavy or base budget.

    With a stage budget, the attempt is shortened so a fallback reserve
    stays available inside the stage.
    """
    model = _model_for(step, provider_default_model).lower()
    if step.role == StepRole.ORCHESTRATOR:
        timeout_ms = settings.claude_cli_orchestrator_timeout_ms
    elif step.use_1m_context or step.context_window_tokens >= HEAVY_CONTEXT_WINDOW_TOKENS or "opus" in model:
        timeout_ms = settings.claude_cli_heavy_timeout_ms
    else:
        timeout_ms = settings.claude_cli_base_timeout_ms

    if stage_timeout_ms is None or stage_timeout_ms <= 0:
        return timeout_ms
    budget = stage_timeout_ms - _fallback_reserve_ms(stage_timeout_ms)
    if budget >= MIN_FALLBACK_RESERVE_MS:
        return min(timeout_ms, budget)
    return min(timeout_ms, stage_timeout_ms)


def has_fallback_budget(request: ProviderRequest, settings: RuntimeSettings) -> bool:
    """True when the stage leaves room for a second CLI attempt."""
    if request.stage_timeout_ms is None or request.stage_timeout_ms <= 0:
        return True
    attempt_ms = resolve_claude_cli_attempt_timeout_ms(
        request.step, request.provider.default_model, settings, request.stage_timeout_ms
    )
    return request.stage_timeout_ms - attempt_ms >= MIN_FALLBACK_RESERVE_MS


def should_try_timeout_fallback(request: ProviderRequest, error: BaseException, settings: RuntimeSettings) -> bool:
    if request.provider.id != ProviderId.CLAUDE.value:
        return False
    if request.token.cancelled:
        return False
    if not (isinstance(error, StepCancelledError) or is_timeout_error(error)):
        return False
    if not has_fallback_budget(request, settings):
        logger.info("Skipping timeout fallback for %s: stage budget exhausted", request.step.id)
        return False

    step = request.step
    model = _model_for(step, request.provider.default_model).lower()
    already_fast = (
        step.fast_mode
        and step.reasoning_effort in (ReasoningEffort.LOW, ReasoningEffort.MINIMAL)
        and not step.use_1m_context
        and "opus" not in model
    )
    return not already_fast


def trim_context_for_retry(context: str, max_chars: int) -> str:
    """Keep 65% head and 30% tail of an oversize context around a marker."""
    if len(context) <= max_chars:
        return context
    lead = int(max_chars * 0.65)
    trail = int(max_chars * 0.3)
    return f"{context[:lead]}\n\n{CONTEXT_TRIM_MARKER}\n\n{context[len(context) - trail:]}"


def build_timeout_fallback_request(request: ProviderRequest, settings: RuntimeSettings) -> ProviderRequest:
    step = request.step
    current_model = _model_for(step, request.provider.default_model)
    fallback_model = settings.claude_fallback_model.strip()
    next_model = current_model
    if (not current_model or "opus" in current_model.lower()) and fallback_model:
        next_model = fallback_model
    max_chars = ORCHESTRATOR_RETRY_CONTEXT_CHARS if step.is_orchestrator else DEFAULT_RETRY_CONTEXT_CHARS

    retry_step = dataclasses.replace(
        step,
        model=next_model,
        fast_mode=True,
        reasoning_effort=ReasoningEffort.LOW,
        use_1m_context=False,
        context_window_tokens=min(step.context_window_tokens, RETRY_CONTEXT_WINDOW_CAP),
    )
    return dataclasses.replace(
        request,
        step=retry_step,
        context=trim_context_for_retry(request.context, max_chars),
    )


def resolve_effective_stage_timeout_ms(
    step: PipelineStep, stage_timeout_ms: int, provider_default_model: str = ""
) -> int:
    """Stage budget for one step dispatch.

    Claude steps are escalated by weight: Opus, high effort, artifact-heavy
    and review roles all get longer floors. Non-Claude steps only escalate
    for 1M context.
    """
    base = max(10_000, min(STAGE_TIMEOUT_CEILING_MS, int(stage_timeout_ms or DEFAULT_STAGE_TIMEOUT_MS)))
    model = _model_for(step, provider_default_model).lower()
    high_effort = step.reasoning_effort in (ReasoningEffort.HIGH, ReasoningEffort.XHIGH)
    artifact_heavy = step.role in ARTIFACT_ROLES
    review_like = step.role in REVIEW_ROLES
    effective = base

    if step.provider_id == ProviderId.CLAUDE:
        is_opus = "opus" in model
        very_heavy = (
            is_opus
            or step.use_1m_context
            or step.context_window_tokens >= HEAVY_CONTEXT_WINDOW_TOKENS
            or high_effort
            or review_like
        )
        if is_opus:
            effective = max(effective, 3_600_000 if high_effort else 2_400_000)
        elif artifact_heavy and high_effort:
            effective = max(effective, 1_800_000)
        elif artifact_heavy or review_like:
            effective = max(effective, 1_200_000)
        else:
            effective = max(effective, 420_000)
        if very_heavy:
            effective = max(effective, 2_400_000)
    elif step.use_1m_context:
        effective = max(effective, 1_200_000)

    return min(effective, STAGE_TIMEOUT_CEILING_MS)
