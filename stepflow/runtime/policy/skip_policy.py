"""Skip-if-artifacts decisions.

A step with ``skip_if_artifacts`` is a skip candidate when every listed
artifact exists. The candidate is forced back to execution when:

- run inputs request a cache bypass (``force_rebuild``, ``no_cache``,
  ``cache_mode=off`` and friends)
- a step- or profile-level cache-bypass input key is truthy
- the step prompt says the step runs every time
- the orchestrator prompt matches one of the step's bypass patterns
- an upstream step executed fresh in this run and produces required files
- a policy profile rejects the cached artifact contents
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional, Pattern, Sequence

from ..run_inputs import get_run_input_value, normalize_run_input_key
from ..types import PipelineStep
from .artifacts import ArtifactStateCheck
from .profiles import (
    resolve_cache_bypass_input_keys,
    resolve_cache_bypass_orchestrator_prompt_patterns,
    validate_skip_artifacts_quality,
)

logger = logging.getLogger(__name__)

STEP_ALWAYS_RUN_PATTERN = re.compile(
    r"\bruns?\s+every\s+time\b|\balways\s+regardless\b|\bregardless\s+of\s+whether\b"
    r"|\bmust\s+run\s+always\b|\bno\s+cache\b|\bdisable\s+cache\b",
    re.IGNORECASE,
)

_DISABLE_CACHE_KEYS = ("no_cache", "disable_cache", "ignore_cache", "fresh_run", "rebuild")
_CACHE_OFF_MODES = ("off", "disabled", "none", "fresh")

_REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL}


class SkipBypassReason(str, Enum):
    RUN_INPUT_CACHE_BYPASS = "run_input_cache_bypass"
    STEP_CACHE_BYPASS_INPUT_KEY = "step_cache_bypass_input_key"
    STEP_PROMPT_ALWAYS_RUN = "step_prompt_always_run"
    STEP_ORCHESTRATOR_PROMPT_PATTERN = "step_orchestrator_prompt_pattern"

    @property
    def description(self) -> str:
        return _BYPASS_DESCRIPTIONS[self]


_BYPASS_DESCRIPTIONS = {
    SkipBypassReason.RUN_INPUT_CACHE_BYPASS: "run input requested cache bypass",
    SkipBypassReason.STEP_CACHE_BYPASS_INPUT_KEY: "run input matched step cache-bypass key",
    SkipBypassReason.STEP_PROMPT_ALWAYS_RUN: "step prompt requires running every time",
    SkipBypassReason.STEP_ORCHESTRATOR_PROMPT_PATTERN: "orchestrator prompt matched step cache-bypass pattern",
}


def _boolean_like(value: Optional[str]) -> Optional[bool]:
    if value is None or not value.strip():
        return None
    normalized = value.strip().lower()
    if normalized in ("1", "true", "yes", "on", "enabled"):
        return True
    if normalized in ("0", "false", "no", "off", "disabled"):
        return False
    return None


def _input_bool(run_inputs: Mapping[str, str], key: str) -> Optional[bool]:
    return _boolean_like(get_run_input_value(run_inputs, key))


def is_cache_bypass_requested(run_inputs: Mapping[str, str]) -> bool:
    if _input_bool(run_inputs, "force_rebuild") is True:
        return True
    if any(_input_bool(run_inputs, key) is True for key in _DISABLE_CACHE_KEYS):
        return True
    cache_mode = (get_run_input_value(run_inputs, "cache_mode") or "").strip().lower()
    if cache_mode in _CACHE_OFF_MODES:
        return True
    return _input_bool(run_inputs, "use_cache") is False


def has_always_run_instruction(text: str) -> bool:
    return bool(text and text.strip() and STEP_ALWAYS_RUN_PATTERN.search(text))


def compile_pattern(pattern: str) -> Optional[Pattern[str]]:
    """Compile ``/body/flags`` or a bare pattern; case-insensitive by default.

    Returns None for empty or invalid patterns.
    """
    trimmed = (pattern or "").strip()
    if not trimmed:
        return None

    body, flag_text = trimmed, ""
    last_slash = trimmed.rfind("/")
    if trimmed.startswith("/") and last_slash > 0:
        body, flag_text = trimmed[1:last_slash], trimmed[last_slash + 1 :]

    flags = 0
    for char in flag_text or "i":
        flags |= _REGEX_FLAGS.get(char, 0)
    try:
        return re.compile(body, flags)
    except re.error as exc:
        logger.warning("Ignoring invalid cache-bypass pattern %r: %s", pattern, exc)
        return None


def _step_key_bypass(step: PipelineStep, run_inputs: Mapping[str, str]) -> bool:
    return any(
        _input_bool(run_inputs, normalize_run_input_key(key)) is True
        for key in resolve_cache_bypass_input_keys(step)
    )


def _orchestrator_pattern_bypass(step: PipelineStep, orchestrator_prompt: Optional[str]) -> bool:
    if not orchestrator_prompt or step.is_orchestrator:
        return False
    for pattern in resolve_cache_bypass_orchestrator_prompt_patterns(step):
        regex = compile_pattern(pattern)
        if regex is not None and regex.search(orchestrator_prompt):
            return True
    return False


def resolve_skip_bypass_reason(
    step: PipelineStep,
    run_inputs: Mapping[str, str],
    orchestrator_prompt: Optional[str] = None,
) -> Optional[SkipBypassReason]:
    """First bypass condition that holds for a step, in precedence order."""
    if is_cache_bypass_requested(run_inputs):
        return SkipBypassReason.RUN_INPUT_CACHE_BYPASS
    if _step_key_bypass(step, run_inputs):
        return SkipBypassReason.STEP_CACHE_BYPASS_INPUT_KEY
    if has_always_run_instruction(step.prompt):
        return SkipBypassReason.STEP_PROMPT_ALWAYS_RUN
    if _orchestrator_pattern_bypass(step, orchestrator_prompt):
        return SkipBypassReason.STEP_ORCHESTRATOR_PROMPT_PATTERN
    return None


@dataclass(frozen=True)
class SkipDecision:
    """Result of the pre-execution skip check.

    ``log_line`` is the run log line describing the decision, or "" when the
    step has no skip-if artifacts or some of them are missing.
    """

    skip: bool
    log_line: str = ""


def decide_skip(
    step: PipelineStep,
    states: Sequence[ArtifactStateCheck],
    run_inputs: Mapping[str, str],
    orchestrator_prompt: Optional[str] = None,
    fresh_upstream_names: Sequence[str] = (),
) -> SkipDecision:
    """Decide whether a step may reuse its cached artifacts.

    Args:
        step: The step about to be dispatched.
        states: Artifact state for each of the step's skip-if templates.
        run_inputs: Normalized run inputs.
        orchestrator_prompt: Prompt of the run's orchestrator step, if any.
        fresh_upstream_names: Labels of steps anywhere upstream that executed
            (not skipped) in this run and declare required output files or
            skip-if artifacts.
    """
    if not step.skip_if_artifacts or not states:
        return SkipDecision(skip=False)
    if not all(state.exists for state in states):
        return SkipDecision(skip=False)

    label = step.label
    bypass = resolve_skip_bypass_reason(step, run_inputs, orchestrator_prompt)
    if bypass is not None:
        return SkipDecision(skip=False, log_line=f"Skip-if disabled for {label}: {bypass.description}")

    if fresh_upstream_names:
        names = ", ".join(fresh_upstream_names)
        return SkipDecision(
            skip=False,
            log_line=f"Skip-if disabled for {label}: upstream steps produced fresh artifacts in this run ({names})",
        )

    validation = validate_skip_artifacts_quality(step, states)
    if not validation.ok:
        return SkipDecision(
            skip=False,
            log_line=f"Skip-if disabled for {label}: cached artifacts failed validation ({validation.reason})",
        )

    return SkipDecision(skip=True, log_line=f"Skipped {label}: all skip-if artifacts already exist")
