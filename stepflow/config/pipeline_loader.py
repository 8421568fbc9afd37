"""
pipeline_loader.py - Load and normalize pipeline snapshots.

Pipelines arrive as YAML files or dicts (camelCase or snake_case keys) and are
normalized into immutable Pipeline snapshots: runtime limits are clamped,
dangling and self-loop links are dropped, duplicate links are rejected, and
quality gate targets are validated.

Usage:
    from stepflow.config.pipeline_loader import load_pipeline, pipeline_from_dict

    pipeline = load_pipeline(Path("pipelines/deck.yaml"))
    pipeline = pipeline_from_dict({"id": "p1", "steps": [...], "links": [...]})
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from stepflow.runtime.errors import PipelineValidationError
from stepflow.runtime.types import (
    ANY_STEP,
    GateKind,
    LinkCondition,
    OutputFormat,
    Pipeline,
    PipelineLink,
    PipelineStep,
    ProviderId,
    QualityGate,
    ReasoningEffort,
    RuntimeLimits,
    StepRole,
)

from .runtime_config import _clamp_value

logger = logging.getLogger(__name__)

MAX_LOOPS_RANGE = (0, 12)
MAX_STEP_EXECUTIONS_RANGE = (4, 120)
STAGE_TIMEOUT_MS_RANGE = (10_000, 1_200_000)
CONTEXT_WINDOW_RANGE = (16_000, 1_000_000)
DELEGATION_COUNT_RANGE = (1, 8)

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")

# Keys whose camelCase form does not map mechanically to the snake_case field.
_KEY_ALIASES = {
    "use1_m_context": "use_1m_context",
    "use1m_context": "use_1m_context",
    "provider": "provider_id",
    "enabled_mcp_servers": "enabled_mcp_server_ids",
    "source": "source_step_id",
    "target": "target_step_id",
    "target_step": "target_step_id",
}


def _snake_key(key: str) -> str:
    snake = _CAMEL_RE.sub("_", key).lower()
    return _KEY_ALIASES.get(snake, snake)


def _snake_dict(data: Dict[str, Any]) -> Dict[str, Any]:
    return {_snake_key(str(k)): v for k, v in data.items()}


def _str_tuple(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    result: List[str] = []
    for item in value:
        text = str(item).strip()
        if text and text not in result:
            result.append(text)
    return tuple(result)


def _optional_bool(value: Any) -> Optional[bool]:
    if value is None:
        return None
    return bool(value)


def _enum_value(enum_cls: Any, value: Any, default: Any, what: str, step_id: str) -> Any:
    if value is None or value == "":
        return default
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        raise PipelineValidationError(f"Step '{step_id}' has invalid {what}: {value!r}") from None


def _int_value(value: Any, default: int) -> int:
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _step_from_dict(raw: Dict[str, Any], index: int) -> PipelineStep:
    data = _snake_dict(raw)
    step_id = str(data.get("id") or "").strip()
    if not step_id:
        raise PipelineValidationError(f"Step at index {index} has no id")

    return PipelineStep(
        id=step_id,
        name=str(data.get("name") or step_id),
        role=_enum_value(StepRole, data.get("role"), StepRole.EXECUTOR, "role", step_id),
        prompt=str(data.get("prompt") or ""),
        provider_id=_enum_value(ProviderId, data.get("provider_id"), ProviderId.CLAUDE, "provider", step_id),
        model=str(data.get("model") or "").strip(),
        reasoning_effort=_enum_value(
            ReasoningEffort, data.get("reasoning_effort"), ReasoningEffort.MEDIUM, "reasoning effort", step_id
        ),
        fast_mode=bool(data.get("fast_mode", False)),
        use_1m_context=bool(data.get("use_1m_context", False)),
        context_window_tokens=_clamp_value(
            _int_value(data.get("context_window_tokens"), 272_000),
            f"{step_id}.context_window_tokens",
            *CONTEXT_WINDOW_RANGE,
        ),
        context_template=str(data.get("context_template") or ""),
        enable_delegation=bool(data.get("enable_delegation", False)),
        delegation_count=_clamp_value(
            _int_value(data.get("delegation_count"), 1),
            f"{step_id}.delegation_count",
            *DELEGATION_COUNT_RANGE,
        ),
        enable_isolated_storage=_optional_bool(data.get("enable_isolated_storage")),
        enable_shared_storage=_optional_bool(data.get("enable_shared_storage")),
        enabled_mcp_server_ids=_str_tuple(data.get("enabled_mcp_server_ids")),
        output_format=_enum_value(
            OutputFormat, data.get("output_format"), OutputFormat.MARKDOWN, "output format", step_id
        ),
        required_output_fields=_str_tuple(data.get("required_output_fields")),
        required_output_files=_str_tuple(data.get("required_output_files")),
        skip_if_artifacts=_str_tuple(data.get("skip_if_artifacts")),
        scenarios=_str_tuple(data.get("scenarios")),
        policy_profile_ids=tuple(p.lower() for p in _str_tuple(data.get("policy_profile_ids"))),
        cache_bypass_input_keys=_str_tuple(data.get("cache_bypass_input_keys")),
        cache_bypass_orchestrator_prompt_patterns=_str_tuple(
            data.get("cache_bypass_orchestrator_prompt_patterns")
        ),
    )


def _normalize_links(raw_links: List[Dict[str, Any]], step_ids: set) -> Tuple[PipelineLink, ...]:
    """Drop dangling and self-loop links, reject duplicate triples."""
    links: List[PipelineLink] = []
    seen = set()
    for index, raw in enumerate(raw_links):
        data = _snake_dict(raw)
        source = str(data.get("source_step_id") or "").strip()
        target = str(data.get("target_step_id") or "").strip()
        condition = str(data.get("condition") or "").strip() or LinkCondition.ALWAYS.value

        if source not in step_ids or target not in step_ids:
            logger.warning("Dropping link %s -> %s: unknown step id", source, target)
            continue
        if source == target:
            logger.warning("Dropping self-loop link on step %s", source)
            continue

        key = (source, target, condition)
        if key in seen:
            raise PipelineValidationError(
                f"Duplicate link {source} -> {target} with condition '{condition}'"
            )
        seen.add(key)
        links.append(
            PipelineLink(
                source_step_id=source,
                target_step_id=target,
                condition=condition,
                id=str(data.get("id") or f"link-{index + 1}"),
            )
        )
    return tuple(links)


def _gate_from_dict(raw: Dict[str, Any], index: int, step_ids: set) -> QualityGate:
    data = _snake_dict(raw)
    gate_id = str(data.get("id") or f"gate-{index + 1}")
    kind_value = str(data.get("kind") or "").strip().lower()
    try:
        kind = GateKind(kind_value)
    except ValueError:
        raise PipelineValidationError(f"Quality gate '{gate_id}' has unknown kind: {kind_value!r}") from None

    target = str(data.get("target_step_id") or ANY_STEP).strip()
    if target != ANY_STEP and target not in step_ids:
        raise PipelineValidationError(f"Quality gate '{gate_id}' targets unknown step '{target}'")

    return QualityGate(
        id=gate_id,
        name=str(data.get("name") or gate_id),
        kind=kind,
        target_step_id=target,
        blocking=bool(data.get("blocking", True)),
        pattern=str(data.get("pattern") or ""),
        flags=str(data.get("flags") or ""),
        json_path=str(data.get("json_path") or ""),
        artifact_path=str(data.get("artifact_path") or ""),
        message=str(data.get("message") or ""),
    )


def _runtime_from_dict(raw: Optional[Dict[str, Any]]) -> RuntimeLimits:
    data = _snake_dict(raw or {})
    return RuntimeLimits(
        max_loops=_clamp_value(_int_value(data.get("max_loops"), 2), "max_loops", *MAX_LOOPS_RANGE),
        max_step_executions=_clamp_value(
            _int_value(data.get("max_step_executions"), 18),
            "max_step_executions",
            *MAX_STEP_EXECUTIONS_RANGE,
        ),
        stage_timeout_ms=_clamp_value(
            _int_value(data.get("stage_timeout_ms"), 240_000),
            "stage_timeout_ms",
            *STAGE_TIMEOUT_MS_RANGE,
        ),
    )


def pipeline_from_dict(data: Dict[str, Any]) -> Pipeline:
    """Build a normalized Pipeline snapshot from a raw dict.

    Args:
        data: Pipeline mapping with steps, links, quality gates and runtime.

    Returns:
        Immutable Pipeline.

    Raises:
        PipelineValidationError: If the definition is malformed.
    """
    if not isinstance(data, dict):
        raise PipelineValidationError("Pipeline definition must be a mapping")
    normalized = _snake_dict(data)

    raw_steps = normalized.get("steps") or []
    if not raw_steps:
        raise PipelineValidationError("Pipeline has no steps")
    steps = tuple(_step_from_dict(raw, index) for index, raw in enumerate(raw_steps))

    step_ids = set()
    for step in steps:
        if step.id in step_ids:
            raise PipelineValidationError(f"Duplicate step id '{step.id}'")
        step_ids.add(step.id)

    links = _normalize_links(normalized.get("links") or [], step_ids)
    gates = tuple(
        _gate_from_dict(raw, index, step_ids)
        for index, raw in enumerate(normalized.get("quality_gates") or [])
    )

    pipeline_id = str(normalized.get("id") or "").strip()
    if not pipeline_id:
        raise PipelineValidationError("Pipeline has no id")

    return Pipeline(
        id=pipeline_id,
        name=str(normalized.get("name") or pipeline_id),
        steps=steps,
        links=links,
        quality_gates=gates,
        runtime=_runtime_from_dict(normalized.get("runtime")),
    )


def load_pipeline(path: Union[str, Path]) -> Pipeline:
    """Load a pipeline snapshot from a YAML (or JSON) file."""
    path = Path(path)
    if not path.exists():
        raise PipelineValidationError(f"Pipeline file not found: {path}")
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    return pipeline_from_dict(data or {})
