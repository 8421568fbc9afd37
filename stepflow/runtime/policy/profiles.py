"""
profiles.py - Policy profiles: named bundles of skip validation and contracts.

A policy profile applies to a class of steps, selected explicitly through
``policy_profile_ids`` or inferred from the step's declared artifacts. A
profile may:
- contribute default cache-bypass input keys and orchestrator prompt patterns
- validate cached artifact contents before a skip is allowed
- evaluate extra artifact contracts after execution

New profiles subclass PolicyProfile and are added to the registry; the
scheduler never needs to change.
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..storage import _atomic_write_json
from ..types import GateResultStatus, PipelineStep, QualityGateResult
from .artifacts import ArtifactStateCheck

logger = logging.getLogger(__name__)

STEP_CONTRACT_KIND = "step_contract"


@dataclass(frozen=True)
class SkipArtifactsValidation:
    ok: bool
    reason: str = ""


class PolicyProfile(ABC):
    """Interface for a named policy profile."""

    profile_id: str = ""
    summary: str = ""
    default_cache_bypass_input_keys: Tuple[str, ...] = ()
    default_cache_bypass_orchestrator_prompt_patterns: Tuple[str, ...] = ()

    @abstractmethod
    def matches(self, step: PipelineStep) -> bool:
        """Whether the profile applies to a step that did not name it explicitly."""
        ...

    def validate_skip_artifacts(
        self, step: PipelineStep, states: Sequence[ArtifactStateCheck]
    ) -> SkipArtifactsValidation:
        return SkipArtifactsValidation(ok=True)

    def evaluate_contracts(
        self, step: PipelineStep, after_snapshots: Sequence[ArtifactStateCheck]
    ) -> List[QualityGateResult]:
        return []


# =============================================================================
# design_deck_assets
# =============================================================================

MIN_FRAME_MAP_BYTES = 256
MAX_DESIGN_ASSETS_MANIFEST_BYTES = 8 * 1024 * 1024

_FRAME_ASSET_FILE_REF_RE = re.compile(
    r'"file"\s*:\s*"assets/frame-[^"]+\.(?:png|jpe?g|webp|gif|svg)"', re.IGNORECASE
)
_INLINE_DATA_URI_RE = re.compile(r'"backgroundImageBase64"\s*:\s*"data:image/', re.IGNORECASE)


def _positive_int(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if value != value or value <= 0 or value == float("inf"):
        return None
    return int(value)


def extract_frame_count(value: Any) -> Optional[int]:
    """Frame count from a frame-map payload (totalFrames, frameCount, frames, slideMap)."""
    if not isinstance(value, dict):
        return None
    for key in ("totalFrames", "frameCount"):
        count = _positive_int(value.get(key))
        if count is not None:
            return count
    for key in ("frames", "slideMap"):
        entries = value.get(key)
        if isinstance(entries, list) and entries:
            return len(entries)
    return None


def find_artifact_state(
    states: Sequence[ArtifactStateCheck], pattern: str
) -> Optional[ArtifactStateCheck]:
    needle = pattern.lower()
    for state in states:
        if needle in state.template.lower():
            return state
    return None


def _contract_fail(gate_id: str, gate_name: str, message: str, details: str) -> QualityGateResult:
    return QualityGateResult(
        gate_id=gate_id,
        gate_name=gate_name,
        kind=STEP_CONTRACT_KIND,
        status=GateResultStatus.FAIL,
        blocking=True,
        message=message,
        details=details,
    )


class DesignDeckAssetsProfile(PolicyProfile):
    """Contracts for design-deck extraction artifacts (frame-map/assets-manifest)."""

    profile_id = "design_deck_assets"
    summary = "Contracts for design-deck extraction artifacts (frame-map/assets-manifest)."
    default_cache_bypass_input_keys = ("force_refresh_design_assets", "force_design_assets_refresh")

    def matches(self, step: PipelineStep) -> bool:
        templates = [t.lower() for t in (*step.required_output_files, *step.skip_if_artifacts)]
        return any("assets-manifest.json" in t for t in templates) and any(
            "frame-map.json" in t for t in templates
        )

    def validate_skip_artifacts(
        self, step: PipelineStep, states: Sequence[ArtifactStateCheck]
    ) -> SkipArtifactsValidation:
        frame_state = find_artifact_state(states, "frame-map.json")
        manifest_state = find_artifact_state(states, "assets-manifest.json")
        if frame_state is None or not frame_state.exists:
            return SkipArtifactsValidation(False, "frame-map.json is missing or unreadable")
        if manifest_state is None or not manifest_state.exists:
            return SkipArtifactsValidation(False, "assets-manifest.json is missing or unreadable")

        manifest_size = manifest_state.size_bytes or 0
        if (frame_state.size_bytes or 0) < MIN_FRAME_MAP_BYTES:
            return SkipArtifactsValidation(False, "frame-map.json is too small for safe cache reuse")
        if manifest_size <= 0:
            return SkipArtifactsValidation(False, "assets-manifest.json is empty")
        if manifest_size > MAX_DESIGN_ASSETS_MANIFEST_BYTES:
            return SkipArtifactsValidation(False, "assets-manifest.json exceeds size limit for cache reuse")

        try:
            frame_parsed = json.loads(Path(frame_state.found_path).read_text(encoding="utf-8"))
            manifest_raw = Path(manifest_state.found_path).read_text(encoding="utf-8")
            manifest_parsed = json.loads(manifest_raw)
        except (OSError, ValueError):
            return SkipArtifactsValidation(False, "failed to parse frame-map.json or assets-manifest.json")

        if extract_frame_count(frame_parsed) is None:
            return SkipArtifactsValidation(False, "frame-map.json has no valid frame count")
        if not isinstance(manifest_parsed, dict):
            return SkipArtifactsValidation(False, "assets-manifest.json must be a JSON object")
        if not _FRAME_ASSET_FILE_REF_RE.search(manifest_raw):
            return SkipArtifactsValidation(
                False, "assets-manifest.json has no reusable assets/frame-* file references"
            )
        if _INLINE_DATA_URI_RE.search(manifest_raw) and manifest_size > MAX_DESIGN_ASSETS_MANIFEST_BYTES // 2:
            return SkipArtifactsValidation(False, "assets-manifest.json contains large inline data:image payloads")
        return SkipArtifactsValidation(True)

    def evaluate_contracts(
        self, step: PipelineStep, after_snapshots: Sequence[ArtifactStateCheck]
    ) -> List[QualityGateResult]:
        self._normalize_frame_map(after_snapshots)

        manifest = find_artifact_state(after_snapshots, "assets-manifest.json")
        if manifest is None or manifest.disabled_storage or not manifest.exists:
            return []

        manifest_size = manifest.size_bytes or 0
        if manifest_size > MAX_DESIGN_ASSETS_MANIFEST_BYTES:
            return [
                _contract_fail(
                    f"contract-design-assets-manifest-size-{step.id}",
                    "Design assets manifest is oversized",
                    f"assets-manifest.json is too large ({manifest_size} bytes). "
                    "Use file references under shared/assets instead of inline base64 payloads.",
                    f"path={manifest.found_path}, maxBytes={MAX_DESIGN_ASSETS_MANIFEST_BYTES}",
                )
            ]

        try:
            manifest_raw = Path(manifest.found_path).read_text(encoding="utf-8")
        except OSError as exc:
            return [
                _contract_fail(
                    f"contract-design-assets-manifest-read-{step.id}",
                    "Design assets manifest is unreadable",
                    "Could not read assets-manifest.json after extraction.",
                    f"path={manifest.found_path}, error={exc}",
                )
            ]

        if _INLINE_DATA_URI_RE.search(manifest_raw):
            return [
                _contract_fail(
                    f"contract-design-assets-manifest-inline-{step.id}",
                    "Design assets manifest contains inline base64 payloads",
                    "assets-manifest.json must be metadata-only (file references). "
                    "Inline data URIs are not allowed.",
                    f"path={manifest.found_path}",
                )
            ]

        if not _FRAME_ASSET_FILE_REF_RE.search(manifest_raw):
            return [
                _contract_fail(
                    f"contract-design-assets-manifest-filerefs-{step.id}",
                    "Design assets manifest has no reusable file references",
                    "assets-manifest.json must include reusable assets/* file references.",
                    f"path={manifest.found_path}",
                )
            ]
        return []

    @staticmethod
    def _normalize_frame_map(after_snapshots: Sequence[ArtifactStateCheck]) -> None:
        """Write ``totalFrames`` into frame-map.json when it is derivable but missing."""
        frame_state = find_artifact_state(after_snapshots, "frame-map.json")
        if frame_state is None or not frame_state.exists:
            return
        path = Path(frame_state.found_path)
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return
        if not isinstance(payload, dict) or _positive_int(payload.get("totalFrames")) is not None:
            return
        count = extract_frame_count(payload)
        if count is None:
            return
        payload["totalFrames"] = count
        _atomic_write_json(path, payload)
        logger.info("Normalized %s: totalFrames=%d", path, count)


_PROFILE_REGISTRY: Dict[str, PolicyProfile] = {
    profile.profile_id: profile for profile in (DesignDeckAssetsProfile(),)
}


def list_policy_profiles() -> List[Dict[str, str]]:
    return [{"id": p.profile_id, "summary": p.summary} for p in _PROFILE_REGISTRY.values()]


def resolve_profiles_for_step(step: PipelineStep) -> List[PolicyProfile]:
    """Explicit profile ids win; otherwise profiles are inferred from the step.

    Unknown explicit ids are ignored with a warning.
    """
    selected: List[PolicyProfile] = []
    for raw_id in step.policy_profile_ids:
        profile_id = raw_id.strip().lower()
        profile = _PROFILE_REGISTRY.get(profile_id)
        if profile is None:
            logger.warning("Step %s references unknown policy profile %r", step.id, raw_id)
            continue
        if profile not in selected:
            selected.append(profile)
    if selected:
        return selected
    return [p for p in _PROFILE_REGISTRY.values() if p.matches(step)]


def _unique(values: List[str]) -> List[str]:
    result: List[str] = []
    for value in values:
        if value and value not in result:
            result.append(value)
    return result


def resolve_cache_bypass_input_keys(step: PipelineStep) -> List[str]:
    keys: List[str] = []
    for profile in resolve_profiles_for_step(step):
        keys.extend(profile.default_cache_bypass_input_keys)
    keys.extend(step.cache_bypass_input_keys)
    return _unique([k.strip().lower() for k in keys])


def resolve_cache_bypass_orchestrator_prompt_patterns(step: PipelineStep) -> List[str]:
    patterns: List[str] = []
    for profile in resolve_profiles_for_step(step):
        patterns.extend(profile.default_cache_bypass_orchestrator_prompt_patterns)
    patterns.extend(step.cache_bypass_orchestrator_prompt_patterns)
    return _unique([p.strip() for p in patterns])


def validate_skip_artifacts_quality(
    step: PipelineStep, states: Sequence[ArtifactStateCheck]
) -> SkipArtifactsValidation:
    for profile in resolve_profiles_for_step(step):
        result = profile.validate_skip_artifacts(step, states)
        if not result.ok:
            return result
    return SkipArtifactsValidation(ok=True)


def evaluate_profile_contracts(
    step: PipelineStep, after_snapshots: Sequence[ArtifactStateCheck]
) -> List[QualityGateResult]:
    results: List[QualityGateResult] = []
    for profile in resolve_profiles_for_step(step):
        results.extend(profile.evaluate_contracts(step, after_snapshots))
    return results
