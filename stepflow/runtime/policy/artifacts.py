"""Point-in-time artifact state checks.

An ArtifactStateCheck is produced fresh for every skip decision and every
post-execution contract check; it is never persisted. Reads are not locked:
concurrent dispatches write disjoint artifact paths.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Mapping, Optional, Sequence

from ..storage import StepStoragePaths, resolve_artifact_candidate_paths


@dataclass(frozen=True)
class ArtifactStateCheck:
    """Resolved state of one artifact path template.

    Attributes:
        template: The path template as declared on the step.
        disabled_storage: The storage scope the template needs is disabled.
        paths: Candidate absolute paths checked, in order.
        found_path: First candidate that exists, if any.
        size_bytes: Size of found_path.
        mtime: Modification time of found_path (seconds since epoch).
    """

    template: str
    disabled_storage: bool = False
    paths: List[str] = field(default_factory=list)
    found_path: Optional[str] = None
    size_bytes: Optional[int] = None
    mtime: Optional[float] = None

    @property
    def exists(self) -> bool:
        return self.found_path is not None

    def describe_paths(self) -> str:
        if self.disabled_storage:
            return "Storage mode required by this artifact path is disabled for this step."
        if self.paths:
            return f"Checked paths: {' | '.join(self.paths)}"
        return "No candidate artifact paths were resolved."


def check_artifact_state(
    template: str,
    storage_paths: StepStoragePaths,
    run_inputs: Mapping[str, str],
) -> ArtifactStateCheck:
    """Resolve a template and stat the first existing candidate."""
    candidates = resolve_artifact_candidate_paths(template, storage_paths, run_inputs)
    if candidates.disabled_storage:
        return ArtifactStateCheck(template=template, disabled_storage=True, paths=candidates.paths)

    for candidate in candidates.paths:
        try:
            stat = os.stat(candidate)
        except OSError:
            continue
        return ArtifactStateCheck(
            template=template,
            paths=candidates.paths,
            found_path=candidate,
            size_bytes=stat.st_size,
            mtime=stat.st_mtime,
        )

    return ArtifactStateCheck(template=template, paths=candidates.paths)


def check_artifacts_state(
    templates: Sequence[str],
    storage_paths: StepStoragePaths,
    run_inputs: Mapping[str, str],
) -> List[ArtifactStateCheck]:
    return [check_artifact_state(t, storage_paths, run_inputs) for t in templates]


def did_artifact_change(before: ArtifactStateCheck, after: ArtifactStateCheck) -> bool:
    """True if an artifact appeared, moved, got newer, or changed size."""
    if not before.exists and after.exists:
        return True
    if before.found_path != after.found_path:
        return True
    if before.mtime is not None and after.mtime is not None and after.mtime > before.mtime + 0.0005:
        return True
    if before.size_bytes is not None and after.size_bytes is not None and after.size_bytes != before.size_bytes:
        return True
    return False
