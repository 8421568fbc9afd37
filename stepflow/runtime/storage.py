"""
storage.py - Step storage paths and disk I/O for run state and events.

Two concerns live here:

1. Step storage paths. Every step dispatch gets a shared path (per pipeline),
   an isolated path (per pipeline and step) and a run path (per run and step).
   Artifact templates reference them with ``{{shared_storage_path}}``,
   ``{{isolated_storage_path}}`` and ``{{run_storage_path}}`` tokens.

2. Run persistence. The layout under the storage root is:

    <root>/
      shared/<pipeline_id>/             # shared artifacts
      isolated/<pipeline_id>/<step_id>/ # isolated artifacts
      runs/<run_id>/
        state.json                      # Run serialized (atomic writes)
        pipeline-snapshot.json          # immutable pipeline for the run
        events.jsonl                    # newline-delimited RunEvent objects
        <step_id>/                      # run storage path per step

Usage:
    from stepflow.runtime.storage import (
        resolve_step_storage_paths, resolve_artifact_candidate_paths,
        write_run_state, read_run_state, append_event, read_events,
    )
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from stepflow.config.runtime_config import StorageConfig

from .run_inputs import get_run_input_value, replace_input_tokens
from .types import PipelineStep, RunEvent, RunId, StepRole, run_event_from_dict, run_event_to_dict

# Module logger
logger = logging.getLogger(__name__)

DISABLED = "DISABLED"

STATE_FILE = "state.json"
PIPELINE_SNAPSHOT_FILE = "pipeline-snapshot.json"
EVENTS_FILE = "events.jsonl"

SHARED_TOKEN = "{{shared_storage_path}}"
ISOLATED_TOKEN = "{{isolated_storage_path}}"
RUN_TOKEN = "{{run_storage_path}}"

_UNSAFE_SEGMENT_RE = re.compile(r"[^a-zA-Z0-9._-]+")

# Roles that get isolated storage when neither the step nor prior state says otherwise.
_ISOLATED_BY_DEFAULT = frozenset({StepRole.ANALYSIS, StepRole.PLANNER, StepRole.EXECUTOR})


@dataclass(frozen=True)
class StorageFlags:
    """Resolved shared/isolated enablement for one step."""
    shared: bool
    isolated: bool


@dataclass(frozen=True)
class StepStoragePaths:
    """Absolute storage paths for one step dispatch; disabled scopes are "DISABLED"."""
    shared_storage_path: str
    isolated_storage_path: str
    run_storage_path: str

    @property
    def shared_enabled(self) -> bool:
        return self.shared_storage_path != DISABLED

    @property
    def isolated_enabled(self) -> bool:
        return self.isolated_storage_path != DISABLED


def safe_storage_segment(value: str) -> str:
    """Sanitize a path segment; empty values become "default"."""
    trimmed = (value or "").strip()
    return _UNSAFE_SEGMENT_RE.sub("_", trimmed or "default")


def resolve_storage_flags(step: PipelineStep, prior: Optional[StorageFlags] = None) -> StorageFlags:
    """Decide whether shared and isolated storage are enabled for a step.

    Precedence per scope: explicit step flag, then the value recorded in prior
    run state for the step, then the role heuristic (shared on for every role,
    isolated on for artifact-producing roles, never for orchestrators).
    """
    if step.enable_shared_storage is not None:
        shared = step.enable_shared_storage
    elif prior is not None:
        shared = prior.shared
    else:
        shared = True

    if step.enable_isolated_storage is not None:
        isolated = step.enable_isolated_storage
    elif prior is not None:
        isolated = prior.isolated
    else:
        isolated = step.role in _ISOLATED_BY_DEFAULT

    return StorageFlags(shared=shared, isolated=isolated)


def resolve_step_storage_paths(
    step: PipelineStep,
    pipeline_id: str,
    run_id: str,
    storage: StorageConfig,
    prior: Optional[StorageFlags] = None,
) -> StepStoragePaths:
    """Resolve the three storage paths for a step dispatch."""
    root = Path(storage.root_path).resolve()
    flags = resolve_storage_flags(step, prior)
    shared_root = root / storage.shared_folder / safe_storage_segment(pipeline_id)
    isolated_root = (
        root / storage.isolated_folder / safe_storage_segment(pipeline_id) / safe_storage_segment(step.id)
    )
    run_root = root / storage.runs_folder / safe_storage_segment(run_id) / safe_storage_segment(step.id)

    return StepStoragePaths(
        shared_storage_path=str(shared_root) if flags.shared and storage.enabled else DISABLED,
        isolated_storage_path=str(isolated_root) if flags.isolated and storage.enabled else DISABLED,
        run_storage_path=str(run_root),
    )


def ensure_step_storage(paths: StepStoragePaths) -> None:
    Path(paths.run_storage_path).mkdir(parents=True, exist_ok=True)
    if paths.shared_enabled:
        Path(paths.shared_storage_path).mkdir(parents=True, exist_ok=True)
    if paths.isolated_enabled:
        Path(paths.isolated_storage_path).mkdir(parents=True, exist_ok=True)


def apply_storage_path_tokens(template: str, paths: StepStoragePaths, run_inputs: Mapping[str, str]) -> str:
    """Render input and storage tokens; relative results resolve against the run path."""
    rendered = (
        replace_input_tokens(template, run_inputs)
        .replace(SHARED_TOKEN, paths.shared_storage_path)
        .replace(ISOLATED_TOKEN, paths.isolated_storage_path)
        .replace(RUN_TOKEN, paths.run_storage_path)
        .strip()
    )
    if not rendered or os.path.isabs(rendered):
        return rendered
    return os.path.normpath(os.path.join(paths.run_storage_path, rendered))


@dataclass(frozen=True)
class ArtifactCandidates:
    disabled_storage: bool
    paths: List[str]


def resolve_artifact_candidate_paths(
    template: str,
    paths: StepStoragePaths,
    run_inputs: Mapping[str, str],
) -> ArtifactCandidates:
    """Resolve an artifact template to the absolute paths that may satisfy it."""
    resolved = apply_storage_path_tokens(template, paths, run_inputs)
    disabled = (
        DISABLED in resolved
        or (SHARED_TOKEN in template and not paths.shared_enabled)
        or (ISOLATED_TOKEN in template and not paths.isolated_enabled)
    )

    candidates: List[str] = []

    def _add(value: str) -> None:
        value = value.strip()
        if value and value not in candidates:
            candidates.append(value)

    if not disabled:
        _add(resolved)

    uses_storage_token = SHARED_TOKEN in template or ISOLATED_TOKEN in template or RUN_TOKEN in template
    trimmed = template.strip()
    if not uses_storage_token and trimmed and not os.path.isabs(trimmed):
        output_dir = get_run_input_value(run_inputs, "output_dir")
        if output_dir and output_dir.strip():
            _add(os.path.normpath(os.path.join(os.path.abspath(output_dir.strip()), trimmed)))

    return ArtifactCandidates(disabled_storage=disabled, paths=candidates)


# -----------------------------------------------------------------------------
# Atomic File I/O Helpers
# -----------------------------------------------------------------------------


def _atomic_write_json(path: Path, data: Any, indent: int = 2) -> None:
    """Write JSON data to a file atomically.

    Uses a temporary file + os.replace pattern to ensure atomicity.

    Args:
        path: Destination file path.
        data: JSON-serializable data.
        indent: JSON indentation level.
    """
    parent = path.parent
    parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(suffix=".tmp", prefix=path.name + ".", dir=parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=indent, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except Exception:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _load_json_safe(path: Path, run_id: str, file_type: str = "file") -> Optional[Dict[str, Any]]:
    """Load a JSON file, returning None when missing or corrupt."""
    if not path.exists():
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        logger.warning("Corrupt %s for run '%s' at %s: %s", file_type, run_id, path, e)
        return None
    except OSError as e:
        logger.warning("Failed to read %s for run '%s' at %s: %s", file_type, run_id, path, e)
        return None


# -----------------------------------------------------------------------------
# Run state and events
# -----------------------------------------------------------------------------

_RUN_LOCKS: Dict[str, threading.Lock] = {}
_RUN_LOCKS_LOCK = threading.Lock()


def _get_run_lock(run_id: RunId) -> threading.Lock:
    with _RUN_LOCKS_LOCK:
        lock = _RUN_LOCKS.get(run_id)
        if lock is None:
            lock = threading.Lock()
            _RUN_LOCKS[run_id] = lock
        return lock


def get_run_path(run_id: RunId, storage: StorageConfig) -> Path:
    return Path(storage.root_path) / storage.runs_folder / safe_storage_segment(run_id)


def write_run_state(run_id: RunId, state: Dict[str, Any], storage: StorageConfig) -> Path:
    path = get_run_path(run_id, storage) / STATE_FILE
    _atomic_write_json(path, state)
    return path


def read_run_state(run_id: RunId, storage: StorageConfig) -> Optional[Dict[str, Any]]:
    return _load_json_safe(get_run_path(run_id, storage) / STATE_FILE, run_id, "state")


def write_pipeline_snapshot(run_id: RunId, snapshot: Dict[str, Any], storage: StorageConfig) -> Path:
    path = get_run_path(run_id, storage) / PIPELINE_SNAPSHOT_FILE
    _atomic_write_json(path, snapshot)
    return path


def append_event(run_id: RunId, event: RunEvent, storage: StorageConfig) -> None:
    """Append a RunEvent to events.jsonl.

    Event logging is non-critical: I/O and serialization failures are logged,
    never raised.
    """
    lock = _get_run_lock(run_id)
    with lock:
        run_path = get_run_path(run_id, storage)
        events_path = run_path / EVENTS_FILE
        try:
            run_path.mkdir(parents=True, exist_ok=True)
            line = json.dumps(run_event_to_dict(event), ensure_ascii=False)
            with open(events_path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
                f.flush()
        except OSError as e:
            logger.warning("Failed to append event for run '%s' at %s: %s", run_id, events_path, e)
        except (TypeError, ValueError) as e:
            logger.warning("Failed to serialize event for run '%s': %s", run_id, e)


def read_events(run_id: RunId, storage: StorageConfig) -> List[RunEvent]:
    """Read all events from events.jsonl, skipping malformed lines."""
    events_path = get_run_path(run_id, storage) / EVENTS_FILE
    if not events_path.exists():
        return []

    events: List[RunEvent] = []
    try:
        with open(events_path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    events.append(run_event_from_dict(json.loads(line)))
                except (json.JSONDecodeError, KeyError, TypeError):
                    continue
    except OSError:
        return []
    return events
