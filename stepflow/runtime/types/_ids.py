"""ID types and generators for the types package.

Provides run, event and approval ID generation, plus type aliases.
"""

from __future__ import annotations

import secrets
import string
from datetime import datetime, timezone

import ulid

# Type aliases
RunId = str
StepId = str


def generate_event_id() -> str:
    """Generate a globally unique, time-ordered event ID using ULID."""
    return str(ulid.new())


def generate_run_id() -> RunId:
    """Generate a unique run ID.

    Creates IDs in the format: run-YYYYMMDD-HHMMSS-xxxxxx
    where xxxxxx is a random 6-character alphanumeric suffix.

    Returns:
        A unique run identifier string.

    Example:
        >>> run_id = generate_run_id()
        >>> run_id  # e.g., "run-20251208-143022-abc123"
    """
    now = datetime.now(timezone.utc)
    timestamp = now.strftime("%Y%m%d-%H%M%S")
    suffix = "".join(secrets.choice(string.ascii_lowercase + string.digits) for _ in range(6))
    return f"run-{timestamp}-{suffix}"


def make_approval_id(gate_id: str, step_id: StepId, attempt: int) -> str:
    """Build the stable approval ID for one gate on one step attempt."""
    return f"{gate_id}:{step_id}:attempt:{attempt}"
