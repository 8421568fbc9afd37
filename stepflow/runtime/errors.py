"""Error taxonomy for the execution core.

Transport errors are retried or fallen back by the provider executor and
only reach the scheduler once recovery is exhausted. Contract failures are
never exceptions: they are QualityGateResult records with status fail.
Cancellation is its own type so the original reason survives every layer.
"""

from __future__ import annotations

import re
from typing import Optional

_TIMEOUT_PATTERN = re.compile(r"\btimed?\s*out\b|etimedout|timeout", re.IGNORECASE)


class StepflowError(Exception):
    """Base class for all stepflow errors."""


class PipelineValidationError(StepflowError):
    """A pipeline definition is malformed and cannot be loaded."""


class ProviderError(StepflowError):
    """Transport-level failure talking to a provider."""


class ProviderApiError(ProviderError):
    """Non-2xx response from a provider HTTP API.

    Attributes:
        status_code: HTTP status code.
        retry_after_ms: Parsed retry-after hint, if the response carried one.
    """

    def __init__(self, message: str, status_code: int, retry_after_ms: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after_ms = retry_after_ms


class CliExecutionError(ProviderError):
    """A provider CLI exited with a non-zero code."""

    def __init__(self, command: str, exit_code: int, tail: str):
        super().__init__(f"{command} exited with code {exit_code}: {tail}")
        self.command = command
        self.exit_code = exit_code
        self.tail = tail


class CliTimeoutError(ProviderError):
    """A provider CLI did not finish within its attempt timeout."""

    def __init__(self, command: str):
        super().__init__(f"{command} timed out")
        self.command = command


class ProviderExecutionError(ProviderError):
    """Every execution path for a step turn failed; the message carries hints."""


class StreamStalledError(ProviderError):
    """An event stream produced no event boundary within the idle timeout."""


class StreamProtocolError(ProviderError):
    """The provider sent an explicit error event inside the stream."""


class StepCancelledError(StepflowError):
    """Execution was cancelled; ``reason`` is the original cancellation reason."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


def is_timeout_error(error: BaseException) -> bool:
    """True when an error represents a timeout (including stage-deadline cancels)."""
    if isinstance(error, (CliTimeoutError, StreamStalledError)):
        return True
    return bool(_TIMEOUT_PATTERN.search(str(error)))


def error_message(error: BaseException) -> str:
    text = str(error).strip()
    return text or error.__class__.__name__
