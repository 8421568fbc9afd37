"""
executor.py - Provider selection and failure recovery for one step turn.

Selection order:
1. A stored credential (API key, or OAuth token in oauth mode) selects the
   HTTP path. Claude API failures are retried with reduced option sets
   (no 1M context, no effort, neither) before giving up on the API.
2. With no credential, the CLI path runs. A Claude CLI timeout gets one
   lower-latency fallback attempt (see retry_policy), on this path and when
   the CLI runs as the API fallback.
3. An API failure falls back to the CLI unless the provider has an explicit
   API key in api_key mode.

Cancellation is never recovered from: StepCancelledError propagates with
its original reason.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from stepflow.config.runtime_config import RuntimeSettings

from ..errors import ProviderExecutionError, StepCancelledError, error_message, is_timeout_error
from ..types import ProviderId
from .api_runner import ClaudeApiOptions, ProviderApiRunner
from .cli_runner import CliRunner
from .models import ProviderRequest
from .retry_policy import build_timeout_fallback_request, should_try_timeout_fallback

logger = logging.getLogger(__name__)

CLAUDE_API_FALLBACK_OPTIONS = (
    ClaudeApiOptions(disable_1m_context=True),
    ClaudeApiOptions(disable_effort=True),
    ClaudeApiOptions(disable_1m_context=True, disable_effort=True),
)

TIMEOUT_HINT = "CLI execution timed out or was aborted. Increase stageTimeoutMs or use a lower-latency model."
CLI_FAILED_HINT = "CLI fallback failed."
API_KEY_HINT = "No provider API credentials are stored in runtime settings."
OAUTH_HINT = "No provider OAuth token is stored in runtime settings; the provider CLI login is used instead."


class _CliPathFailure(Exception):
    """CLI path failure after any timeout fallback, kept for message assembly."""

    def __init__(self, error: BaseException, retry_failure: str = ""):
        super().__init__(str(error))
        self.error = error
        self.retry_failure = retry_failure


class ProviderExecutor:
    """Adapter between the scheduler and provider transports.

    Args:
        settings: Runtime settings shared by both paths.
        api_runner: HTTP path (default built from settings).
        cli_runner: CLI path (default built from settings).
        credential_lookup: Optional fallback credential source by provider id,
            consulted when the provider config has no credential.
    """

    def __init__(
        self,
        settings: RuntimeSettings,
        api_runner: Optional[ProviderApiRunner] = None,
        cli_runner: Optional[CliRunner] = None,
        credential_lookup: Optional[Callable[[str], Optional[str]]] = None,
    ):
        self.settings = settings
        self.api_runner = api_runner or ProviderApiRunner(settings)
        self.cli_runner = cli_runner or CliRunner(settings)
        self._credential_lookup = credential_lookup

    def _resolve_credential(self, request: ProviderRequest) -> str:
        credential = request.provider.credential
        if not credential and self._credential_lookup is not None:
            credential = (self._credential_lookup(request.provider.id) or "").strip()
        return credential

    def execute(self, request: ProviderRequest) -> str:
        """Produce output text (or an mcp_calls envelope) for one step turn."""
        request.token.raise_if_cancelled()
        credential = self._resolve_credential(request)
        if not credential:
            return self._execute_cli_only(request)

        try:
            return self._execute_api(request, credential)
        except StepCancelledError:
            raise
        except Exception as api_error:  # noqa: BLE001
            if request.provider.auth_mode != "oauth" and request.provider.has_explicit_api_key:
                raise
            request.log(f"Provider API failed; falling back to CLI: {error_message(api_error)}")
            try:
                return self._run_cli(request)
            except _CliPathFailure as failure:
                raise ProviderExecutionError(
                    f"{error_message(api_error)}; CLI fallback failed: "
                    f"{error_message(failure.error)}{failure.retry_failure}"
                ) from failure.error

    def _execute_api(self, request: ProviderRequest, credential: str) -> str:
        if request.provider.id != ProviderId.CLAUDE.value:
            return self.api_runner.execute_openai(request, credential)

        try:
            return self.api_runner.execute_claude(request, credential)
        except StepCancelledError:
            raise
        except Exception as first_error:  # noqa: BLE001
            for options in CLAUDE_API_FALLBACK_OPTIONS:
                request.token.raise_if_cancelled()
                try:
                    return self.api_runner.execute_claude(request, credential, options)
                except StepCancelledError:
                    raise
                except Exception as retry_error:  # noqa: BLE001
                    logger.info(
                        "Claude API retry with %s failed: %s", options, error_message(retry_error)
                    )
            raise first_error

    def _run_cli(self, request: ProviderRequest) -> str:
        """Run the CLI path with at most one timeout fallback attempt.

        Raises:
            StepCancelledError: The run token was cancelled.
            _CliPathFailure: The CLI failed and no fallback recovered it.
        """
        try:
            return self.cli_runner.execute(request)
        except Exception as error:  # noqa: BLE001
            if isinstance(error, StepCancelledError) and request.token.cancelled:
                raise
            retry_failure = ""
            if should_try_timeout_fallback(request, error, self.settings):
                retry_request = build_timeout_fallback_request(request, self.settings)
                request.log(
                    f"Claude CLI timed out; retrying once with model={retry_request.model}, "
                    "effort=low, fastMode=on, 1M context off."
                )
                try:
                    return self.cli_runner.execute(retry_request)
                except StepCancelledError:
                    if request.token.cancelled:
                        raise
                    retry_failure = " Timeout fallback retry failed: aborted"
                except Exception as retry_error:  # noqa: BLE001
                    retry_failure = f" Timeout fallback retry failed: {error_message(retry_error) or 'retry failed'}"
            raise _CliPathFailure(error, retry_failure) from error

    def _execute_cli_only(self, request: ProviderRequest) -> str:
        try:
            return self._run_cli(request)
        except _CliPathFailure as failure:
            error = failure.error
            hint = TIMEOUT_HINT if is_timeout_error(error) else CLI_FAILED_HINT
            credential_hint = OAUTH_HINT if request.provider.auth_mode == "oauth" else API_KEY_HINT
            raise ProviderExecutionError(
                f"{credential_hint} {hint} Details: {error_message(error)}{failure.retry_failure}"
            ) from error
