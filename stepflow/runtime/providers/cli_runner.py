"""
cli_runner.py - Subprocess execution path for provider steps.

Claude steps run through ``claude --print``; OpenAI steps run through
``codex exec`` with the final message written to a temp file. Every call is
bounded by an attempt timeout and torn down when the step's cancellation
token fires; the cancellation reason is preserved in the raised error.
"""

from __future__ import annotations

import json
import logging
import os
import re
import subprocess
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from stepflow.config.runtime_config import RuntimeSettings

from ..cancellation import CancellationToken
from ..errors import CliExecutionError, CliTimeoutError, ProviderError, StepCancelledError
from ..types import OutputFormat, ProviderId
from .models import LogFn, ProviderRequest
from .normalizers import compose_cli_prompt, gate_result_schema, map_claude_effort, requires_gate_result_schema
from .retry_policy import resolve_claude_cli_attempt_timeout_ms

logger = logging.getLogger(__name__)

CLAUDE_EMPTY_OUTPUT = "Claude CLI completed with no text output."
CODEX_EMPTY_OUTPUT = "Codex CLI completed with no final message output."
FAST_MODE_NOTE = "Fast mode requested. Prioritize lower latency and concise responses."
CONTEXT_1M_NOTE = "1M context mode requested for compatible Sonnet/Opus models."
ERROR_TAIL_CHARS = 520

_UNKNOWN_OPTION_RE = re.compile(r"\bunknown\b.+\b(option|argument)\b|did you mean|unrecognized option", re.IGNORECASE)
_UNSUPPORTED_OUTPUT_FORMAT_RE = re.compile(
    r"\boutput-format\b.+\b(invalid|unsupported|unknown|must be one of)\b|\bstream-json\b", re.IGNORECASE
)
_REDACTIONS = (
    (re.compile(r"(authorization\s*[:=]\s*(?:bearer\s+)?)([^\s\"'`,;]+)", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"(x-[a-z0-9_-]*token\s*[:=]\s*)([^\s\"'`,;]+)", re.IGNORECASE), r"\1[REDACTED]"),
    (
        re.compile(r"\b([a-z0-9._-]*(?:token|api[_-]?key|secret)\s*[:=]\s*)([^\s\"'`,;]+)", re.IGNORECASE),
        r"\1[REDACTED]",
    ),
)


@dataclass
class CommandResult:
    stdout: str
    stderr: str


def redact_sensitive_text(value: str) -> str:
    for pattern, replacement in _REDACTIONS:
        value = pattern.sub(replacement, value)
    return value


def _mask_arg(value: str, index: int, total: int) -> str:
    if index == total - 1 and value:
        return "<prompt>"
    if len(value) > 120 or "\n" in value or re.search(r"\s{2,}", value):
        return f"<arg{index + 1}>"
    return value


def format_cli_command_start_log(command: str, args: List[str], cwd: str, timeout_ms: int) -> str:
    rendered = [_mask_arg(arg, i, len(args)) for i, arg in enumerate(args)]
    preview = " ".join([command] + rendered)
    preview = redact_sensitive_text(" ".join(preview.split()).replace('"', "'"))
    if len(preview) > 320:
        preview = preview[:317] + "..."
    return f"CLI command started: {preview} (cwd={cwd}, timeout={timeout_ms}ms)"


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def run_command(
    command: str,
    args: List[str],
    stdin_input: Optional[str] = None,
    timeout_ms: int = 240_000,
    token: Optional[CancellationToken] = None,
    log: Optional[LogFn] = None,
    cwd: Optional[str] = None,
) -> CommandResult:
    """Run a provider CLI to completion.

    Raises:
        CliTimeoutError: The process outlived ``timeout_ms`` and was killed.
        StepCancelledError: The token fired; carries the token's reason.
        CliExecutionError: Non-zero exit, with the stderr (or stdout) tail.
        ProviderError: The command could not be started.
    """
    emit = log or (lambda line: None)
    working_dir = cwd or os.getcwd()
    started = time.monotonic()
    emit(format_cli_command_start_log(command, args, working_dir, timeout_ms))

    try:
        process = subprocess.Popen(
            [command, *args],
            cwd=working_dir,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
        )
    except OSError as exc:
        emit(f"CLI command process error after {_elapsed_ms(started)}ms: {exc}")
        raise ProviderError(f"{command} could not be started: {exc}") from exc

    def _terminate(_reason: str) -> None:
        if process.poll() is None:
            process.terminate()

    unregister = token.add_callback(_terminate) if token is not None else (lambda: None)
    try:
        stdout, stderr = process.communicate(input=stdin_input or None, timeout=timeout_ms / 1000.0)
    except subprocess.TimeoutExpired:
        process.kill()
        process.communicate()
        emit(f"CLI command timed out after {_elapsed_ms(started)}ms")
        raise CliTimeoutError(command)
    finally:
        unregister()

    if token is not None and token.cancelled:
        emit(f"CLI command aborted after {_elapsed_ms(started)}ms: {token.reason}")
        raise StepCancelledError(token.reason or "Cancelled")

    if process.returncode != 0:
        emit(f"CLI command exited with code {process.returncode} after {_elapsed_ms(started)}ms")
        raise CliExecutionError(command, process.returncode, (stderr or stdout)[:ERROR_TAIL_CHARS])

    emit(
        f"CLI command completed in {_elapsed_ms(started)}ms "
        f"(stdout={len(stdout)} chars, stderr={len(stderr)} chars)"
    )
    return CommandResult(stdout=stdout, stderr=stderr)


def is_unknown_option_error(error: BaseException) -> bool:
    return bool(_UNKNOWN_OPTION_RE.search(str(error)))


def is_unsupported_output_format_error(error: BaseException) -> bool:
    return bool(_UNSUPPORTED_OUTPUT_FORMAT_RE.search(str(error)))


# =============================================================================
# Claude stdout decoding
# =============================================================================


def parse_claude_json_payloads(stdout: str) -> List[Dict[str, Any]]:
    """Decode a single JSON object, or line-delimited JSON objects."""
    trimmed = stdout.strip()
    if not trimmed:
        return []
    try:
        parsed = json.loads(trimmed)
    except ValueError:
        parsed = None
    if isinstance(parsed, dict):
        return [parsed]

    payloads = []
    for line in trimmed.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            parsed = json.loads(line)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            payloads.append(parsed)
    return payloads


def _payload_text(payload: Dict[str, Any]) -> Optional[str]:
    for key in ("structured_output", "result"):
        value = payload.get(key)
        if isinstance(value, dict):
            return json.dumps(value)
        if isinstance(value, str) and value.strip():
            return value.strip()

    content = payload.get("content")
    if isinstance(content, str) and content.strip():
        return content.strip()
    if isinstance(content, list):
        parts = []
        for entry in content:
            if isinstance(entry, str):
                parts.append(entry)
            elif isinstance(entry, dict) and isinstance(entry.get("text"), str):
                parts.append(entry["text"])
        text = "".join(parts).strip()
        if text:
            return text

    message = payload.get("message")
    if isinstance(message, str) and message.strip():
        return message.strip()
    return None


def _payload_delta(payload: Dict[str, Any]) -> str:
    delta = payload.get("delta")
    if isinstance(delta, str):
        return delta
    if isinstance(delta, dict) and isinstance(delta.get("text"), str):
        return delta["text"]
    completion = payload.get("completion")
    return completion if isinstance(completion, str) else ""


def extract_claude_cli_output(stdout: str, output_format: str, log: Optional[LogFn] = None) -> str:
    trimmed = stdout.strip()
    if not trimmed or output_format == "text":
        return trimmed

    payloads = parse_claude_json_payloads(trimmed)
    if not payloads:
        return trimmed

    for payload in reversed(payloads):
        text = _payload_text(payload)
        if text:
            return text

    stream_text = "".join(_payload_delta(p) for p in payloads).strip()
    if stream_text:
        return stream_text

    if log is not None:
        log("Claude CLI payload did not include structured output fields; returning latest JSON payload.")
    return json.dumps(payloads[-1])


# =============================================================================
# Runner
# =============================================================================


class CliRunner:
    """Runs provider CLIs with flags derived from runtime settings.

    Args:
        settings: Runtime settings (commands, permission flags, timeouts).
        command_runner: Replaceable ``run_command`` (tests inject fakes).
    """

    def __init__(self, settings: RuntimeSettings, command_runner: Callable[..., CommandResult] = run_command):
        self.settings = settings
        self._run = command_runner

    def execute(self, request: ProviderRequest) -> str:
        if request.provider.id == ProviderId.OPENAI.value:
            return self.run_codex(request)
        return self.run_claude(request)

    # -------------------------------------------------------------------------
    # Claude
    # -------------------------------------------------------------------------

    def _apply_non_interactive_flags(self, args: List[str]) -> None:
        args.append("--no-session-persistence")
        if self.settings.claude_setting_sources:
            args += ["--setting-sources", self.settings.claude_setting_sources]
        if self.settings.claude_strict_mcp:
            args.append("--strict-mcp-config")
        if self.settings.claude_disable_slash_commands:
            args.append("--disable-slash-commands")
        self._apply_permission_flags(args)

    def _apply_compatibility_flags(self, args: List[str]) -> None:
        args.append("--no-session-persistence")
        self._apply_permission_flags(args)

    def _apply_permission_flags(self, args: List[str]) -> None:
        if self.settings.claude_skip_permissions:
            args.append("--dangerously-skip-permissions")
        else:
            args += ["--permission-mode", self.settings.claude_permission_mode]

    @staticmethod
    def resolve_output_format(request: ProviderRequest, force_plain_text: bool = False) -> str:
        if force_plain_text:
            return "text"
        return "json" if request.output_mode == OutputFormat.JSON else "text"

    def build_claude_args(
        self,
        request: ProviderRequest,
        selected_model: str,
        prompt: str,
        compatibility_mode: bool = False,
    ) -> List[str]:
        output_format = self.resolve_output_format(request, force_plain_text=compatibility_mode)
        args = ["--print", "--output-format", output_format]
        if compatibility_mode:
            self._apply_compatibility_flags(args)
        else:
            self._apply_non_interactive_flags(args)
        if request.step.is_orchestrator:
            # Orchestrator turns are routing-only.
            args += ["--tools", ""]
        args += ["--settings", '{"fastMode":false}']
        if output_format == "json" and requires_gate_result_schema(request):
            args += ["--json-schema", json.dumps(gate_result_schema())]
        args += ["--model", selected_model]
        if not compatibility_mode:
            args += ["--effort", map_claude_effort(request.step.reasoning_effort)]
        fallback_model = self.settings.claude_fallback_model.strip()
        if fallback_model and fallback_model != selected_model:
            args += ["--fallback-model", fallback_model]
        if request.step.fast_mode:
            args += ["--append-system-prompt", FAST_MODE_NOTE]
        if request.step.use_1m_context:
            args += ["--append-system-prompt", CONTEXT_1M_NOTE]
        args.append(prompt)
        return args

    def run_claude(self, request: ProviderRequest) -> str:
        prompt = compose_cli_prompt(request)
        selected_model = request.model
        output_format = self.resolve_output_format(request)
        timeout_ms = resolve_claude_cli_attempt_timeout_ms(
            request.step, request.provider.default_model, self.settings, request.stage_timeout_ms
        )
        request.log(
            f"Claude CLI request started: model={selected_model}, timeout={timeout_ms}ms, "
            f"effort={request.step.reasoning_effort.value}, "
            f"fastMode={'on' if request.step.fast_mode else 'off'}, "
            f"outputMode={request.output_mode.value}, cliOutputFormat={output_format}, "
            f"tools={'disabled' if request.step.is_orchestrator else 'enabled'}"
        )

        command = self.settings.claude_cli_command
        try:
            result = self._run(
                command,
                self.build_claude_args(request, selected_model, prompt),
                None,
                timeout_ms,
                request.token,
                request.log,
            )
        except CliExecutionError as exc:
            if not (is_unknown_option_error(exc) or is_unsupported_output_format_error(exc)):
                raise
            if is_unsupported_output_format_error(exc):
                request.log(
                    "Claude CLI output-format option is unsupported; retrying with compatibility flags "
                    "and plain-text output."
                )
            else:
                request.log(
                    "Claude CLI reported unknown option; retrying with compatibility flags and plain-text output."
                )
            output_format = "text"
            result = self._run(
                command,
                self.build_claude_args(request, selected_model, prompt, compatibility_mode=True),
                None,
                timeout_ms,
                request.token,
                request.log,
            )

        output = extract_claude_cli_output(result.stdout, output_format, request.log)
        return output or CLAUDE_EMPTY_OUTPUT

    # -------------------------------------------------------------------------
    # Codex
    # -------------------------------------------------------------------------

    def build_codex_args(self, request: ProviderRequest, output_path: Path) -> List[str]:
        return [
            "exec",
            "--skip-git-repo-check",
            "--sandbox",
            "read-only",
            "--color",
            "never",
            "--model",
            request.model,
            "--config",
            f'model_reasoning_effort="{request.step.reasoning_effort.value}"',
            "--output-last-message",
            str(output_path),
            "-",
        ]

    def run_codex(self, request: ProviderRequest) -> str:
        prompt = compose_cli_prompt(request)
        with tempfile.TemporaryDirectory(prefix="stepflow-codex-") as temp_dir:
            output_path = Path(temp_dir) / f"last-message-{int(time.time() * 1000)}.txt"
            self._run(
                self.settings.codex_cli_command,
                self.build_codex_args(request, output_path),
                prompt,
                self.settings.cli_exec_timeout_ms,
                request.token,
                request.log,
            )
            try:
                output = output_path.read_text(encoding="utf-8").strip()
            except FileNotFoundError:
                logger.warning("Codex CLI did not write %s", output_path)
                output = ""
        return output or CODEX_EMPTY_OUTPUT
