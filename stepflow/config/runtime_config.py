"""Runtime configuration for the stepflow execution core.

Settings are resolved once at process start and passed by reference into the
provider executor and the pipeline runner. Nothing below this layer reads the
process environment.

Environment variables take precedence over YAML config, which takes precedence
over built-in defaults.

Usage:
    from stepflow.config.runtime_config import load_runtime_settings

    settings = load_runtime_settings()
    runner = PipelineRunner(settings=settings, ...)

    # Tests inject a fixed environment:
    settings = load_runtime_settings(env={"STEPFLOW_STREAM_IDLE_TIMEOUT_MS": "2000"})
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

# Module logger for clamp warnings
logger = logging.getLogger(__name__)

_CONFIG_PATH = Path(__file__).parent / "runtime.yaml"
_cached_config: Optional[Dict[str, Any]] = None

ENV_PREFIX = "STEPFLOW_"

CLAUDE_PERMISSION_MODES = ("acceptEdits", "bypassPermissions", "default", "dontAsk", "plan")

DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_CLAUDE_BASE_URL = "https://api.anthropic.com/v1"


def _clamp_value(value: int, name: str, min_val: int, max_val: int) -> int:
    """Clamp a numeric setting to sanity bounds with logging.

    Args:
        value: The configured value
        name: Setting name for logging (e.g., "stream_idle_timeout_ms")
        min_val: Minimum allowed value
        max_val: Maximum allowed value

    Returns:
        Clamped value within [min_val, max_val]
    """
    if value < min_val:
        logger.warning(
            "Setting '%s' value %d is below minimum %d. Clamping to %d.",
            name,
            value,
            min_val,
            min_val,
        )
        return min_val
    if value > max_val:
        logger.warning(
            "Setting '%s' value %d exceeds maximum %d. Clamping to %d.",
            name,
            value,
            max_val,
            max_val,
        )
        return max_val
    return value


@dataclass
class ProviderConfig:
    """Credentials and endpoint for one model provider.

    Attributes:
        id: Provider id ("openai" or "claude").
        auth_mode: "api_key" or "oauth".
        api_key: Explicit API key ("" when not configured).
        oauth_token: OAuth / setup token, used when auth_mode is "oauth".
        base_url: HTTP API base URL.
        default_model: Model used when a step leaves its model empty.
    """
    id: str
    auth_mode: str = "api_key"
    api_key: str = ""
    oauth_token: str = ""
    base_url: str = ""
    default_model: str = ""

    @property
    def credential(self) -> str:
        """The credential the HTTP path should send ("" when none)."""
        if self.auth_mode == "oauth":
            return self.oauth_token.strip()
        return self.api_key.strip()

    @property
    def has_explicit_api_key(self) -> bool:
        return self.api_key.strip() != ""


@dataclass
class StorageConfig:
    """Filesystem layout for shared, isolated and per-run storage."""
    enabled: bool = True
    root_path: str = ".stepflow/storage"
    shared_folder: str = "shared"
    isolated_folder: str = "isolated"
    runs_folder: str = "runs"


@dataclass
class RuntimeSettings:
    """Resolved runtime settings, constructed once per process.

    Timeouts are in milliseconds.
    """
    claude_cli_command: str = "claude"
    codex_cli_command: str = "codex"
    cli_exec_timeout_ms: int = 1_200_000
    claude_cli_base_timeout_ms: int = 300_000
    claude_cli_heavy_timeout_ms: int = 420_000
    claude_cli_orchestrator_timeout_ms: int = 180_000
    claude_fallback_model: str = "claude-sonnet-4-6"
    claude_skip_permissions: bool = True
    claude_strict_mcp: bool = True
    claude_disable_slash_commands: bool = True
    claude_setting_sources: str = "user"
    claude_permission_mode: str = "bypassPermissions"
    stream_idle_timeout_ms: int = 90_000
    max_parallel_dispatches: int = 4
    run_control_poll_ms: int = 250
    api_retry_max_attempts: int = 2
    providers: Dict[str, ProviderConfig] = field(default_factory=dict)
    storage: StorageConfig = field(default_factory=StorageConfig)

    def provider(self, provider_id: str) -> ProviderConfig:
        """Get provider config, falling back to an empty config with default URLs."""
        existing = self.providers.get(provider_id)
        if existing is not None:
            return existing
        base_url = DEFAULT_CLAUDE_BASE_URL if provider_id == "claude" else DEFAULT_OPENAI_BASE_URL
        return ProviderConfig(id=provider_id, base_url=base_url)


def _load_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """Load runtime.yaml configuration, with caching for the default path."""
    global _cached_config
    if path is not None:
        if not path.exists():
            return _default_config()
        with open(path) as f:
            return yaml.safe_load(f) or {}

    if _cached_config is not None:
        return _cached_config

    if _CONFIG_PATH.exists():
        with open(_CONFIG_PATH) as f:
            _cached_config = yaml.safe_load(f) or {}
    else:
        _cached_config = _default_config()

    return _cached_config


def _default_config() -> Dict[str, Any]:
    """Return default configuration if runtime.yaml doesn't exist."""
    return {
        "version": "1.0",
        "cli": {
            "claude_command": "claude",
            "codex_command": "codex",
            "exec_timeout_ms": 1_200_000,
        },
        "providers": {
            "openai": {"auth_mode": "api_key", "base_url": DEFAULT_OPENAI_BASE_URL},
            "claude": {"auth_mode": "api_key", "base_url": DEFAULT_CLAUDE_BASE_URL},
        },
        "storage": {"enabled": True, "root_path": ".stepflow/storage"},
    }


def reset_config() -> None:
    """Reset cached config (for testing)."""
    global _cached_config
    _cached_config = None


def _parse_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    return default


def _parse_int(value: Any, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError):
        logger.warning("Ignoring non-numeric setting value %r; using %d.", value, default)
        return default


def _prefer_local_bin(command: str, home: Optional[str]) -> str:
    """Prefer ~/.local/bin/<command> when it exists and command is a bare name."""
    if not command or os.sep in command or not home:
        return command
    candidate = Path(home) / ".local" / "bin" / command
    if candidate.is_file() and os.access(candidate, os.X_OK):
        return str(candidate)
    return command


def _normalize_permission_mode(value: str) -> str:
    if value in CLAUDE_PERMISSION_MODES:
        return value
    if value:
        logger.warning(
            "Unknown Claude permission mode %r; using bypassPermissions.", value
        )
    return "bypassPermissions"


def _section(config: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = config.get(key)
    return value if isinstance(value, dict) else {}


def load_runtime_settings(
    path: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> RuntimeSettings:
    """Build RuntimeSettings from environment, YAML and defaults.

    Precedence (highest to lowest):
    1. STEPFLOW_* environment variables (or the explicit ``env`` mapping)
    2. YAML config file (``path`` or the packaged runtime.yaml)
    3. Built-in defaults

    Args:
        path: Optional YAML file path overriding the packaged runtime.yaml.
        env: Optional environment mapping; defaults to os.environ.

    Returns:
        Fully resolved, clamped RuntimeSettings.
    """
    environ: Mapping[str, str] = os.environ if env is None else env
    config = _load_config(path)
    cli = _section(config, "cli")
    claude = _section(config, "claude")
    limits = _section(config, "limits")
    storage_cfg = _section(config, "storage")

    def pick(env_key: str, section: Dict[str, Any], key: str, default: Any) -> Any:
        value = environ.get(ENV_PREFIX + env_key)
        if value is not None and value != "":
            return value
        if key in section and section[key] is not None:
            return section[key]
        return default

    home = environ.get("HOME")
    settings = RuntimeSettings(
        claude_cli_command=_prefer_local_bin(
            str(pick("CLAUDE_CLI_COMMAND", cli, "claude_command", "claude")), home
        ),
        codex_cli_command=_prefer_local_bin(
            str(pick("CODEX_CLI_COMMAND", cli, "codex_command", "codex")), home
        ),
        cli_exec_timeout_ms=_clamp_value(
            _parse_int(pick("CLI_EXEC_TIMEOUT_MS", cli, "exec_timeout_ms", 1_200_000), 1_200_000),
            "cli_exec_timeout_ms",
            10_000,
            18_000_000,
        ),
        claude_cli_base_timeout_ms=_clamp_value(
            _parse_int(pick("CLAUDE_CLI_BASE_TIMEOUT_MS", claude, "base_timeout_ms", 300_000), 300_000),
            "claude_cli_base_timeout_ms",
            60_000,
            1_200_000,
        ),
        claude_cli_heavy_timeout_ms=_clamp_value(
            _parse_int(pick("CLAUDE_CLI_HEAVY_TIMEOUT_MS", claude, "heavy_timeout_ms", 420_000), 420_000),
            "claude_cli_heavy_timeout_ms",
            120_000,
            1_200_000,
        ),
        claude_cli_orchestrator_timeout_ms=_clamp_value(
            _parse_int(
                pick("CLAUDE_CLI_ORCHESTRATOR_TIMEOUT_MS", claude, "orchestrator_timeout_ms", 180_000),
                180_000,
            ),
            "claude_cli_orchestrator_timeout_ms",
            60_000,
            900_000,
        ),
        claude_fallback_model=str(
            pick("CLAUDE_FALLBACK_MODEL", claude, "fallback_model", "claude-sonnet-4-6")
        ).strip() or "claude-sonnet-4-6",
        claude_skip_permissions=_parse_bool(
            pick("CLAUDE_SKIP_PERMISSIONS", claude, "skip_permissions", True), True
        ),
        claude_strict_mcp=_parse_bool(pick("CLAUDE_STRICT_MCP", claude, "strict_mcp", True), True),
        claude_disable_slash_commands=_parse_bool(
            pick("CLAUDE_DISABLE_SLASH_COMMANDS", claude, "disable_slash_commands", True), True
        ),
        claude_setting_sources=str(
            pick("CLAUDE_SETTING_SOURCES", claude, "setting_sources", "user")
        ).strip(),
        claude_permission_mode=_normalize_permission_mode(
            str(pick("CLAUDE_PERMISSION_MODE", claude, "permission_mode", "bypassPermissions")).strip()
        ),
        stream_idle_timeout_ms=_clamp_value(
            _parse_int(pick("STREAM_IDLE_TIMEOUT_MS", limits, "stream_idle_timeout_ms", 90_000), 90_000),
            "stream_idle_timeout_ms",
            1_000,
            600_000,
        ),
        max_parallel_dispatches=_clamp_value(
            _parse_int(pick("MAX_PARALLEL_DISPATCHES", limits, "max_parallel_dispatches", 4), 4),
            "max_parallel_dispatches",
            1,
            16,
        ),
        run_control_poll_ms=_clamp_value(
            _parse_int(pick("RUN_CONTROL_POLL_MS", limits, "run_control_poll_ms", 250), 250),
            "run_control_poll_ms",
            10,
            5_000,
        ),
        api_retry_max_attempts=_clamp_value(
            _parse_int(pick("API_RETRY_MAX_ATTEMPTS", limits, "api_retry_max_attempts", 2), 2),
            "api_retry_max_attempts",
            0,
            6,
        ),
        storage=StorageConfig(
            enabled=_parse_bool(pick("STORAGE_ENABLED", storage_cfg, "enabled", True), True),
            root_path=str(pick("STORAGE_ROOT", storage_cfg, "root_path", ".stepflow/storage")),
            shared_folder=str(storage_cfg.get("shared_folder") or "shared"),
            isolated_folder=str(storage_cfg.get("isolated_folder") or "isolated"),
            runs_folder=str(storage_cfg.get("runs_folder") or "runs"),
        ),
    )

    providers_cfg = _section(config, "providers")
    for provider_id, default_url in (
        ("openai", DEFAULT_OPENAI_BASE_URL),
        ("claude", DEFAULT_CLAUDE_BASE_URL),
    ):
        section = _section(providers_cfg, provider_id)
        env_id = provider_id.upper()
        auth_mode = str(pick(f"{env_id}_AUTH_MODE", section, "auth_mode", "api_key")).strip().lower()
        if auth_mode not in ("api_key", "oauth"):
            logger.warning("Unknown auth mode %r for provider %s; using api_key.", auth_mode, provider_id)
            auth_mode = "api_key"
        settings.providers[provider_id] = ProviderConfig(
            id=provider_id,
            auth_mode=auth_mode,
            api_key=str(pick(f"{env_id}_API_KEY", section, "api_key", "")),
            oauth_token=str(pick(f"{env_id}_OAUTH_TOKEN", section, "oauth_token", "")),
            base_url=str(pick(f"{env_id}_BASE_URL", section, "base_url", default_url)).rstrip("/"),
            default_model=str(pick(f"{env_id}_DEFAULT_MODEL", section, "default_model", "")),
        )

    return settings
