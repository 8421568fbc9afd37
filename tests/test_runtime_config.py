"""
Tests for runtime settings resolution.

This module verifies that:
1. Environment variables override YAML values, which override defaults
2. Numeric limits are clamped to their sanity bounds with a warning
3. Provider credentials resolve per auth mode
4. Unknown permission and auth modes fall back to safe defaults
5. Bare CLI commands prefer ~/.local/bin when an executable exists there
6. The packaged config file is cached until reset_config()
"""

import logging
import os
from pathlib import Path

import pytest
import yaml

from stepflow.config.runtime_config import (
    ProviderConfig,
    RuntimeSettings,
    _clamp_value,
    load_runtime_settings,
    reset_config,
)


def _write_config(tmp_path: Path, data) -> Path:
    path = tmp_path / "runtime.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


# ============================================================================
# Precedence Tests
# ============================================================================


class TestPrecedence:
    """Tests for env > YAML > default precedence."""

    def test_defaults_when_file_missing(self, tmp_path):
        """Test a missing config file yields built-in defaults."""
        settings = load_runtime_settings(path=tmp_path / "missing.yaml", env={})

        assert settings.claude_cli_command == "claude"
        assert settings.stream_idle_timeout_ms == 90_000
        assert settings.max_parallel_dispatches == 4
        assert settings.api_retry_max_attempts == 2
        assert settings.claude_permission_mode == "bypassPermissions"
        assert settings.storage.root_path == ".stepflow/storage"

    def test_yaml_values_apply(self, tmp_path):
        """Test YAML sections feed the settings."""
        path = _write_config(
            tmp_path,
            {
                "limits": {"max_parallel_dispatches": 8, "run_control_poll_ms": 100},
                "claude": {"fallback_model": "claude-haiku-4-5", "strict_mcp": False},
                "storage": {"root_path": "/data/stepflow", "runs_folder": "history"},
            },
        )
        settings = load_runtime_settings(path=path, env={})

        assert settings.max_parallel_dispatches == 8
        assert settings.run_control_poll_ms == 100
        assert settings.claude_fallback_model == "claude-haiku-4-5"
        assert settings.claude_strict_mcp is False
        assert settings.storage.root_path == "/data/stepflow"
        assert settings.storage.runs_folder == "history"

    def test_env_overrides_yaml(self, tmp_path):
        """Test STEPFLOW_* variables win over the YAML file."""
        path = _write_config(tmp_path, {"limits": {"max_parallel_dispatches": 8}})
        settings = load_runtime_settings(
            path=path,
            env={
                "STEPFLOW_MAX_PARALLEL_DISPATCHES": "2",
                "STEPFLOW_STORAGE_ENABLED": "false",
                "STEPFLOW_STORAGE_ROOT": "/tmp/elsewhere",
            },
        )

        assert settings.max_parallel_dispatches == 2
        assert settings.storage.enabled is False
        assert settings.storage.root_path == "/tmp/elsewhere"

    def test_empty_env_value_is_ignored(self, tmp_path):
        """Test an empty environment value falls through to YAML."""
        path = _write_config(tmp_path, {"limits": {"stream_idle_timeout_ms": 30_000}})
        settings = load_runtime_settings(path=path, env={"STEPFLOW_STREAM_IDLE_TIMEOUT_MS": ""})

        assert settings.stream_idle_timeout_ms == 30_000


# ============================================================================
# Clamp Tests
# ============================================================================


class TestClamping:
    """Tests for numeric clamping."""

    def test_clamp_value_bounds(self, caplog):
        """Test values outside the range clamp and log a warning."""
        with caplog.at_level(logging.WARNING):
            assert _clamp_value(5, "poll", 10, 100) == 10
            assert _clamp_value(500, "poll", 10, 100) == 100
            assert _clamp_value(50, "poll", 10, 100) == 50

        messages = [record.getMessage() for record in caplog.records]
        assert "Setting 'poll' value 5 is below minimum 10. Clamping to 10." in messages
        assert "Setting 'poll' value 500 exceeds maximum 100. Clamping to 100." in messages

    def test_env_values_are_clamped(self, tmp_path):
        """Test out-of-range env values are clamped on load."""
        settings = load_runtime_settings(
            path=tmp_path / "missing.yaml",
            env={
                "STEPFLOW_STREAM_IDLE_TIMEOUT_MS": "10",
                "STEPFLOW_MAX_PARALLEL_DISPATCHES": "99",
                "STEPFLOW_RUN_CONTROL_POLL_MS": "1",
                "STEPFLOW_API_RETRY_MAX_ATTEMPTS": "50",
                "STEPFLOW_CLAUDE_CLI_BASE_TIMEOUT_MS": "1000",
            },
        )

        assert settings.stream_idle_timeout_ms == 1_000
        assert settings.max_parallel_dispatches == 16
        assert settings.run_control_poll_ms == 10
        assert settings.api_retry_max_attempts == 6
        assert settings.claude_cli_base_timeout_ms == 60_000

    def test_non_numeric_value_uses_default(self, tmp_path, caplog):
        """Test a non-numeric value falls back to the default."""
        with caplog.at_level(logging.WARNING):
            settings = load_runtime_settings(
                path=tmp_path / "missing.yaml",
                env={"STEPFLOW_MAX_PARALLEL_DISPATCHES": "many"},
            )

        assert settings.max_parallel_dispatches == 4
        assert any("non-numeric" in record.getMessage() for record in caplog.records)


# ============================================================================
# Provider Tests
# ============================================================================


class TestProviders:
    """Tests for provider credential resolution."""

    def test_api_key_from_env(self, tmp_path):
        """Test provider keys and models come from the environment."""
        settings = load_runtime_settings(
            path=tmp_path / "missing.yaml",
            env={
                "STEPFLOW_OPENAI_API_KEY": " sk-test ",
                "STEPFLOW_OPENAI_DEFAULT_MODEL": "gpt-5-mini",
                "STEPFLOW_OPENAI_BASE_URL": "https://proxy.example/v1/",
            },
        )

        openai = settings.provider("openai")
        assert openai.credential == "sk-test"
        assert openai.has_explicit_api_key
        assert openai.default_model == "gpt-5-mini"
        assert openai.base_url == "https://proxy.example/v1"

    def test_oauth_mode_uses_token(self, tmp_path):
        """Test OAuth mode sends the OAuth token, not the API key."""
        settings = load_runtime_settings(
            path=tmp_path / "missing.yaml",
            env={
                "STEPFLOW_CLAUDE_AUTH_MODE": "OAuth",
                "STEPFLOW_CLAUDE_OAUTH_TOKEN": "oauth-token",
            },
        )

        claude = settings.provider("claude")
        assert claude.auth_mode == "oauth"
        assert claude.credential == "oauth-token"
        assert not claude.has_explicit_api_key

    def test_unknown_auth_mode_falls_back(self, tmp_path, caplog):
        """Test an unknown auth mode becomes api_key."""
        with caplog.at_level(logging.WARNING):
            settings = load_runtime_settings(
                path=tmp_path / "missing.yaml",
                env={"STEPFLOW_CLAUDE_AUTH_MODE": "magic"},
            )

        assert settings.provider("claude").auth_mode == "api_key"

    def test_missing_provider_has_default_url(self):
        """Test an unconfigured provider gets an empty config with its default URL."""
        settings = RuntimeSettings()

        assert settings.provider("claude").base_url == "https://api.anthropic.com/v1"
        assert settings.provider("openai").base_url == "https://api.openai.com/v1"
        assert settings.provider("openai").credential == ""

    def test_credential_strips_whitespace(self):
        """Test credentials are trimmed."""
        assert ProviderConfig(id="claude", api_key="  key  ").credential == "key"
        assert ProviderConfig(id="claude", api_key="   ").has_explicit_api_key is False


# ============================================================================
# CLI Settings Tests
# ============================================================================


class TestCliSettings:
    """Tests for CLI command and permission settings."""

    def test_invalid_permission_mode_falls_back(self, tmp_path, caplog):
        """Test an unknown permission mode becomes bypassPermissions."""
        with caplog.at_level(logging.WARNING):
            settings = load_runtime_settings(
                path=tmp_path / "missing.yaml",
                env={"STEPFLOW_CLAUDE_PERMISSION_MODE": "yolo"},
            )

        assert settings.claude_permission_mode == "bypassPermissions"
        assert any("permission mode" in record.getMessage() for record in caplog.records)

    def test_valid_permission_mode_kept(self, tmp_path):
        """Test a known permission mode is kept."""
        settings = load_runtime_settings(
            path=tmp_path / "missing.yaml",
            env={"STEPFLOW_CLAUDE_PERMISSION_MODE": "acceptEdits"},
        )

        assert settings.claude_permission_mode == "acceptEdits"

    def test_prefers_local_bin(self, tmp_path):
        """Test a bare command resolves to ~/.local/bin when executable there."""
        local_bin = tmp_path / "home" / ".local" / "bin"
        local_bin.mkdir(parents=True)
        claude = local_bin / "claude"
        claude.write_text("#!/bin/sh\n")
        os.chmod(claude, 0o755)

        settings = load_runtime_settings(
            path=tmp_path / "missing.yaml",
            env={"HOME": str(tmp_path / "home")},
        )

        assert settings.claude_cli_command == str(claude)
        assert settings.codex_cli_command == "codex"

    def test_explicit_path_is_not_rewritten(self, tmp_path):
        """Test a command containing a path separator is used as-is."""
        settings = load_runtime_settings(
            path=tmp_path / "missing.yaml",
            env={"STEPFLOW_CLAUDE_CLI_COMMAND": "/opt/bin/claude", "HOME": str(tmp_path)},
        )

        assert settings.claude_cli_command == "/opt/bin/claude"


@pytest.mark.parametrize(
    "raw, expected",
    [("true", True), ("0", False), ("off", False), ("YES", True)],
)
def test_boolean_env_parsing(tmp_path, raw, expected):
    """Test boolean settings accept the usual spellings."""
    settings = load_runtime_settings(
        path=tmp_path / "missing.yaml",
        env={"STEPFLOW_CLAUDE_SKIP_PERMISSIONS": raw},
    )

    assert settings.claude_skip_permissions is expected


def test_packaged_config_is_cached(tmp_path, monkeypatch):
    """Test the default config file is read once until reset_config()."""
    path = _write_config(tmp_path, {"cli": {"claude_command": "claude-a"}})
    monkeypatch.setattr("stepflow.config.runtime_config._CONFIG_PATH", path)
    reset_config()
    try:
        assert load_runtime_settings(env={}).claude_cli_command == "claude-a"

        _write_config(tmp_path, {"cli": {"claude_command": "claude-b"}})
        assert load_runtime_settings(env={}).claude_cli_command == "claude-a"

        reset_config()
        assert load_runtime_settings(env={}).claude_cli_command == "claude-b"
    finally:
        reset_config()
