"""Tests for SandboxConfig."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from vizbox.config import SandboxConfig

_ENV_VARS = (
    "VIZBOX_DEPLOY_TOKEN",
    "DENO_DEPLOY_TOKEN",
    "VIZBOX_MODEL",
    "VIZBOX_VERIFY_ATTEMPTS",
    "VIZBOX_GENERATION_TIMEOUT",
    "VIZBOX_LOG_LEVEL",
    "VIZBOX_LOG_FORMAT",
    "VIZBOX_DEBUG",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestDefaults:
    def test_defaults(self) -> None:
        cfg = SandboxConfig()
        assert not cfg.is_configured
        assert cfg.verify_attempts == 5
        assert cfg.verify_delay == 3.0
        assert cfg.poll_interval == 2.0
        assert cfg.generation_timeout == 90.0
        assert cfg.sandbox_ttl == 3600.0
        assert cfg.reaper_interval == 300.0

    def test_frozen(self) -> None:
        cfg = SandboxConfig()
        with pytest.raises(ValidationError):
            cfg.deploy_token = "x"  # type: ignore[misc]

    def test_rejects_zero_attempts(self) -> None:
        with pytest.raises(ValidationError):
            SandboxConfig(verify_attempts=0)

    def test_logging_defaults(self) -> None:
        cfg = SandboxConfig()
        assert cfg.log_level == "WARNING"
        assert cfg.log_format == "text"

    def test_log_level_normalised(self) -> None:
        assert SandboxConfig(log_level="info").log_level == "INFO"

    def test_rejects_unknown_log_level(self) -> None:
        with pytest.raises(ValidationError):
            SandboxConfig(log_level="chatty")

    def test_rejects_unknown_log_format(self) -> None:
        with pytest.raises(ValidationError):
            SandboxConfig(log_format="xml")  # type: ignore[arg-type]


class TestFromEnv:
    def test_empty_env(self) -> None:
        assert not SandboxConfig.from_env().is_configured

    def test_vizbox_token(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("VIZBOX_DEPLOY_TOKEN", "tok")
        assert SandboxConfig.from_env().deploy_token == "tok"

    def test_deno_token_fallback(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DENO_DEPLOY_TOKEN", "deno")
        assert SandboxConfig.from_env().deploy_token == "deno"

    def test_vizbox_token_wins(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("VIZBOX_DEPLOY_TOKEN", "tok")
        monkeypatch.setenv("DENO_DEPLOY_TOKEN", "deno")
        assert SandboxConfig.from_env().deploy_token == "tok"

    def test_numeric_and_model_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("VIZBOX_VERIFY_ATTEMPTS", "7")
        monkeypatch.setenv("VIZBOX_GENERATION_TIMEOUT", "45.5")
        monkeypatch.setenv("VIZBOX_MODEL", "claude-haiku-4-5")
        cfg = SandboxConfig.from_env()
        assert cfg.verify_attempts == 7
        assert cfg.generation_timeout == 45.5
        assert cfg.model == "claude-haiku-4-5"

    def test_keyword_overrides_win(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("VIZBOX_VERIFY_ATTEMPTS", "7")
        assert SandboxConfig.from_env(verify_attempts=2).verify_attempts == 2

    def test_invalid_number(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("VIZBOX_VERIFY_ATTEMPTS", "lots")
        with pytest.raises(ValidationError):
            SandboxConfig.from_env()

    def test_log_settings(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("VIZBOX_LOG_LEVEL", "error")
        monkeypatch.setenv("VIZBOX_LOG_FORMAT", "JSON")
        cfg = SandboxConfig.from_env()
        assert cfg.log_level == "ERROR"
        assert cfg.log_format == "json"

    def test_debug_flag_wins(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("VIZBOX_DEBUG", "1")
        monkeypatch.setenv("VIZBOX_LOG_LEVEL", "ERROR")
        assert SandboxConfig.from_env().log_level == "DEBUG"


class TestDescribe:
    def test_masks_token(self) -> None:
        described = SandboxConfig(deploy_token="secret-token").describe()
        assert described["deploy_token"] == "set"
        assert "secret-token" not in str(described)

    def test_missing_token(self) -> None:
        assert SandboxConfig().describe()["deploy_token"] == "missing"
