"""Configuration for sandbox orchestration."""

from __future__ import annotations

import os
from typing import Literal

from pydantic import BaseModel, Field, field_validator

_DEFAULT_MODEL = "claude-sonnet-4-6"
_ENV_PREFIX = "VIZBOX_"
_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})

# Field name -> environment variable suffix for numeric overrides.
_NUMERIC_ENV: dict[str, str] = {
    "provision_timeout": "PROVISION_TIMEOUT",
    "verify_attempts": "VERIFY_ATTEMPTS",
    "verify_delay": "VERIFY_DELAY",
    "verify_timeout": "VERIFY_TIMEOUT",
    "fetch_timeout": "FETCH_TIMEOUT",
    "poll_interval": "POLL_INTERVAL",
    "generation_timeout": "GENERATION_TIMEOUT",
    "sandbox_ttl": "SANDBOX_TTL",
    "log_ttl": "LOG_TTL",
    "reaper_interval": "REAPER_INTERVAL",
}


class SandboxConfig(BaseModel):
    """Settings for provisioning, verifying, polling and reaping sandboxes.

    All durations are in seconds.

    Args:
        deploy_token: Credential for the sandbox provisioning service.
            Sandboxing is disabled while this is empty.
        model: Default model the in-sandbox generator asks for.
        entrypoint: File name the generator program is written to.
        provision_timeout: Budget for creating a sandbox.
        verify_attempts: Reachability checks before giving up.
        verify_delay: Fixed pause between failed checks.
        verify_timeout: Per-attempt request timeout.
        fetch_timeout: Timeout for proxied requests into a sandbox.
        poll_interval: Pause between ``/status`` polls.
        generation_timeout: Total budget for waiting on generation.
        sandbox_ttl: Age after which the reaper destroys a sandbox.
        log_ttl: Age after which the reaper evicts a deployment log.
        reaper_interval: Pause between reaper sweeps.
        log_level: Level for the ``vizbox`` logger.
        log_format: ``text`` or ``json`` console output.
    """

    model_config = {"frozen": True}

    deploy_token: str = ""
    model: str = _DEFAULT_MODEL
    entrypoint: str = "main.py"
    provision_timeout: float = Field(default=30.0, gt=0)
    verify_attempts: int = Field(default=5, ge=1)
    verify_delay: float = Field(default=3.0, ge=0)
    verify_timeout: float = Field(default=10.0, gt=0)
    fetch_timeout: float = Field(default=10.0, gt=0)
    poll_interval: float = Field(default=2.0, ge=0)
    generation_timeout: float = Field(default=90.0, gt=0)
    sandbox_ttl: float = Field(default=3600.0, gt=0)
    log_ttl: float = Field(default=3600.0, gt=0)
    reaper_interval: float = Field(default=300.0, gt=0)
    log_level: str = "WARNING"
    log_format: Literal["text", "json"] = "text"

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, value: object) -> str:
        level = str(value).upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"Unknown log level: {value}")
        return level

    @property
    def is_configured(self) -> bool:
        return bool(self.deploy_token)

    @classmethod
    def from_env(cls, **overrides: object) -> SandboxConfig:
        """Build a config from ``VIZBOX_*`` environment variables.

        ``VIZBOX_DEPLOY_TOKEN`` falls back to ``DENO_DEPLOY_TOKEN``.
        ``VIZBOX_DEBUG=1`` forces the DEBUG log level over ``VIZBOX_LOG_LEVEL``.
        Explicit keyword *overrides* win over the environment.
        """
        values: dict[str, object] = {
            "deploy_token": os.environ.get(f"{_ENV_PREFIX}DEPLOY_TOKEN")
            or os.environ.get("DENO_DEPLOY_TOKEN", ""),
        }
        model = os.environ.get(f"{_ENV_PREFIX}MODEL")
        if model:
            values["model"] = model
        for field_name, var in (("log_level", "LOG_LEVEL"), ("log_format", "LOG_FORMAT")):
            raw = os.environ.get(f"{_ENV_PREFIX}{var}")
            if raw:
                values[field_name] = raw.lower() if field_name == "log_format" else raw
        if os.environ.get(f"{_ENV_PREFIX}DEBUG") == "1":
            values["log_level"] = "DEBUG"
        for field_name, suffix in _NUMERIC_ENV.items():
            raw = os.environ.get(f"{_ENV_PREFIX}{suffix}")
            if raw:
                values[field_name] = raw
        values.update(overrides)
        return cls(**values)  # type: ignore[arg-type]

    def describe(self) -> dict[str, object]:
        """Return the effective settings with the token masked."""
        data = self.model_dump()
        data["deploy_token"] = "set" if self.deploy_token else "missing"
        return data
