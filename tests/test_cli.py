"""Tests for vizbox.cli: payload loading, config and the check/generate commands."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from typer.testing import CliRunner

from vizbox.cli import CLIError, app, load_payload, local_config
from vizbox.config import SandboxConfig
from vizbox.logging import JsonFormatter, TextFormatter, reset_logging
from vizbox.poller import GenerationTimeout
from vizbox.services import Vizbox
from vizbox.types import FetchedVisualization

runner = CliRunner()


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    for name in (
        "VIZBOX_DEPLOY_TOKEN",
        "DENO_DEPLOY_TOKEN",
        "ANTHROPIC_API_KEY",
        "VIZBOX_LOG_LEVEL",
        "VIZBOX_LOG_FORMAT",
        "VIZBOX_DEBUG",
    ):
        monkeypatch.delenv(name, raising=False)
    yield
    reset_logging()


@pytest.fixture
def payload_file(tmp_path: Path, payload: dict[str, Any]) -> Path:
    path = tmp_path / "request.json"
    path.write_text(json.dumps(payload))
    return path


def _vizbox_factory(
    provider_cls: Any, **poller_behaviour: Any
) -> tuple[Callable[[SandboxConfig], Vizbox], list[Vizbox]]:
    """Build real containers whose poller is replaced by a mock."""
    created: list[Vizbox] = []

    def factory(config: SandboxConfig) -> Vizbox:
        vb = Vizbox(config, provider_cls(), start_reaper=False)
        vb.poller = MagicMock()
        vb.poller.create_and_fetch_visualization = AsyncMock(**poller_behaviour)
        created.append(vb)
        return vb

    return factory, created


# ---------------------------------------------------------------------------
# load_payload / local_config
# ---------------------------------------------------------------------------


class TestLoadPayload:
    def test_reads_object(self, payload_file: Path, payload: dict[str, Any]) -> None:
        assert load_payload(payload_file) == payload

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(CLIError, match="not found"):
            load_payload(tmp_path / "nope.json")

    def test_invalid_json(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.json"
        path.write_text("{not json")
        with pytest.raises(CLIError, match="Invalid JSON"):
            load_payload(path)

    def test_not_an_object(self, tmp_path: Path) -> None:
        path = tmp_path / "list.json"
        path.write_text("[1, 2]")
        with pytest.raises(CLIError, match="JSON object"):
            load_payload(path)


class TestLocalConfig:
    def test_fills_token(self) -> None:
        assert local_config().is_configured

    def test_keeps_env_token(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("VIZBOX_DEPLOY_TOKEN", "real")
        assert local_config().deploy_token == "real"


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


class TestCheck:
    def test_disabled(self) -> None:
        result = runner.invoke(app, ["check"])
        assert result.exit_code == 0
        assert "disabled" in result.output
        assert "missing" in result.output

    def test_enabled_masks_token(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("VIZBOX_DEPLOY_TOKEN", "super-secret")
        result = runner.invoke(app, ["check"])
        assert result.exit_code == 0
        assert "enabled" in result.output
        assert "disabled" not in result.output
        assert "super-secret" not in result.output


class TestLoggingOptions:
    def test_default_level_from_config(self) -> None:
        result = runner.invoke(app, ["check"])
        assert result.exit_code == 0
        root = logging.getLogger("vizbox")
        assert root.level == logging.WARNING
        assert isinstance(root.handlers[0].formatter, TextFormatter)

    def test_verbose_enables_debug(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("VIZBOX_LOG_LEVEL", "ERROR")
        result = runner.invoke(app, ["--verbose", "check"])
        assert result.exit_code == 0
        assert logging.getLogger("vizbox").level == logging.DEBUG

    def test_json_format_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("VIZBOX_LOG_FORMAT", "json")
        monkeypatch.setenv("VIZBOX_LOG_LEVEL", "info")
        result = runner.invoke(app, ["check"])
        assert result.exit_code == 0
        root = logging.getLogger("vizbox")
        assert root.level == logging.INFO
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JsonFormatter)


class TestGenerate:
    def test_missing_payload(self, tmp_path: Path) -> None:
        result = runner.invoke(app, ["generate", str(tmp_path / "nope.json"), "--api-key", "k"])
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_missing_api_key(self, payload_file: Path) -> None:
        result = runner.invoke(app, ["generate", str(payload_file)])
        assert result.exit_code == 1
        assert "--api-key required" in result.output

    def test_writes_artifact(
        self, payload_file: Path, tmp_path: Path, fake_provider_cls: Any
    ) -> None:
        factory, created = _vizbox_factory(
            fake_provider_cls,
            return_value=FetchedVisualization(id="sb", artifact="<html>chart</html>"),
        )
        out = tmp_path / "chart.html"
        with patch("vizbox.cli.Vizbox", side_effect=factory):
            result = runner.invoke(
                app, ["generate", str(payload_file), "-o", str(out), "--api-key", "sk-test"]
            )

        assert result.exit_code == 0, result.output
        assert out.read_text() == "<html>chart</html>"
        call = created[0].poller.create_and_fetch_visualization.await_args
        assert call.args[1] == "sk-test"
        assert call.args[2] in created[0].tracker

    def test_api_key_from_env(
        self,
        payload_file: Path,
        tmp_path: Path,
        fake_provider_cls: Any,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-env")
        factory, created = _vizbox_factory(
            fake_provider_cls, return_value=FetchedVisualization(id="sb", artifact="x")
        )
        with patch("vizbox.cli.Vizbox", side_effect=factory):
            result = runner.invoke(
                app, ["generate", str(payload_file), "-o", str(tmp_path / "o.html")]
            )
        assert result.exit_code == 0, result.output
        assert created[0].poller.create_and_fetch_visualization.await_args.args[1] == "sk-env"

    def test_failure_exits_nonzero(
        self, payload_file: Path, tmp_path: Path, fake_provider_cls: Any
    ) -> None:
        factory, _ = _vizbox_factory(
            fake_provider_cls, side_effect=GenerationTimeout("sb", 90, "calling_api")
        )
        out = tmp_path / "chart.html"
        with patch("vizbox.cli.Vizbox", side_effect=factory):
            result = runner.invoke(
                app, ["generate", str(payload_file), "-o", str(out), "--api-key", "k"]
            )
        assert result.exit_code == 1
        assert "Generation failed" in result.output
        assert not out.exists()
