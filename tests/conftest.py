"""Shared fixtures: an in-memory sandbox provider and pre-wired orchestrators."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import httpx
import pytest

from vizbox.config import SandboxConfig
from vizbox.orchestrator import SandboxOrchestrator
from vizbox.prober import VerificationProber
from vizbox.sandbox.base import (
    SandboxError,
    SandboxFilesystem,
    SandboxHandle,
    SandboxProcess,
    SandboxProvider,
)
from vizbox.tracker import DeploymentTracker

Handler = Callable[[httpx.Request], httpx.Response]

# ---------------------------------------------------------------------------
# Fake provider
# ---------------------------------------------------------------------------


class FakeProcess(SandboxProcess):
    def __init__(self, pid: int, *, fail_kill: bool = False) -> None:
        self._pid = pid
        self._fail_kill = fail_kill
        self.killed = False

    @property
    def pid(self) -> int:
        return self._pid

    async def kill(self) -> None:
        if self._fail_kill:
            raise SandboxError("kill failed")
        self.killed = True


class FakeFilesystem(SandboxFilesystem):
    def __init__(self) -> None:
        self.files: dict[str, bytes] = {}

    async def write_file(self, path: str, data: bytes) -> None:
        self.files[path] = data


class FakeHandle(SandboxHandle):
    def __init__(
        self,
        index: int,
        env: dict[str, str],
        *,
        fail_run: bool = False,
        fail_expose: bool = False,
        fail_dispose: bool = False,
    ) -> None:
        self._id = f"fake-{index}"
        self.env = env
        self.url = f"http://sandbox-{index}.test"
        self._fs = FakeFilesystem()
        self.processes: list[FakeProcess] = []
        self.disposed = False
        self.entrypoints: list[str] = []
        self._fail_run = fail_run
        self._fail_expose = fail_expose
        self._fail_dispose = fail_dispose

    @property
    def sandbox_id(self) -> str:
        return self._id

    @property
    def fs(self) -> FakeFilesystem:
        return self._fs

    async def run(self, entrypoint: str) -> FakeProcess:
        if self._fail_run:
            raise SandboxError("runtime failed to start")
        self.entrypoints.append(entrypoint)
        process = FakeProcess(1000 + len(self.processes))
        self.processes.append(process)
        return process

    async def expose_http(self, process: SandboxProcess) -> str:
        if self._fail_expose:
            raise SandboxError("expose refused")
        return self.url

    async def dispose(self) -> None:
        if self._fail_dispose:
            raise SandboxError("dispose failed")
        self.disposed = True


class FakeProvider(SandboxProvider):
    def __init__(self, **handle_flags: bool) -> None:
        self.fail_create = handle_flags.pop("fail_create", False)
        self.handle_flags = handle_flags
        self.handles: list[FakeHandle] = []
        self.tokens: list[str] = []

    async def create(self, token: str, env: dict[str, str]) -> FakeHandle:
        self.tokens.append(token)
        if self.fail_create:
            raise SandboxError("quota exceeded")
        handle = FakeHandle(len(self.handles), env, **self.handle_flags)
        self.handles.append(handle)
        return handle


def ok_handler(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/status":
        return httpx.Response(
            200, json={"phase": "ready", "elapsed": 10, "ready": True, "error": None}
        )
    return httpx.Response(200, text="<html>chart</html>")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def config() -> SandboxConfig:
    return SandboxConfig(
        deploy_token="test-token",
        verify_delay=0,
        poll_interval=0.01,
        generation_timeout=0.2,
    )


@pytest.fixture
def tracker() -> DeploymentTracker:
    return DeploymentTracker()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def fake_provider_cls() -> type[FakeProvider]:
    return FakeProvider


@pytest.fixture
def make_orchestrator(
    config: SandboxConfig, tracker: DeploymentTracker, provider: FakeProvider
) -> Callable[..., SandboxOrchestrator]:
    """Factory: orchestrator whose HTTP traffic goes to *handler* (default: all 200)."""

    def _make(
        handler: Handler = ok_handler,
        *,
        cfg: SandboxConfig | None = None,
        prov: SandboxProvider | None = None,
    ) -> SandboxOrchestrator:
        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        prober = VerificationProber(tracker, max_attempts=3, delay=0, http=http)
        return SandboxOrchestrator(
            cfg if cfg is not None else config,
            prov if prov is not None else provider,
            tracker,
            prober=prober,
            http=http,
        )

    return _make


@pytest.fixture
def payload() -> dict[str, Any]:
    return {
        "apiData": {
            "url": "https://api.example.com/sales",
            "data": [{"date": "2024-01-01", "amount": 10}],
            "structure": {
                "fields": [
                    {"name": "date", "type": "string", "sample": "2024-01-01"},
                    {"name": "amount", "type": "number", "sample": 10},
                ],
                "totalRecords": 1,
            },
        },
        "prompt": "Bar chart of amount by date",
    }
