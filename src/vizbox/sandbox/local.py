"""Local sandbox backend: a temp directory plus a child Python process on localhost.

Gives no real isolation. It exists so the full provisioning pipeline can run
on a developer machine and in integration tests without a remote service.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shutil
import socket
import sys
import tempfile
import uuid
from pathlib import Path

from vizbox.sandbox.base import (
    SandboxError,
    SandboxFilesystem,
    SandboxHandle,
    SandboxProcess,
    SandboxProvider,
)

logger = logging.getLogger(__name__)

_HOST = "127.0.0.1"
_KILL_GRACE = 5.0
_OUTPUT_LOG = "output.log"
_OUTPUT_TAIL = 2000

# Host variables a Python child needs to start; nothing else leaks in.
_PASSTHROUGH_ENV = ("PATH", "HOME", "LANG", "LC_ALL", "SYSTEMROOT", "TMPDIR", "VIRTUAL_ENV")


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((_HOST, 0))
        return s.getsockname()[1]


class LocalProcess(SandboxProcess):
    """A child process started by ``LocalSandbox.run``."""

    __slots__ = ("_port", "_proc")

    def __init__(self, proc: asyncio.subprocess.Process, port: int) -> None:
        self._proc = proc
        self._port = port

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def port(self) -> int:
        return self._port

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode

    async def wait(self) -> int:
        return await self._proc.wait()

    async def kill(self) -> None:
        if self._proc.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            self._proc.terminate()
        try:
            await asyncio.wait_for(self._proc.wait(), timeout=_KILL_GRACE)
        except TimeoutError:
            logger.warning("Process %d ignored SIGTERM, killing", self._proc.pid)
            with contextlib.suppress(ProcessLookupError):
                self._proc.kill()
            await self._proc.wait()

    def __repr__(self) -> str:
        return f"LocalProcess(pid={self.pid}, port={self._port})"


class LocalFilesystem(SandboxFilesystem):
    """Filesystem rooted at the sandbox's temp directory."""

    __slots__ = ("_root",)

    def __init__(self, root: Path) -> None:
        self._root = root

    def resolve(self, path: str) -> Path:
        """Map a sandbox path onto the host, refusing anything outside the root."""
        target = (self._root / path.lstrip("/")).resolve()
        if not target.is_relative_to(self._root.resolve()):
            raise SandboxError(f"Path escapes sandbox root: {path}")
        return target

    async def write_file(self, path: str, data: bytes) -> None:
        target = self.resolve(path)
        await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
        await asyncio.to_thread(target.write_bytes, data)


class LocalSandbox(SandboxHandle):
    """One local sandbox: a private directory and the processes started in it."""

    __slots__ = ("_disposed", "_env", "_fs", "_processes", "_root", "_sandbox_id")

    def __init__(self, root: Path, env: dict[str, str], *, sandbox_id: str | None = None) -> None:
        self._sandbox_id = sandbox_id or uuid.uuid4().hex[:12]
        self._root = root
        self._env = dict(env)
        self._fs = LocalFilesystem(root)
        self._processes: list[LocalProcess] = []
        self._disposed = False

    @property
    def sandbox_id(self) -> str:
        return self._sandbox_id

    @property
    def root(self) -> Path:
        return self._root

    @property
    def fs(self) -> LocalFilesystem:
        return self._fs

    @property
    def output_path(self) -> Path:
        """File collecting stdout and stderr of every process run in this sandbox."""
        return self._root / _OUTPUT_LOG

    async def run(self, entrypoint: str) -> LocalProcess:
        if self._disposed:
            raise SandboxError(f"Sandbox {self._sandbox_id} is disposed")
        script = self._fs.resolve(entrypoint)
        if not script.is_file():
            raise SandboxError(f"Entrypoint not found in sandbox: {entrypoint}")

        port = _free_port()
        env = {k: os.environ[k] for k in _PASSTHROUGH_ENV if k in os.environ}
        env.update(self._env)
        env["VIZBOX_PORT"] = str(port)
        env["VIZBOX_HOST"] = _HOST

        with open(self.output_path, "ab") as output:
            proc = await asyncio.create_subprocess_exec(
                sys.executable,
                str(script),
                cwd=str(self._root),
                env=env,
                stdout=output,
                stderr=asyncio.subprocess.STDOUT,
            )
        process = LocalProcess(proc, port)
        self._processes.append(process)
        logger.debug("Sandbox %s: started %s as pid %d", self._sandbox_id, entrypoint, proc.pid)
        return process

    async def expose_http(self, process: SandboxProcess) -> str:
        if not isinstance(process, LocalProcess) or process not in self._processes:
            raise SandboxError(f"Process does not belong to sandbox {self._sandbox_id}")
        if process.returncode is not None:
            message = f"Process {process.pid} exited with code {process.returncode}"
            tail = await asyncio.to_thread(self._output_tail)
            if tail:
                message = f"{message}:\n{tail}"
            raise SandboxError(message)
        return f"http://{_HOST}:{process.port}"

    def _output_tail(self) -> str:
        try:
            data = self.output_path.read_bytes()
        except FileNotFoundError:
            return ""
        return data[-_OUTPUT_TAIL:].decode("utf-8", errors="replace").strip()

    async def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        for process in self._processes:
            try:
                await process.kill()
            except Exception:
                logger.warning("Failed to kill pid %d", process.pid, exc_info=True)
        self._processes.clear()
        await asyncio.to_thread(shutil.rmtree, self._root, True)
        logger.debug("Sandbox %s: disposed", self._sandbox_id)


class LocalSandboxProvider(SandboxProvider):
    """Creates ``LocalSandbox`` instances under a temp directory.

    Args:
        base_dir: Parent directory for sandbox roots. Defaults to the system
            temp directory.
    """

    __slots__ = ("_base_dir",)

    def __init__(self, base_dir: str | Path | None = None) -> None:
        self._base_dir = str(base_dir) if base_dir is not None else None

    async def create(self, token: str, env: dict[str, str]) -> LocalSandbox:
        if not token:
            raise SandboxError("A provisioning token is required")
        root = await asyncio.to_thread(tempfile.mkdtemp, prefix="vizbox_", dir=self._base_dir)
        sandbox = LocalSandbox(Path(root), env)
        logger.info("Created local sandbox %s at %s", sandbox.sandbox_id, root)
        return sandbox
