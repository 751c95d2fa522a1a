"""Contract for sandbox provisioning backends.

A provider creates isolated environments; each environment (a
``SandboxHandle``) offers a filesystem, can start processes and can expose
a running process over public HTTP.  The orchestrator only talks to these
abstractions, so remote services and the local development backend are
interchangeable.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from vizbox.types import VizboxError


class SandboxError(VizboxError):
    """Raised by providers when a sandbox operation fails."""


class SandboxProcess(ABC):
    """A process running inside a sandbox."""

    @property
    @abstractmethod
    def pid(self) -> int: ...

    @abstractmethod
    async def kill(self) -> None:
        """Terminate the process. Calling it on a dead process is a no-op."""


class SandboxFilesystem(ABC):
    """Writable filesystem of a sandbox."""

    @abstractmethod
    async def write_file(self, path: str, data: bytes) -> None: ...


class SandboxHandle(ABC):
    """A provisioned sandbox environment."""

    @property
    @abstractmethod
    def sandbox_id(self) -> str: ...

    @property
    @abstractmethod
    def fs(self) -> SandboxFilesystem: ...

    @abstractmethod
    async def run(self, entrypoint: str) -> SandboxProcess:
        """Start *entrypoint* (a path inside the sandbox) as a process."""

    @abstractmethod
    async def expose_http(self, process: SandboxProcess) -> str:
        """Publish the HTTP server of *process* and return its public URL."""

    @abstractmethod
    async def dispose(self) -> None:
        """Release the environment and everything running in it."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(sandbox_id={self.sandbox_id!r})"


class SandboxProvider(ABC):
    """Factory for sandbox environments."""

    @abstractmethod
    async def create(self, token: str, env: dict[str, str]) -> SandboxHandle:
        """Provision a sandbox.

        Args:
            token: Credential for the provisioning service.
            env: Environment values (secrets included) visible to every
                process started in the sandbox.
        """
