"""Sandbox provisioning backends."""

from vizbox.sandbox.base import (
    SandboxError,
    SandboxFilesystem,
    SandboxHandle,
    SandboxProcess,
    SandboxProvider,
)
from vizbox.sandbox.local import LocalSandbox, LocalSandboxProvider

__all__ = [
    "LocalSandbox",
    "LocalSandboxProvider",
    "SandboxError",
    "SandboxFilesystem",
    "SandboxHandle",
    "SandboxProcess",
    "SandboxProvider",
]
