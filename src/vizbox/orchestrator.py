"""Sandbox orchestration: provision, deploy, expose, register and destroy sandboxes."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import httpx

from vizbox.config import SandboxConfig
from vizbox.generator import render_program
from vizbox.logging import LogContext
from vizbox.prober import VerificationProber, VerificationTimeout
from vizbox.sandbox.base import SandboxHandle, SandboxProcess, SandboxProvider
from vizbox.tracker import DeploymentTracker
from vizbox.types import DeploymentStage, SandboxStats, Visualization, VizboxError, utcnow

logger = logging.getLogger(__name__)


class ConfigurationError(VizboxError):
    """Raised when sandboxing is not configured or a required secret is missing."""


class ProvisioningError(VizboxError):
    """Raised when creating, deploying into or exposing a sandbox fails.

    Args:
        sandbox_id: Id the sandbox would have been registered under.
        message: Underlying failure.
    """

    def __init__(self, sandbox_id: str, message: str) -> None:
        self.sandbox_id = sandbox_id
        super().__init__(f"Failed to create sandbox visualization (ID: {sandbox_id}): {message}")


class SandboxNotFoundError(VizboxError):
    """Raised when an id is not in the active registry."""

    def __init__(self, sandbox_id: str) -> None:
        self.sandbox_id = sandbox_id
        super().__init__(f"Sandbox {sandbox_id} not found")


class SandboxRequestError(VizboxError):
    """Raised when a proxied request to a registered sandbox fails."""


@dataclass
class SandboxInstance:
    """A live, exposed sandbox owned by the orchestrator registry."""

    id: str
    handle: SandboxHandle
    process: SandboxProcess
    url: str
    created_at: datetime = field(default_factory=utcnow)

    def age(self, now: datetime | None = None) -> timedelta:
        return (now or utcnow()) - self.created_at


class SandboxOrchestrator:
    """Owns the registry of live sandboxes.

    ``create_visualization`` provisions a sandbox with the secret injected as
    an environment value, writes the generator program into it, starts and
    exposes it, then registers it.  Only fully exposed sandboxes enter the
    registry; anything allocated by a failed attempt is released before the
    error propagates, and a caller cancelled during verification leaves no
    registered sandbox behind.

    Args:
        config: Timeouts and the provisioning credential.
        provider: Backend that creates sandboxes.
        tracker: Deployment tracker for progress events.
        prober: Reachability prober. Verification is skipped without one.
        http: Client for proxied fetches; created (and owned) when omitted.
    """

    def __init__(
        self,
        config: SandboxConfig,
        provider: SandboxProvider,
        tracker: DeploymentTracker,
        *,
        prober: VerificationProber | None = None,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._provider = provider
        self._tracker = tracker
        self._prober = prober
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient()
        self._instances: dict[str, SandboxInstance] = {}
        if config.is_configured:
            logger.info("Deploy token configured, sandbox functionality enabled")
        else:
            logger.warning("Deploy token not configured, sandbox functionality disabled")

    @property
    def config(self) -> SandboxConfig:
        return self._config

    @property
    def tracker(self) -> DeploymentTracker:
        return self._tracker

    def is_configured(self) -> bool:
        return self._config.is_configured

    def __len__(self) -> int:
        return len(self._instances)

    def __contains__(self, sandbox_id: str) -> bool:
        return sandbox_id in self._instances

    # -- creation -------------------------------------------------------------

    async def create_visualization(
        self,
        payload: dict[str, Any],
        secret: str,
        tracking_id: str | None = None,
    ) -> Visualization:
        """Deploy the generator for *payload* into a new sandbox.

        Args:
            payload: Request forwarded to the in-sandbox generator.
            secret: API key injected into the sandbox environment.
            tracking_id: Deployment log to report progress to.

        Returns:
            The registered sandbox id and its public URL.

        Raises:
            ConfigurationError: Credential or secret missing; nothing allocated.
            ProvisioningError: A provisioning step failed; partial resources
                have been released.
        """
        sandbox_id = uuid.uuid4().hex
        with LogContext(tracking_id=tracking_id, sandbox_id=sandbox_id[:12]):
            self._validate(secret, tracking_id)

            handle: SandboxHandle | None = None
            process: SandboxProcess | None = None
            try:
                handle = await self._provision(secret, tracking_id)
                process = await self._deploy(handle, payload, tracking_id)
                url = await self._expose(handle, process, tracking_id)
            except asyncio.CancelledError:
                logger.warning("Sandbox creation cancelled, releasing resources")
                await self._release(handle, process)
                raise
            except Exception as exc:
                await self._release(handle, process)
                message = str(exc) or type(exc).__name__
                logger.error(
                    "Failed to create sandbox visualization: %s (active=%d)",
                    message,
                    len(self._instances),
                )
                if tracking_id:
                    self._tracker.mark_failed(
                        tracking_id,
                        f"Sandbox creation failed: {message}",
                        {"sandbox_id": sandbox_id},
                    )
                raise ProvisioningError(sandbox_id, message) from exc

            self._instances[sandbox_id] = SandboxInstance(sandbox_id, handle, process, url)
            if tracking_id:
                self._tracker.set_sandbox_info(tracking_id, sandbox_id, url)

            try:
                await self._verify(url, tracking_id)
            except asyncio.CancelledError:
                logger.warning("Cancelled during verification, destroying sandbox %s", sandbox_id)
                await self.destroy_sandbox(sandbox_id)
                raise
            logger.info("Created sandbox visualization %s at %s", sandbox_id, url)
            return Visualization(id=sandbox_id, url=url)

    def _validate(self, secret: str, tracking_id: str | None) -> None:
        error: str | None = None
        if not self._config.is_configured:
            error = "A deploy token is required for sandbox functionality"
        elif not secret:
            error = "An API key is required to generate visualizations"
        if error is None:
            return
        if tracking_id:
            self._tracker.mark_failed(tracking_id, error)
        raise ConfigurationError(error)

    def _event(self, tracking_id: str | None, stage: DeploymentStage, message: str) -> None:
        if tracking_id:
            self._tracker.log_event(tracking_id, stage, message)

    async def _provision(self, secret: str, tracking_id: str | None) -> SandboxHandle:
        self._event(tracking_id, DeploymentStage.SANDBOX_CREATION, "Starting sandbox creation")
        self._event(tracking_id, DeploymentStage.SANDBOX_CREATION, "Creating sandbox instance")
        env = {"ANTHROPIC_API_KEY": secret, "VIZBOX_MODEL": self._config.model}
        return await asyncio.wait_for(
            self._provider.create(self._config.deploy_token, env),
            timeout=self._config.provision_timeout,
        )

    async def _deploy(
        self, handle: SandboxHandle, payload: dict[str, Any], tracking_id: str | None
    ) -> SandboxProcess:
        self._event(tracking_id, DeploymentStage.DEPLOYMENT, "Generating server code and deploying")
        program = render_program(payload)
        await handle.fs.write_file(self._config.entrypoint, program.encode("utf-8"))
        self._event(tracking_id, DeploymentStage.DEPLOYMENT, "Starting generator process")
        process = await handle.run(self._config.entrypoint)
        logger.debug("Generator running as pid %d", process.pid)
        return process

    async def _expose(
        self, handle: SandboxHandle, process: SandboxProcess, tracking_id: str | None
    ) -> str:
        self._event(tracking_id, DeploymentStage.DEPLOYMENT, "Exposing HTTP endpoint")
        return await handle.expose_http(process)

    async def _verify(self, url: str, tracking_id: str | None) -> None:
        if not tracking_id or self._prober is None:
            return
        self._event(tracking_id, DeploymentStage.VERIFICATION, "Verifying deployment accessibility")
        try:
            status = await self._prober.verify(url, tracking_id)
        except VerificationTimeout as exc:
            self._tracker.log_event(
                tracking_id,
                DeploymentStage.VERIFICATION,
                "Verification failed but proceeding - sandbox may need more time to be accessible",
                {"error": str(exc)},
            )
            self._tracker.mark_ready(tracking_id, {"verified": False, "url": url})
            return
        self._tracker.mark_ready(tracking_id, {"verified": True, "status": status, "url": url})

    async def _release(self, handle: SandboxHandle | None, process: SandboxProcess | None) -> None:
        """Best-effort teardown of resources from a failed or finished sandbox."""
        if process is not None:
            try:
                await process.kill()
            except Exception:
                logger.warning("Failed to kill sandbox process %s", process.pid, exc_info=True)
        if handle is not None:
            try:
                await handle.dispose()
            except Exception:
                logger.warning("Failed to dispose sandbox %r", handle, exc_info=True)

    # -- access ---------------------------------------------------------------

    def get_sandbox_url(self, sandbox_id: str) -> str | None:
        instance = self._instances.get(sandbox_id)
        return instance.url if instance else None

    async def fetch_from_sandbox(self, sandbox_id: str, path: str = "/") -> httpx.Response:
        """GET *path* from a registered sandbox.

        Raises:
            SandboxNotFoundError: *sandbox_id* is not registered.
            SandboxRequestError: The request failed or timed out.
        """
        instance = self._instances.get(sandbox_id)
        if instance is None:
            raise SandboxNotFoundError(sandbox_id)

        url = f"{instance.url.rstrip('/')}/{path.lstrip('/')}"
        try:
            return await self._http.get(url, timeout=self._config.fetch_timeout)
        except httpx.HTTPError as exc:
            logger.debug("Request to sandbox %s failed: %s (url=%s)", sandbox_id, exc, url)
            raise SandboxRequestError(
                f"Sandbox request failed (ID: {sandbox_id}, path: {path}): {exc}"
            ) from exc

    # -- teardown -------------------------------------------------------------

    async def destroy_sandbox(self, sandbox_id: str) -> bool:
        """Kill, dispose and unregister a sandbox. Unknown ids are a no-op.

        Returns:
            ``True`` if a sandbox was removed.
        """
        instance = self._instances.pop(sandbox_id, None)
        if instance is None:
            return False
        await self._release(instance.handle, instance.process)
        logger.info("Destroyed sandbox %s", sandbox_id)
        return True

    async def cleanup_old_sandboxes(self, ttl: float | None = None) -> list[str]:
        """Destroy every sandbox created more than *ttl* seconds ago.

        Defaults to ``config.sandbox_ttl``.

        Returns:
            Ids of the destroyed sandboxes.
        """
        ttl = self._config.sandbox_ttl if ttl is None else ttl
        now = utcnow()
        expired = [
            sid
            for sid, inst in list(self._instances.items())
            if inst.age(now) > timedelta(seconds=ttl)
        ]
        destroyed = [sid for sid in expired if await self.destroy_sandbox(sid)]
        if destroyed:
            logger.info("Cleaned up %d old sandboxes", len(destroyed))
        return destroyed

    async def destroy_all(self) -> int:
        """Destroy every registered sandbox; returns how many were removed."""
        count = 0
        for sid in list(self._instances):
            if await self.destroy_sandbox(sid):
                count += 1
        return count

    def get_stats(self) -> SandboxStats:
        instances = list(self._instances.values())
        oldest = min((i.created_at for i in instances), default=None)
        return SandboxStats(active=len(instances), oldest=oldest)

    async def close(self) -> None:
        """Close the proxy HTTP client if this orchestrator created it."""
        if self._owns_http:
            await self._http.aclose()

    def __repr__(self) -> str:
        return f"SandboxOrchestrator(active={len(self._instances)}, configured={self.is_configured()})"
