"""Service container wiring tracker, prober, orchestrator, poller and reaper together."""

from __future__ import annotations

import logging
from typing import Any

from vizbox.config import SandboxConfig
from vizbox.orchestrator import SandboxOrchestrator
from vizbox.poller import GenerationPoller
from vizbox.prober import VerificationProber
from vizbox.reaper import ResourceReaper
from vizbox.sandbox.base import SandboxProvider
from vizbox.sandbox.local import LocalSandboxProvider
from vizbox.tracker import DeploymentTracker

logger = logging.getLogger(__name__)


class Vizbox:
    """One instance per process: owns every shared registry and background task.

    Usage::

        async with Vizbox(SandboxConfig.from_env()) as vb:
            vb.tracker.start("viz-1")
            result = await vb.poller.create_and_fetch_visualization(payload, key, "viz-1")

    Args:
        config: Effective configuration.
        provider: Sandbox backend. Defaults to ``LocalSandboxProvider``.
        start_reaper: Start the periodic sweep when entering the context.
    """

    def __init__(
        self,
        config: SandboxConfig | None = None,
        provider: SandboxProvider | None = None,
        *,
        start_reaper: bool = True,
    ) -> None:
        self.config = config or SandboxConfig.from_env()
        self.tracker = DeploymentTracker()
        self.prober = VerificationProber(
            self.tracker,
            max_attempts=self.config.verify_attempts,
            delay=self.config.verify_delay,
            timeout=self.config.verify_timeout,
        )
        self.orchestrator = SandboxOrchestrator(
            self.config,
            provider or LocalSandboxProvider(),
            self.tracker,
            prober=self.prober,
        )
        self.poller = GenerationPoller(
            self.orchestrator,
            interval=self.config.poll_interval,
            timeout=self.config.generation_timeout,
        )
        self.reaper = ResourceReaper(
            self.orchestrator,
            self.tracker,
            sandbox_ttl=self.config.sandbox_ttl,
            log_ttl=self.config.log_ttl,
            interval=self.config.reaper_interval,
        )
        self._start_reaper = start_reaper

    def status_summary(self) -> dict[str, Any]:
        """Operator view of sandbox availability."""
        stats = self.orchestrator.get_stats()
        enabled = self.orchestrator.is_configured()
        return {
            "sandbox_enabled": enabled,
            "active_sandboxes": stats.active,
            "oldest_sandbox": stats.oldest.isoformat() if stats.oldest else None,
            "message": (
                "Sandbox functionality is enabled"
                if enabled
                else "Sandbox functionality disabled - deploy token not configured"
            ),
        }

    def deployment_summary(self, tracking_id: str, recent: int = 10) -> dict[str, Any] | None:
        """Operator view of one deployment plus tracker-wide statistics."""
        log = self.tracker.get_log(tracking_id)
        if log is None:
            return None
        summary = log.to_summary(recent)
        summary["stats"] = self.tracker.get_stats().model_dump()
        return summary

    async def shutdown(self) -> None:
        """Stop the reaper, destroy every sandbox and close HTTP clients."""
        await self.reaper.stop()
        destroyed = await self.orchestrator.destroy_all()
        if destroyed:
            logger.info("Destroyed %d sandboxes on shutdown", destroyed)
        await self.orchestrator.close()
        await self.prober.close()

    async def __aenter__(self) -> Vizbox:
        if self._start_reaper:
            self.reaper.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.shutdown()

    def __repr__(self) -> str:
        return f"Vizbox(orchestrator={self.orchestrator!r}, reaper={self.reaper!r})"
