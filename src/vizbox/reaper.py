"""Periodic sweep that destroys expired sandboxes and evicts old deployment logs."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any

from vizbox.orchestrator import SandboxOrchestrator
from vizbox.tracker import DeploymentTracker

logger = logging.getLogger(__name__)


class ResourceReaper:
    """Runs ``run_once`` every *interval* seconds in a background task.

    Args:
        orchestrator: Registry swept with ``cleanup_old_sandboxes``.
        tracker: Log table swept with ``cleanup``.
        sandbox_ttl: Maximum sandbox age in seconds.
        log_ttl: Maximum deployment log age in seconds.
        interval: Seconds between sweeps.
    """

    def __init__(
        self,
        orchestrator: SandboxOrchestrator,
        tracker: DeploymentTracker,
        *,
        sandbox_ttl: float = 3600.0,
        log_ttl: float = 3600.0,
        interval: float = 300.0,
    ) -> None:
        self._orchestrator = orchestrator
        self._tracker = tracker
        self._sandbox_ttl = sandbox_ttl
        self._log_ttl = log_ttl
        self._interval = interval
        self._task: asyncio.Task[Any] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> tuple[list[str], int]:
        """Sweep once.

        Returns:
            Ids of destroyed sandboxes and the number of evicted logs.
        """
        destroyed = await self._orchestrator.cleanup_old_sandboxes(self._sandbox_ttl)
        evicted = self._tracker.cleanup(self._log_ttl)
        if destroyed or evicted:
            logger.info("Reaper sweep: %d sandboxes destroyed, %d logs evicted", len(destroyed), evicted)
        return destroyed, evicted

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.run_once()
            except Exception:
                logger.exception("Error during reaper sweep")

    def start(self) -> None:
        """Start the background sweep. No-op if already running."""
        if self.running:
            return
        logger.info("Starting resource reaper (every %gs)", self._interval)
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        """Cancel the background sweep and wait for it to finish."""
        if self._task is None:
            return
        logger.info("Stopping resource reaper")
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    def __repr__(self) -> str:
        return f"ResourceReaper(interval={self._interval}, running={self.running})"
