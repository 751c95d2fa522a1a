"""Wait for in-sandbox generation to finish and collect the generated artifact."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from pydantic import ValidationError

from vizbox.logging import LogContext
from vizbox.orchestrator import SandboxOrchestrator, SandboxRequestError
from vizbox.types import DeploymentStage, FetchedVisualization, GenerationStatus, VizboxError

logger = logging.getLogger(__name__)

_DEFAULT_INTERVAL = 2.0
_DEFAULT_TIMEOUT = 90.0


class GenerationError(VizboxError):
    """Raised when a sandbox reports ``phase == "error"``; carries its message verbatim."""

    def __init__(self, sandbox_id: str, message: str) -> None:
        self.sandbox_id = sandbox_id
        super().__init__(message)


class GenerationTimeout(VizboxError):
    """Raised when a sandbox does not become ready within the polling budget."""

    def __init__(self, sandbox_id: str, timeout: float, last_phase: str | None) -> None:
        self.sandbox_id = sandbox_id
        self.timeout = timeout
        self.last_phase = last_phase
        super().__init__(
            f"Visualization generation timed out after {timeout:g}s "
            f"(sandbox {sandbox_id}, last phase: {last_phase or 'unknown'})"
        )


class GenerationPoller:
    """Drives ``create -> poll /status -> fetch -> destroy`` for one visualization.

    Args:
        orchestrator: Creates, proxies to and destroys sandboxes.
        interval: Seconds between ``/status`` polls.
        timeout: Total seconds to wait for ``ready``.
    """

    __slots__ = ("_interval", "_orchestrator", "_timeout")

    def __init__(
        self,
        orchestrator: SandboxOrchestrator,
        *,
        interval: float = _DEFAULT_INTERVAL,
        timeout: float = _DEFAULT_TIMEOUT,
    ) -> None:
        self._orchestrator = orchestrator
        self._interval = interval
        self._timeout = timeout

    async def create_and_fetch_visualization(
        self,
        payload: dict[str, Any],
        secret: str,
        tracking_id: str | None = None,
    ) -> FetchedVisualization:
        """Generate a visualization in a throwaway sandbox and return its HTML.

        The sandbox is destroyed after a successful fetch, on timeout and
        when the caller is cancelled.  When the sandbox reports an error it
        is left for the reaper.

        Raises:
            ConfigurationError, ProvisioningError: From sandbox creation.
            GenerationError: The sandbox reported a failure.
            GenerationTimeout: Not ready within the budget.
        """
        viz = await self._orchestrator.create_visualization(payload, secret, tracking_id)
        with LogContext(tracking_id=tracking_id, sandbox_id=viz.id[:12]):
            try:
                await self._wait_until_ready(viz.id, tracking_id)
                artifact = await self._fetch_artifact(viz.id)
            except GenerationError as exc:
                self._fail(tracking_id, str(exc), viz.id)
                raise
            except GenerationTimeout as exc:
                await self._orchestrator.destroy_sandbox(viz.id)
                self._fail(tracking_id, str(exc), viz.id)
                raise
            except asyncio.CancelledError:
                logger.warning("Generation wait cancelled, destroying sandbox %s", viz.id)
                await self._orchestrator.destroy_sandbox(viz.id)
                raise
            except Exception as exc:
                await self._orchestrator.destroy_sandbox(viz.id)
                self._fail(tracking_id, f"Failed to fetch visualization: {exc}", viz.id)
                raise

            await self._orchestrator.destroy_sandbox(viz.id)
            logger.info("Fetched visualization from sandbox %s (%d bytes)", viz.id, len(artifact))
            return FetchedVisualization(id=viz.id, artifact=artifact)

    def _fail(self, tracking_id: str | None, error: str, sandbox_id: str) -> None:
        if tracking_id:
            self._orchestrator.tracker.mark_failed(tracking_id, error, {"sandbox_id": sandbox_id})

    async def poll_status(self, sandbox_id: str) -> GenerationStatus | None:
        """Read ``/status`` once; ``None`` means "not ready yet" (unreachable or unparsable)."""
        try:
            resp = await self._orchestrator.fetch_from_sandbox(sandbox_id, "/status")
        except SandboxRequestError as exc:
            logger.debug("Status poll failed, sandbox still starting: %s", exc)
            return None
        if not resp.is_success:
            logger.debug("Status poll returned HTTP %d", resp.status_code)
            return None
        try:
            return GenerationStatus.model_validate(resp.json())
        except (ValueError, ValidationError) as exc:
            logger.debug("Unparsable status body: %s", exc)
            return None

    async def _wait_until_ready(self, sandbox_id: str, tracking_id: str | None) -> None:
        deadline = time.monotonic() + self._timeout
        last_phase: str | None = None
        while True:
            status = await self.poll_status(sandbox_id)
            if status is not None:
                if status.phase != last_phase:
                    last_phase = status.phase
                    logger.debug("Generation phase: %s (%.0fms)", status.phase, status.elapsed)
                    if tracking_id:
                        self._orchestrator.tracker.log_event(
                            tracking_id,
                            DeploymentStage.GENERATION,
                            f"Generation phase: {status.phase}",
                            {"phase": status.phase, "elapsed_ms": status.elapsed},
                        )
                if status.ready:
                    return
                if status.failed:
                    raise GenerationError(sandbox_id, status.error or "Generation failed")

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise GenerationTimeout(sandbox_id, self._timeout, last_phase)
            await asyncio.sleep(min(self._interval, remaining))

    async def _fetch_artifact(self, sandbox_id: str) -> str:
        resp = await self._orchestrator.fetch_from_sandbox(sandbox_id, "/")
        if not resp.is_success:
            raise SandboxRequestError(
                f"Sandbox {sandbox_id} returned HTTP {resp.status_code} for the artifact"
            )
        return resp.text

    def __repr__(self) -> str:
        return f"GenerationPoller(interval={self._interval}, timeout={self._timeout})"
