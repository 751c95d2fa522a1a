"""Deployment tracking: per-deployment event logs, derived status and subscriptions."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import timedelta
from typing import Any

from vizbox.types import (
    DeploymentEvent,
    DeploymentLog,
    DeploymentStage,
    DeploymentStatus,
    TrackerStats,
    utcnow,
)

logger = logging.getLogger(__name__)

DeploymentListener = Callable[[DeploymentLog], None]
"""Callback invoked synchronously with the updated log after every event."""

_DEFAULT_TTL = 3600.0

_STAGE_STATUS: dict[DeploymentStage, DeploymentStatus] = {
    DeploymentStage.GENERATION: DeploymentStatus.PENDING,
    DeploymentStage.SANDBOX_CREATION: DeploymentStatus.DEPLOYING,
    DeploymentStage.DEPLOYMENT: DeploymentStatus.DEPLOYING,
    DeploymentStage.VERIFICATION: DeploymentStatus.VERIFYING,
    DeploymentStage.READY: DeploymentStatus.READY,
    DeploymentStage.ERROR: DeploymentStatus.FAILED,
}

_STAGE_LABEL: dict[DeploymentStage, str] = {
    DeploymentStage.GENERATION: "GEN",
    DeploymentStage.SANDBOX_CREATION: "BOX",
    DeploymentStage.DEPLOYMENT: "DEP",
    DeploymentStage.VERIFICATION: "VER",
    DeploymentStage.READY: "RDY",
    DeploymentStage.ERROR: "ERR",
}


def format_duration(seconds: float) -> str:
    """Render elapsed time as ``42s`` or ``3m 7s``."""
    total = int(seconds)
    if total < 60:
        return f"{total}s"
    minutes, secs = divmod(total, 60)
    return f"{minutes}m {secs}s"


class DeploymentTracker:
    """In-memory registry of deployment logs with publish/subscribe.

    Each tracking id owns one ``DeploymentLog``.  Status is derived from the
    stage of each new event; once a log is ``ready`` or ``failed`` only
    another terminal stage can change it, so stray late events are recorded
    without moving the deployment backwards.

    Nothing here schedules itself: call ``cleanup`` periodically (the
    ``ResourceReaper`` does).
    """

    def __init__(self) -> None:
        self._logs: dict[str, DeploymentLog] = {}
        self._listeners: dict[str, dict[str, DeploymentListener]] = {}

    # -- lifecycle ------------------------------------------------------------

    def start(self, tracking_id: str) -> DeploymentLog:
        """Begin tracking *tracking_id*, replacing any existing log for it."""
        log = DeploymentLog(tracking_id=tracking_id)
        self._logs[tracking_id] = log
        logger.info("Starting deployment tracking for %s", tracking_id)
        self.log_event(tracking_id, DeploymentStage.GENERATION, "Visualization generation started")
        return log

    def log_event(
        self,
        tracking_id: str,
        stage: DeploymentStage | str,
        message: str,
        details: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> DeploymentEvent | None:
        """Append an event, update the derived status and notify subscribers.

        Returns the new event, or ``None`` when *tracking_id* is not tracked.
        """
        log = self._logs.get(tracking_id)
        if log is None:
            logger.warning(
                "No deployment log for %s (stage=%s, message=%r, tracked=%d)",
                tracking_id,
                stage,
                message,
                len(self._logs),
            )
            return None

        stage = DeploymentStage(stage)
        event = DeploymentEvent(stage=stage, message=message, details=details, error=error)
        log.events.append(event)
        self._apply_stage(log, event)

        elapsed = format_duration((event.timestamp - log.start_time).total_seconds())
        label = _STAGE_LABEL[stage]
        fields = {"tracking_id": tracking_id, "stage": stage.value}
        if error:
            logger.error("%s [%s] %s (%s)", label, elapsed, message, error, extra=fields)
        else:
            logger.info("%s [%s] %s", label, elapsed, message, extra=fields)
        if details:
            logger.debug("%s details: %s", label, details, extra=fields)

        self._notify(tracking_id, log)
        return event

    @staticmethod
    def _apply_stage(log: DeploymentLog, event: DeploymentEvent) -> None:
        target = _STAGE_STATUS[event.stage]
        if log.is_terminal and target not in (DeploymentStatus.READY, DeploymentStatus.FAILED):
            return
        log.status = target
        if target == DeploymentStatus.READY:
            log.end_time = event.timestamp
            log.error = None
        elif target == DeploymentStatus.FAILED:
            log.end_time = event.timestamp
            log.error = event.error or event.message

    def set_sandbox_info(self, tracking_id: str, sandbox_id: str, sandbox_url: str) -> None:
        """Record which sandbox serves *tracking_id*."""
        log = self._logs.get(tracking_id)
        if log is None:
            return
        log.sandbox_id = sandbox_id
        log.sandbox_url = sandbox_url
        self.log_event(
            tracking_id,
            DeploymentStage.SANDBOX_CREATION,
            "Sandbox created successfully",
            {"sandbox_id": sandbox_id, "sandbox_url": sandbox_url},
        )

    def mark_ready(self, tracking_id: str, details: dict[str, Any] | None = None) -> None:
        self.log_event(
            tracking_id, DeploymentStage.READY, "Deployment verified and ready for viewing", details
        )

    def mark_failed(
        self, tracking_id: str, error: str, details: dict[str, Any] | None = None
    ) -> None:
        self.log_event(tracking_id, DeploymentStage.ERROR, "Deployment failed", details, error)

    # -- queries --------------------------------------------------------------

    def get_log(self, tracking_id: str) -> DeploymentLog | None:
        return self._logs.get(tracking_id)

    def __contains__(self, tracking_id: str) -> bool:
        return tracking_id in self._logs

    def __len__(self) -> int:
        return len(self._logs)

    def get_stats(self) -> TrackerStats:
        """Count logs per status and average the duration of ready deployments."""
        counts = dict.fromkeys(DeploymentStatus, 0)
        durations: list[float] = []
        for log in list(self._logs.values()):
            counts[log.status] += 1
            if log.status == DeploymentStatus.READY and log.duration_ms is not None:
                durations.append(log.duration_ms)
        return TrackerStats(
            total=sum(counts.values()),
            pending=counts[DeploymentStatus.PENDING],
            deploying=counts[DeploymentStatus.DEPLOYING],
            verifying=counts[DeploymentStatus.VERIFYING],
            ready=counts[DeploymentStatus.READY],
            failed=counts[DeploymentStatus.FAILED],
            average_deploy_ms=sum(durations) / len(durations) if durations else None,
        )

    # -- subscriptions --------------------------------------------------------

    def subscribe(self, tracking_id: str, callback: DeploymentListener) -> Callable[[], None]:
        """Register *callback* for updates to *tracking_id*.

        Returns:
            A closure that removes exactly this registration; calling it more
            than once is harmless.
        """
        token = uuid.uuid4().hex
        self._listeners.setdefault(tracking_id, {})[token] = callback

        def unsubscribe() -> None:
            listeners = self._listeners.get(tracking_id)
            if listeners is None:
                return
            listeners.pop(token, None)
            if not listeners:
                self._listeners.pop(tracking_id, None)

        return unsubscribe

    def listener_count(self, tracking_id: str) -> int:
        return len(self._listeners.get(tracking_id, {}))

    def _notify(self, tracking_id: str, log: DeploymentLog) -> None:
        listeners = self._listeners.get(tracking_id)
        if not listeners:
            return
        for token, callback in list(listeners.items()):
            try:
                callback(log)
            except Exception:
                logger.error(
                    "Deployment listener %s for %s failed (status=%s)",
                    token[:8],
                    tracking_id,
                    log.status.value,
                    exc_info=True,
                )

    # -- eviction -------------------------------------------------------------

    def cleanup(self, ttl: float = _DEFAULT_TTL) -> int:
        """Evict logs (and their listeners) started more than *ttl* seconds ago.

        Returns:
            Number of logs removed.
        """
        cutoff = utcnow() - timedelta(seconds=ttl)
        expired = [tid for tid, log in list(self._logs.items()) if log.start_time < cutoff]
        for tid in expired:
            self._logs.pop(tid, None)
            self._listeners.pop(tid, None)
        if expired:
            logger.info("Cleaned up %d old deployment logs", len(expired))
        return len(expired)
