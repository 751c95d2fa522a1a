"""Core data types for vizbox deployments and sandbox bookkeeping."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class VizboxError(Exception):
    """Base exception for all vizbox errors."""


def utcnow() -> datetime:
    """Timezone-aware current time; every timestamp in vizbox goes through here."""
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Deployment tracking
# ---------------------------------------------------------------------------


class DeploymentStage(StrEnum):
    """Stage tag attached to every deployment event."""

    GENERATION = "generation"
    SANDBOX_CREATION = "sandbox_creation"
    DEPLOYMENT = "deployment"
    VERIFICATION = "verification"
    READY = "ready"
    ERROR = "error"


class DeploymentStatus(StrEnum):
    """Overall status of a deployment, derived from its latest stage."""

    PENDING = "pending"
    DEPLOYING = "deploying"
    VERIFYING = "verifying"
    READY = "ready"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({DeploymentStatus.READY, DeploymentStatus.FAILED})


class DeploymentEvent(BaseModel):
    """A single, immutable entry in a deployment log."""

    model_config = {"frozen": True}

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime = Field(default_factory=utcnow)
    stage: DeploymentStage
    message: str
    details: dict[str, Any] | None = None
    error: str | None = None


class DeploymentLog(BaseModel):
    """Event log and derived status for one tracked deployment.

    Args:
        tracking_id: Caller-supplied identifier of the visualization.
        start_time: When tracking started.
        end_time: Set when the deployment reaches ``ready`` or ``failed``.
        status: Current derived status.
        events: Append-only, time-ordered event list.
        sandbox_id: Id of the sandbox serving this deployment, once known.
        sandbox_url: Public URL of that sandbox, once known.
        error: Failure reason when ``status`` is ``failed``.
    """

    tracking_id: str
    start_time: datetime = Field(default_factory=utcnow)
    end_time: datetime | None = None
    status: DeploymentStatus = DeploymentStatus.PENDING
    events: list[DeploymentEvent] = Field(default_factory=list)
    sandbox_id: str | None = None
    sandbox_url: str | None = None
    error: str | None = None

    @property
    def duration_ms(self) -> float | None:
        """Milliseconds between start and end, or ``None`` while in progress."""
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds() * 1000

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_summary(self, recent: int = 10) -> dict[str, Any]:
        """Return a JSON-serializable view with only the last *recent* events."""
        return {
            "tracking_id": self.tracking_id,
            "status": self.status.value,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "sandbox_id": self.sandbox_id,
            "sandbox_url": self.sandbox_url,
            "error": self.error,
            "events": [e.model_dump(mode="json") for e in self.events[-recent:]] if recent else [],
        }


class TrackerStats(BaseModel):
    """Aggregate counts over all retained deployment logs."""

    model_config = {"frozen": True}

    total: int = 0
    pending: int = 0
    deploying: int = 0
    verifying: int = 0
    ready: int = 0
    failed: int = 0
    average_deploy_ms: float | None = None


# ---------------------------------------------------------------------------
# Sandbox results
# ---------------------------------------------------------------------------


class Visualization(BaseModel):
    """A deployed visualization: sandbox id plus its public URL."""

    model_config = {"frozen": True}

    id: str
    url: str


class FetchedVisualization(BaseModel):
    """A generated artifact fetched out of a sandbox that has since been destroyed."""

    model_config = {"frozen": True}

    id: str
    artifact: str


class SandboxStats(BaseModel):
    """Registry statistics."""

    model_config = {"frozen": True}

    active: int = 0
    oldest: datetime | None = None


class GenerationStatus(BaseModel):
    """Body of a sandbox's ``GET /status`` response."""

    model_config = {"frozen": True}

    phase: str
    elapsed: float = 0.0
    ready: bool = False
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.phase == "error"
