"""vizbox: ephemeral sandbox orchestration for AI-generated chart previews."""

from vizbox.config import SandboxConfig
from vizbox.orchestrator import (
    ConfigurationError,
    ProvisioningError,
    SandboxInstance,
    SandboxNotFoundError,
    SandboxOrchestrator,
    SandboxRequestError,
)
from vizbox.poller import GenerationError, GenerationPoller, GenerationTimeout
from vizbox.prober import VerificationProber, VerificationTimeout
from vizbox.reaper import ResourceReaper
from vizbox.services import Vizbox
from vizbox.tracker import DeploymentTracker
from vizbox.types import (
    DeploymentEvent,
    DeploymentLog,
    DeploymentStage,
    DeploymentStatus,
    FetchedVisualization,
    GenerationStatus,
    SandboxStats,
    TrackerStats,
    Visualization,
    VizboxError,
)

__version__ = "0.1.0"

__all__ = [
    "ConfigurationError",
    "DeploymentEvent",
    "DeploymentLog",
    "DeploymentStage",
    "DeploymentStatus",
    "DeploymentTracker",
    "FetchedVisualization",
    "GenerationError",
    "GenerationPoller",
    "GenerationStatus",
    "GenerationTimeout",
    "ProvisioningError",
    "ResourceReaper",
    "SandboxConfig",
    "SandboxInstance",
    "SandboxNotFoundError",
    "SandboxOrchestrator",
    "SandboxRequestError",
    "SandboxStats",
    "TrackerStats",
    "VerificationProber",
    "VerificationTimeout",
    "Visualization",
    "Vizbox",
    "VizboxError",
]
