"""Configuration objects for gitops-local."""

from dataclasses import dataclass, field

from .retry import Backoff, DEFAULT_BACKOFF


@dataclass
class DispatcherConfig:
    """Configuration for the TemplateDispatcher."""

    timeout: float = 300.0
    """Seconds a templating job may run before it fails."""

    job_history_limit: int = 3
    """Number of finished job records kept per configuration object."""

    job_ttl: float | None = None
    """Seconds after which finished job records are removed regardless of count."""


@dataclass
class ApplierConfig:
    """Configuration for the resource applier."""

    conflict_backoff: Backoff = DEFAULT_BACKOFF
    """Retry schedule for per-resource and inventory write conflicts."""


@dataclass
class ControllerConfig:
    """Configuration for the GitOpsConfigController."""

    status_backoff: Backoff = DEFAULT_BACKOFF
    """Retry schedule for conflicting status and metadata writes."""

    resync_interval: float | None = None
    """Seconds between periodic re-evaluation of every object, or None to disable."""


@dataclass
class OrchestratorConfig:
    """Configuration for every component started by the orchestrator."""

    dispatcher: DispatcherConfig = field(default_factory=DispatcherConfig)
    applier: ApplierConfig = field(default_factory=ApplierConfig)
    controller: ControllerConfig = field(default_factory=ControllerConfig)
