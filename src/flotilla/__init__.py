"""Flotilla - fleet orchestration for multi-agent task pipelines."""

__version__ = "0.4.0"

# Re-export core components for convenience
from .backend import (
    CancellationToken,
    CommandBackend,
    ExecutionBackend,
    TaskConfig,
    TaskResult,
    render_command,
    spawn_detached,
)
from .config import FlotillaConfig, configure_logging
from .context import (
    CompactionReport,
    ContextExtractor,
    DeploymentContext,
    TaskContext,
)
from .dispatcher import DispatchResult, ExecutionMode, StopResult, TaskDispatcher
from .exceptions import (
    ArtifactNotFoundError,
    BackendFailureError,
    ConfigError,
    CorruptArtifactError,
    DeploymentNotFoundError,
    ExecutionTimeoutError,
    FleetDefinitionError,
    FleetNotFoundError,
    FleetShapeMismatchError,
    FlotillaError,
    InvalidStateError,
    NotAwaitingApprovalError,
    NotFoundError,
    PersistenceError,
    TaskNotFoundError,
)
from .models import (
    Condition,
    DeployedTask,
    Deployment,
    FleetSpec,
    Registry,
    Status,
    TaskRoute,
    TaskSpec,
)
from .store import ApprovalResult, CleanupReport, DeploymentStore
from .stream import EventType, StreamBus, StreamEvent, StreamStats, WatchOptions

__all__ = [
    # Core
    "TaskDispatcher",
    "DispatchResult",
    "ExecutionMode",
    "StopResult",
    "FlotillaConfig",
    "configure_logging",
    # Fleets and deployments
    "Condition",
    "DeployedTask",
    "Deployment",
    "FleetSpec",
    "Registry",
    "Status",
    "TaskRoute",
    "TaskSpec",
    "DeploymentStore",
    "ApprovalResult",
    "CleanupReport",
    # Execution
    "CancellationToken",
    "CommandBackend",
    "ExecutionBackend",
    "TaskConfig",
    "TaskResult",
    "render_command",
    "spawn_detached",
    # Streaming
    "EventType",
    "StreamBus",
    "StreamEvent",
    "StreamStats",
    "WatchOptions",
    # Context
    "CompactionReport",
    "ContextExtractor",
    "DeploymentContext",
    "TaskContext",
    # Exceptions
    "ArtifactNotFoundError",
    "BackendFailureError",
    "ConfigError",
    "CorruptArtifactError",
    "DeploymentNotFoundError",
    "ExecutionTimeoutError",
    "FleetDefinitionError",
    "FleetNotFoundError",
    "FleetShapeMismatchError",
    "FlotillaError",
    "InvalidStateError",
    "NotAwaitingApprovalError",
    "NotFoundError",
    "PersistenceError",
    "TaskNotFoundError",
]
