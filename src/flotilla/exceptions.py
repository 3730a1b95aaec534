"""
Flotilla Exception Hierarchy.

All custom exceptions inherit from FlotillaError for unified error handling.
"""

from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger(__name__)


class FlotillaError(Exception):
    """Base exception for Flotilla errors.

    All Flotilla exceptions inherit from this class to allow catching
    any orchestration error with a single except clause.

    Attributes:
        message: Human-readable error description
        context: Additional context for debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}
        self._log_error()

    def _log_error(self) -> None:
        """Log the error creation at debug level.

        Callers should log at the appropriate level when handling the exception.
        """
        logger.debug(
            f"{self.__class__.__name__}: {self.message}",
            extra={"error_context": self.context},
        )

    def __str__(self) -> str:
        if self.context:
            ctx = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} [{ctx}]"
        return self.message


class ConfigError(FlotillaError):
    """Raised for configuration errors.

    Examples:
        - Malformed config file
        - Backend command template without a {prompt} placeholder
    """


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


class NotFoundError(FlotillaError):
    """Raised when a fleet, deployment, task or artifact does not exist."""


class FleetNotFoundError(NotFoundError):
    """Raised when a fleet definition cannot be found under the fleets directory."""

    def __init__(self, fleet_id: str, context: dict[str, Any] | None = None) -> None:
        ctx = context or {}
        ctx["fleet_id"] = fleet_id
        super().__init__(f"Fleet not found: {fleet_id}", ctx)
        self.fleet_id = fleet_id


class DeploymentNotFoundError(NotFoundError):
    """Raised when a deployment id or unique id is not in the registry."""

    def __init__(self, deployment_id: str, context: dict[str, Any] | None = None) -> None:
        ctx = context or {}
        ctx["deployment_id"] = deployment_id
        super().__init__(f"Deployment not found: {deployment_id}", ctx)
        self.deployment_id = deployment_id


class TaskNotFoundError(NotFoundError):
    """Raised when a task id is not part of the fleet definition."""

    def __init__(
        self,
        task_id: str,
        fleet_id: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx = context or {}
        ctx["task_id"] = task_id
        if fleet_id:
            ctx["fleet_id"] = fleet_id
        super().__init__(f"Task not found: {task_id}", ctx)
        self.task_id = task_id
        self.fleet_id = fleet_id


class ArtifactNotFoundError(NotFoundError):
    """Raised when a task output or context artifact is missing."""

    def __init__(self, path: str, context: dict[str, Any] | None = None) -> None:
        ctx = context or {}
        ctx["path"] = path
        super().__init__(f"Artifact not found: {path}", ctx)
        self.path = path


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class InvalidStateError(FlotillaError):
    """Raised when an operation is not permitted in the deployment's current status.

    Attributes:
        status: The status the deployment was in
    """

    def __init__(
        self,
        message: str,
        status: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx = context or {}
        if status:
            ctx["status"] = status
        super().__init__(message, ctx)
        self.status = status


class NotAwaitingApprovalError(InvalidStateError):
    """Raised when approve/reject is called on a deployment that is not waiting."""


class FleetShapeMismatchError(InvalidStateError):
    """Raised when a deployment's task list no longer matches its fleet definition.

    Attributes:
        deployed_tasks: Task ids recorded on the deployment
        fleet_tasks: Task ids in the current fleet definition
    """

    def __init__(
        self,
        message: str,
        deployed_tasks: list[str],
        fleet_tasks: list[str],
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx = context or {}
        ctx["deployed_tasks"] = deployed_tasks
        ctx["fleet_tasks"] = fleet_tasks
        super().__init__(message, context=ctx)
        self.deployed_tasks = deployed_tasks
        self.fleet_tasks = fleet_tasks


class FleetDefinitionError(FlotillaError):
    """Raised when a fleet definition file is unreadable or fails validation."""


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


class BackendFailureError(FlotillaError):
    """Raised when the execution backend cannot be started or exits abnormally.

    Attributes:
        exit_code: Process exit code, when known
    """

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx = context or {}
        if exit_code is not None:
            ctx["exit_code"] = exit_code
        super().__init__(message, ctx)
        self.exit_code = exit_code


class ExecutionTimeoutError(FlotillaError):
    """Raised when a foreground task exceeds its timeout.

    Attributes:
        timeout_seconds: The timeout value that was exceeded
        task_id: The task that timed out
    """

    def __init__(
        self,
        message: str,
        timeout_seconds: float | None = None,
        task_id: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx = context or {}
        if timeout_seconds is not None:
            ctx["timeout_seconds"] = timeout_seconds
        if task_id:
            ctx["task_id"] = task_id
        super().__init__(message, ctx)
        self.timeout_seconds = timeout_seconds
        self.task_id = task_id


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class CorruptArtifactError(FlotillaError):
    """Raised when a persisted JSON artifact cannot be parsed."""

    def __init__(self, message: str, path: str, context: dict[str, Any] | None = None) -> None:
        ctx = context or {}
        ctx["path"] = path
        super().__init__(message, ctx)
        self.path = path


class PersistenceError(FlotillaError):
    """Raised when the registry or a deployment projection cannot be written."""
