"""Fleet definitions and deployment state.

Fleet definitions are authored externally as JSON and validated with pydantic.
Deployment state lives in the registry as plain dataclasses that round-trip
through the camelCase JSON layout used on disk.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

# Route target that ends a deployment instead of naming another task.
TERMINAL = "complete"

DEFAULT_AGENT = "general-purpose"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Status(str, Enum):
    """Lifecycle status shared by deployments and their tasks."""

    PENDING = "pending"
    ACTIVE = "active"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


DeploymentStatus = Status
TaskStatus = Status

FINISHED_STATUSES = frozenset({Status.COMPLETE, Status.FAILED, Status.CANCELLED})


class Condition(str, Enum):
    """Outcome labels a task route can be taken on."""

    SUCCESS = "success"
    FAILED = "failed"
    APPROVED = "approved"
    REJECTED = "rejected"


# ---------------------------------------------------------------------------
# Fleet definitions
# ---------------------------------------------------------------------------


class InputSpec(BaseModel):
    """Where a task's input comes from.

    ``type`` is ``output`` (a prior task's output, ``source`` = task id),
    ``file`` (a prior output file such as ``analyze.md``) or ``user_prompt``
    (the deployment request).
    """

    model_config = ConfigDict(extra="ignore")

    type: str
    source: str = ""


class OutputSpec(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str
    path: str = ""


class TaskRoute(BaseModel):
    """An outgoing edge: go to ``task_id`` when ``condition`` holds."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    task_id: str = Field(validation_alias=AliasChoices("taskId", "task_id"), serialization_alias="taskId")
    condition: Condition = Condition.SUCCESS
    context: str | None = None

    @field_validator("condition", mode="before")
    @classmethod
    def _normalize_condition(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @property
    def is_terminal(self) -> bool:
        return self.task_id == TERMINAL


class TaskSpec(BaseModel):
    """One step of a fleet pipeline."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    description: str = ""
    agent: str = DEFAULT_AGENT
    inputs: list[InputSpec] = Field(default_factory=list)
    outputs: list[OutputSpec] = Field(default_factory=list)
    next_tasks: list[TaskRoute] = Field(
        default_factory=list,
        validation_alias=AliasChoices("nextTasks", "next_tasks"),
        serialization_alias="nextTasks",
    )
    requires_approval: bool = Field(
        default=False,
        validation_alias=AliasChoices("requiresApproval", "approval_required", "requires_approval"),
        serialization_alias="requiresApproval",
    )
    timeout: float | None = None

    @field_validator("id")
    @classmethod
    def _validate_id(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must be a non-empty string")
        if value.strip() == TERMINAL:
            raise ValueError(f"'{TERMINAL}' is reserved for terminal routes")
        return value.strip()

    @field_validator("timeout")
    @classmethod
    def _validate_timeout(cls, value: float | None) -> float | None:
        if value is None:
            return None
        if value <= 0:
            raise ValueError("must be greater than zero")
        return float(value)

    def route(self, *conditions: Condition | str) -> TaskRoute | None:
        """Return the first route matching the conditions, tried in order."""
        for condition in conditions:
            for edge in self.next_tasks:
                if edge.condition == condition:
                    return edge
        return None


class FleetSpec(BaseModel):
    """Immutable pipeline template loaded from ``fleets/<id>/<id>.json``."""

    model_config = ConfigDict(extra="ignore")

    id: str
    description: str = ""
    agent: str | None = None
    tasks: list[TaskSpec] = Field(min_length=1)

    @model_validator(mode="after")
    def _validate_routes(self) -> "FleetSpec":
        seen: set[str] = set()
        for task in self.tasks:
            if task.id in seen:
                raise ValueError(f"Duplicate task id in fleet: '{task.id}'")
            seen.add(task.id)
        for task in self.tasks:
            for edge in task.next_tasks:
                if not edge.is_terminal and edge.task_id not in seen:
                    raise ValueError(
                        f"Task '{task.id}' routes to unknown task '{edge.task_id}'"
                    )

        # Success routes are followed without pausing, so they must not loop.
        by_id = {task.id: task for task in self.tasks}
        for task in self.tasks:
            visited = {task.id}
            edge = task.route(Condition.SUCCESS)
            while edge is not None and not edge.is_terminal:
                if edge.task_id in visited:
                    raise ValueError(f"Success routes loop back to task '{edge.task_id}'")
                visited.add(edge.task_id)
                edge = by_id[edge.task_id].route(Condition.SUCCESS)
        return self

    @property
    def task_ids(self) -> list[str]:
        return [t.id for t in self.tasks]

    def task(self, task_id: str) -> TaskSpec | None:
        for t in self.tasks:
            if t.id == task_id:
                return t
        return None

    def index(self, task_id: str) -> int:
        """Position of a task in fleet order, or -1."""
        for i, t in enumerate(self.tasks):
            if t.id == task_id:
                return i
        return -1


# ---------------------------------------------------------------------------
# Deployment state
# ---------------------------------------------------------------------------


@dataclass
class DeployedTask:
    """Runtime state of one task within a deployment."""

    task_id: str
    status: Status = Status.PENDING
    deployed_at: str = ""
    completed_at: str = ""
    started_at: str | None = None
    pid: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "taskId": self.task_id,
            "status": self.status.value,
            "deployedAt": self.deployed_at,
            "completedAt": self.completed_at,
        }
        if self.started_at:
            data["startedAt"] = self.started_at
        if self.pid is not None:
            data["pid"] = self.pid
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DeployedTask:
        return cls(
            task_id=data["taskId"],
            status=Status(data.get("status", Status.PENDING.value)),
            deployed_at=data.get("deployedAt", ""),
            completed_at=data.get("completedAt", ""),
            started_at=data.get("startedAt"),
            pid=data.get("pid"),
        )


@dataclass
class Deployment:
    """One execution of a fleet against one request."""

    id: int
    unique_id: str
    fleet_id: str
    request: str
    current_task: str
    status: Status = Status.ACTIVE
    current_agent: str | None = None
    deployed_at: str = ""
    completed_at: str = ""
    tasks: list[DeployedTask] = field(default_factory=list)

    def task(self, task_id: str) -> DeployedTask | None:
        for t in self.tasks:
            if t.task_id == task_id:
                return t
        return None

    @property
    def task_ids(self) -> list[str]:
        return [t.task_id for t in self.tasks]

    def matches(self, identifier: int | str) -> bool:
        """True if ``identifier`` is this deployment's numeric id or unique id."""
        text = str(identifier).strip()
        return text == str(self.id) or text == self.unique_id

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "uniqueId": self.unique_id,
            "fleetId": self.fleet_id,
            "request": self.request,
            "status": self.status.value,
            "currentTask": self.current_task,
            "deployedAt": self.deployed_at,
            "completedAt": self.completed_at,
            "tasks": [t.to_dict() for t in self.tasks],
        }
        if self.current_agent:
            data["currentAgent"] = self.current_agent
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Deployment:
        return cls(
            id=int(data["id"]),
            unique_id=data.get("uniqueId") or str(data["id"]),
            fleet_id=data["fleetId"],
            request=data.get("request", ""),
            current_task=data.get("currentTask", ""),
            status=Status(data.get("status", Status.ACTIVE.value)),
            current_agent=data.get("currentAgent"),
            deployed_at=data.get("deployedAt", ""),
            completed_at=data.get("completedAt", ""),
            tasks=[DeployedTask.from_dict(t) for t in data.get("tasks", [])],
        )


@dataclass
class Registry:
    """All deployments plus the next-id counter."""

    deployments: list[Deployment] = field(default_factory=list)
    next_id: int = 1

    def find(self, identifier: int | str) -> Deployment | None:
        for deployment in self.deployments:
            if deployment.matches(identifier):
                return deployment
        return None

    def allocate_id(self) -> int:
        # Never reuse an id, even if the counter was lost or edited by hand.
        highest = max((d.id for d in self.deployments), default=0)
        new_id = max(self.next_id, highest + 1)
        self.next_id = new_id + 1
        return new_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "deployedFleets": [d.to_dict() for d in self.deployments],
            "nextId": self.next_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Registry:
        return cls(
            deployments=[Deployment.from_dict(d) for d in data.get("deployedFleets", [])],
            next_id=int(data.get("nextId", 1)),
        )
