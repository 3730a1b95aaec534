"""
Deployment Store - file-backed registry of fleet deployments.

Enables:
- Persistent deployment and task state across crashes
- Position-based advancement through a fleet's task pipeline
- Approval gates and bulk cleanup of finished deployments

The registry file is the single source of truth. Each deployment's
``metadata.json`` is a projection regenerated from its registry entry inside
the same locked write.
"""

from __future__ import annotations

import json
import logging
import shutil
import sys
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from pydantic import ValidationError

from flotilla.exceptions import (
    ArtifactNotFoundError,
    CorruptArtifactError,
    DeploymentNotFoundError,
    FleetDefinitionError,
    FleetNotFoundError,
    FleetShapeMismatchError,
    FlotillaError,
    NotAwaitingApprovalError,
    PersistenceError,
    TaskNotFoundError,
)
from flotilla.json_utils import read_json_file, write_json_atomic
from flotilla.models import (
    FINISHED_STATUSES,
    Condition,
    DeployedTask,
    Deployment,
    FleetSpec,
    Registry,
    Status,
    utc_now,
)

if sys.platform == "win32":
    fcntl = None
else:
    import fcntl

logger = logging.getLogger(__name__)

STOP_MARKER = ".stop"


@dataclass
class ApprovalResult:
    """Outcome of approving or rejecting a gated task."""

    deployment: Deployment
    decided_task: str
    next_task: str | None = None

    @property
    def completed(self) -> bool:
        return self.deployment.status == Status.COMPLETE


@dataclass
class CleanupReport:
    """Outcome of a bulk cleanup. Failures never abort the batch."""

    candidates: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)
    remaining: int = 0
    dry_run: bool = False


class DeploymentStore:
    """File-backed persistence for fleet deployments.

    Usage:
        store = DeploymentStore(".flotilla")
        deployment = store.create("code-change", "Add a health endpoint")
        store.set_task_status(deployment.id, "analyze", Status.COMPLETE)
        store.advance(deployment.id, Status.ACTIVE, current_task="implement")

        # Later, from another process
        deployment = store.get(deployment.unique_id)
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.fleets_dir = self.root / "fleets"
        self.deployed_dir = self.root / "deployed"
        self.registry_path = self.deployed_dir / "registry.json"
        self._lock_path = self.deployed_dir / "registry.lock"
        self._lock = threading.RLock()
        self._lock_depth = 0

    # --- Locking and persistence ---

    @contextmanager
    def _locked(self) -> Iterator[None]:
        """Serialize registry read-modify-write across threads and processes."""
        with self._lock:
            if self._lock_depth:
                self._lock_depth += 1
                try:
                    yield
                finally:
                    self._lock_depth -= 1
                return

            try:
                self.deployed_dir.mkdir(parents=True, exist_ok=True)
                handle = open(self._lock_path, "a+")
            except OSError as exc:
                raise PersistenceError(
                    f"Cannot open registry lock: {exc}", {"path": str(self._lock_path)}
                ) from exc
            try:
                if fcntl is not None:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
                self._lock_depth = 1
                try:
                    yield
                finally:
                    self._lock_depth = 0
                    if fcntl is not None:
                        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
            finally:
                handle.close()

    def _read_registry(self) -> Registry:
        if not self.registry_path.exists():
            return Registry()
        try:
            data = read_json_file(self.registry_path)
        except OSError as exc:
            raise PersistenceError(
                f"Cannot read registry: {exc}", {"path": str(self.registry_path)}
            ) from exc
        try:
            return Registry.from_dict(data)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise CorruptArtifactError(
                f"Registry has an unexpected shape: {exc}", str(self.registry_path)
            ) from exc

    def _write_registry(self, registry: Registry) -> None:
        try:
            write_json_atomic(self.registry_path, registry.to_dict())
        except OSError as exc:
            raise PersistenceError(
                f"Cannot write registry: {exc}", {"path": str(self.registry_path)}
            ) from exc

    def _write_metadata(self, deployment: Deployment) -> None:
        path = self.deployment_dir(deployment.id) / "metadata.json"
        try:
            write_json_atomic(path, deployment.to_dict())
        except OSError as exc:
            raise PersistenceError(
                f"Cannot write deployment metadata: {exc}", {"path": str(path)}
            ) from exc

    @contextmanager
    def _transaction(self) -> Iterator[Registry]:
        """Load the registry, let the caller mutate it, then save it whole.

        Nothing is written if the body raises.
        """
        with self._locked():
            registry = self._read_registry()
            yield registry
            self._write_registry(registry)

    @contextmanager
    def _mutate(self, identifier: int | str) -> Iterator[Deployment]:
        with self._locked():
            with self._transaction() as registry:
                deployment = registry.find(identifier)
                if deployment is None:
                    raise DeploymentNotFoundError(str(identifier))
                yield deployment
            self._write_metadata(deployment)

    # --- Paths ---

    def deployment_dir(self, deployment_id: int | str) -> Path:
        return self.deployed_dir / str(deployment_id)

    def resolve_dir(self, identifier: int | str) -> Path:
        """Deployment directory for a numeric id or a unique id."""
        text = str(identifier).strip()
        if text.isdigit():
            return self.deployment_dir(int(text))
        return self.deployment_dir(self.require(text).id)

    def task_output_path(self, identifier: int | str, task_id: str) -> Path:
        return self.resolve_dir(identifier) / "outputs" / f"{task_id}.md"

    def stop_marker_path(self, identifier: int | str) -> Path:
        return self.resolve_dir(identifier) / STOP_MARKER

    # --- Fleet catalog ---

    def fleet_path(self, fleet_id: str) -> Path | None:
        """Locate a fleet definition, preferring ``fleets/<id>/<id>.json``."""
        for candidate in (
            self.fleets_dir / fleet_id / f"{fleet_id}.json",
            self.fleets_dir / f"{fleet_id}.json",
        ):
            if candidate.is_file():
                return candidate
        return None

    def load_fleet(self, fleet_id: str) -> FleetSpec:
        path = self.fleet_path(fleet_id)
        if path is None:
            raise FleetNotFoundError(fleet_id)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            raise FleetDefinitionError(
                f"Cannot read fleet definition: {exc}", {"path": str(path)}
            ) from exc
        try:
            return FleetSpec.model_validate(data)
        except ValidationError as exc:
            err = exc.errors(include_url=False)[0]
            loc = ".".join(str(part) for part in err.get("loc", ()))
            raise FleetDefinitionError(
                f"Invalid fleet definition: {loc} {err.get('msg', 'is invalid')}".strip(),
                {"path": str(path)},
            ) from exc

    def list_fleets(self) -> list[FleetSpec]:
        """All valid fleet definitions. Invalid ones are logged and skipped."""
        if not self.fleets_dir.exists():
            return []
        ids: set[str] = set()
        for entry in self.fleets_dir.iterdir():
            if entry.is_dir() and (entry / f"{entry.name}.json").is_file():
                ids.add(entry.name)
            elif entry.is_file() and entry.suffix == ".json":
                ids.add(entry.stem)
        fleets: list[FleetSpec] = []
        for fleet_id in sorted(ids):
            try:
                fleets.append(self.load_fleet(fleet_id))
            except FleetDefinitionError as exc:
                logger.warning("Skipping fleet %s: %s", fleet_id, exc)
        return fleets

    def add_fleet(self, definition: dict[str, Any] | FleetSpec) -> FleetSpec:
        """Validate a fleet definition and install it under ``fleets/<id>/``."""
        if isinstance(definition, FleetSpec):
            fleet = definition
        else:
            try:
                fleet = FleetSpec.model_validate(definition)
            except ValidationError as exc:
                raise FleetDefinitionError(f"Invalid fleet definition: {exc}") from exc
        path = self.fleets_dir / fleet.id / f"{fleet.id}.json"
        try:
            write_json_atomic(path, fleet.model_dump(by_alias=True, exclude_none=True, mode="json"))
        except OSError as exc:
            raise PersistenceError(f"Cannot write fleet definition: {exc}", {"path": str(path)}) from exc
        return fleet

    # --- Deployment lifecycle ---

    def create(self, fleet_id: str, request: str) -> Deployment:
        """Create a deployment of ``fleet_id`` with its first task active."""
        fleet = self.load_fleet(fleet_id)
        now = utc_now()
        first = fleet.tasks[0]

        with self._locked():
            with self._transaction() as registry:
                new_id = registry.allocate_id()
                count = sum(1 for d in registry.deployments if d.fleet_id == fleet_id) + 1
                date = datetime.now(timezone.utc).strftime("%Y%m%d")
                unique_id = f"{fleet_id}-{count:03d}-{date}"
                while registry.find(unique_id) is not None:
                    count += 1
                    unique_id = f"{fleet_id}-{count:03d}-{date}"

                tasks = [
                    DeployedTask(
                        task_id=task.id,
                        status=Status.ACTIVE if i == 0 else Status.PENDING,
                        deployed_at=now if i == 0 else "",
                    )
                    for i, task in enumerate(fleet.tasks)
                ]
                deployment = Deployment(
                    id=new_id,
                    unique_id=unique_id,
                    fleet_id=fleet.id,
                    request=request,
                    current_task=first.id,
                    status=Status.ACTIVE,
                    current_agent=first.agent,
                    deployed_at=now,
                    tasks=tasks,
                )
                registry.deployments.append(deployment)

                path = self.deployment_dir(new_id)
                try:
                    (path / "outputs").mkdir(parents=True, exist_ok=True)
                    (path / "request.md").write_text(request, encoding="utf-8")
                except OSError as exc:
                    raise PersistenceError(
                        f"Cannot create deployment directory: {exc}", {"path": str(path)}
                    ) from exc
            self._write_metadata(deployment)

        logger.info(
            "Created deployment %s (%s) of fleet %s", new_id, unique_id, fleet_id,
            extra={"deployment_id": new_id},
        )
        return deployment

    def get(self, identifier: int | str) -> Deployment | None:
        """Look up a deployment by numeric id or unique id."""
        return self._read_registry().find(identifier)

    def require(self, identifier: int | str) -> Deployment:
        deployment = self.get(identifier)
        if deployment is None:
            raise DeploymentNotFoundError(str(identifier))
        return deployment

    def list_deployments(self, status: Status | str | None = None) -> list[Deployment]:
        deployments = self._read_registry().deployments
        if status is None:
            return deployments
        wanted = Status(status)
        return [d for d in deployments if d.status == wanted]

    def _check_shape(self, deployment: Deployment, fleet: FleetSpec) -> None:
        if deployment.task_ids != fleet.task_ids:
            raise FleetShapeMismatchError(
                f"Deployment {deployment.id} no longer matches fleet {fleet.id}",
                deployed_tasks=deployment.task_ids,
                fleet_tasks=fleet.task_ids,
            )

    def _apply_advance(
        self,
        deployment: Deployment,
        fleet: FleetSpec,
        status: Status,
        current_task: str | None,
        current_agent: str | None,
        now: str,
    ) -> None:
        if current_task is not None:
            target_index = fleet.index(current_task)
            if target_index < 0:
                raise TaskNotFoundError(current_task, fleet.id)
            # Completion is decided by fleet position, never by timestamps.
            for task in deployment.tasks:
                if fleet.index(task.task_id) < target_index:
                    task.status = Status.COMPLETE
                    if not task.completed_at:
                        task.completed_at = now
            target = deployment.task(current_task)
            if target is not None and target.status == Status.PENDING:
                target.status = (
                    Status.AWAITING_APPROVAL if status == Status.AWAITING_APPROVAL else Status.ACTIVE
                )
                if not target.deployed_at:
                    target.deployed_at = now
            deployment.current_task = current_task
            spec = fleet.task(current_task)
            deployment.current_agent = current_agent or (spec.agent if spec else None)
        elif current_agent:
            deployment.current_agent = current_agent

        deployment.status = status
        if status == Status.COMPLETE:
            if not deployment.completed_at:
                deployment.completed_at = now
            for task in deployment.tasks:
                task.status = Status.COMPLETE
                if not task.completed_at:
                    task.completed_at = now

    def advance(
        self,
        identifier: int | str,
        status: Status | str,
        current_task: str | None = None,
        current_agent: str | None = None,
    ) -> Deployment:
        """Move a deployment to ``status``, optionally making ``current_task`` current.

        Every task before ``current_task`` in fleet order is marked complete.
        Applying the same transition twice leaves the same state.
        """
        status = Status(status)
        fleet = self.load_fleet(self.require(identifier).fleet_id)
        with self._mutate(identifier) as deployment:
            self._check_shape(deployment, fleet)
            self._apply_advance(deployment, fleet, status, current_task, current_agent, utc_now())
        logger.debug(
            "Advanced deployment %s to %s (current task %s)",
            deployment.id, status.value, deployment.current_task,
        )
        return deployment

    def set_task_status(
        self,
        identifier: int | str,
        task_id: str,
        status: Status | str,
    ) -> Deployment:
        """Update one task's status, appending an entry if the task is unknown."""
        status = Status(status)
        now = utc_now()
        with self._mutate(identifier) as deployment:
            task = deployment.task(task_id)
            if task is None:
                task = DeployedTask(task_id=task_id)
                deployment.tasks.append(task)
            task.status = status
            if status in FINISHED_STATUSES:
                task.completed_at = now
            elif status == Status.ACTIVE:
                task.completed_at = ""
                if not task.deployed_at:
                    task.deployed_at = now
        return deployment

    def set_task_process(self, identifier: int | str, task_id: str, pid: int) -> Deployment:
        """Record the backend process running a task.

        A pending task becomes active. Any other status is left alone, since a
        detached runner may already have finished the task by the time its
        parent records the pid.
        """
        now = utc_now()
        with self._mutate(identifier) as deployment:
            task = deployment.task(task_id)
            if task is None:
                raise TaskNotFoundError(task_id, deployment.fleet_id)
            task.pid = pid
            if not task.started_at or task.status in (Status.PENDING, Status.ACTIVE):
                task.started_at = now
            if task.status == Status.PENDING:
                task.status = Status.ACTIVE
            if not task.deployed_at:
                task.deployed_at = now
        return deployment

    def reset_tasks(self, identifier: int | str) -> Deployment:
        """Return every task to pending, for a restart from the first task."""
        with self._mutate(identifier) as deployment:
            for task in deployment.tasks:
                task.status = Status.PENDING
                task.deployed_at = ""
                task.completed_at = ""
                task.started_at = None
                task.pid = None
            deployment.completed_at = ""
        return deployment

    # --- Approval gates ---

    def approve(self, identifier: int | str) -> ApprovalResult:
        """Approve the task a deployment is waiting on and route onward."""
        fleet = self.load_fleet(self.require(identifier).fleet_id)
        now = utc_now()
        with self._mutate(identifier) as deployment:
            if deployment.status != Status.AWAITING_APPROVAL:
                raise NotAwaitingApprovalError(
                    f"Deployment {deployment.id} is not awaiting approval",
                    status=deployment.status.value,
                    context={"deployment_id": deployment.id},
                )
            self._check_shape(deployment, fleet)
            decided = deployment.current_task
            current = deployment.task(decided)
            if current is not None:
                current.status = Status.COMPLETE
                if not current.completed_at:
                    current.completed_at = now

            spec = fleet.task(decided)
            edge = spec.route(Condition.APPROVED, Condition.SUCCESS) if spec else None
            next_task: str | None = None
            if edge is None or edge.is_terminal:
                self._apply_advance(deployment, fleet, Status.COMPLETE, None, None, now)
            else:
                next_task = edge.task_id
                self._activate(deployment, next_task, now)
                self._apply_advance(deployment, fleet, Status.ACTIVE, next_task, None, now)

        logger.info("Approved task %s of deployment %s", decided, deployment.id)
        return ApprovalResult(deployment=deployment, decided_task=decided, next_task=next_task)

    def reject(self, identifier: int | str) -> ApprovalResult:
        """Reject the task a deployment is waiting on.

        Follows the ``rejected`` route when the task declares one; otherwise the
        deployment fails.
        """
        fleet = self.load_fleet(self.require(identifier).fleet_id)
        now = utc_now()
        with self._mutate(identifier) as deployment:
            if deployment.status != Status.AWAITING_APPROVAL:
                raise NotAwaitingApprovalError(
                    f"Deployment {deployment.id} is not awaiting approval",
                    status=deployment.status.value,
                    context={"deployment_id": deployment.id},
                )
            self._check_shape(deployment, fleet)
            decided = deployment.current_task
            current = deployment.task(decided)
            if current is not None:
                current.status = Status.FAILED
                current.completed_at = now

            spec = fleet.task(decided)
            edge = spec.route(Condition.REJECTED) if spec else None
            next_task: str | None = None
            if edge is None:
                deployment.status = Status.FAILED
                deployment.completed_at = now
            elif edge.is_terminal:
                self._apply_advance(deployment, fleet, Status.COMPLETE, None, None, now)
            else:
                next_task = edge.task_id
                self._activate(deployment, next_task, now)
                self._apply_advance(deployment, fleet, Status.ACTIVE, next_task, None, now)

        logger.info("Rejected task %s of deployment %s", decided, deployment.id)
        return ApprovalResult(deployment=deployment, decided_task=decided, next_task=next_task)

    @staticmethod
    def _activate(deployment: Deployment, task_id: str, now: str) -> None:
        # A route may point back to a task that already ran.
        task = deployment.task(task_id)
        if task is not None:
            task.status = Status.ACTIVE
            task.deployed_at = now
            task.completed_at = ""

    # --- Outputs ---

    def save_task_output(self, identifier: int | str, task_id: str, content: str) -> Path:
        path = self.task_output_path(identifier, task_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except OSError as exc:
            raise PersistenceError(f"Cannot write task output: {exc}", {"path": str(path)}) from exc
        return path

    def load_task_output(self, identifier: int | str, task_id: str) -> str:
        path = self.task_output_path(identifier, task_id)
        if not path.is_file():
            raise ArtifactNotFoundError(str(path))
        return path.read_text(encoding="utf-8")

    # --- Cooperative cancellation ---

    def request_stop(self, identifier: int | str) -> Path:
        path = self.stop_marker_path(identifier)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(utc_now(), encoding="utf-8")
        return path

    def clear_stop(self, identifier: int | str) -> None:
        self.stop_marker_path(identifier).unlink(missing_ok=True)

    def stop_requested(self, identifier: int | str) -> bool:
        return self.stop_marker_path(identifier).exists()

    # --- Cleanup ---

    def cleanup(self, identifier: int | str, keep_outputs: bool = False) -> Deployment:
        """Remove a deployment's files and its registry entry.

        With ``keep_outputs`` the ``outputs/`` directory stays on disk.
        """
        with self._locked():
            deployment = self.require(identifier)
            path = self.deployment_dir(deployment.id)
            try:
                if path.exists():
                    if keep_outputs:
                        for child in path.iterdir():
                            if child.name == "outputs":
                                continue
                            if child.is_dir():
                                shutil.rmtree(child)
                            else:
                                child.unlink()
                    else:
                        shutil.rmtree(path)
            except OSError as exc:
                raise PersistenceError(
                    f"Cannot remove deployment files: {exc}", {"path": str(path)}
                ) from exc
            with self._transaction() as registry:
                registry.deployments = [d for d in registry.deployments if d.id != deployment.id]

        logger.info("Removed deployment %s", deployment.id)
        return deployment

    def cleanup_all_completed(self, force: bool = False) -> CleanupReport:
        """Remove every deployment whose status is ``complete``.

        Without ``force`` nothing is removed and the report lists candidates.
        """
        deployments = self.list_deployments()
        candidates = [d for d in deployments if d.status == Status.COMPLETE]
        report = CleanupReport(
            candidates=[str(d.id) for d in candidates],
            remaining=len(deployments) - len(candidates),
            dry_run=not force,
        )
        if not force:
            report.remaining = len(deployments)
            return report

        for deployment in candidates:
            try:
                self.cleanup(deployment.id)
            except FlotillaError as exc:
                logger.warning("Failed to remove deployment %s: %s", deployment.id, exc)
                report.failures[str(deployment.id)] = str(exc)
                report.remaining += 1
            else:
                report.removed.append(str(deployment.id))
        return report

    # --- Reporting ---

    def summary(self, identifier: int | str) -> str:
        """Markdown summary of a deployment and its task outputs."""
        deployment = self.require(identifier)
        lines = [
            f"# Deployment {deployment.id} ({deployment.unique_id})",
            "",
            f"- Fleet: {deployment.fleet_id}",
            f"- Status: {deployment.status.value}",
            f"- Current task: {deployment.current_task}",
            f"- Deployed: {deployment.deployed_at}",
        ]
        if deployment.completed_at:
            lines.append(f"- Completed: {deployment.completed_at}")
            duration = _duration_seconds(deployment.deployed_at, deployment.completed_at)
            if duration is not None:
                lines.append(f"- Duration: {duration:.0f}s")
        lines += ["", "## Request", "", deployment.request.strip(), "", "## Tasks", ""]

        for task in deployment.tasks:
            lines.append(f"### {task.task_id} [{task.status.value}]")
            duration = _duration_seconds(task.deployed_at, task.completed_at)
            if duration is not None:
                lines.append(f"Duration: {duration:.0f}s")
            output_path = self.deployment_dir(deployment.id) / "outputs" / f"{task.task_id}.md"
            if output_path.is_file():
                first_line = next(
                    (ln.strip() for ln in output_path.read_text(encoding="utf-8").splitlines() if ln.strip()),
                    "",
                )
                if first_line:
                    lines.append(f"Output: {first_line[:120]}")
            lines.append("")
        return "\n".join(lines).rstrip() + "\n"


def _duration_seconds(start: str, end: str) -> float | None:
    if not start or not end:
        return None
    try:
        return (datetime.fromisoformat(end) - datetime.fromisoformat(start)).total_seconds()
    except ValueError:
        return None
