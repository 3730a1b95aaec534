"""
Task Dispatcher - runs fleet tasks and drives deployments through their pipeline.

The dispatcher loads a deployment and its fleet, invokes the execution backend
for the current task (in the foreground, or as a detached OS process), then
evaluates the task's outgoing routes and advances the store. In the
foreground, success chains straight into the next task.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable

from flotilla.backend import (
    CancellationToken,
    CommandBackend,
    DetachedProcess,
    ExecutionBackend,
    TaskConfig,
    TaskResult,
    process_alive,
    signal_process,
    spawn_detached,
    wait_for_exit,
)
from flotilla.config import FlotillaConfig
from flotilla.context import ContextExtractor
from flotilla.exceptions import (
    BackendFailureError,
    ConfigError,
    ExecutionTimeoutError,
    InvalidStateError,
    TaskNotFoundError,
)
from flotilla.models import Condition, Deployment, FleetSpec, Status, TaskSpec
from flotilla.store import ApprovalResult, DeploymentStore
from flotilla.stream import EventType, StreamBus

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124


class ExecutionMode(str, Enum):
    FOREGROUND = "foreground"
    DETACHED = "detached"


@dataclass
class DispatchResult:
    """Outcome of running a task, or of the chain it started."""

    success: bool
    deployment_id: str
    task_id: str
    message: str = ""
    error: str | None = None
    status: Status | None = None
    task_result: TaskResult | None = None
    detached: bool = False
    pid: int | None = None
    tasks_run: list[str] = field(default_factory=list)


@dataclass
class StopResult:
    deployment_id: str
    cancelled_task: str | None = None
    signalled: list[int] = field(default_factory=list)
    killed: list[int] = field(default_factory=list)


Spawner = Callable[..., DetachedProcess]


class TaskDispatcher:
    """Coordinate the store, stream bus, backend and context extractor.

    Usage:
        dispatcher = TaskDispatcher.from_config(FlotillaConfig.load())
        result = await dispatcher.deploy("code-change", "Add a health endpoint")

        # After a crash or a stop
        result = await dispatcher.resume(result.deployment_id)
    """

    def __init__(
        self,
        store: DeploymentStore,
        bus: StreamBus,
        backend: ExecutionBackend,
        *,
        config: FlotillaConfig | None = None,
        extractor: ContextExtractor | None = None,
        spawner: Spawner = spawn_detached,
        config_file: str | Path | None = None,
        detached_child: bool = False,
    ) -> None:
        self.store = store
        self.bus = bus
        self.backend = backend
        self.config = config or FlotillaConfig(root=str(store.root))
        self.extractor = extractor or ContextExtractor(store.root)
        self._spawner = spawner
        self._config_file = config_file
        self._detached_child = detached_child
        self._tokens: dict[tuple[str, str], CancellationToken] = {}

    @classmethod
    def from_config(
        cls,
        config: FlotillaConfig,
        *,
        config_file: str | Path | None = None,
        detached_child: bool = False,
    ) -> TaskDispatcher:
        root = config.root_path
        store = DeploymentStore(root)
        bus = StreamBus(root, poll_interval=config.watch_poll_interval)
        extractor = ContextExtractor(root)
        backend = CommandBackend(
            root,
            config.backend_command,
            bus,
            extractor=extractor,
            grace_seconds=config.stop_grace_seconds,
        )
        return cls(
            store,
            bus,
            backend,
            config=config,
            extractor=extractor,
            config_file=config_file,
            detached_child=detached_child,
        )

    # --- Deploy and execute ---

    async def deploy(
        self,
        fleet_id: str,
        request: str,
        mode: ExecutionMode = ExecutionMode.FOREGROUND,
    ) -> DispatchResult:
        """Create a deployment and run its first task."""
        deployment = self.store.create(fleet_id, request)
        return await self.execute_task(deployment.id, deployment.current_task, mode=mode)

    async def execute_task(
        self,
        deployment_id: int | str,
        task_id: str | None = None,
        agent_type: str | None = None,
        request: str | None = None,
        mode: ExecutionMode = ExecutionMode.FOREGROUND,
        *,
        context: str | None = None,
        prompt: str | None = None,
    ) -> DispatchResult:
        """Run one task of a deployment.

        ``request`` defaults to the deployment's request. ``context`` is extra
        text, such as a resumption summary, placed before the request.
        ``prompt`` replaces the built prompt entirely; the detached runner uses
        it to run exactly what its parent prepared.
        """
        deployment = self.store.require(deployment_id)
        if deployment.status == Status.COMPLETE:
            raise InvalidStateError(
                f"Deployment {deployment.id} is already complete", status=deployment.status.value
            )
        if self.store.stop_requested(deployment.id) and not self._detached_child:
            raise InvalidStateError(
                f"Deployment {deployment.id} was stopped; resume it instead",
                status=deployment.status.value,
            )

        fleet = self.store.load_fleet(deployment.fleet_id)
        task_id = task_id or deployment.current_task
        spec = fleet.task(task_id)
        if spec is None:
            raise TaskNotFoundError(task_id, fleet.id)
        agent = agent_type or spec.agent

        self.store.set_task_status(deployment.id, task_id, Status.ACTIVE)
        if prompt is None:
            prompt = self.build_prompt(deployment, spec, request, context=context)
        task_config = TaskConfig(
            deployment_id=str(deployment.id),
            task_id=task_id,
            agent_type=agent,
            prompt=prompt,
            timeout=spec.timeout or self.config.task_timeout,
            max_turns=self.config.max_turns,
            model=self.config.model,
        )

        if mode == ExecutionMode.DETACHED:
            return self._run_detached(task_config)
        return await self._run_foreground(deployment, fleet, spec, task_config, request)

    def _run_detached(self, task_config: TaskConfig) -> DispatchResult:
        process = self._spawner(self.store.root, task_config, config_file=self._config_file)
        self.store.set_task_process(task_config.deployment_id, task_config.task_id, process.pid)
        message = f"Task {task_config.task_id} running in background (pid {process.pid})"
        self.bus.append(
            task_config.deployment_id,
            task_config.task_id,
            EventType.STATUS,
            {"status": "detached", "message": message, "pid": process.pid},
        )
        return DispatchResult(
            success=True,
            deployment_id=task_config.deployment_id,
            task_id=task_config.task_id,
            message=message,
            status=Status.ACTIVE,
            detached=True,
            pid=process.pid,
            tasks_run=[task_config.task_id],
        )

    async def _run_foreground(
        self,
        deployment: Deployment,
        fleet: FleetSpec,
        spec: TaskSpec,
        task_config: TaskConfig,
        request: str | None,
    ) -> DispatchResult:
        deployment_id = task_config.deployment_id
        if self._detached_child:
            self.store.set_task_process(deployment_id, spec.id, os.getpid())

        token = CancellationToken(self.store.stop_marker_path(deployment.id))
        key = (deployment_id, spec.id)
        self._tokens[key] = token
        self.bus.append(
            deployment_id,
            spec.id,
            EventType.STATUS,
            {"status": "running", "message": f"Running {spec.id} with {task_config.agent_type}"},
        )
        logger.info(
            "Executing task %s of deployment %s", spec.id, deployment_id,
            extra={"deployment_id": deployment_id, "task_id": spec.id},
        )

        try:
            result = await asyncio.wait_for(
                self.backend.run(task_config, token), timeout=task_config.timeout
            )
        except asyncio.TimeoutError:
            error = ExecutionTimeoutError(
                f"Task {spec.id} timed out after {task_config.timeout:g}s",
                timeout_seconds=task_config.timeout,
                task_id=spec.id,
            )
            self.bus.append(deployment_id, spec.id, EventType.ERROR, {"message": error.message})
            result = TaskResult(
                success=False, error=error.message, exit_code=TIMEOUT_EXIT_CODE, timed_out=True
            )
        except (BackendFailureError, ConfigError) as exc:
            self.bus.append(deployment_id, spec.id, EventType.ERROR, {"message": str(exc)})
            result = TaskResult(success=False, error=str(exc), exit_code=getattr(exc, "exit_code", None))
        finally:
            self._tokens.pop(key, None)

        return await self._handle_completion(deployment_id, fleet, spec, result, request)

    async def _handle_completion(
        self,
        deployment_id: str,
        fleet: FleetSpec,
        spec: TaskSpec,
        result: TaskResult,
        request: str | None,
    ) -> DispatchResult:
        outcome = DispatchResult(
            success=result.success,
            deployment_id=deployment_id,
            task_id=spec.id,
            error=result.error,
            task_result=result,
            tasks_run=[spec.id],
        )

        if result.cancelled or self.store.stop_requested(deployment_id):
            # stop() has already recorded the cancellation.
            outcome.success = False
            outcome.message = f"Task {spec.id} cancelled"
            outcome.error = outcome.error or "cancelled"
            outcome.status = Status.CANCELLED
            return outcome

        if not result.success:
            self.store.set_task_status(deployment_id, spec.id, Status.FAILED)
            self.bus.append(
                deployment_id, spec.id, EventType.STATUS,
                {"status": "failed", "message": f"Task {spec.id} failed: {result.error}"},
            )
            logger.warning("Task %s of deployment %s failed: %s", spec.id, deployment_id, result.error)
            outcome.message = f"Task {spec.id} failed"
            outcome.status = self.store.require(deployment_id).status
            return outcome

        if spec.requires_approval:
            self.store.set_task_status(deployment_id, spec.id, Status.AWAITING_APPROVAL)
            self.store.advance(deployment_id, Status.AWAITING_APPROVAL, spec.id)
            self.bus.append(
                deployment_id, spec.id, EventType.STATUS,
                {"status": "awaiting_approval", "message": f"Task {spec.id} is awaiting approval"},
            )
            outcome.message = f"Task {spec.id} complete; awaiting approval"
            outcome.status = Status.AWAITING_APPROVAL
            return outcome

        self.store.set_task_status(deployment_id, spec.id, Status.COMPLETE)
        edge = spec.route(Condition.SUCCESS)
        if edge is None or edge.is_terminal:
            self.store.advance(deployment_id, Status.COMPLETE)
            self.bus.append(
                deployment_id, spec.id, EventType.STATUS,
                {"status": "complete", "message": "Deployment complete"},
            )
            logger.info("Deployment %s complete", deployment_id)
            outcome.message = "Deployment complete"
            outcome.status = Status.COMPLETE
            return outcome

        next_spec = fleet.task(edge.task_id)
        if next_spec is None:
            raise TaskNotFoundError(edge.task_id, fleet.id)
        self.store.advance(deployment_id, Status.ACTIVE, next_spec.id, next_spec.agent)
        self.bus.append(
            deployment_id, spec.id, EventType.STATUS,
            {"status": "complete", "message": f"Task {spec.id} complete; next: {next_spec.id}"},
        )

        chained = await self.execute_task(
            deployment_id, next_spec.id, next_spec.agent, request, ExecutionMode.FOREGROUND
        )
        chained.tasks_run = [spec.id] + chained.tasks_run
        return chained

    # --- Prompt construction ---

    def build_prompt(
        self,
        deployment: Deployment,
        spec: TaskSpec,
        request: str | None = None,
        *,
        context: str | None = None,
    ) -> str:
        """Task description, prior outputs named by ``inputs``, then the request."""
        request = self.augment_request(deployment.id, spec, deployment.request if request is None else request)
        lines = [f"# Task: {spec.id}"]
        if spec.description:
            lines += ["", spec.description]

        for source in spec.inputs:
            if source.type != "output" or not source.source:
                continue
            content = self._read_output(deployment.id, source.source)
            if content is not None:
                lines += ["", f"## Input from {source.source}", "", content.strip()]

        if context:
            lines += ["", context.strip()]
        lines += ["", "## Request", "", request.strip()]
        return "\n".join(lines) + "\n"

    def augment_request(self, deployment_id: int | str, spec: TaskSpec, request: str) -> str:
        """Append the prior outputs a task declares as ``file`` inputs."""
        sections = [request]
        for source in spec.inputs:
            if source.type != "file" or not source.source:
                continue
            name = source.source[:-3] if source.source.endswith(".md") else source.source
            content = self._read_output(deployment_id, name)
            if content is not None:
                sections.append(f"## Previous Task Output: {name}\n\n{content.strip()}")
        return "\n\n".join(sections)

    def _read_output(self, deployment_id: int | str, task_id: str) -> str | None:
        path = self.store.deployment_dir(deployment_id) / "outputs" / f"{task_id}.md"
        if not path.is_file():
            logger.debug("No output from %s for deployment %s", task_id, deployment_id)
            return None
        return path.read_text(encoding="utf-8")

    # --- Approval ---

    async def approve(
        self,
        deployment_id: int | str,
        run_next: bool = False,
        mode: ExecutionMode = ExecutionMode.FOREGROUND,
    ) -> tuple[ApprovalResult, DispatchResult | None]:
        """Approve the waiting task; with ``run_next`` start the task it routes to."""
        approval = self.store.approve(deployment_id)
        self.bus.append(
            approval.deployment.id, approval.decided_task, EventType.STATUS,
            {"status": "approved", "message": f"Task {approval.decided_task} approved"},
        )
        dispatch = None
        if run_next and approval.next_task:
            dispatch = await self.execute_task(approval.deployment.id, approval.next_task, mode=mode)
        return approval, dispatch

    async def reject(
        self,
        deployment_id: int | str,
        run_next: bool = False,
        mode: ExecutionMode = ExecutionMode.FOREGROUND,
    ) -> tuple[ApprovalResult, DispatchResult | None]:
        approval = self.store.reject(deployment_id)
        self.bus.append(
            approval.deployment.id, approval.decided_task, EventType.STATUS,
            {"status": "rejected", "message": f"Task {approval.decided_task} rejected"},
        )
        dispatch = None
        if run_next and approval.next_task:
            dispatch = await self.execute_task(approval.deployment.id, approval.next_task, mode=mode)
        return approval, dispatch

    # --- Stop and resume ---

    async def stop(self, deployment_id: int | str, force: bool = False) -> StopResult:
        """Cancel a deployment: marker file, in-process tokens, then signals to tracked pids."""
        deployment = self.store.require(deployment_id)
        if deployment.status in (Status.COMPLETE, Status.FAILED):
            raise InvalidStateError(
                f"Deployment {deployment.id} is already {deployment.status.value}",
                status=deployment.status.value,
            )

        self.store.request_stop(deployment.id)
        for (dep_id, _), token in list(self._tokens.items()):
            if dep_id == str(deployment.id):
                token.cancel()

        result = StopResult(deployment_id=str(deployment.id), cancelled_task=deployment.current_task)
        own_pid = os.getpid()
        for task in deployment.tasks:
            if not task.pid or task.pid == own_pid:
                continue
            if task.status not in (Status.ACTIVE, Status.AWAITING_APPROVAL):
                continue
            if process_alive(task.pid) and signal_process(task.pid, force=force, group=True):
                result.signalled.append(task.pid)

        if not force:
            for pid in result.signalled:
                if not await wait_for_exit(pid, self.config.stop_grace_seconds):
                    logger.warning("Process %s ignored SIGTERM; sending SIGKILL", pid)
                    if signal_process(pid, force=True, group=True):
                        result.killed.append(pid)

        current = deployment.task(deployment.current_task)
        if current is not None and current.status != Status.COMPLETE:
            self.store.set_task_status(deployment.id, deployment.current_task, Status.CANCELLED)
        self.store.advance(deployment.id, Status.CANCELLED)
        self.bus.append(
            deployment.id, deployment.current_task, EventType.STATUS,
            {"status": "cancelled", "message": "Deployment stopped"},
        )
        logger.info("Stopped deployment %s", deployment.id)
        return result

    def _resume_task(self, deployment: Deployment, fleet: FleetSpec) -> str:
        current = deployment.task(deployment.current_task)
        if current is not None and current.status != Status.COMPLETE:
            return current.task_id
        for task in deployment.tasks:
            if task.status != Status.COMPLETE:
                return task.task_id
        return deployment.current_task or fleet.tasks[0].id

    async def resume(
        self,
        deployment_id: int | str,
        from_start: bool = False,
        mode: ExecutionMode = ExecutionMode.FOREGROUND,
    ) -> DispatchResult:
        """Retry a stopped or failed deployment from its current task.

        The task's prompt carries a summary of the work done so far. With
        ``from_start`` every task is reset and the first one runs afresh.
        """
        deployment = self.store.require(deployment_id)
        current = deployment.task(deployment.current_task)
        current_failed = current is not None and current.status == Status.FAILED
        if deployment.status == Status.COMPLETE:
            raise InvalidStateError(
                f"Deployment {deployment.id} is already complete", status=deployment.status.value
            )
        if not from_start:
            if deployment.status == Status.ACTIVE and not current_failed:
                raise InvalidStateError(
                    f"Deployment {deployment.id} is still active; stop it before resuming",
                    status=deployment.status.value,
                )
            if deployment.status == Status.AWAITING_APPROVAL:
                raise InvalidStateError(
                    f"Deployment {deployment.id} is awaiting approval; approve or reject it",
                    status=deployment.status.value,
                )

        fleet = self.store.load_fleet(deployment.fleet_id)
        self.store.clear_stop(deployment.id)

        context: str | None = None
        if from_start:
            self.store.reset_tasks(deployment.id)
            task_id = fleet.tasks[0].id
        else:
            task_id = self._resume_task(deployment, fleet)
        spec = fleet.task(task_id)
        if spec is None:
            raise TaskNotFoundError(task_id, fleet.id)
        self.store.advance(deployment.id, Status.ACTIVE, task_id, spec.agent)

        if not from_start:
            extracted = self.extractor.extract(deployment.id)
            self.extractor.save_cache(deployment.id, extracted)
            context = self.extractor.build_resumption_prompt(extracted)

        self.bus.append(
            deployment.id, task_id, EventType.STATUS,
            {"status": "resumed", "message": f"Resuming at task {task_id}"},
        )
        logger.info("Resuming deployment %s at task %s", deployment.id, task_id)
        return await self.execute_task(deployment.id, task_id, spec.agent, mode=mode, context=context)
