from __future__ import annotations

import asyncio
import copy

import pytest

from flotilla.backend import CancellationToken, TaskConfig, TaskResult
from flotilla.config import FlotillaConfig
from flotilla.context import ContextExtractor
from flotilla.dispatcher import TaskDispatcher
from flotilla.store import DeploymentStore
from flotilla.stream import EventType, StreamBus

CODE_CHANGE = {
    "id": "code-change",
    "description": "Analyze, implement and review a change",
    "tasks": [
        {
            "id": "analyze",
            "agent": "explore",
            "description": "Analyze the request and list the files involved.",
            "inputs": [{"type": "user_prompt", "source": "request"}],
            "nextTasks": [{"taskId": "implement", "condition": "success"}],
        },
        {
            "id": "implement",
            "description": "Implement the change.",
            "inputs": [{"type": "output", "source": "analyze"}],
            "nextTasks": [{"taskId": "review", "condition": "success"}],
        },
        {
            "id": "review",
            "agent": "code-review",
            "description": "Review the implementation.",
            "requiresApproval": True,
            "inputs": [{"type": "file", "source": "implement.md"}],
            "nextTasks": [
                {"taskId": "complete", "condition": "approved"},
                {"taskId": "implement", "condition": "rejected"},
            ],
        },
    ],
}

TWO_STEP = {
    "id": "two-step",
    "tasks": [
        {"id": "plan", "nextTasks": [{"taskId": "build", "condition": "success"}]},
        {"id": "build", "nextTasks": [{"taskId": "complete", "condition": "success"}]},
    ],
}


class FakeBackend:
    """In-process backend that records calls and writes outputs like a real agent."""

    def __init__(self, store: DeploymentStore, bus: StreamBus) -> None:
        self.store = store
        self.bus = bus
        self.calls: list[TaskConfig] = []
        self.results: dict[str, TaskResult] = {}
        self.delays: dict[str, float] = {}
        self.started = asyncio.Event()

    async def run(self, config: TaskConfig, cancel: CancellationToken) -> TaskResult:
        self.calls.append(config)
        self.started.set()
        self.bus.append(config.deployment_id, config.task_id, EventType.AGENT_ACTIVITY,
                        {"agent": config.agent_type, "action": "started"})

        delay = self.delays.get(config.task_id, 0.0)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + delay
        while loop.time() < deadline:
            if cancel.is_cancelled():
                return TaskResult(success=False, error="Task cancelled", cancelled=True)
            await asyncio.sleep(0.01)

        result = self.results.get(
            config.task_id, TaskResult(success=True, output=f"{config.task_id} finished")
        )
        if result.output:
            self.store.save_task_output(config.deployment_id, config.task_id, result.output)
            self.bus.append(config.deployment_id, config.task_id, EventType.OUTPUT, result.output)
        return result

    def task_ids(self) -> list[str]:
        return [c.task_id for c in self.calls]


@pytest.fixture
def root(tmp_path):
    return tmp_path / ".flotilla"


@pytest.fixture
def store(root):
    store = DeploymentStore(root)
    store.add_fleet(copy.deepcopy(CODE_CHANGE))
    store.add_fleet(copy.deepcopy(TWO_STEP))
    return store


@pytest.fixture
def bus(root):
    return StreamBus(root, poll_interval=0.01)


@pytest.fixture
def backend(store, bus):
    return FakeBackend(store, bus)


@pytest.fixture
def config(root):
    return FlotillaConfig(root=str(root), stop_grace_seconds=0.1, watch_poll_interval=0.01)


@pytest.fixture
def dispatcher(store, bus, backend, config):
    return TaskDispatcher(
        store, bus, backend, config=config, extractor=ContextExtractor(store.root)
    )
