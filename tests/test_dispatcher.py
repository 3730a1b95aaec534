"""Tests for flotilla.dispatcher."""

from __future__ import annotations

import asyncio
import shlex
import sys
from unittest.mock import patch

import pytest

from flotilla.backend import CommandBackend, DetachedProcess, TaskResult
from flotilla.context import ContextExtractor, FileAccess, TaskContext
from flotilla.dispatcher import ExecutionMode, TaskDispatcher
from flotilla.exceptions import (
    DeploymentNotFoundError,
    InvalidStateError,
    NotAwaitingApprovalError,
    TaskNotFoundError,
)
from flotilla.models import Status
from flotilla.stream import EventType


def _statuses(store, deployment_id):
    return {t.task_id: t.status for t in store.require(deployment_id).tasks}


def _status_messages(bus, deployment_id, task_id):
    return [
        e.content.get("status")
        for e in bus.read_events(deployment_id, task_id)
        if e.type == EventType.STATUS
    ]


# ---------------------------------------------------------------------------
# Foreground chaining
# ---------------------------------------------------------------------------


class TestForegroundChain:
    @pytest.mark.asyncio
    async def test_chain_runs_until_approval_gate(self, dispatcher, store, backend):
        result = await dispatcher.deploy("code-change", "Add a health endpoint")

        assert result.success
        assert result.tasks_run == ["analyze", "implement", "review"]
        assert backend.task_ids() == ["analyze", "implement", "review"]
        assert result.status == Status.AWAITING_APPROVAL

        deployment = store.require(result.deployment_id)
        assert deployment.status == Status.AWAITING_APPROVAL
        assert deployment.current_task == "review"
        assert _statuses(store, deployment.id) == {
            "analyze": Status.COMPLETE,
            "implement": Status.COMPLETE,
            "review": Status.AWAITING_APPROVAL,
        }

    @pytest.mark.asyncio
    async def test_approve_before_completion_fails(self, dispatcher, store):
        deployment = store.create("code-change", "x")
        with pytest.raises(NotAwaitingApprovalError):
            await dispatcher.approve(deployment.id)

    @pytest.mark.asyncio
    async def test_approve_completes_deployment(self, dispatcher, store):
        result = await dispatcher.deploy("code-change", "x")
        approval, dispatch = await dispatcher.approve(result.deployment_id)
        assert approval.completed
        assert dispatch is None
        assert store.require(result.deployment_id).status == Status.COMPLETE

    @pytest.mark.asyncio
    async def test_reject_reruns_implementation(self, dispatcher, store, backend):
        result = await dispatcher.deploy("code-change", "x")
        approval, dispatch = await dispatcher.reject(result.deployment_id, run_next=True)
        assert approval.next_task == "implement"
        assert dispatch is not None
        assert dispatch.tasks_run == ["implement", "review"]
        assert backend.task_ids()[-2:] == ["implement", "review"]
        assert store.require(result.deployment_id).status == Status.AWAITING_APPROVAL

    @pytest.mark.asyncio
    async def test_terminal_success_route_completes(self, dispatcher, store):
        result = await dispatcher.deploy("two-step", "x")
        assert result.success
        assert result.tasks_run == ["plan", "build"]
        deployment = store.require(result.deployment_id)
        assert deployment.status == Status.COMPLETE
        assert deployment.completed_at
        assert "complete" in _status_messages(dispatcher.bus, deployment.id, "build")

    @pytest.mark.asyncio
    async def test_prompt_carries_inputs_and_request(self, dispatcher, backend):
        await dispatcher.deploy("code-change", "Add a health endpoint")
        prompts = {c.task_id: c.prompt for c in backend.calls}

        assert "# Task: analyze" in prompts["analyze"]
        assert "Add a health endpoint" in prompts["analyze"]
        assert "## Input from analyze" in prompts["implement"]
        assert "analyze finished" in prompts["implement"]
        assert "## Previous Task Output: implement" in prompts["review"]
        assert "implement finished" in prompts["review"]
        assert prompts["review"].count("implement finished") == 1

    @pytest.mark.asyncio
    async def test_agent_and_timeout_come_from_task(self, dispatcher, store, backend):
        store.add_fleet({
            "id": "slow",
            "agent": "ignored",
            "tasks": [{"id": "crunch", "agent": "analyst", "timeout": 42}],
        })
        await dispatcher.deploy("slow", "x")
        assert backend.calls[0].agent_type == "analyst"
        assert backend.calls[0].timeout == 42

    @pytest.mark.asyncio
    async def test_unknown_deployment_and_task(self, dispatcher, store):
        with pytest.raises(DeploymentNotFoundError):
            await dispatcher.execute_task(99)
        deployment = store.create("two-step", "x")
        with pytest.raises(TaskNotFoundError):
            await dispatcher.execute_task(deployment.id, "deploy")

    @pytest.mark.asyncio
    async def test_execute_on_complete_deployment(self, dispatcher, store):
        result = await dispatcher.deploy("two-step", "x")
        with pytest.raises(InvalidStateError):
            await dispatcher.execute_task(result.deployment_id, "plan")


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    @pytest.mark.asyncio
    async def test_failure_stops_chain(self, dispatcher, store, backend):
        backend.results["plan"] = TaskResult(success=False, error="boom", exit_code=2)
        result = await dispatcher.deploy("two-step", "x")

        assert not result.success
        assert result.error == "boom"
        assert backend.task_ids() == ["plan"]
        deployment = store.require(result.deployment_id)
        assert deployment.status == Status.ACTIVE
        assert deployment.task("plan").status == Status.FAILED
        assert deployment.task("build").status == Status.PENDING
        assert "failed" in _status_messages(dispatcher.bus, deployment.id, "plan")

    @pytest.mark.asyncio
    async def test_timeout_marks_task_failed(self, dispatcher, store, backend):
        store.add_fleet({"id": "slow", "tasks": [{"id": "crunch", "timeout": 0.05}]})
        backend.delays["crunch"] = 5.0
        result = await dispatcher.deploy("slow", "x")

        assert not result.success
        assert result.task_result.timed_out
        assert "timed out" in result.error
        assert store.require(result.deployment_id).task("crunch").status == Status.FAILED
        errors = [
            e for e in dispatcher.bus.read_events(result.deployment_id, "crunch")
            if e.type == EventType.ERROR
        ]
        assert errors and "timed out" in errors[0].content["message"]

    @pytest.mark.asyncio
    async def test_oversized_output_line_fails_task(self, store, bus, config):
        script = "print('x' * 5000)\nimport time\ntime.sleep(30)\n"
        command = f"{shlex.quote(sys.executable)} -c {shlex.quote(script)} {{prompt}}"
        backend = CommandBackend(store.root, command, bus, cancel_poll_interval=0.05, grace_seconds=1.0)
        dispatcher = TaskDispatcher(store, bus, backend, config=config)

        with patch("flotilla.backend.STREAM_LIMIT", 1024):
            result = await dispatcher.deploy("two-step", "x")

        assert not result.success
        assert _statuses(store, result.deployment_id) == {
            "plan": Status.FAILED,
            "build": Status.PENDING,
        }
        assert store.require(result.deployment_id).status == Status.ACTIVE


# ---------------------------------------------------------------------------
# Detached mode
# ---------------------------------------------------------------------------


class TestDetached:
    @pytest.mark.asyncio
    async def test_detached_records_pid_and_returns(self, store, bus, backend, config):
        spawned = []

        def fake_spawn(root, task_config, config_file=None):
            spawned.append(task_config)
            return DetachedProcess(pid=4242, log_path=root / "x.log", prompt_path=root / "x.md")

        dispatcher = TaskDispatcher(store, bus, backend, config=config, spawner=fake_spawn)
        result = await dispatcher.deploy("two-step", "x", mode=ExecutionMode.DETACHED)

        assert result.success
        assert result.detached
        assert result.pid == 4242
        assert backend.calls == []
        assert spawned[0].task_id == "plan"
        assert "# Task: plan" in spawned[0].prompt
        task = store.require(result.deployment_id).task("plan")
        assert task.pid == 4242
        assert task.status == Status.ACTIVE
        assert "detached" in _status_messages(bus, result.deployment_id, "plan")

    @pytest.mark.asyncio
    async def test_child_finishing_before_spawn_returns(self, store, bus, backend, config):
        def finishing_spawn(root, task_config, config_file=None):
            # The detached runner completes the whole chain before the parent records the pid.
            store.set_task_process(task_config.deployment_id, "plan", 777)
            store.set_task_status(task_config.deployment_id, "plan", Status.COMPLETE)
            store.advance(task_config.deployment_id, Status.ACTIVE, "build")
            store.set_task_status(task_config.deployment_id, "build", Status.COMPLETE)
            store.advance(task_config.deployment_id, Status.COMPLETE)
            return DetachedProcess(pid=777, log_path=root / "x.log", prompt_path=root / "x.md")

        dispatcher = TaskDispatcher(store, bus, backend, config=config, spawner=finishing_spawn)
        result = await dispatcher.deploy("two-step", "x", mode=ExecutionMode.DETACHED)

        deployment = store.require(result.deployment_id)
        assert deployment.status == Status.COMPLETE
        assert _statuses(store, deployment.id) == {"plan": Status.COMPLETE, "build": Status.COMPLETE}
        assert deployment.task("plan").completed_at
        assert deployment.task("plan").pid == 777

    @pytest.mark.asyncio
    async def test_detached_child_runs_given_prompt(self, store, bus, backend, config):
        dispatcher = TaskDispatcher(store, bus, backend, config=config, detached_child=True)
        deployment = store.create("two-step", "x")
        result = await dispatcher.execute_task(deployment.id, "plan", prompt="exact prompt")
        assert result.success
        assert backend.calls[0].prompt == "exact prompt"
        assert backend.calls[1].prompt != "exact prompt"


# ---------------------------------------------------------------------------
# Stop
# ---------------------------------------------------------------------------


class TestStop:
    @pytest.mark.asyncio
    async def test_stop_cancels_running_task(self, dispatcher, store, backend):
        backend.delays["plan"] = 5.0
        deployment = store.create("two-step", "x")
        run = asyncio.create_task(dispatcher.execute_task(deployment.id))
        await asyncio.wait_for(backend.started.wait(), timeout=2)

        stopped = await dispatcher.stop(deployment.id)
        result = await asyncio.wait_for(run, timeout=2)

        assert stopped.cancelled_task == "plan"
        assert not result.success
        assert result.status == Status.CANCELLED
        updated = store.require(deployment.id)
        assert updated.status == Status.CANCELLED
        assert updated.task("plan").status == Status.CANCELLED
        assert backend.task_ids() == ["plan"]
        assert store.stop_requested(deployment.id)

    @pytest.mark.asyncio
    async def test_stop_signals_tracked_process(self, dispatcher, store):
        deployment = store.create("two-step", "x")
        store.set_task_process(deployment.id, "plan", 999999)
        with patch("flotilla.dispatcher.process_alive", side_effect=[True, False]), \
                patch("flotilla.dispatcher.signal_process", return_value=True) as signal_mock, \
                patch("flotilla.backend.process_alive", return_value=False):
            result = await dispatcher.stop(deployment.id)
        assert result.signalled == [999999]
        assert result.killed == []
        signal_mock.assert_called_once_with(999999, force=False, group=True)

    @pytest.mark.asyncio
    async def test_stop_escalates_to_sigkill(self, dispatcher, store):
        deployment = store.create("two-step", "x")
        store.set_task_process(deployment.id, "plan", 999999)
        with patch("flotilla.dispatcher.process_alive", return_value=True), \
                patch("flotilla.dispatcher.signal_process", return_value=True) as signal_mock, \
                patch("flotilla.dispatcher.wait_for_exit", return_value=False):
            result = await dispatcher.stop(deployment.id)
        assert result.killed == [999999]
        assert signal_mock.call_args_list[-1].kwargs == {"force": True, "group": True}

    @pytest.mark.asyncio
    async def test_stop_finished_deployment(self, dispatcher, store):
        result = await dispatcher.deploy("two-step", "x")
        with pytest.raises(InvalidStateError):
            await dispatcher.stop(result.deployment_id)

    @pytest.mark.asyncio
    async def test_execute_after_stop_requires_resume(self, dispatcher, store):
        deployment = store.create("two-step", "x")
        await dispatcher.stop(deployment.id)
        with pytest.raises(InvalidStateError):
            await dispatcher.execute_task(deployment.id)


# ---------------------------------------------------------------------------
# Resume
# ---------------------------------------------------------------------------


class TestResume:
    @pytest.mark.asyncio
    async def test_resume_retries_failed_task_with_context(self, dispatcher, store, backend):
        backend.results["build"] = TaskResult(success=False, error="compile error")
        result = await dispatcher.deploy("two-step", "Ship the feature")
        deployment_id = result.deployment_id
        extractor = ContextExtractor(store.root)
        context = TaskContext(
            task_id="build",
            files_accessed=[FileAccess("src/app.py", "edit", "2026-01-01T00:00:00+00:00")],
            tools_used={"Edit": 1},
            key_decisions=["We will add a flag"],
        )
        extractor.save_task_context(deployment_id, context)

        del backend.results["build"]
        resumed = await dispatcher.resume(deployment_id)

        assert resumed.success
        assert backend.task_ids() == ["plan", "build", "build"]
        prompt = backend.calls[-1].prompt
        assert "You are resuming a stopped deployment" in prompt
        assert "src/app.py" in prompt
        assert "Ship the feature" in prompt
        assert store.require(deployment_id).status == Status.COMPLETE
        assert extractor.load_cache(deployment_id) is not None

    @pytest.mark.asyncio
    async def test_resume_after_stop(self, dispatcher, store, backend):
        deployment = store.create("two-step", "x")
        await dispatcher.stop(deployment.id)
        assert store.require(deployment.id).status == Status.CANCELLED

        result = await dispatcher.resume(deployment.id)
        assert result.success
        assert not store.stop_requested(deployment.id)
        assert backend.task_ids() == ["plan", "build"]
        assert store.require(deployment.id).status == Status.COMPLETE

    @pytest.mark.asyncio
    async def test_resume_from_start(self, dispatcher, store, backend):
        backend.results["build"] = TaskResult(success=False, error="nope")
        result = await dispatcher.deploy("two-step", "x")
        del backend.results["build"]

        resumed = await dispatcher.resume(result.deployment_id, from_start=True)
        assert resumed.tasks_run == ["plan", "build"]
        assert "You are resuming a stopped deployment" not in backend.calls[-2].prompt

    @pytest.mark.asyncio
    async def test_resume_complete_deployment(self, dispatcher, store):
        result = await dispatcher.deploy("two-step", "x")
        with pytest.raises(InvalidStateError):
            await dispatcher.resume(result.deployment_id)

    @pytest.mark.asyncio
    async def test_resume_active_deployment(self, dispatcher, store):
        deployment = store.create("two-step", "x")
        with pytest.raises(InvalidStateError):
            await dispatcher.resume(deployment.id)

    @pytest.mark.asyncio
    async def test_resume_awaiting_approval(self, dispatcher, store):
        result = await dispatcher.deploy("code-change", "x")
        with pytest.raises(InvalidStateError):
            await dispatcher.resume(result.deployment_id)
