"""Tests for flotilla.backend."""

from __future__ import annotations

import os
import shlex
import sys
from unittest.mock import MagicMock, patch

import pytest

from flotilla.backend import (
    CancellationToken,
    CommandBackend,
    TaskConfig,
    process_alive,
    render_command,
    signal_process,
    spawn_detached,
    wait_for_exit,
)
from flotilla.context import ContextExtractor
from flotilla.exceptions import ConfigError
from flotilla.stream import EventType


def _config(prompt="do the thing", task_id="analyze"):
    return TaskConfig(deployment_id="1", task_id=task_id, agent_type="explore", prompt=prompt)


def _python_command(script: str) -> str:
    """Backend template running an inline script; the prompt arrives as argv[1]."""
    escaped = shlex.quote(script).replace("{", "{{").replace("}", "}}")
    return f"{shlex.quote(sys.executable)} -c {escaped} {{prompt}}"


# ---------------------------------------------------------------------------
# Command templates
# ---------------------------------------------------------------------------


class TestRenderCommand:
    def test_prompt_stays_one_argument(self):
        argv = render_command("agent -p {prompt} --agent {agent}", _config(prompt="it's \"quoted\" text"))
        assert argv == ["agent", "-p", "it's \"quoted\" text", "--agent", "explore"]

    def test_all_placeholders(self):
        argv = render_command(
            "agent {prompt} {deployment_id} {task_id} {max_turns} {model}",
            TaskConfig("7", "review", "code-review", "p", max_turns=9, model="gpt"),
        )
        assert argv == ["agent", "p", "7", "review", "9", "gpt"]

    def test_requires_prompt(self):
        with pytest.raises(ConfigError):
            render_command("agent --help", _config())

    def test_unknown_placeholder(self):
        with pytest.raises(ConfigError):
            render_command("agent {prompt} {nope}", _config())


# ---------------------------------------------------------------------------
# CommandBackend
# ---------------------------------------------------------------------------


class TestCommandBackend:
    @pytest.mark.asyncio
    async def test_success_writes_output_stream_and_context(self, root, bus):
        script = (
            "import json, sys\n"
            "print('working on ' + sys.argv[1])\n"
            "print(json.dumps({'type': 'tool_use', 'content': "
            "{'name': 'Edit', 'input': {'file_path': 'src/app.py'}}}))\n"
            "print(json.dumps({'type': 'agent_activity', 'content': 'I will add tests'}))\n"
        )
        backend = CommandBackend(root, _python_command(script), bus, cancel_poll_interval=0.05)
        result = await backend.run(_config(), CancellationToken())

        assert result.success
        assert result.exit_code == 0
        assert result.output == "working on do the thing"
        output_path = backend.output_path("1", "analyze")
        assert output_path.read_text(encoding="utf-8").strip() == "working on do the thing"

        types = [e.type for e in bus.read_events("1", "analyze")]
        assert types == [EventType.STATUS, EventType.OUTPUT, EventType.TOOL_USE, EventType.AGENT_ACTIVITY]

        context = ContextExtractor(root).load_task_context("1", "analyze")
        assert context.modified_files == ["src/app.py"]
        assert context.key_decisions == ["I will add tests"]

    @pytest.mark.asyncio
    async def test_environment(self, root, bus):
        script = "import os\nprint(os.environ['FLOTILLA_TASK_ID'], os.environ['FLOTILLA_AGENT'])\n"
        backend = CommandBackend(root, _python_command(script), bus, cancel_poll_interval=0.05)
        result = await backend.run(_config(), CancellationToken())
        assert result.output == "analyze explore"

    @pytest.mark.asyncio
    async def test_non_zero_exit(self, root, bus):
        script = "import sys\nsys.stderr.write('kaboom')\nsys.exit(3)\n"
        backend = CommandBackend(root, _python_command(script), bus, cancel_poll_interval=0.05)
        result = await backend.run(_config(), CancellationToken())

        assert not result.success
        assert result.exit_code == 3
        assert "kaboom" in result.error
        errors = [e for e in bus.read_events("1", "analyze") if e.type == EventType.ERROR]
        assert "code 3" in errors[0].content["message"]

    @pytest.mark.asyncio
    async def test_very_long_output_line(self, root, bus):
        script = "print('x' * 200000)\n"
        backend = CommandBackend(root, _python_command(script), bus, cancel_poll_interval=0.05)
        result = await backend.run(_config(), CancellationToken())

        assert result.success
        assert len(result.output) == 200000
        output_path = backend.output_path("1", "analyze")
        assert len(output_path.read_text(encoding="utf-8").strip()) == 200000

    @pytest.mark.asyncio
    async def test_unreadable_output_fails_the_task(self, root, bus):
        script = "print('x' * 5000)\nimport time\ntime.sleep(30)\n"
        backend = CommandBackend(
            root, _python_command(script), bus, cancel_poll_interval=0.05, grace_seconds=1.0
        )
        with patch("flotilla.backend.STREAM_LIMIT", 1024):
            result = await backend.run(_config(), CancellationToken())

        assert not result.success
        assert not result.cancelled
        assert "Cannot read backend output" in result.error
        errors = [e for e in bus.read_events("1", "analyze") if e.type == EventType.ERROR]
        assert "Cannot read backend output" in errors[0].content["message"]

    @pytest.mark.asyncio
    async def test_missing_command(self, root, bus):
        backend = CommandBackend(root, "definitely-not-a-real-agent-cli {prompt}", bus)
        result = await backend.run(_config(), CancellationToken())
        assert not result.success
        assert result.exit_code == 127

    @pytest.mark.asyncio
    async def test_cancellation_via_marker(self, root, bus):
        marker = root / "deployed" / "1" / ".stop"
        script = "import time\nprint('started', flush=True)\ntime.sleep(30)\n"
        backend = CommandBackend(
            root, _python_command(script), bus, cancel_poll_interval=0.05, grace_seconds=1.0
        )
        token = CancellationToken(marker)

        def _stop_on_start(event):
            if event.content == "started":
                marker.parent.mkdir(parents=True, exist_ok=True)
                marker.write_text("now", encoding="utf-8")

        bus.subscribe(_stop_on_start)
        result = await backend.run(_config(), token)
        assert result.cancelled
        assert not result.success
        statuses = [e.content["status"] for e in bus.read_events("1", "analyze") if e.type == EventType.STATUS]
        assert statuses[-1] == "cancelled"


class TestCancellationToken:
    def test_flag(self):
        token = CancellationToken()
        assert not token.is_cancelled()
        token.cancel()
        assert token.is_cancelled()

    def test_marker(self, tmp_path):
        token = CancellationToken(tmp_path / ".stop")
        assert not token.is_cancelled()
        (tmp_path / ".stop").write_text("x")
        assert token.is_cancelled()


# ---------------------------------------------------------------------------
# Detached processes
# ---------------------------------------------------------------------------


class TestProcesses:
    def test_process_alive(self):
        assert process_alive(os.getpid())
        assert not process_alive(0)
        assert not process_alive(-5)

    def test_process_alive_missing_pid(self):
        with patch("flotilla.backend.os.kill", side_effect=ProcessLookupError):
            assert not process_alive(12345)

    def test_process_alive_other_owner(self):
        with patch("flotilla.backend.os.kill", side_effect=PermissionError):
            assert process_alive(12345)

    def test_signal_missing_process(self):
        with patch("flotilla.backend.os.kill", side_effect=ProcessLookupError):
            assert not signal_process(12345)

    def test_signal_group_falls_back_to_pid(self):
        with patch("flotilla.backend.os.killpg", side_effect=ProcessLookupError, create=True), \
                patch("flotilla.backend.os.kill") as kill:
            assert signal_process(12345, group=True)
        kill.assert_called_once()

    @pytest.mark.asyncio
    async def test_wait_for_exit(self):
        with patch("flotilla.backend.process_alive", side_effect=[True, False]):
            assert await wait_for_exit(12345, timeout=1.0, interval=0.01)
        with patch("flotilla.backend.process_alive", return_value=True):
            assert not await wait_for_exit(12345, timeout=0.05, interval=0.01)

    def test_spawn_detached(self, root):
        fake = MagicMock(pid=5150)
        with patch("flotilla.backend.subprocess.Popen", return_value=fake) as popen:
            process = spawn_detached(root, _config(prompt="long prompt"), config_file="cfg.toml")

        assert process.pid == 5150
        assert process.prompt_path.read_text(encoding="utf-8") == "long prompt"
        assert (process.log_path.parent / "analyze.pid").read_text(encoding="utf-8") == "5150"
        argv = popen.call_args.args[0]
        assert argv[:3] == [sys.executable, "-m", "flotilla"]
        assert argv[argv.index("--config") + 1] == "cfg.toml"
        assert argv[argv.index("run-task") + 1:argv.index("run-task") + 3] == ["1", "analyze"]
        assert popen.call_args.kwargs["start_new_session"] is True
