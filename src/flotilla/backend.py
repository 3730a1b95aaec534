"""Execution backends that perform a task's work.

A backend receives a TaskConfig and a CancellationToken and returns a
TaskResult. As side effects it appends stream events, writes the task output
to ``outputs/<task>.md`` and the context artifact to ``context/<task>.json``.

The default CommandBackend runs an agent CLI as a subprocess. Lines the agent
prints as JSON objects with a known ``type`` become structured stream events;
everything else is task output.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import signal
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from flotilla.context import ContextExtractor, TaskContext
from flotilla.exceptions import ConfigError
from flotilla.json_utils import parse_json_object
from flotilla.stream import EventType, StreamBus

logger = logging.getLogger(__name__)

_EVENT_TYPES = {t.value for t in EventType}

# Per-line buffer limit for agent stdout. Tool results can put whole files on one line.
STREAM_LIMIT = 32 * 1024 * 1024


@dataclass
class TaskConfig:
    """Everything a backend needs to run one task."""

    deployment_id: str
    task_id: str
    agent_type: str
    prompt: str
    timeout: float = 300.0
    max_turns: int = 60
    model: str | None = None


@dataclass
class TaskResult:
    success: bool
    output: str = ""
    error: str | None = None
    exit_code: int | None = None
    timed_out: bool = False
    cancelled: bool = False


class CancellationToken:
    """Cooperative cancellation: an in-process flag plus the deployment's stop marker.

    Backends poll ``is_cancelled()`` at their own checkpoints.
    """

    def __init__(self, marker: str | Path | None = None) -> None:
        self.marker = Path(marker) if marker is not None else None
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    def is_cancelled(self) -> bool:
        if self._cancelled:
            return True
        return self.marker is not None and self.marker.exists()


class ExecutionBackend(Protocol):
    async def run(self, config: TaskConfig, cancel: CancellationToken) -> TaskResult: ...


def render_command(template: str, config: TaskConfig) -> list[str]:
    """Fill a backend command template and split it into argv.

    Placeholder values are shell-quoted before splitting, so a prompt with
    spaces or quotes stays a single argument.
    """
    stripped = template.strip()
    if "{prompt}" not in stripped:
        raise ConfigError("Backend command template must include {prompt}")
    try:
        rendered = stripped.format(
            prompt=shlex.quote(config.prompt),
            deployment_id=shlex.quote(str(config.deployment_id)),
            task_id=shlex.quote(config.task_id),
            agent=shlex.quote(config.agent_type),
            model=shlex.quote(config.model or ""),
            max_turns=config.max_turns,
        )
    except (KeyError, IndexError, ValueError) as exc:
        raise ConfigError(f"Unsupported command template placeholder: {exc}") from exc
    argv = shlex.split(rendered)
    if not argv:
        raise ConfigError("Backend command template rendered an empty command")
    return argv


class CommandBackend:
    """Run each task as an agent CLI subprocess.

    Usage:
        backend = CommandBackend(".flotilla", "copilot -p {prompt} --allow-all -s", bus)
        result = await backend.run(config, CancellationToken(marker))
    """

    def __init__(
        self,
        root: str | Path,
        command_template: str,
        bus: StreamBus,
        *,
        extractor: ContextExtractor | None = None,
        cancel_poll_interval: float = 0.5,
        grace_seconds: float = 5.0,
        cwd: str | Path | None = None,
    ) -> None:
        self.root = Path(root)
        self.command_template = command_template
        self.bus = bus
        self.extractor = extractor or ContextExtractor(self.root)
        self.cancel_poll_interval = cancel_poll_interval
        self.grace_seconds = grace_seconds
        self.cwd = str(cwd) if cwd is not None else None

    def output_path(self, deployment_id: str, task_id: str) -> Path:
        return self.root / "deployed" / str(deployment_id) / "outputs" / f"{task_id}.md"

    async def run(self, config: TaskConfig, cancel: CancellationToken) -> TaskResult:
        argv = render_command(self.command_template, config)
        env = os.environ.copy()
        env["FLOTILLA_DEPLOYMENT_ID"] = str(config.deployment_id)
        env["FLOTILLA_TASK_ID"] = config.task_id
        env["FLOTILLA_AGENT"] = config.agent_type
        env["FLOTILLA_MAX_TURNS"] = str(config.max_turns)

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                stdin=asyncio.subprocess.DEVNULL,
                cwd=self.cwd,
                env=env,
                limit=STREAM_LIMIT,
            )
        except FileNotFoundError:
            message = f"Backend command not found: {argv[0]}"
            self.bus.append(config.deployment_id, config.task_id, EventType.ERROR, {"message": message})
            return TaskResult(success=False, error=message, exit_code=127)
        except OSError as exc:
            message = f"Backend failed to start: {exc}"
            self.bus.append(config.deployment_id, config.task_id, EventType.ERROR, {"message": message})
            return TaskResult(success=False, error=message)

        logger.debug("Started backend pid %s for task %s", process.pid, config.task_id)
        assert process.stdout is not None
        assert process.stderr is not None
        stderr_task = asyncio.ensure_future(process.stderr.read())
        context = TaskContext(task_id=config.task_id)
        output_lines: list[str] = []
        cancelled = False
        read_error: str | None = None

        try:
            while True:
                if cancel.is_cancelled():
                    cancelled = True
                    break
                try:
                    raw = await asyncio.wait_for(
                        process.stdout.readline(), timeout=self.cancel_poll_interval
                    )
                except asyncio.TimeoutError:
                    continue
                except (ValueError, OSError) as exc:
                    read_error = f"Cannot read backend output: {exc}"
                    break
                if not raw:
                    break
                self._handle_line(config, raw, output_lines, context)

            if cancelled or read_error:
                await self._terminate(process)
            else:
                await process.wait()
            stderr_text = (await stderr_task).decode("utf-8", errors="replace").strip()
        except BaseException:
            if process.returncode is None:
                process.kill()
                await process.wait()
            stderr_task.cancel()
            raise
        finally:
            self._save_artifacts(config, output_lines, context)

        output = "\n".join(output_lines).strip()
        if cancelled:
            self.bus.append(
                config.deployment_id, config.task_id, EventType.STATUS,
                {"status": "cancelled", "message": "Task cancelled"},
            )
            return TaskResult(
                success=False, output=output, error="Task cancelled",
                exit_code=process.returncode, cancelled=True,
            )
        if read_error:
            logger.warning("Task %s: %s", config.task_id, read_error)
            self.bus.append(config.deployment_id, config.task_id, EventType.ERROR, {"message": read_error})
            return TaskResult(success=False, output=output, error=read_error, exit_code=process.returncode)
        if process.returncode != 0:
            message = f"Backend exited with code {process.returncode}"
            if stderr_text:
                message = f"{message}: {stderr_text}"
            self.bus.append(config.deployment_id, config.task_id, EventType.ERROR, {"message": message})
            return TaskResult(success=False, output=output, error=message, exit_code=process.returncode)
        return TaskResult(success=True, output=output, exit_code=0)

    def _handle_line(
        self,
        config: TaskConfig,
        raw: bytes,
        output_lines: list[str],
        context: TaskContext,
    ) -> None:
        text = raw.decode("utf-8", errors="replace").rstrip("\r\n")
        payload = parse_json_object(text)
        if payload is not None and payload.get("type") in _EVENT_TYPES:
            metadata = payload.get("metadata")
            event = self.bus.append(
                config.deployment_id,
                config.task_id,
                payload["type"],
                payload.get("content"),
                metadata if isinstance(metadata, dict) else None,
            )
            context.record(event)
            if event.type == EventType.OUTPUT and isinstance(event.content, str):
                output_lines.append(event.content)
            return

        output_lines.append(text)
        if text.strip():
            event = self.bus.append(config.deployment_id, config.task_id, EventType.OUTPUT, text)
            context.record(event)

    def _save_artifacts(self, config: TaskConfig, output_lines: list[str], context: TaskContext) -> None:
        path = self.output_path(config.deployment_id, config.task_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text("\n".join(output_lines).strip() + "\n", encoding="utf-8")
            self.extractor.save_task_context(config.deployment_id, context)
        except OSError as exc:
            logger.warning("Cannot save artifacts for task %s: %s", config.task_id, exc)

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=self.grace_seconds)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()


# ---------------------------------------------------------------------------
# Detached processes
# ---------------------------------------------------------------------------


@dataclass
class DetachedProcess:
    pid: int
    log_path: Path
    prompt_path: Path


def spawn_detached(
    root: str | Path,
    config: TaskConfig,
    *,
    config_file: str | Path | None = None,
) -> DetachedProcess:
    """Start ``python -m flotilla run-task`` in its own session and return at once.

    The child outlives the caller and reports through the store and stream bus.
    """
    root = Path(root)
    logs_dir = root / "deployed" / str(config.deployment_id) / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    prompt_path = logs_dir / f"{config.task_id}.prompt.md"
    prompt_path.write_text(config.prompt, encoding="utf-8")
    log_path = logs_dir / f"{config.task_id}.log"

    argv = [sys.executable, "-m", "flotilla", "--root", str(root)]
    if config_file is not None:
        argv += ["--config", str(config_file)]
    argv += [
        "run-task",
        str(config.deployment_id),
        config.task_id,
        "--agent",
        config.agent_type,
        "--prompt-file",
        str(prompt_path),
        "--timeout",
        str(config.timeout),
    ]

    with open(log_path, "ab") as log_handle:
        process = subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=log_handle,
            stderr=subprocess.STDOUT,
            start_new_session=True,
            close_fds=True,
        )
    (logs_dir / f"{config.task_id}.pid").write_text(str(process.pid), encoding="utf-8")
    logger.info(
        "Spawned detached task %s (pid %s)", config.task_id, process.pid,
        extra={"deployment_id": str(config.deployment_id)},
    )
    return DetachedProcess(pid=process.pid, log_path=log_path, prompt_path=prompt_path)


def process_alive(pid: int) -> bool:
    """Check whether a process exists, via signal 0."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else.
        return True
    except OSError:
        return False
    return True


def signal_process(pid: int, force: bool = False, group: bool = False) -> bool:
    """Send SIGTERM (or SIGKILL when ``force``). Returns True if the signal was delivered.

    With ``group`` the signal goes to the process group led by ``pid``, which
    reaches the agent CLI started by a detached runner as well.
    """
    sig = getattr(signal, "SIGKILL", signal.SIGTERM) if force else signal.SIGTERM
    try:
        if group and hasattr(os, "killpg"):
            try:
                os.killpg(pid, sig)
            except ProcessLookupError:
                os.kill(pid, sig)
        else:
            os.kill(pid, sig)
    except ProcessLookupError:
        return False
    except PermissionError as exc:
        logger.warning("Not permitted to signal pid %s: %s", pid, exc)
        return False
    return True


async def wait_for_exit(pid: int, timeout: float, interval: float = 0.1) -> bool:
    """Poll until ``pid`` is gone. Returns False if it is still alive after ``timeout``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while process_alive(pid):
        if loop.time() >= deadline:
            return False
        await asyncio.sleep(interval)
    return True
