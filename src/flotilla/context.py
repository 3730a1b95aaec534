"""
Context Extractor - rebuilds what a deployment has done so far.

Per-task context artifacts (``context/<task>.json``) record the files a task
touched, the commands it ran, its tool usage and its key decisions. The
extractor aggregates them across a deployment and renders the compact
resumption prompt handed to the backend when interrupted work continues.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

from flotilla.exceptions import ArtifactNotFoundError, CorruptArtifactError, DeploymentNotFoundError
from flotilla.json_utils import read_json_file, write_json_atomic
from flotilla.stream import EventType, StreamBus, StreamEvent

logger = logging.getLogger(__name__)

# Tool names that touch a file, mapped to the recorded operation.
FILE_TOOLS = {
    "Read": "read",
    "Write": "write",
    "Edit": "edit",
    "MultiEdit": "edit",
}
DECISION_MARKERS = ("will", "need to", "should", "must")
CONTEXT_FIELDS = (
    "taskId",
    "filesAccessed",
    "commandsExecuted",
    "toolsUsed",
    "keyDecisions",
    "lastActivity",
    "totalTokens",
)
READ_DISPLAY_LIMIT = 10
CACHE_FILE = "context-cache.json"


@dataclass
class FileAccess:
    path: str
    operation: str
    timestamp: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "operation": self.operation, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FileAccess:
        operation = data["operation"]
        if operation not in ("read", "write", "edit"):
            raise ValueError(f"unknown file operation: {operation}")
        return cls(path=data["path"], operation=operation, timestamp=data.get("timestamp", ""))


@dataclass
class CommandExecution:
    command: str
    directory: str | None = None
    timestamp: str = ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"command": self.command, "timestamp": self.timestamp}
        if self.directory:
            data["directory"] = self.directory
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CommandExecution:
        return cls(
            command=data["command"],
            directory=data.get("directory"),
            timestamp=data.get("timestamp", ""),
        )


@dataclass
class TaskContext:
    """What one task did, as recorded by the backend."""

    task_id: str
    files_accessed: list[FileAccess] = field(default_factory=list)
    commands_executed: list[CommandExecution] = field(default_factory=list)
    tools_used: dict[str, int] = field(default_factory=dict)
    key_decisions: list[str] = field(default_factory=list)
    last_activity: str = ""
    total_tokens: int | None = None

    def record(self, event: StreamEvent) -> None:
        """Fold one stream event into this context."""
        content = event.content
        if event.type == EventType.TOOL_USE and isinstance(content, dict) and content.get("name"):
            name = str(content["name"])
            self.tools_used[name] = self.tools_used.get(name, 0) + 1
            params = content.get("input") or content.get("parameters") or {}
            if not isinstance(params, dict):
                return
            if name in FILE_TOOLS and params.get("file_path"):
                self.files_accessed.append(
                    FileAccess(str(params["file_path"]), FILE_TOOLS[name], event.timestamp)
                )
            elif name == "Bash" and params.get("command"):
                self.commands_executed.append(
                    CommandExecution(str(params["command"]), params.get("cwd"), event.timestamp)
                )
            elif name == "Glob" and params.get("pattern"):
                marker = f"[search: {params['pattern']}]"
                if not any(f.path == marker for f in self.files_accessed):
                    self.files_accessed.append(FileAccess(marker, "read", event.timestamp))
        elif event.type == EventType.AGENT_ACTIVITY:
            activity = content.get("activity") if isinstance(content, dict) else content
            if isinstance(activity, str) and activity:
                self.last_activity = activity
                if any(marker in activity for marker in DECISION_MARKERS):
                    self.key_decisions.append(activity)

        tokens = event.metadata.get("tokens") if event.metadata else None
        if isinstance(tokens, int):
            self.total_tokens = (self.total_tokens or 0) + tokens

    @classmethod
    def from_events(cls, task_id: str, events: Iterable[StreamEvent]) -> TaskContext:
        context = cls(task_id=task_id)
        for event in events:
            context.record(event)
        return context

    @property
    def modified_files(self) -> list[str]:
        return _unique(f.path for f in self.files_accessed if f.operation != "read")

    @property
    def read_files(self) -> list[str]:
        return _unique(f.path for f in self.files_accessed if f.operation == "read")

    def compacted(self) -> TaskContext:
        """Copy with duplicate file accesses, commands and decisions removed."""
        latest: dict[str, FileAccess] = {}
        for access in sorted(self.files_accessed, key=lambda f: f.timestamp):
            latest.pop(access.path, None)
            latest[access.path] = access
        commands: dict[tuple[str, str | None], CommandExecution] = {}
        for command in sorted(self.commands_executed, key=lambda c: c.timestamp):
            key = (command.command, command.directory)
            commands.pop(key, None)
            commands[key] = command
        return TaskContext(
            task_id=self.task_id,
            files_accessed=list(latest.values()),
            commands_executed=list(commands.values()),
            tools_used=dict(self.tools_used),
            key_decisions=_unique(self.key_decisions),
            last_activity=self.last_activity,
            total_tokens=self.total_tokens,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "taskId": self.task_id,
            "filesAccessed": [f.to_dict() for f in self.files_accessed],
            "commandsExecuted": [c.to_dict() for c in self.commands_executed],
            "toolsUsed": dict(self.tools_used),
            "keyDecisions": list(self.key_decisions),
            "lastActivity": self.last_activity,
        }
        if self.total_tokens is not None:
            data["totalTokens"] = self.total_tokens
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskContext:
        tools = data.get("toolsUsed") or {}
        # The cache stores tool counts as [name, count] pairs.
        if isinstance(tools, list):
            tools = {str(name): int(count) for name, count in tools}
        return cls(
            task_id=data["taskId"],
            files_accessed=[FileAccess.from_dict(f) for f in data.get("filesAccessed", [])],
            commands_executed=[CommandExecution.from_dict(c) for c in data.get("commandsExecuted", [])],
            tools_used={str(k): int(v) for k, v in tools.items()},
            key_decisions=[str(d) for d in data.get("keyDecisions", [])],
            last_activity=data.get("lastActivity") or "",
            total_tokens=data.get("totalTokens"),
        )


@dataclass
class DeploymentContext:
    """Aggregated context of every task in a deployment."""

    deployed_id: str
    fleet_id: str
    original_request: str
    current_task: str
    tasks_completed: list[str] = field(default_factory=list)
    task_contexts: dict[str, TaskContext] = field(default_factory=dict)
    global_files_modified: set[str] = field(default_factory=set)
    global_files_read: set[str] = field(default_factory=set)

    def to_dict(self) -> dict[str, Any]:
        return {
            "deployedId": self.deployed_id,
            "fleetId": self.fleet_id,
            "originalRequest": self.original_request,
            "tasksCompleted": list(self.tasks_completed),
            "currentTask": self.current_task,
            "taskContexts": [
                {**ctx.to_dict(), "toolsUsed": [[k, v] for k, v in ctx.tools_used.items()]}
                for ctx in self.task_contexts.values()
            ],
            "globalFilesModified": sorted(self.global_files_modified),
            "globalFilesRead": sorted(self.global_files_read),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DeploymentContext:
        contexts = [TaskContext.from_dict(c) for c in data.get("taskContexts", [])]
        return cls(
            deployed_id=str(data["deployedId"]),
            fleet_id=data.get("fleetId", ""),
            original_request=data.get("originalRequest", ""),
            current_task=data.get("currentTask", ""),
            tasks_completed=list(data.get("tasksCompleted", [])),
            task_contexts={c.task_id: c for c in contexts},
            global_files_modified=set(data.get("globalFilesModified", [])),
            global_files_read=set(data.get("globalFilesRead", [])),
        )


@dataclass
class CompactionReport:
    task_id: str
    before_bytes: int
    after_bytes: int

    @property
    def saved_bytes(self) -> int:
        return self.before_bytes - self.after_bytes


def _unique(items: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(items))


class ContextExtractor:
    """Aggregate task context artifacts and build resumption prompts.

    Usage:
        extractor = ContextExtractor(".flotilla")
        context = extractor.extract(3)
        prompt = extractor.build_resumption_prompt(context)
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.deployed_dir = self.root / "deployed"
        self._streams = StreamBus(self.root)

    def context_dir(self, deployment_id: int | str) -> Path:
        return self.deployed_dir / str(deployment_id) / "context"

    def artifact_path(self, deployment_id: int | str, task_id: str) -> Path:
        return self.context_dir(deployment_id) / f"{task_id}.json"

    def save_task_context(self, deployment_id: int | str, context: TaskContext) -> Path:
        path = self.artifact_path(deployment_id, context.task_id)
        write_json_atomic(path, context.to_dict())
        return path

    def load_task_context(self, deployment_id: int | str, task_id: str) -> TaskContext:
        path = self.artifact_path(deployment_id, task_id)
        if not path.is_file():
            raise ArtifactNotFoundError(str(path))
        data = read_json_file(path)
        try:
            return TaskContext.from_dict(data)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise CorruptArtifactError(
                f"Malformed context artifact: {exc}", str(path)
            ) from exc

    def extract(self, deployment_id: int | str) -> DeploymentContext:
        """Aggregate every task's context for a deployment.

        Tasks without an artifact fall back to their stream log. Malformed
        artifacts are logged and skipped.
        """
        deployment_dir = self.deployed_dir / str(deployment_id)
        metadata_path = deployment_dir / "metadata.json"
        if not metadata_path.is_file():
            raise DeploymentNotFoundError(str(deployment_id))
        metadata = read_json_file(metadata_path)

        request_path = deployment_dir / "request.md"
        if request_path.is_file():
            request = request_path.read_text(encoding="utf-8").strip()
        else:
            request = metadata.get("request", "")

        tasks = metadata.get("tasks", [])
        context = DeploymentContext(
            deployed_id=str(deployment_id),
            fleet_id=metadata.get("fleetId", ""),
            original_request=request,
            current_task=metadata.get("currentTask", ""),
            tasks_completed=[t["taskId"] for t in tasks if t.get("status") == "complete"],
        )

        task_ids = _unique(t["taskId"] for t in tasks)
        context_dir = self.context_dir(deployment_id)
        if context_dir.is_dir():
            extra = sorted(p.stem for p in context_dir.glob("*.json") if p.stem not in task_ids)
            task_ids.extend(extra)

        for task_id in task_ids:
            try:
                task_context = self.load_task_context(deployment_id, task_id)
            except ArtifactNotFoundError:
                events = self._streams.read_events(deployment_id, task_id)
                if not events:
                    continue
                task_context = TaskContext.from_events(task_id, events)
            except CorruptArtifactError as exc:
                logger.warning("Skipping context for task %s: %s", task_id, exc)
                continue
            context.task_contexts[task_id] = task_context

        # The last operation seen on a path decides which set it belongs to.
        last_operation: dict[str, str] = {}
        for task_context in context.task_contexts.values():
            for access in sorted(task_context.files_accessed, key=lambda f: f.timestamp):
                last_operation[access.path] = access.operation
        for path, operation in last_operation.items():
            if operation == "read":
                context.global_files_read.add(path)
            else:
                context.global_files_modified.add(path)
        return context

    def build_resumption_prompt(self, context: DeploymentContext) -> str:
        """Render the compact text a resumed task starts from."""
        lines = [f"## Original Request\n{context.original_request}\n"]

        if context.tasks_completed:
            lines.append("## Completed Tasks")
            for task_id in context.tasks_completed:
                task_context = context.task_contexts.get(task_id)
                if task_context is None:
                    continue
                lines.append(f"\n### {task_id}")
                modified = task_context.modified_files
                if modified:
                    lines.append(f"Modified files: {', '.join(modified)}")
                if task_context.tools_used:
                    tools = ", ".join(f"{tool}({count})" for tool, count in task_context.tools_used.items())
                    lines.append(f"Tools used: {tools}")
                if task_context.last_activity:
                    lines.append(f"Last activity: {task_context.last_activity}")

        current = context.task_contexts.get(context.current_task)
        if (
            current is not None
            and context.current_task not in context.tasks_completed
            and (current.files_accessed or current.last_activity)
        ):
            lines.append(f"\n## Current Task: {context.current_task}")
            if current.last_activity:
                lines.append(f"Progress: {current.last_activity}")
            examined = current.read_files
            if examined:
                lines.append(f"Files examined: {', '.join(examined)}")

        lines.append("\n## File State")
        if context.global_files_modified:
            lines.append(f"Files modified: {', '.join(sorted(context.global_files_modified))}")
        if context.global_files_read:
            read = sorted(context.global_files_read)
            suffix = " ..." if len(read) > READ_DISPLAY_LIMIT else ""
            lines.append(f"Files read: {', '.join(read[:READ_DISPLAY_LIMIT])}{suffix}")

        lines.append("\n## Instructions")
        lines.append(
            "You are resuming a stopped deployment. The above context shows what has been completed."
        )
        lines.append(
            "Continue from where the previous task left off, maintaining consistency with previous work."
        )
        return "\n".join(lines)

    def compact(self, deployment_id: int | str, task_id: str) -> CompactionReport:
        """Rewrite one artifact without duplicates or unknown fields."""
        path = self.artifact_path(deployment_id, task_id)
        if not path.is_file():
            raise ArtifactNotFoundError(str(path))
        before = path.stat().st_size
        data = read_json_file(path)
        if not isinstance(data, dict):
            raise CorruptArtifactError("Context artifact is not an object", str(path))
        try:
            task_context = TaskContext.from_dict({k: v for k, v in data.items() if k in CONTEXT_FIELDS})
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise CorruptArtifactError(f"Malformed context artifact: {exc}", str(path)) from exc
        after = write_json_atomic(path, task_context.compacted().to_dict())
        logger.info(
            "Compacted context for task %s: %d -> %d bytes", task_id, before, after,
            extra={"deployment_id": str(deployment_id)},
        )
        return CompactionReport(task_id=task_id, before_bytes=before, after_bytes=after)

    # --- Cache ---

    def cache_path(self, deployment_id: int | str) -> Path:
        return self.deployed_dir / str(deployment_id) / CACHE_FILE

    def save_cache(self, deployment_id: int | str, context: DeploymentContext | None = None) -> Path:
        context = context or self.extract(deployment_id)
        path = self.cache_path(deployment_id)
        write_json_atomic(path, context.to_dict())
        return path

    def load_cache(self, deployment_id: int | str) -> DeploymentContext | None:
        path = self.cache_path(deployment_id)
        if not path.is_file():
            return None
        try:
            return DeploymentContext.from_dict(read_json_file(path))
        except (CorruptArtifactError, AttributeError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Ignoring unreadable context cache %s: %s", path, exc)
            return None
