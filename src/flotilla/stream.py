"""Per-task event logs with live tail/follow.

Each task of a deployment appends newline-delimited JSON records to
``deployed/<id>/streams/<task>.stream``. Watchers replay the tail of every log
and then poll byte offsets for new complete lines, including logs created
after the watch began.

Following is polling, not filesystem change notification: every
``poll_interval`` seconds each log is ``stat``-ed and only the bytes past the
last offset are read. A stop signal ends the wait between polls at once.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import threading
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from flotilla.models import utc_now

logger = logging.getLogger(__name__)

STREAM_SUFFIX = ".stream"


class EventType(str, Enum):
    """Kinds of observable task activity."""

    AGENT_ACTIVITY = "agent_activity"
    TOOL_USE = "tool_use"
    THINKING = "thinking"
    OUTPUT = "output"
    ERROR = "error"
    STATUS = "status"
    PROGRESS = "progress"


@dataclass
class StreamEvent:
    """One record of a task's stream log."""

    type: EventType
    deployed_id: str
    task_id: str
    content: Any
    timestamp: str = field(default_factory=utc_now)
    metadata: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "timestamp": self.timestamp,
            "type": self.type.value,
            "deployedId": self.deployed_id,
            "taskId": self.task_id,
            "content": self.content,
        }
        if self.metadata:
            data["metadata"] = self.metadata
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StreamEvent:
        return cls(
            type=EventType(data["type"]),
            deployed_id=str(data.get("deployedId", "")),
            task_id=str(data.get("taskId", "")),
            content=data.get("content"),
            timestamp=data.get("timestamp") or utc_now(),
            metadata=data.get("metadata"),
        )

    @classmethod
    def parse(cls, line: str | bytes) -> StreamEvent | None:
        """Parse one log line, returning None for blank or malformed lines."""
        if isinstance(line, bytes):
            line = line.decode("utf-8", errors="replace")
        line = line.strip()
        if not line:
            return None
        try:
            data = json.loads(line)
            if not isinstance(data, dict):
                raise ValueError("record is not an object")
            return cls.from_dict(data)
        except (ValueError, KeyError) as exc:
            logger.debug("Skipping malformed stream record: %s", exc)
            return None


@dataclass
class WatchOptions:
    """How a watcher replays and follows a deployment's streams."""

    follow: bool = True
    tail: int = 20
    filter: str | None = None
    format: str = "pretty"
    _pattern: re.Pattern[str] | None = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.tail < 0:
            raise ValueError("tail must be zero or positive")
        if self.format not in ("json", "pretty", "raw"):
            raise ValueError(f"Invalid format: {self.format}. Valid: json, pretty, raw")
        if self.filter:
            try:
                self._pattern = re.compile(self.filter, re.IGNORECASE)
            except re.error as exc:
                raise ValueError(f"Invalid filter pattern: {exc}") from exc

    def matches(self, event: StreamEvent) -> bool:
        if self._pattern is None:
            return True
        return self._pattern.search(event.to_json()) is not None


@dataclass
class StreamStats:
    """Aggregate counts over a deployment's stream logs."""

    stream_count: int = 0
    event_count: int = 0
    by_type: dict[str, int] = field(default_factory=dict)
    by_task: dict[str, int] = field(default_factory=dict)


class StreamBus:
    """Append, watch and summarize task event streams.

    Usage:
        bus = StreamBus(".flotilla")
        bus.append(1, "analyze", EventType.TOOL_USE, {"name": "Read", "input": {...}})

        async for event in bus.watch(1, WatchOptions(tail=0)):
            print(event.content)
    """

    def __init__(self, root: str | Path, poll_interval: float = 0.25) -> None:
        self.root = Path(root)
        self.deployed_dir = self.root / "deployed"
        self.poll_interval = poll_interval
        self._subscribers: list[Callable[[StreamEvent], None]] = []
        self._watchers: dict[str, set[asyncio.Event]] = {}
        self._lock = threading.Lock()

    def streams_dir(self, deployment_id: int | str) -> Path:
        return self.deployed_dir / str(deployment_id) / "streams"

    def stream_path(self, deployment_id: int | str, task_id: str) -> Path:
        return self.streams_dir(deployment_id) / f"{task_id}{STREAM_SUFFIX}"

    def _stream_files(self, deployment_id: int | str) -> list[Path]:
        directory = self.streams_dir(deployment_id)
        if not directory.is_dir():
            return []
        return sorted(p for p in directory.iterdir() if p.suffix == STREAM_SUFFIX)

    # --- Producers ---

    def append(
        self,
        deployment_id: int | str,
        task_id: str,
        event_type: EventType | str,
        content: Any,
        metadata: dict[str, Any] | None = None,
    ) -> StreamEvent:
        """Append one event. Creating a task's log also writes a ``started`` status first."""
        deployed_id = str(deployment_id)
        event = StreamEvent(
            type=EventType(event_type),
            deployed_id=deployed_id,
            task_id=task_id,
            content=content,
            metadata=metadata,
        )
        with self._lock:
            if not self.stream_path(deployed_id, task_id).exists():
                started = StreamEvent(
                    type=EventType.STATUS,
                    deployed_id=deployed_id,
                    task_id=task_id,
                    content={"status": "started", "message": "Task execution started"},
                )
                self._write(started)
                self._notify(started)
            self._write(event)
        self._notify(event)
        return event

    def _write(self, event: StreamEvent) -> None:
        path = self.stream_path(event.deployed_id, event.task_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        # One write call per record keeps appends line-atomic.
        with open(path, "a", encoding="utf-8") as f:
            f.write(event.to_json() + "\n")

    def subscribe(self, callback: Callable[[StreamEvent], None]) -> Callable[[], None]:
        """Deliver every event appended through this bus to ``callback``."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self, event: StreamEvent) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.warning("Stream subscriber raised", exc_info=True)

    # --- Consumers ---

    def read_events(self, deployment_id: int | str, task_id: str) -> list[StreamEvent]:
        """Every well-formed event of one task's log, in append order."""
        path = self.stream_path(deployment_id, task_id)
        if not path.is_file():
            return []
        with open(path, "rb") as f:
            return [e for e in (StreamEvent.parse(line) for line in f) if e is not None]

    async def watch(
        self,
        deployment_id: int | str,
        options: WatchOptions | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Replay the last ``tail`` records of each log, then optionally follow.

        The iterator ends when following is off, or when ``stop`` is called
        for the deployment.
        """
        options = options or WatchOptions()
        key = str(deployment_id)
        stop_event = asyncio.Event()
        with self._lock:
            self._watchers.setdefault(key, set()).add(stop_event)

        offsets: dict[Path, int] = {}
        try:
            for path in self._stream_files(key):
                try:
                    data = path.read_bytes()
                except OSError as exc:
                    logger.debug("Cannot read stream %s: %s", path, exc)
                    continue
                end = data.rfind(b"\n") + 1
                offsets[path] = end
                if options.tail <= 0:
                    continue
                lines = [ln for ln in data[:end].splitlines() if ln.strip()]
                for line in lines[-options.tail:]:
                    event = StreamEvent.parse(line)
                    if event is not None and options.matches(event):
                        yield event

            if not options.follow:
                return

            while not stop_event.is_set():
                for path in self._stream_files(key):
                    for event in self._read_new(path, offsets):
                        if options.matches(event):
                            yield event
                    if stop_event.is_set():
                        break
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            with self._lock:
                watchers = self._watchers.get(key)
                if watchers is not None:
                    watchers.discard(stop_event)
                    if not watchers:
                        del self._watchers[key]

    @staticmethod
    def _read_new(path: Path, offsets: dict[Path, int]) -> list[StreamEvent]:
        offset = offsets.get(path, 0)
        try:
            size = path.stat().st_size
            if size < offset:
                # Truncated or replaced; start over.
                offset = 0
            if size == offset:
                return []
            with open(path, "rb") as f:
                f.seek(offset)
                chunk = f.read(size - offset)
        except OSError as exc:
            logger.debug("Cannot read stream %s: %s", path, exc)
            return []
        end = chunk.rfind(b"\n") + 1
        if end == 0:
            # Partial line; wait for its newline.
            offsets[path] = offset
            return []
        offsets[path] = offset + end
        return [e for e in (StreamEvent.parse(line) for line in chunk[:end].splitlines()) if e]

    def stop(self, deployment_id: int | str) -> int:
        """Release this process's watchers of a deployment. Returns how many were signalled."""
        with self._lock:
            watchers = list(self._watchers.get(str(deployment_id), ()))
        for stop_event in watchers:
            stop_event.set()
        return len(watchers)

    def stats(self, deployment_id: int | str) -> StreamStats:
        """Count streams and events by type and task."""
        stats = StreamStats()
        for path in self._stream_files(deployment_id):
            stats.stream_count += 1
            try:
                with open(path, "rb") as f:
                    events = [e for e in (StreamEvent.parse(line) for line in f) if e]
            except OSError as exc:
                logger.debug("Cannot read stream %s: %s", path, exc)
                continue
            for event in events:
                stats.event_count += 1
                stats.by_type[event.type.value] = stats.by_type.get(event.type.value, 0) + 1
                stats.by_task[event.task_id] = stats.by_task.get(event.task_id, 0) + 1
        return stats
