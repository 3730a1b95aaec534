"""Render stream events as JSON, raw content or colorized lines."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from rich.console import Console
from rich.text import Text

from flotilla.stream import EventType, StreamEvent
from flotilla.ui import Icons, Theme

FORMATS = ("json", "pretty", "raw")
PROGRESS_WIDTH = 20


def format_event(event: StreamEvent, fmt: str = "pretty") -> Text | str | None:
    """Render one event. ``pretty`` returns rich Text; None means nothing to show."""
    if fmt == "json":
        return event.to_json()
    if fmt == "raw":
        return _stringify(event.content)
    return _format_pretty(event)


def render_event(event: StreamEvent, console: Console, fmt: str = "pretty") -> None:
    rendered = format_event(event, fmt)
    if rendered is None:
        return
    if isinstance(rendered, Text):
        console.print(rendered)
    else:
        # Raw and JSON output must reach the terminal unmodified.
        console.print(rendered, markup=False, highlight=False, soft_wrap=True)


def _format_pretty(event: StreamEvent) -> Text | None:
    content = event.content
    line = Text()
    line.append(f"{_format_time(event.timestamp)} ", style=Theme.MUTED)
    line.append(f"[{event.task_id}] ", style=Theme.SECONDARY)

    if event.type == EventType.AGENT_ACTIVITY:
        activity = _field(content, "activity") or _stringify(content)
        line.append(f"{Icons.ROBOT} {activity}", style=Theme.MESSAGE)
        return line

    if event.type == EventType.TOOL_USE:
        if not isinstance(content, dict) or not content.get("name"):
            return None
        params = format_tool_params(content)
        line.append(f"{Icons.TOOL} {content['name']}", style=f"bold {Theme.WARNING}")
        if params:
            line.append(f": {params}", style=Theme.MUTED)
        return line

    if event.type == EventType.THINKING:
        if not isinstance(content, str):
            return None
        preview = content[:100] + ("..." if len(content) > 100 else "")
        line.append(f"{Icons.BRAIN} {preview}", style=Theme.REASONING)
        return line

    if event.type == EventType.OUTPUT:
        line.append(f"{Icons.OUTPUT} {_stringify(content)}", style=Theme.MESSAGE)
        return line

    if event.type == EventType.ERROR:
        message = _field(content, "message") or _stringify(content)
        line.append(f"{Icons.ERROR} {message}", style=Theme.ERROR)
        return line

    if event.type == EventType.STATUS:
        message = _field(content, "message") or _field(content, "status") or _stringify(content)
        line.append(f"{Icons.INFO} {message}", style=Theme.INFO)
        return line

    if event.type == EventType.PROGRESS:
        percentage = content.get("percentage") if isinstance(content, dict) else None
        message = _field(content, "message")
        if isinstance(percentage, (int, float)):
            line.append(progress_bar(percentage), style=Theme.PRIMARY)
            if message:
                line.append(f" {message}", style=Theme.MUTED)
        else:
            line.append(f"{Icons.CLOCK} {message or 'Processing...'}", style=Theme.MUTED)
        return line

    return None


def format_tool_params(tool: dict[str, Any]) -> str:
    """Short preview of the parameter that identifies a tool call."""
    params = tool.get("input")
    if not isinstance(params, dict) or not params:
        return ""
    name = tool.get("name")

    if name in ("Read", "Write", "Edit"):
        return str(params.get("file_path") or "")
    if name == "Bash":
        command = params.get("command")
        return f'"{str(command)[:50]}..."' if command else ""
    if name in ("Search", "Grep"):
        pattern = params.get("pattern")
        return f'"{pattern}"' if pattern else ""

    value = next(iter(params.values()))
    if isinstance(value, str):
        return value[:50] + "..." if len(value) > 50 else value
    return ""


def progress_bar(percentage: float, width: int = PROGRESS_WIDTH) -> str:
    clamped = max(0.0, min(100.0, float(percentage)))
    filled = round(clamped / 100 * width)
    bar = Icons.BAR_FILLED * filled + Icons.BAR_EMPTY * (width - filled)
    return f"[{bar}] {percentage:g}%"


def _format_time(timestamp: str) -> str:
    try:
        return datetime.fromisoformat(timestamp).astimezone().strftime("%H:%M:%S")
    except (TypeError, ValueError):
        return str(timestamp)


def _field(content: Any, key: str) -> str:
    if isinstance(content, dict):
        value = content.get(key)
        if value is not None:
            return str(value)
    return ""


def _stringify(content: Any) -> str:
    if isinstance(content, str):
        return content
    if content is None:
        return ""
    return json.dumps(content, ensure_ascii=False)
