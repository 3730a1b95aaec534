"""Utilities for reading and atomically writing JSON artifacts."""

from __future__ import annotations

import json
import os
import threading
from pathlib import Path
from typing import Any

from flotilla.exceptions import CorruptArtifactError


def write_json_atomic(path: str | Path, data: Any) -> int:
    """Write ``data`` as indented JSON via a temp file and ``os.replace``.

    Readers never observe a half-written file. Returns the number of bytes written.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = json.dumps(data, indent=2, ensure_ascii=False) + "\n"
    tmp = path.with_name(f".{path.name}.{os.getpid()}.{threading.get_ident()}.tmp")
    try:
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    finally:
        if tmp.exists():
            tmp.unlink()
    return len(payload.encode("utf-8"))


def read_json_file(path: str | Path) -> Any:
    """Load a JSON file, raising CorruptArtifactError if it does not parse."""
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise CorruptArtifactError(f"Invalid JSON in {path.name}: {exc}", str(path)) from exc


def parse_json_object(text: str) -> dict[str, Any] | None:
    """Parse a line of agent output as a JSON object.

    Handles surrounding whitespace and a single markdown code fence.
    Returns None for anything that is not an object.
    """
    text = text.strip()
    if text.startswith("```"):
        text = text.strip("`").strip()
        if text.startswith("json"):
            text = text[4:].strip()
    if not text.startswith("{") or not text.endswith("}"):
        return None
    try:
        result = json.loads(text)
    except json.JSONDecodeError:
        return None
    if isinstance(result, dict):
        return result
    return None
