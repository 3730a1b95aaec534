"""Configuration management for Flotilla."""

import json
import logging
import os
import shlex
import string
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from pydantic import BaseModel, Field, ValidationError, field_validator

from flotilla.exceptions import ConfigError

_LOG_LEVELS = {
    "critical": logging.CRITICAL,
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}
_LOG_RECORD_KEYS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
}

# Placeholders a backend command template may reference.
COMMAND_PLACEHOLDERS = ("prompt", "deployment_id", "task_id", "agent", "model", "max_turns")

CONFIG_ENV_VAR = "FLOTILLA_CONFIG"
ROOT_ENV_VAR = "FLOTILLA_ROOT"


def _parse_log_level(level: str) -> int:
    normalized = level.strip().lower()
    if normalized in _LOG_LEVELS:
        return _LOG_LEVELS[normalized]
    valid = ", ".join(sorted({k for k in _LOG_LEVELS if k != "warn"}))
    raise ValueError(f"Invalid log level: {level}. Valid: {valid}")


def _coerce_log_levels(levels: dict[str, str]) -> dict[str, str]:
    normalized: dict[str, str] = {}
    for name, level in levels.items():
        _parse_log_level(level)
        normalized[name] = level.strip().lower()
    return normalized


def _iter_log_levels(
    default_level: str,
    per_component: dict[str, str],
) -> Iterable[int]:
    yield _parse_log_level(default_level)
    for level in per_component.values():
        yield _parse_log_level(level)


class _StructuredFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        extras = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _LOG_RECORD_KEYS
        }
        for key, value in extras.items():
            if isinstance(value, (str, int, float, bool)) or value is None:
                payload[key] = value
            else:
                payload[key] = str(value)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        if record.stack_info:
            payload["stack_info"] = record.stack_info
        return json.dumps(payload, ensure_ascii=False)


def configure_logging(config: "FlotillaConfig") -> None:
    """Configure structured logging for CLI usage."""
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    handler: logging.Handler
    if config.log_file:
        handler = logging.FileHandler(config.log_file)
    else:
        handler = logging.StreamHandler()
    handler.setLevel(logging.NOTSET)
    handler.setFormatter(_StructuredFormatter())
    root_logger.addHandler(handler)

    min_level = min(_iter_log_levels(config.log_level, config.log_levels))
    root_logger.setLevel(min_level)

    for name, level in config.log_levels.items():
        logging.getLogger(name).setLevel(_parse_log_level(level))


class FlotillaConfig(BaseModel):
    """Main configuration for the orchestration engine."""

    root: str = Field(default=".flotilla", description="Root directory holding fleets/ and deployed/")

    # Execution
    task_timeout: float = Field(
        default=300.0, gt=0, description="Foreground task timeout (seconds)"
    )
    max_turns: int = Field(default=60, ge=1, description="Maximum agent turns per task")
    model: str | None = Field(default=None, description="Model passed to the backend command")
    backend_command: str = Field(
        default="copilot -p {prompt} --allow-all -s",
        description="Command template for the agent CLI; must contain {prompt}",
    )
    stop_grace_seconds: float = Field(
        default=5.0, ge=0.0, description="Seconds between SIGTERM and SIGKILL when stopping"
    )

    # Streaming
    watch_poll_interval: float = Field(
        default=0.25, gt=0, le=10.0, description="Seconds between stream log polls while following"
    )

    # Logging
    log_level: str = Field(default="warning", description="Log level")
    log_levels: dict[str, str] = Field(
        default_factory=dict,
        description="Per-component log levels (e.g., {'flotilla.store': 'debug'})",
    )
    log_file: str | None = Field(
        default=None,
        description="Optional log file path (structured JSON)",
    )

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        _parse_log_level(value)
        return value.strip().lower()

    @field_validator("log_levels")
    @classmethod
    def _validate_log_levels(cls, value: dict[str, str]) -> dict[str, str]:
        return _coerce_log_levels(value)

    @field_validator("backend_command")
    @classmethod
    def _validate_backend_command(cls, value: str) -> str:
        if "{prompt}" not in value:
            raise ValueError("backend_command must contain a {prompt} placeholder")
        try:
            shlex.split(value)
            fields = {name for _, name, _, _ in string.Formatter().parse(value) if name}
        except ValueError as exc:
            raise ValueError(f"backend_command is not a valid shell command: {exc}") from exc
        unknown = fields - set(COMMAND_PLACEHOLDERS)
        if unknown:
            valid = ", ".join(COMMAND_PLACEHOLDERS)
            raise ValueError(f"Unknown placeholder(s) {', '.join(sorted(unknown))}. Valid: {valid}")
        return value.strip()

    @property
    def root_path(self) -> Path:
        return Path(self.root).expanduser()

    @classmethod
    def from_file(cls, path: str | Path) -> "FlotillaConfig":
        """Load configuration from TOML file."""
        import tomllib

        path = Path(path)
        if not path.exists():
            return cls()

        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Malformed config file: {exc}", {"path": str(path)}) from exc

        try:
            return cls(**data)
        except ValidationError as exc:
            raise ConfigError(f"Invalid configuration: {exc}", {"path": str(path)}) from exc

    @classmethod
    def default_path(cls) -> Path:
        """Get default config file path."""
        return Path.home() / ".config" / "flotilla" / "config.toml"

    @classmethod
    def load(cls, path: str | Path | None = None, **overrides: Any) -> "FlotillaConfig":
        """Resolve configuration from an explicit path, the environment, or the default file.

        ``FLOTILLA_CONFIG`` names an alternative config file and ``FLOTILLA_ROOT``
        overrides the root directory. Keyword overrides that are not None win
        over both.
        """
        if path is None:
            env_path = os.environ.get(CONFIG_ENV_VAR)
            path = Path(env_path) if env_path else cls.default_path()
        config = cls.from_file(path)

        updates: dict[str, Any] = {}
        env_root = os.environ.get(ROOT_ENV_VAR)
        if env_root:
            updates["root"] = env_root
        updates.update({k: v for k, v in overrides.items() if v is not None})
        if not updates:
            return config
        try:
            return cls(**{**config.model_dump(), **updates})
        except ValidationError as exc:
            raise ConfigError(f"Invalid configuration: {exc}") from exc
