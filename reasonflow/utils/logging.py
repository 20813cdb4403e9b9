"""Structured logging utilities for ReasonFlow.

Wraps loguru with:
- JSON or human-readable output selected from the environment
- Pipeline context (request, session, stage) injected into every record
- Automatic redaction of secrets in bound extras
"""

from __future__ import annotations

import os
import sys
from contextvars import ContextVar
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import orjson
from loguru import logger

if TYPE_CHECKING:
    from loguru import Record

_request_id: ContextVar[str | None] = ContextVar("request_id", default=None)
_session_id: ContextVar[str | None] = ContextVar("session_id", default=None)
_stage: ContextVar[str | None] = ContextVar("stage", default=None)


class LogFormat(str, Enum):
    """Supported log output formats."""

    JSON = "json"
    TEXT = "text"


class LogLevel(str, Enum):
    """Supported log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


SENSITIVE_KEYS = frozenset(
    {
        "apikey",
        "password",
        "secret",
        "token",
        "authorization",
        "credential",
        "privatekey",
    }
)


def redact_sensitive(data: dict[str, Any], depth: int = 0) -> dict[str, Any]:
    """Recursively redact sensitive values from a dictionary.

    Args:
        data: Dictionary to redact.
        depth: Current recursion depth.

    Returns:
        Dictionary with sensitive values replaced with "[REDACTED]".

    """
    if depth > 10:
        return data

    result: dict[str, Any] = {}
    for key, value in data.items():
        key_lower = key.lower().replace("_", "").replace("-", "")
        if any(sensitive in key_lower for sensitive in SENSITIVE_KEYS):
            result[key] = "[REDACTED]"
        elif isinstance(value, dict):
            result[key] = redact_sensitive(value, depth + 1)
        else:
            result[key] = value
    return result


def _pipeline_context() -> dict[str, str]:
    context: dict[str, str] = {}
    if request_id := _request_id.get():
        context["request_id"] = request_id
    if session_id := _session_id.get():
        context["session_id"] = session_id
    if stage := _stage.get():
        context["stage"] = stage
    return context


def json_serializer(record: Record) -> str:
    """Serialize a loguru record to a single JSON line.

    Args:
        record: Loguru record dictionary.

    Returns:
        JSON string representation of the log entry.

    """
    entry: dict[str, Any] = {
        "timestamp": datetime.now(UTC).isoformat(),
        "level": record["level"].name,
        "message": record["message"],
        "module": record["name"],
        "function": record["function"],
        "line": record["line"],
        **_pipeline_context(),
    }
    if record.get("extra"):
        entry["extra"] = redact_sensitive(dict(record["extra"]))
    if record["exception"]:
        exc_info = record["exception"]
        entry["exception"] = {
            "type": exc_info.type.__name__ if exc_info.type else None,
            "value": str(exc_info.value) if exc_info.value else None,
        }
    return orjson.dumps(entry, default=str).decode()


def _patch_record(record: Record) -> None:
    # Pipeline context lands in extra so both sinks can render it
    record["extra"].update(_pipeline_context())
    record["extra"]["serialized"] = json_serializer(record)


def text_prefix(record: Record) -> str:
    """Render the short pipeline-context prefix for text output."""
    parts = []
    if session_id := record["extra"].get("session_id"):
        parts.append(f"sess={session_id[:8]}")
    if stage := record["extra"].get("stage"):
        parts.append(f"stage={stage}")
    return f"[{' '.join(parts)}] " if parts else ""


class StructuredLogger:
    """Structured logging wrapper with pipeline context injection.

    Example:
        log = StructuredLogger("reasonflow")
        log.info("Session sealed", confidence=0.82)

        with log.context(session_id="abc123", stage="chains_built"):
            log.info("Approach finished")

    """

    def __init__(
        self,
        name: str,
        level: LogLevel | str = LogLevel.INFO,
        log_format: LogFormat | str = LogFormat.TEXT,
        log_file: str | Path | None = None,
    ) -> None:
        """Initialize structured logger.

        Args:
            name: Logger name (usually module name).
            level: Minimum log level.
            log_format: Output format (json or text).
            log_file: Optional file path for JSON log output.

        """
        self.name = name
        self.level = LogLevel(level) if isinstance(level, str) else level
        self.log_format = LogFormat(log_format) if isinstance(log_format, str) else log_format
        self._configure_logger(log_file)

    def _configure_logger(self, log_file: str | Path | None = None) -> None:
        """Configure loguru sinks for the chosen format."""
        logger.remove()
        logger.configure(patcher=_patch_record)

        if self.log_format == LogFormat.JSON:
            logger.add(sys.stderr, format="{extra[serialized]}", level=self.level.value)
        else:
            logger.add(
                sys.stderr,
                format=lambda record: (
                    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
                    "<level>{level: <8}</level> | "
                    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
                    + text_prefix(record).replace("{", "{{").replace("}", "}}")
                    + "<level>{message}</level>\n{exception}"
                ),
                level=self.level.value,
                colorize=True,
            )

        if log_file:
            log_path = Path(log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            logger.add(
                log_path,
                format="{extra[serialized]}",
                level=self.level.value,
                rotation="100 MB",
                retention="7 days",
                compression="gz",
            )

    def _log(self, level: str, message: str, **kwargs: Any) -> None:
        bound_logger = logger.bind(**kwargs)
        getattr(bound_logger.opt(depth=2), level)(message)

    def debug(self, message: str, **kwargs: Any) -> None:
        """Log debug message."""
        self._log("debug", message, **kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        """Log info message."""
        self._log("info", message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        """Log warning message."""
        self._log("warning", message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        """Log error message."""
        self._log("error", message, **kwargs)

    def exception(self, message: str, **kwargs: Any) -> None:
        """Log exception with traceback."""
        logger.bind(**kwargs).opt(depth=1, exception=True).error(message)

    class _ContextManager:
        """Context manager for scoped pipeline context."""

        def __init__(
            self,
            request_id: str | None = None,
            session_id: str | None = None,
            stage: str | None = None,
        ) -> None:
            self.request_id = request_id
            self.session_id = session_id
            self.stage = stage
            self._tokens: list[Any] = []

        def __enter__(self) -> StructuredLogger._ContextManager:
            if self.request_id:
                self._tokens.append(_request_id.set(self.request_id))
            if self.session_id:
                self._tokens.append(_session_id.set(self.session_id))
            if self.stage:
                self._tokens.append(_stage.set(self.stage))
            return self

        def __exit__(self, *args: Any) -> None:
            for token in reversed(self._tokens):
                token.var.reset(token)

    def context(
        self,
        request_id: str | None = None,
        session_id: str | None = None,
        stage: str | None = None,
    ) -> _ContextManager:
        """Create a context manager for scoped logging context.

        Args:
            request_id: Caller-supplied request ID.
            session_id: Reasoning session ID.
            stage: Pipeline stage currently running.

        Returns:
            Context manager that sets the logging context.

        """
        return self._ContextManager(request_id, session_id, stage)


def get_logger(
    name: str,
    level: LogLevel | str | None = None,
    log_format: LogFormat | str | None = None,
) -> StructuredLogger:
    """Get a configured structured logger.

    Reads configuration from environment variables if not specified:
    - LOG_LEVEL: Minimum log level (DEBUG, INFO, WARNING, ERROR)
    - LOG_FORMAT: Output format (json, text)
    - LOG_FILE: Optional file path for log output

    Args:
        name: Logger name (usually __name__).
        level: Minimum log level (default: from env or INFO).
        log_format: Output format (default: from env or TEXT).

    Returns:
        Configured StructuredLogger instance.

    """
    env_level = os.getenv("LOG_LEVEL", "INFO")
    env_format = os.getenv("LOG_FORMAT", "text")
    env_file = os.getenv("LOG_FILE")

    return StructuredLogger(
        name=name,
        level=level or LogLevel(env_level.upper()),
        log_format=log_format or LogFormat(env_format.lower()),
        log_file=env_file,
    )


def log_context(
    request_id: str | None = None,
    session_id: str | None = None,
    stage: str | None = None,
) -> StructuredLogger._ContextManager:
    """Scoped pipeline context without configuring any sinks."""
    return StructuredLogger._ContextManager(request_id, session_id, stage)
