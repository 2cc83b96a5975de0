"""Structured logging for the Ralph injection core.

Events are emitted through structlog with a component name bound to every
entry, plus correlation fields (batch_id, run_id, task_id) taken from the
active ``ExecutionContext``.

Example usage:
    from ralph.core.logging import configure_logging, get_logger, with_context

    configure_logging(level="DEBUG", format="console")

    logger = get_logger("ralph_loop")
    logger.info("ralph_loop.batch_started", total_tasks=12)

    ctx = ExecutionContext(batch_id="nightly")
    with with_context(ctx.with_task("src/math.ts:add")):
        logger.debug("ralph_loop.attempt_started", tier="worker")
"""

from __future__ import annotations

import logging
import sys
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

if TYPE_CHECKING:
    from ralph.core.config import LogConfig

# Keys whose values are replaced with "[REDACTED]" before rendering
SENSITIVE_PATTERNS = frozenset({
    "api_key",
    "apikey",
    "token",
    "secret",
    "password",
    "credential",
    "authorization",
})

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]
LogFormat = Literal["json", "console", "both"]


@dataclass(frozen=True)
class ExecutionContext:
    """Correlation identifiers attached to every entry logged inside ``with_context``.

    Attributes:
        batch_id: Name of the batch being processed.
        run_id: Unique id of one ``run_batch`` invocation.
        task_id: Task currently being attempted, if any.
        component: Component performing the work.
    """

    batch_id: str
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    task_id: str | None = None
    component: str = "unknown"

    def with_task(self, task_id: str) -> ExecutionContext:
        """Return a copy scoped to a single task."""
        return replace(self, task_id=task_id)

    def with_component(self, component: str) -> ExecutionContext:
        return replace(self, component=component)

    def to_dict(self) -> dict[str, Any]:
        """Fields to merge into log entries (None values omitted)."""
        result: dict[str, Any] = {
            "batch_id": self.batch_id,
            "run_id": self.run_id,
            "component": self.component,
        }
        if self.task_id is not None:
            result["task_id"] = self.task_id
        return result


_current_context: ContextVar[ExecutionContext | None] = ContextVar(
    "ralph_context", default=None
)


def get_current_context() -> ExecutionContext | None:
    return _current_context.get()


@contextmanager
def with_context(ctx: ExecutionContext) -> Iterator[ExecutionContext]:
    """Make ``ctx`` the active execution context for the enclosed block."""
    token = _current_context.set(ctx)
    try:
        yield ctx
    finally:
        _current_context.reset(token)


def _redact(key: str, value: Any) -> Any:
    key_lower = key.lower()
    if any(pattern in key_lower for pattern in SENSITIVE_PATTERNS):
        return "[REDACTED]"
    return value


def _redact_sensitive(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Processor that redacts sensitive keys, one level deep into dict values."""
    redacted: EventDict = {}
    for key, value in event_dict.items():
        if isinstance(value, dict):
            redacted[key] = {k: _redact(k, v) for k, v in value.items()}
        else:
            redacted[key] = _redact(key, value)
    return redacted


def _add_timestamp(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    event_dict["timestamp"] = datetime.now(UTC).isoformat()
    return event_dict


def _add_context(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Processor that merges the active ExecutionContext.

    Explicitly bound keys win over context keys.
    """
    ctx = get_current_context()
    if ctx is not None:
        for key, value in ctx.to_dict().items():
            event_dict.setdefault(key, value)
    return event_dict


class RalphLogger:
    """Component logger wrapping structlog.

    The underlying structlog logger is fetched on every call so that loggers
    created at import time honour a later ``configure_logging()``.
    """

    def __init__(self, component: str, **initial_context: Any) -> None:
        self._component = component
        self._context: dict[str, Any] = {"component": component, **initial_context}

    def _get_logger(self) -> structlog.stdlib.BoundLogger:
        logger: structlog.stdlib.BoundLogger = structlog.get_logger().bind(**self._context)
        return logger

    @property
    def component(self) -> str:
        return self._component

    def bind(self, **context: Any) -> RalphLogger:
        """Return a new logger with extra bound context."""
        bound = RalphLogger(self._component)
        bound._context = {**self._context, **context}
        return bound

    def debug(self, event: str, **kw: Any) -> None:
        self._get_logger().debug(event, **kw)

    def info(self, event: str, **kw: Any) -> None:
        self._get_logger().info(event, **kw)

    def warning(self, event: str, **kw: Any) -> None:
        self._get_logger().warning(event, **kw)

    def error(self, event: str, **kw: Any) -> None:
        self._get_logger().error(event, **kw)

    def exception(self, event: str, **kw: Any) -> None:
        """Log at error level with the active exception's traceback."""
        self._get_logger().exception(event, **kw)


def _shared_processors(
    include_timestamps: bool,
    include_context: bool,
) -> list[Processor]:
    processors: list[Processor] = [
        structlog.stdlib.add_log_level,
        _redact_sensitive,
    ]
    if include_context:
        processors.append(_add_context)
    if include_timestamps:
        processors.append(_add_timestamp)
    processors.extend([
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ])
    return processors


def _formatter(renderer: Processor, pre_chain: list[Processor]) -> logging.Formatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=pre_chain,
    )


def configure_logging(
    level: LogLevel = "INFO",
    format: LogFormat = "console",  # noqa: A002
    file_path: Path | None = None,
    max_file_size_mb: int = 50,
    backup_count: int = 5,
    include_timestamps: bool = True,
    include_context: bool = True,
) -> None:
    """Configure structlog and the stdlib root logger.

    Rendering happens per handler, so with "both" the stderr stream gets
    console lines while the file gets JSON lines from the same events.

    Args:
        level: Minimum level to emit.
        format: "console" renders human-readable lines to stderr, "json" emits
            JSON lines (to ``file_path`` if given, stdout otherwise), "both"
            writes console to stderr and JSON to ``file_path``.
        file_path: Log file; required when format is "both".
        max_file_size_mb: Size at which the log file is rotated.
        backup_count: Number of rotated files kept.
        include_timestamps: Add an ISO8601 UTC ``timestamp`` key.
        include_context: Merge the active ExecutionContext into entries.

    Raises:
        ValueError: If format is "both" and no file_path is given.
    """
    if format == "both" and file_path is None:
        raise ValueError("file_path is required when format='both'")

    log_level = getattr(logging, level)
    shared = _shared_processors(include_timestamps, include_context)
    console_formatter = _formatter(structlog.dev.ConsoleRenderer(colors=False), shared)
    json_formatter = _formatter(structlog.processors.JSONRenderer(), shared)
    handlers: list[logging.Handler] = []

    if format in ("console", "both"):
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(console_formatter)
        handlers.append(console_handler)

    if format in ("json", "both"):
        json_handler: logging.Handler
        if file_path is not None:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            json_handler = RotatingFileHandler(
                file_path,
                maxBytes=max_file_size_mb * 1024 * 1024,
                backupCount=backup_count,
                encoding="utf-8",
            )
        else:
            json_handler = logging.StreamHandler(sys.stdout)
        json_handler.setFormatter(json_formatter)
        handlers.append(json_handler)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in handlers:
        handler.setLevel(log_level)
        root_logger.addHandler(handler)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def configure_logging_from_config(config: LogConfig) -> None:
    """Apply a ``LogConfig`` (for example ``RalphConfig.logging``)."""
    configure_logging(**config.model_dump())


def get_logger(component: str, **initial_context: Any) -> RalphLogger:
    """Get a logger bound to ``component``."""
    return RalphLogger(component, **initial_context)


__all__ = [
    "ExecutionContext",
    "LogFormat",
    "LogLevel",
    "RalphLogger",
    "SENSITIVE_PATTERNS",
    "configure_logging",
    "configure_logging_from_config",
    "get_current_context",
    "get_logger",
    "with_context",
]
