"""
Structured logging utilities for the HarperDB client.

Provides:
- JSON log formatting with request/operation/schema context
- Request ID tracking across retries and batch waves
- Timed operation logging
"""

import json
import logging
import time
import uuid
from typing import Any
from contextvars import ContextVar

# Context variables for request/operation tracking
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
operation_var: ContextVar[str] = ContextVar("operation", default="")
schema_var: ContextVar[str] = ContextVar("schema", default="")

# Attributes every LogRecord carries; anything else came in through `extra`
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime"}

_handler: logging.Handler | None = None


def new_request_id() -> str:
    return uuid.uuid4().hex[:16]


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs logs in JSON format with consistent fields:
    - timestamp
    - level
    - logger
    - message
    - request_id, operation, schema (if set in the current context)
    - extra fields passed via `extra=`
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for name, var in (
            ("request_id", request_id_var),
            ("operation", operation_var),
            ("schema", schema_var),
        ):
            value = var.get()
            if value:
                log_data[name] = value

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                log_data.setdefault(key, value)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class PerformanceLogger:
    """
    Performance logging context manager.

    Logs operation start, duration and outcome. The elapsed time is available
    as `duration_ms` once the block exits.

    Example:
        async with PerformanceLogger("insert_many", logger=logger, table="dogs"):
            result = await run_batched(...)
    """

    def __init__(
        self,
        operation: str,
        logger: logging.Logger,
        level: int = logging.DEBUG,
        **context: Any
    ):
        """
        Initialize performance logger.

        Args:
            operation: Operation name
            logger: Logger instance
            level: Level used for start/completion records (failures log at ERROR)
            **context: Additional context fields
        """
        self.operation = operation
        self.logger = logger
        self.level = level
        self.context = context
        self.start_time: float | None = None
        self.duration_ms: float | None = None
        self._token = None

    async def __aenter__(self):
        """Start timing."""
        self.start_time = time.perf_counter()
        self._token = operation_var.set(self.operation)

        self.logger.log(
            self.level,
            f"Starting operation: {self.operation}",
            extra={"event": "operation_start", **self.context}
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Log duration and outcome."""
        self.duration_ms = (time.perf_counter() - self.start_time) * 1000

        if exc_type:
            self.logger.error(
                f"Operation failed: {self.operation}",
                extra={
                    "event": "operation_failed",
                    "duration_ms": round(self.duration_ms, 2),
                    "error_type": exc_type.__name__,
                    "error": str(exc_val),
                    **self.context
                }
            )
        else:
            self.logger.log(
                self.level,
                f"Operation completed: {self.operation}",
                extra={
                    "event": "operation_completed",
                    "duration_ms": round(self.duration_ms, 2),
                    **self.context
                }
            )

        operation_var.reset(self._token)


def setup_production_logging(
    level: str | int = "INFO",
    format: str = "json",
    logger_name: str = "vertector_harperdb",
) -> logging.Logger:
    """
    Attach one stream handler to the client's package logger.

    Only the `vertector_harperdb` logger tree is touched, so the host
    application's root logging stays as configured. Calling it again replaces
    the handler rather than stacking a second one.

    Args:
        level: Level name or number for the package logger
        format: "json" for StructuredFormatter, "text" for a plain line format
        logger_name: Logger to configure

    Returns:
        The configured logger

    Example:
        setup_production_logging(level="DEBUG")  # cache hits, retries, batch waves
    """
    package_logger = logging.getLogger(logger_name)
    package_logger.setLevel(level if isinstance(level, int) else level.upper())

    global _handler
    if _handler is not None:
        package_logger.removeHandler(_handler)

    handler = _handler = logging.StreamHandler()
    if format.lower() == "json":
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s"
        ))
    package_logger.addHandler(handler)
    package_logger.propagate = False
    return package_logger


def log_with_context(logger: logging.Logger, level: str | int, message: str, **context: Any) -> None:
    """Log `message` with `context` attached as structured fields."""
    levelno = level if isinstance(level, int) else logging.getLevelName(level.upper())
    logger.log(levelno, message, extra=context)
