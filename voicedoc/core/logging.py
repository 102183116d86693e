"""
VoiceDoc Worker - Structured Logging

Structured logging with JSON output for the queue worker.
All log entries include:
- timestamp (ISO 8601)
- level (DEBUG/INFO/WARNING/ERROR/CRITICAL)
- logger name
- message
- Context fields (worker_id, job_id, stage, etc.)

Features:
- JSON format for log aggregation
- Per-task context so concurrent jobs never share fields
- Performance timing utilities
- Sensitive data redaction

Usage:
    import logging

    from voicedoc.core.logging import LogContext

    logger = logging.getLogger(__name__)

    with LogContext(job_id=job.id, stage="TRANSCRIBED"):
        logger.info("Stage started")
        # All logs in this block include job_id and stage
"""

from __future__ import annotations

import json
import logging
import sys
import time
import traceback
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Generator

from pydantic import BaseModel

# =============================================================================
# Context Variables for Correlation
# =============================================================================

_log_context: ContextVar[Dict[str, Any]] = ContextVar("log_context", default={})


def get_current_context() -> Dict[str, Any]:
    """Get current logging context."""
    return _log_context.get().copy()


# =============================================================================
# Sensitive Data Redaction
# =============================================================================

REDACT_PATTERNS = frozenset(
    {
        "password",
        "secret",
        "api_key",
        "apikey",
        "token",
        "auth",
        "credential",
        "signature",
        "service_role",
    }
)


def redact_sensitive(data: Any, max_depth: int = 10) -> Any:
    """
    Recursively redact sensitive fields from data structures.

    Args:
        data: Data to redact (dict, list, or primitive)
        max_depth: Maximum recursion depth

    Returns:
        Data with sensitive fields redacted
    """
    if max_depth <= 0:
        return "[MAX_DEPTH_EXCEEDED]"

    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            key_lower = str(key).lower()
            if any(pattern in key_lower for pattern in REDACT_PATTERNS):
                result[key] = "[REDACTED]"
            else:
                result[key] = redact_sensitive(value, max_depth - 1)
        return result

    if isinstance(data, (list, tuple)):
        return [redact_sensitive(item, max_depth - 1) for item in data]

    if isinstance(data, BaseModel):
        return redact_sensitive(data.model_dump(), max_depth - 1)

    return data


# =============================================================================
# JSON Formatter
# =============================================================================

# Attributes passed via ``extra=`` that are promoted into the JSON document.
EXTRA_KEYS = (
    "worker_id",
    "job_id",
    "stage",
    "event",
    "batch_size",
    "succeeded",
    "failed",
    "recent_hard_failures",
    "degraded",
    "duration_ms",
    "status",
    "error_code",
    "error_type",
    "error_message",
    "attempt",
    "max_attempts",
    "count",
    "total_failures",
    "outcome",
)


class StructuredJsonFormatter(logging.Formatter):
    """
    JSON log formatter for production environments.

    Output format:
    {
        "timestamp": "2026-10-18T10:30:00.123456+00:00",
        "level": "INFO",
        "logger": "voicedoc.workers.runner",
        "message": "Batch finished",
        "worker_id": "external-host-1760000000-ab12",
        "batch_size": 5,
        ...
    }
    """

    def __init__(
        self,
        include_timestamp: bool = True,
        include_traceback: bool = True,
        redact_sensitive_data: bool = True,
    ):
        super().__init__()
        self.include_timestamp = include_timestamp
        self.include_traceback = include_traceback
        self.redact_sensitive_data = redact_sensitive_data

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_dict: Dict[str, Any] = {
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if self.include_timestamp:
            log_dict["timestamp"] = datetime.now(timezone.utc).isoformat()

        log_dict.update(get_current_context())

        for key in EXTRA_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                log_dict[key] = value

        if record.exc_info and self.include_traceback:
            log_dict["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info),
            }

        if self.redact_sensitive_data:
            log_dict = redact_sensitive(log_dict)

        return json.dumps(log_dict, default=str, ensure_ascii=False)


class _SimpleFormatter(logging.Formatter):
    """Simple timestamp | level | name | message format, with job context appended."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = get_current_context()
        parts = [f"{key}={context[key]}" for key in ("job_id", "stage") if key in context]
        if parts:
            line = f"{line} [{', '.join(parts)}]"
        return line


# =============================================================================
# Split-Stream Handler (stdout for INFO/DEBUG, stderr for WARNING+)
# =============================================================================


class _MaxLevelFilter(logging.Filter):
    """Filter that passes records at or below a maximum level."""

    def __init__(self, max_level: int):
        super().__init__()
        self.max_level = max_level

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno <= self.max_level


def _create_split_handlers(
    formatter: logging.Formatter,
    level: int = logging.DEBUG,
) -> list[logging.Handler]:
    """
    Create handlers that route logs to stdout/stderr based on level.

    - DEBUG, INFO → stdout
    - WARNING, ERROR, CRITICAL → stderr
    """
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(level)
    stdout_handler.addFilter(_MaxLevelFilter(logging.INFO))
    stdout_handler.setFormatter(formatter)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(logging.WARNING)
    stderr_handler.setFormatter(formatter)

    return [stdout_handler, stderr_handler]


# =============================================================================
# Logger Configuration
# =============================================================================

NOISY_LOGGERS = ("httpx", "httpcore", "openai", "hpack", "psycopg.pool")


def configure_worker_logging(
    worker_name: str,
    level: str = "INFO",
    json_output: bool = False,
) -> logging.Logger:
    """
    Configure logging for a worker process with split stdout/stderr streams.

    Args:
        worker_name: Name of the worker (used as logger name).
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        json_output: Emit JSON lines instead of the simple pipe format.

    Returns:
        Configured logger instance for the worker.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    # Remove existing handlers to avoid duplicates
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    formatter: logging.Formatter
    formatter = StructuredJsonFormatter() if json_output else _SimpleFormatter()
    for handler in _create_split_handlers(formatter, numeric_level):
        root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return logging.getLogger(worker_name)


# =============================================================================
# Context Manager
# =============================================================================


@contextmanager
def LogContext(**kwargs: Any) -> Generator[None, None, None]:
    """
    Context manager for adding fields to all logs within the block.

    Usage:
        with LogContext(job_id="SM123", stage="ANALYZED"):
            logger.info("Processing")  # Includes job_id and stage
    """
    token = _log_context.set({**_log_context.get(), **kwargs})
    try:
        yield
    finally:
        _log_context.reset(token)


# =============================================================================
# Timing Utilities
# =============================================================================


class Timer:
    """
    Context manager for timing code blocks.

    Usage:
        with Timer() as t:
            await do_something()
        logger.info("Operation took", extra={"duration_ms": t.elapsed_ms})
    """

    def __init__(self) -> None:
        self.start_time: float = 0
        self.end_time: float = 0

    def __enter__(self) -> "Timer":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args: Any) -> None:
        self.end_time = time.perf_counter()

    @property
    def elapsed_ms(self) -> float:
        """Elapsed time in milliseconds."""
        end = self.end_time or time.perf_counter()
        return (end - self.start_time) * 1000


# =============================================================================
# Worker Logging Helpers
# =============================================================================


def log_worker_start(
    logger: logging.Logger,
    job_id: str,
    stage: str,
    attempt: int,
    **extra: Any,
) -> None:
    """Log job start with standard fields."""
    logger.info(
        "Job started",
        extra={"job_id": job_id, "stage": stage, "attempt": attempt, "status": "started", **extra},
    )


def log_worker_success(
    logger: logging.Logger,
    job_id: str,
    duration_ms: float,
    **extra: Any,
) -> None:
    """Log job success with standard fields."""
    logger.info(
        "Job completed",
        extra={
            "job_id": job_id,
            "status": "success",
            "duration_ms": round(duration_ms, 2),
            **extra,
        },
    )


def log_worker_failure(
    logger: logging.Logger,
    job_id: str,
    error_message: str,
    duration_ms: float,
    attempt: int = 1,
    max_attempts: int = 5,
    **extra: Any,
) -> None:
    """Log job failure with standard fields."""
    logger.warning(
        f"Job failed: {error_message}",
        extra={
            "job_id": job_id,
            "status": "failed",
            "duration_ms": round(duration_ms, 2),
            "attempt": attempt,
            "max_attempts": max_attempts,
            "error_message": error_message,
            **extra,
        },
    )


def emit_worker_event(logger: logging.Logger, event: str, **fields: Any) -> None:
    """
    Emit a single-line JSON lifecycle event (WORKER_BOOT, WORKER_SHUTDOWN, ...).

    The message is JSON regardless of the configured formatter.
    """
    data = redact_sensitive(fields)
    data["timestamp"] = datetime.now(timezone.utc).isoformat()
    payload = {"event": event, "data": data}
    level = logging.CRITICAL if event == "WORKER_CRASH" else logging.INFO
    logger.log(level, json.dumps(payload, default=str), extra={"event": event})
