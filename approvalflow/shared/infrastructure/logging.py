"""
Structured Logging
==================

JSON logs for the approval engine and the escalation watchdog.

Every record carries the environment and, inside an HTTP request, the
request's correlation id. Background sweeps get their own correlation id
per run so that all decisions of one sweep can be grouped.

Usage:
    from approvalflow.shared.infrastructure.logging import get_logger

    logger = get_logger(__name__)
    logger.info("Level committed", extra={"instance_id": instance.id, "level": 2})
"""

import logging
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from pythonjsonlogger import jsonlogger

_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_REDACTED_MARKERS = ("password", "secret", "api_key", "authorization", "token")

# Libraries that log every request or statement at INFO
_QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "apscheduler", "httpx", "watchdog")


def bind_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set the correlation id for the current task and its children."""
    correlation_id = correlation_id or str(uuid.uuid4())
    _correlation_id.set(correlation_id)
    return correlation_id


def current_correlation_id() -> Optional[str]:
    return _correlation_id.get()


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Adds timestamp, correlation id and environment; masks credentials."""

    def __init__(self, *args: Any, environment: str = "unknown", **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.environment = environment

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        log_record["environment"] = self.environment

        correlation_id = getattr(record, "correlation_id", None) or _correlation_id.get()
        if correlation_id:
            log_record["correlation_id"] = correlation_id

        for key, value in list(log_record.items()):
            if isinstance(value, str) and any(marker in key.lower() for marker in _REDACTED_MARKERS):
                log_record[key] = "***REDACTED***"


def setup_logging(level: str = "INFO", environment: str = "development") -> None:
    """
    Route every logger through one JSON handler on stdout.

    Args:
        level: Logging level name
        environment: Written into every record
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter(
        fmt="%(name)s %(levelname)s %(message)s",
        environment=environment,
    ))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(numeric_level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


@contextmanager
def log_latency(logger: logging.Logger, operation: str, **extra_context: Any) -> Iterator[None]:
    """
    Time a block and log the outcome once it exits.

    Usage:
        with log_latency(logger, "escalation_sweep", open_items=len(items)):
            ...
    """
    if _correlation_id.get() is None:
        bind_correlation_id()

    start = time.perf_counter()
    succeeded = False
    try:
        yield
        succeeded = True
    finally:
        logger.log(
            logging.INFO if succeeded else logging.WARNING,
            f"{operation} {'completed' if succeeded else 'aborted'}",
            extra={
                "operation": operation,
                "succeeded": succeeded,
                "latency_ms": round((time.perf_counter() - start) * 1000, 2),
                **extra_context,
            },
        )
