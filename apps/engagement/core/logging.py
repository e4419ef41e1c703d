"""
Structured logging for the engagement service.

Every record is stamped with the service name, the environment and any
job context bound with log_context(), so one sweep's lines can be pulled
out of the aggregated stream by job name.

The "engagement.analytics" logger is configured separately: it emits the
raw JSON event line with no envelope and does not propagate to root.
"""
import contextvars
import logging
import sys
import json
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator
from core.config import settings

SERVICE_NAME = "engagement"
ANALYTICS_LOGGER_NAME = "engagement.analytics"

_log_context: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "engagement_log_context", default={}
)


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Bind fields (job, user_id, ...) to every record logged inside the block."""
    token = _log_context.set({**_log_context.get(), **fields})
    try:
        yield
    finally:
        _log_context.reset(token)


class ContextFilter(logging.Filter):
    """Copies the bound log context onto the record as record.context."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.context = dict(_log_context.get())
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "service": SERVICE_NAME,
            "environment": settings.ENVIRONMENT,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
        }
        log_data.update(getattr(record, "context", {}) or {})

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # logger.info(..., extra={"extra_fields": {...}})
        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable lines for local runs; appends bound context as key=value."""

    def __init__(self):
        super().__init__("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = getattr(record, "context", None)
        if context:
            line += " [" + " ".join(f"{k}={v}" for k, v in sorted(context.items())) + "]"
        return line


def _configure_analytics_logger() -> None:
    analytics = logging.getLogger(ANALYTICS_LOGGER_NAME)
    analytics.setLevel(logging.INFO)
    analytics.propagate = False
    analytics.handlers.clear()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(message)s"))
    analytics.addHandler(handler)


def setup_logging() -> logging.Logger:
    """
    Configure the root logger for the API, worker and beat processes.

    JSON in production or when LOG_FORMAT=json, text otherwise.
    """
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    if settings.LOG_FORMAT == "json" or settings.ENVIRONMENT == "production":
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = TextFormatter()

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(ContextFilter())
    root_logger.addHandler(console_handler)

    _configure_analytics_logger()

    # Set levels for noisy libraries
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("celery").setLevel(logging.INFO)

    return root_logger
