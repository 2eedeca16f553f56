"""
Structured logging configuration for production use.

Provides JSON-formatted logs for better parsing and aggregation. While a
consumed event is being handled, every record also carries the event's id,
topic and correlation id, so one planning or medical event can be traced
across the handler, the services it calls and the events it publishes.
"""
import logging
import sys
import json
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional
from core.config import settings

_event_context: ContextVar[Optional[Dict[str, Any]]] = ContextVar("event_context", default=None)

EVENT_FIELDS = ("event_id", "topic", "correlation_id")


@contextmanager
def event_context(envelope: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
    """Tag log records emitted inside the block with the envelope's identifiers."""
    context = {key: envelope[key] for key in EVENT_FIELDS if envelope.get(key)}
    token = _event_context.set(context)
    try:
        yield context
    finally:
        _event_context.reset(token)


def current_event_context() -> Dict[str, Any]:
    return dict(_event_context.get() or {})


class EventContextFilter(logging.Filter):
    """Copies the current event context onto each record as ``event``."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.event = current_event_context()
        return True


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "service": settings.EVENT_SOURCE,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        event = getattr(record, "event", None)
        if event:
            log_data["event"] = event

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Add extra fields if present
        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Plain text for development, with the event id and topic appended when set."""

    def __init__(self):
        super().__init__("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        event = getattr(record, "event", None)
        if event:
            line += f" [{event.get('topic')} {event.get('event_id')}]"
        return line


def setup_logging():
    """
    Configure application-wide logging.

    Uses JSON format in production, text format in development.
    """
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    if settings.LOG_FORMAT == "json" or settings.ENVIRONMENT == "production":
        formatter = JSONFormatter()
    else:
        formatter = TextFormatter()

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(EventContextFilter())
    root_logger.addHandler(console_handler)

    # Set levels for noisy libraries
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("celery").setLevel(logging.INFO)

    return root_logger
