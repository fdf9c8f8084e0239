"""
One JSON object per log line, tagged with a correlation ID.

HTTP requests take their ID from the X-Correlation-ID header (or get a fresh
one) in CorrelationIdMiddleware. Dispatcher handlers bind "dlv-<id>" for a
webhook delivery and "fup-<id>" for a follow-up job, so every attempt on the
same row shares one ID in the logs.
"""
import json
import logging
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

correlation_id_ctx: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Keys lifted out of `extra=` into the JSON object; anything else is dropped
EXTRA_FIELDS = (
    "org_id",
    "lead_id",
    "endpoint_id",
    "delivery_id",
    "job_id",
    "sequence_id",
    "event_type",
    "error_code",
)

# Chatty at INFO: access lines, SQL echo, per-request HTTP client lines
QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpcore", "httpx", "twilio.http_client")


def get_correlation_id() -> Optional[str]:
    return correlation_id_ctx.get()


def set_correlation_id(cid: str) -> None:
    correlation_id_ctx.set(cid)


def generate_correlation_id() -> str:
    """32 hex chars."""
    return uuid.uuid4().hex


class StructuredJsonFormatter(logging.Formatter):
    """Renders a record as {"timestamp", "level", "correlation_id", "module", "message", ...}."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "correlation_id": get_correlation_id(),
            "module": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)

        for key in EXTRA_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value

        return json.dumps(entry, default=str)


def configure_structured_logging(log_level: str = "INFO") -> None:
    """Point the root logger at a single JSON stream handler (called from create_app)."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for handler in root.handlers[:]:
        root.removeHandler(handler)
    handler = logging.StreamHandler()
    handler.setFormatter(StructuredJsonFormatter())
    root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
