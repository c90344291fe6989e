"""
Structured JSON logging with correlation IDs.

One JSON object per line. Requests get their correlation id from the
middleware (X-Correlation-ID or a fresh one); background work opens its own
with correlation_scope() so every log line and audit row of one retry or sweep
can be grouped. Webhook lifecycle fields travel through `extra=`.
"""
import json
import logging
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Iterator, Optional

correlation_id_ctx: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Record attributes copied into the JSON line when set via extra=
EXTRA_FIELDS = (
    "provider",
    "event_id",
    "event_type",
    "record_id",
    "status",
    "stage",
    "duration_ms",
    "error_category",
    "retry_count",
    "resource_kind",
)

NOISY_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpcore", "httpx", "stripe", "twilio.http_client")


def get_correlation_id() -> Optional[str]:
    return correlation_id_ctx.get()


def set_correlation_id(cid: str) -> None:
    correlation_id_ctx.set(cid)


def generate_correlation_id(prefix: str = "") -> str:
    """UUID4 hex (32 chars), optionally prefixed for worker-originated ids (e.g. "retry-")."""
    return f"{prefix}{uuid.uuid4().hex}"


@contextmanager
def correlation_scope(cid: Optional[str] = None, prefix: str = "") -> Iterator[str]:
    """Bind a correlation id for the duration of the block, restoring the previous one after."""
    cid = cid or generate_correlation_id(prefix)
    token = correlation_id_ctx.set(cid)
    try:
        yield cid
    finally:
        correlation_id_ctx.reset(token)


class StructuredJsonFormatter(logging.Formatter):
    """{"timestamp", "level", "correlation_id", "module", "message", [exception], [webhook fields]}"""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "correlation_id": get_correlation_id(),
            "module": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)

        entry.update(
            (key, getattr(record, key))
            for key in EXTRA_FIELDS
            if getattr(record, key, None) is not None
        )
        return json.dumps(entry, default=str)


def configure_structured_logging(log_level: str = "INFO") -> None:
    """Install the JSON formatter on the root logger. Call once at startup."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(StructuredJsonFormatter())
    root_logger.addHandler(stream_handler)

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)
