"""
Audit sink - structured log line plus an append-only webhook_audit_log row for
every lifecycle stage of an event (received -> claimed -> processing -> outcome).

Payloads are redacted before they are persisted anywhere. Writing the audit row
is best-effort: a failure is logged and never changes the event outcome.
"""
import logging
import re
import uuid
from typing import Any, Optional

from hookledger.utils.logging import get_correlation_id
from hookledger.utils.metrics import latency_bucket

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"

_SENSITIVE_KEY = re.compile(
    r"password|passwd|token|secret|api[_-]?key|apikey|authorization|cookie|signature"
    r"|credit[_-]?card|card[_-]?number|cvc|ssn|social[_-]?security"
    r"|(^|[_-])key$",
    re.IGNORECASE,
)


class AuditStage:
    RECEIVED = "received"
    CLAIMED = "claimed"
    DUPLICATE = "duplicate"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"
    SKIPPED = "skipped"
    SLOW = "slow"


_STAGE_LEVELS = {
    AuditStage.FAILED: logging.ERROR,
    AuditStage.SLOW: logging.WARNING,
    AuditStage.DUPLICATE: logging.INFO,
}


def is_sensitive_key(key: str) -> bool:
    return bool(_SENSITIVE_KEY.search(key))


def redact_payload(obj: Any) -> Any:
    """Deep copy of obj with values under sensitive-looking keys replaced."""
    if isinstance(obj, dict):
        return {
            k: REDACTED if isinstance(k, str) and is_sensitive_key(k) else redact_payload(v)
            for k, v in obj.items()
        }
    if isinstance(obj, (list, tuple)):
        return [redact_payload(item) for item in obj]
    return obj


def redact_headers(headers: Optional[dict]) -> dict:
    """Lower-case header names and redact credentials and signatures."""
    if not headers:
        return {}
    return {
        str(k).lower(): REDACTED if is_sensitive_key(str(k)) else str(v)
        for k, v in headers.items()
    }


async def record_stage(
    stage: str,
    *,
    provider: str,
    event_id: str,
    event_type: Optional[str] = None,
    record_id: Optional[uuid.UUID] = None,
    duration_ms: Optional[int] = None,
    error_category: Optional[str] = None,
    error_message: Optional[str] = None,
    data: Optional[dict] = None,
    session_factory=None,
) -> None:
    """Log one lifecycle stage and append it to the audit table."""
    level = _STAGE_LEVELS.get(stage, logging.INFO)
    logger.log(
        level,
        "Webhook %s: %s %s (%s)",
        stage, provider, event_id, event_type or "-",
        extra={
            "stage": stage,
            "provider": provider,
            "event_id": event_id,
            "event_type": event_type,
            "record_id": str(record_id) if record_id else None,
            "duration_ms": duration_ms,
            "error_category": error_category,
        },
    )

    try:
        from hookledger.models.webhook_audit_log import WebhookAuditLog

        if session_factory is None:
            from hookledger.database import get_session_factory
            session_factory = get_session_factory()

        async with session_factory() as db:
            db.add(WebhookAuditLog(
                stage=stage,
                provider=provider,
                event_id=event_id,
                event_type=event_type,
                record_id=record_id,
                duration_ms=duration_ms,
                error_category=error_category,
                error_message=error_message[:2000] if error_message else None,
                correlation_id=get_correlation_id(),
                data=redact_payload(data) if data else None,
            ))
            await db.commit()
    except Exception as e:
        logger.warning(
            "Failed to write audit row for %s %s stage=%s: %s",
            provider, event_id, stage, str(e),
        )


async def track_performance(
    duration_ms: int,
    *,
    provider: str,
    event_id: str,
    event_type: Optional[str] = None,
    record_id: Optional[uuid.UUID] = None,
    threshold_ms: Optional[int] = None,
    session_factory=None,
) -> bool:
    """Flag processing slower than the threshold. Returns True if it was slow."""
    if threshold_ms is None:
        from hookledger.config import get_settings
        threshold_ms = get_settings().webhook_slow_threshold_ms

    if duration_ms <= threshold_ms:
        return False

    await record_stage(
        AuditStage.SLOW,
        provider=provider,
        event_id=event_id,
        event_type=event_type,
        record_id=record_id,
        duration_ms=duration_ms,
        data={"threshold_ms": threshold_ms, "bucket": latency_bucket(duration_ms)},
        session_factory=session_factory,
    )
    return True
