"""
Outcome recorder - closes the loop on a claimed ledger row.

Every write is an UPDATE by primary key guarded by status = 'processing', so
exactly one outcome can ever land for a processing attempt. A writer that
finds the row already moved on (e.g. failed by the stuck-event sweeper) gets
False back and must not report a second outcome.

record_processed / record_skipped take the caller's session so the outcome
commits in the same transaction as the handler's domain writes.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from hookledger.models.webhook_event import WebhookEvent

logger = logging.getLogger(__name__)

MAX_ERROR_MESSAGE_LENGTH = 2000


async def _close(
    db: AsyncSession,
    record_id: uuid.UUID,
    stale_before: Optional[datetime] = None,
    **values,
) -> bool:
    now = datetime.now(timezone.utc)
    values.setdefault("updated_at", now)
    conditions = [WebhookEvent.id == record_id, WebhookEvent.status == "processing"]
    if stale_before is not None:
        # Only if nobody touched the row since the caller looked at it
        conditions.append(WebhookEvent.updated_at < stale_before)
    result = await db.execute(
        update(WebhookEvent)
        .where(*conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    won = result.rowcount == 1
    if not won:
        logger.warning(
            "Outcome %s not recorded for %s: row is no longer processing",
            values.get("status"), record_id,
            extra={"record_id": str(record_id), "status": values.get("status")},
        )
    return won


async def record_processed(db: AsyncSession, record_id: uuid.UUID, duration_ms: int) -> bool:
    return await _close(
        db,
        record_id,
        status="processed",
        processed_at=datetime.now(timezone.utc),
        processing_duration_ms=duration_ms,
        error_message=None,
        error_category=None,
    )


async def record_skipped(
    db: AsyncSession,
    record_id: uuid.UUID,
    duration_ms: int,
    reason: Optional[str] = None,
) -> bool:
    return await _close(
        db,
        record_id,
        status="skipped",
        processed_at=datetime.now(timezone.utc),
        processing_duration_ms=duration_ms,
        error_message=reason,
    )


async def record_failed(
    db: AsyncSession,
    record_id: uuid.UUID,
    *,
    error_message: str,
    error_category: str,
    duration_ms: Optional[int] = None,
    stale_before: Optional[datetime] = None,
) -> bool:
    """Mark failed, keep the error, and count the attempt (retry_count + 1)."""
    return await _close(
        db,
        record_id,
        stale_before=stale_before,
        status="failed",
        processing_duration_ms=duration_ms,
        error_message=(error_message or "")[:MAX_ERROR_MESSAGE_LENGTH],
        error_category=error_category,
        retry_count=WebhookEvent.retry_count + 1,
    )
