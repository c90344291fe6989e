"""
Idempotency gate - atomically claim (provider, event_id) or detect a duplicate.

The claim is a single INSERT ... ON CONFLICT DO NOTHING RETURNING id against
the (provider, event_id) unique constraint. Exactly one concurrent caller gets
a row back; every other caller falls through to a read of the winner's row.
There is no read-then-write window.

New rows are inserted directly as `processing` and committed before any
handler runs, so a concurrent redelivery sees "processing" and backs off.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from hookledger.engine.audit import redact_headers, redact_payload
from hookledger.engine.errors import RETRYABLE_CATEGORIES, PayloadValidationError, StorageError
from hookledger.engine.statuses import RECLAIMABLE_LEDGER_STATUSES
from hookledger.models.webhook_event import WebhookEvent
from hookledger.schemas.results import ClaimResult, InboundEvent
from hookledger.utils.logging import get_correlation_id

logger = logging.getLogger(__name__)


def dialect_insert(db: AsyncSession):
    """Dialect-specific INSERT construct that supports ON CONFLICT."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise StorageError(f"Unsupported database dialect for claims: {dialect}")
    return insert


async def claim_event(db: AsyncSession, event: InboundEvent) -> ClaimResult:
    """
    Claim an inbound event for processing.

    First sighting: inserts the ledger row as `processing`, commits, and returns
    is_duplicate=False. Repeat sighting: returns is_duplicate=True with the
    stored status; the caller must not process the event.

    Raises PayloadValidationError for an empty event id, StorageError if the
    database is unavailable (the claim may or may not have been recorded).
    """
    if not event.event_id or not event.event_id.strip():
        raise PayloadValidationError(
            "Webhook event id is empty", provider=event.provider
        )

    now = datetime.now(timezone.utc)
    record_id = uuid.uuid4()
    insert = dialect_insert(db)

    stmt = (
        insert(WebhookEvent)
        .values(
            id=record_id,
            provider=event.provider,
            event_id=event.event_id,
            event_type=event.event_type,
            payload=redact_payload(event.payload),
            payload_hash=event.payload_hash,
            status="processing",
            retry_count=0,
            http_headers=redact_headers(event.http_headers),
            ip_address=event.ip_address,
            user_agent=event.user_agent,
            correlation_id=get_correlation_id(),
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=["provider", "event_id"])
        .returning(WebhookEvent.id)
    )

    try:
        inserted_id = (await db.execute(stmt)).scalar_one_or_none()
        existing: Optional[WebhookEvent] = None
        if inserted_id is None:
            existing = await get_event(db, event.provider, event.event_id)
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(
            "Claim failed for %s %s: %s", event.provider, event.event_id, str(e),
            extra={"provider": event.provider, "event_id": event.event_id},
        )
        raise StorageError(
            "Event ledger unavailable", provider=event.provider, event_id=event.event_id
        ) from e

    if inserted_id is not None:
        return ClaimResult(is_duplicate=False, record_id=inserted_id, existing_status="processing")

    if existing is None:
        # Conflict reported but the row is not visible; let the provider retry.
        raise StorageError(
            "Claimed event not readable after conflict",
            provider=event.provider, event_id=event.event_id,
        )

    if event.payload_hash and existing.payload_hash and existing.payload_hash != event.payload_hash:
        logger.warning(
            "Provider reused event id with a different payload: %s %s",
            event.provider, event.event_id,
            extra={"provider": event.provider, "event_id": event.event_id},
        )

    return ClaimResult(
        is_duplicate=True,
        record_id=existing.id,
        existing_status=existing.status,
        retry_count=existing.retry_count,
        error_category=existing.error_category,
    )


async def reclaim_event(db: AsyncSession, record_id: uuid.UUID, max_retries: int) -> bool:
    """
    Move a failed (retryable, under the retry cap) or stale pending row back
    to `processing`. A single conditional UPDATE: at most one caller wins.
    """
    try:
        result = await db.execute(
            update(WebhookEvent)
            .where(
                WebhookEvent.id == record_id,
                WebhookEvent.retry_count < max_retries,
                WebhookEvent.status.in_(RECLAIMABLE_LEDGER_STATUSES),
                # failures only when the category is worth retrying
                or_(
                    WebhookEvent.status != "failed",
                    WebhookEvent.error_category.in_(sorted(RETRYABLE_CATEGORIES)),
                ),
            )
            .values(status="processing", updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        raise StorageError(f"Reclaim failed for {record_id}") from e

    won = result.rowcount == 1
    if won:
        logger.info("Reclaimed webhook event %s for retry", record_id, extra={"record_id": str(record_id)})
    return won


async def get_event(db: AsyncSession, provider: str, event_id: str) -> Optional[WebhookEvent]:
    result = await db.execute(
        select(WebhookEvent).where(
            WebhookEvent.provider == provider,
            WebhookEvent.event_id == event_id,
        ).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()
