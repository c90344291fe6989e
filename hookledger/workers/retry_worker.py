"""
Retry worker - re-runs webhook events that failed with a retryable error.
Runs every 60 seconds, picks failed rows whose backoff has elapsed.

Only retryable categories (storage, network, timeout, unknown) are retried, and
only while retry_count < WEBHOOK_MAX_RETRIES. Rows are taken with the same
conditional reclaim a provider redelivery uses, so the two never both run an event.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from hookledger.engine.errors import RETRYABLE_CATEGORIES
from hookledger.engine.idempotency import reclaim_event
from hookledger.models.webhook_event import WebhookEvent
from hookledger.utils.logging import correlation_scope
from hookledger.utils.redis_client import write_heartbeat

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 60
BATCH_SIZE = 10

# Backoff schedule: attempt N waits RETRY_DELAYS_MINUTES[N-1] after the last failure
RETRY_DELAYS_MINUTES = [1, 5, 15, 60, 240]


def retry_delay(retry_count: int) -> timedelta:
    idx = min(max(retry_count - 1, 0), len(RETRY_DELAYS_MINUTES) - 1)
    return timedelta(minutes=RETRY_DELAYS_MINUTES[idx])


def is_due(failed_at: datetime, retry_count: int, now: datetime) -> bool:
    if failed_at.tzinfo is None:
        failed_at = failed_at.replace(tzinfo=timezone.utc)
    return failed_at + retry_delay(retry_count) <= now


async def run_retry_worker():
    """Main retry worker loop. Runs continuously."""
    logger.info("Retry worker started (poll every %ds)", POLL_INTERVAL_SECONDS)

    while True:
        try:
            processed = await process_pending_retries()
            if processed > 0:
                logger.info("Retry worker re-ran %d failed webhook events", processed)
        except Exception as e:
            logger.error("Retry worker error: %s", str(e), exc_info=True)

        await write_heartbeat("retry_worker")
        await asyncio.sleep(POLL_INTERVAL_SECONDS)


async def process_pending_retries(session_factory=None, router=None, hooks=None) -> int:
    """Find due retryable failures and re-run them. Returns count attempted."""
    from hookledger.config import get_settings
    from hookledger.engine.pipeline import execute_claimed_event

    settings = get_settings()
    if session_factory is None:
        from hookledger.database import get_session_factory
        session_factory = get_session_factory()

    now = datetime.now(timezone.utc)
    async with session_factory() as db:
        result = await db.execute(
            select(WebhookEvent)
            .where(
                WebhookEvent.status == "failed",
                WebhookEvent.error_category.in_(sorted(RETRYABLE_CATEGORIES)),
                WebhookEvent.retry_count < settings.webhook_max_retries,
            )
            .order_by(WebhookEvent.updated_at)
            .limit(BATCH_SIZE * 5)
        )
        candidates = [
            row for row in result.scalars().all()
            if is_due(row.updated_at, row.retry_count, now)
        ][:BATCH_SIZE]

    attempted = 0
    for event in candidates:
        async with session_factory() as db:
            won = await reclaim_event(db, event.id, settings.webhook_max_retries)
        if not won:
            continue

        attempted += 1
        with correlation_scope(prefix="retry-"):
            outcome = await execute_claimed_event(
                event.id,
                provider=event.provider,
                event_id=event.event_id,
                event_type=event.event_type,
                payload=event.payload,
                session_factory=session_factory,
                router=router,
                hooks=hooks,
            )
            logger.info(
                "Retry of %s %s (attempt %d): %s",
                event.provider, event.event_id, event.retry_count + 1, outcome.status,
                extra={"provider": event.provider, "event_id": event.event_id, "retry_count": event.retry_count},
            )

    return attempted
