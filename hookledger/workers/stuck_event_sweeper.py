"""
Stuck event sweeper - fails ledger rows left in `processing` with no progress.
Runs every 60 seconds.

A row stays `processing` only if the process that claimed it died or could not
reach the database to record an outcome. The sweeper records a `timeout`
failure (retryable) so the retry worker or a provider redelivery can pick it up.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from hookledger.engine.errors import ErrorCategory
from hookledger.engine.recorder import record_failed
from hookledger.models.webhook_event import WebhookEvent
from hookledger.utils.alerting import AlertType, send_alert
from hookledger.utils.logging import correlation_scope
from hookledger.utils.redis_client import write_heartbeat

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 60
BATCH_SIZE = 100


async def run_stuck_event_sweeper():
    """Main sweeper loop. Runs continuously."""
    logger.info("Stuck event sweeper started (poll every %ds)", POLL_INTERVAL_SECONDS)

    while True:
        try:
            with correlation_scope(prefix="sweep-"):
                swept = await sweep_stuck_events()
            if swept > 0:
                logger.info("Stuck event sweeper failed %d stuck events", swept)
        except Exception as e:
            logger.error("Stuck event sweeper error: %s", str(e), exc_info=True)

        await write_heartbeat("stuck_event_sweeper")
        await asyncio.sleep(POLL_INTERVAL_SECONDS)


async def sweep_stuck_events(session_factory=None, stuck_after_seconds: int | None = None) -> int:
    """Fail every `processing` row untouched for longer than the budget. Returns count."""
    from hookledger.config import get_settings

    if session_factory is None:
        from hookledger.database import get_session_factory
        session_factory = get_session_factory()
    if stuck_after_seconds is None:
        stuck_after_seconds = get_settings().webhook_stuck_after_seconds

    cutoff = datetime.now(timezone.utc) - timedelta(seconds=stuck_after_seconds)
    swept = 0
    samples: list[str] = []

    async with session_factory() as db:
        result = await db.execute(
            select(WebhookEvent.id, WebhookEvent.provider, WebhookEvent.event_id)
            .where(
                WebhookEvent.status == "processing",
                WebhookEvent.updated_at < cutoff,
            )
            .order_by(WebhookEvent.updated_at)
            .limit(BATCH_SIZE)
        )
        for record_id, provider, event_id in result.all():
            won = await record_failed(
                db, record_id,
                error_message=f"No outcome recorded within {stuck_after_seconds}s of claim",
                error_category=ErrorCategory.TIMEOUT,
                stale_before=cutoff,
            )
            if won:
                swept += 1
                if len(samples) < 5:
                    samples.append(f"{provider}:{event_id}")
                logger.warning(
                    "Stuck webhook event failed: %s %s", provider, event_id,
                    extra={"provider": provider, "event_id": event_id, "record_id": str(record_id)},
                )
        await db.commit()

    if swept:
        await send_alert(
            AlertType.WEBHOOK_STUCK_EVENTS,
            f"{swept} webhook events were stuck in processing for over {stuck_after_seconds}s",
            extra={"examples": ", ".join(samples)},
        )
    return swept
