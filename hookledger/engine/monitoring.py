"""
Webhook statistics and the error-rate evaluator.

check_error_rate() is a polling evaluator: it reads the ledger, compares the
rolling failure rate per provider against a threshold and raises an alert. It
never blocks or changes event processing.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from hookledger.models.webhook_event import WebhookEvent
from hookledger.utils.alerting import AlertType, send_alert

logger = logging.getLogger(__name__)


@dataclass
class ProviderStats:
    provider: str
    total: int = 0
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    processing: int = 0
    pending: int = 0
    avg_duration_ms: Optional[float] = None

    @property
    def completed(self) -> int:
        return self.processed + self.failed + self.skipped

    @property
    def error_rate_pct(self) -> float:
        """Failed share of completed events. Skipped events are not errors."""
        if self.completed == 0:
            return 0.0
        return round(self.failed / self.completed * 100, 2)

    @property
    def success_rate_pct(self) -> float:
        if self.completed == 0:
            return 100.0
        return round(100 - self.error_rate_pct, 2)

    def to_dict(self) -> dict:
        return {
            "provider": self.provider,
            "total": self.total,
            "processed": self.processed,
            "failed": self.failed,
            "skipped": self.skipped,
            "processing": self.processing,
            "pending": self.pending,
            "success_rate_pct": self.success_rate_pct,
            "error_rate_pct": self.error_rate_pct,
            "avg_duration_ms": self.avg_duration_ms,
        }


@dataclass
class ErrorRateReport:
    provider: str
    window_minutes: int
    completed: int
    failed: int
    error_rate_pct: float
    threshold_pct: float
    exceeded: bool
    alerted: bool = False


def _count(status: str):
    return func.sum(case((WebhookEvent.status == status, 1), else_=0))


async def get_webhook_stats(
    db: AsyncSession,
    provider: Optional[str] = None,
    window_minutes: int = 60,
) -> dict[str, ProviderStats]:
    """Per-provider totals for events created in the window."""
    since = datetime.now(timezone.utc) - timedelta(minutes=window_minutes)
    query = (
        select(
            WebhookEvent.provider,
            func.count(WebhookEvent.id),
            _count("processed"),
            _count("failed"),
            _count("skipped"),
            _count("processing"),
            _count("pending"),
            func.avg(WebhookEvent.processing_duration_ms),
        )
        .where(WebhookEvent.created_at >= since)
        .group_by(WebhookEvent.provider)
    )
    if provider:
        query = query.where(WebhookEvent.provider == provider)

    result = await db.execute(query)
    stats: dict[str, ProviderStats] = {}
    for row in result.all():
        name, total, processed, failed, skipped, processing, pending, avg_ms = row
        stats[name] = ProviderStats(
            provider=name,
            total=total or 0,
            processed=processed or 0,
            failed=failed or 0,
            skipped=skipped or 0,
            processing=processing or 0,
            pending=pending or 0,
            avg_duration_ms=round(float(avg_ms), 1) if avg_ms is not None else None,
        )
    return stats


async def check_error_rate(
    db: AsyncSession,
    provider: str,
    window_minutes: Optional[int] = None,
    threshold_pct: Optional[float] = None,
    min_events: Optional[int] = None,
) -> ErrorRateReport:
    """
    Compare a provider's rolling failure rate with the threshold and alert
    when it is exceeded. Windows with fewer than `min_events` completed
    events are never flagged.
    """
    from hookledger.config import get_settings
    settings = get_settings()
    window_minutes = window_minutes or settings.webhook_error_rate_window_minutes
    threshold_pct = threshold_pct if threshold_pct is not None else settings.webhook_error_rate_threshold_pct
    min_events = min_events if min_events is not None else settings.webhook_error_rate_min_events

    stats = (await get_webhook_stats(db, provider, window_minutes)).get(provider) or ProviderStats(provider)
    exceeded = stats.completed >= min_events and stats.error_rate_pct > threshold_pct

    report = ErrorRateReport(
        provider=provider,
        window_minutes=window_minutes,
        completed=stats.completed,
        failed=stats.failed,
        error_rate_pct=stats.error_rate_pct,
        threshold_pct=threshold_pct,
        exceeded=exceeded,
    )

    if exceeded:
        report.alerted = await send_alert(
            AlertType.WEBHOOK_ERROR_RATE_HIGH,
            f"{provider} webhook error rate {stats.error_rate_pct}% over the last "
            f"{window_minutes}m exceeds {threshold_pct}% ({stats.failed}/{stats.completed} failed)",
            severity="critical" if stats.error_rate_pct >= threshold_pct * 4 else "error",
            extra={"provider": provider, "failed": stats.failed, "completed": stats.completed},
            cooldown_key=f"{AlertType.WEBHOOK_ERROR_RATE_HIGH}:{provider}",
        )
    else:
        logger.debug(
            "%s error rate %.2f%% (%d/%d) within threshold",
            provider, stats.error_rate_pct, stats.failed, stats.completed,
        )
    return report
