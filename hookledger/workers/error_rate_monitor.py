"""
Webhook health monitor - runs every 5 minutes (WEBHOOK_MONITOR_INTERVAL_SECONDS).

Phase 1: Database + Redis connectivity checks
Phase 2: Rolling error rate per provider against WEBHOOK_ERROR_RATE_THRESHOLD_PCT
"""
import asyncio
import logging

from hookledger.engine.monitoring import ErrorRateReport, check_error_rate
from hookledger.engine.statuses import Provider
from hookledger.utils.alerting import AlertType, send_alert
from hookledger.utils.redis_client import write_heartbeat

logger = logging.getLogger(__name__)


async def run_error_rate_monitor():
    """Main loop - connectivity checks + error-rate evaluation."""
    from hookledger.config import get_settings
    interval = get_settings().webhook_monitor_interval_seconds
    logger.info("Webhook error-rate monitor started (poll every %ds)", interval)

    while True:
        try:
            await check_connectivity()
            await evaluate_error_rates()
        except Exception as e:
            logger.error("Error-rate monitor error: %s", str(e), exc_info=True)

        await write_heartbeat("error_rate_monitor", ttl_seconds=interval * 3)
        await asyncio.sleep(interval)


async def check_connectivity() -> dict[str, bool]:
    """Check database and Redis connectivity."""
    checks = {"database": False, "redis": False}

    try:
        from hookledger.database import async_session_factory
        from sqlalchemy import text
        async with async_session_factory() as db:
            await db.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        logger.error("Database health check failed: %s", str(e))
        await send_alert(
            AlertType.HEALTH_CHECK_FAILED,
            f"Database connectivity check failed: {str(e)}",
            severity="critical",
            cooldown_key=f"{AlertType.HEALTH_CHECK_FAILED}:database",
        )

    try:
        from hookledger.utils.redis_client import get_redis
        redis = await get_redis()
        await redis.ping()
        checks["redis"] = True
    except Exception as e:
        logger.warning("Redis health check failed: %s", str(e))
        await send_alert(
            AlertType.HEALTH_CHECK_FAILED,
            f"Redis connectivity check failed: {str(e)}",
            severity="warning",
            cooldown_key=f"{AlertType.HEALTH_CHECK_FAILED}:redis",
        )

    return checks


async def evaluate_error_rates(session_factory=None) -> list[ErrorRateReport]:
    """One evaluation pass over every provider."""
    if session_factory is None:
        from hookledger.database import get_session_factory
        session_factory = get_session_factory()

    reports = []
    async with session_factory() as db:
        for provider in Provider:
            report = await check_error_rate(db, provider.value)
            reports.append(report)
            if report.exceeded:
                logger.warning(
                    "%s error rate %.2f%% above %.2f%%",
                    provider.value, report.error_rate_pct, report.threshold_pct,
                    extra={"provider": provider.value},
                )
    return reports
