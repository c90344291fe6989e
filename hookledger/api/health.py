"""
Health check endpoints - used by load balancers and monitoring.

- GET /health          - basic liveness (always 200 if app running)
- GET /health/ready    - readiness check (DB + Redis)
- GET /health/webhooks - per-provider ledger statistics for the last hour
"""
import logging
from datetime import datetime, timezone
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from hookledger.database import get_db
from hookledger.engine.monitoring import get_webhook_stats

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

VERSION = "1.0.0"


@router.get("/health")
async def health_check():
    """Basic liveness check - returns 200 if the app is running."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": VERSION,
    }


@router.get("/health/ready")
async def readiness_check(
    db: AsyncSession = Depends(get_db),
):
    """Readiness check - verifies database and Redis connectivity."""
    checks = {"database": False, "redis": False}

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        logger.error("Database health check failed: %s", str(e))

    try:
        from hookledger.utils.redis_client import get_redis
        redis = await get_redis()
        await redis.ping()
        checks["redis"] = True
    except Exception as e:
        logger.warning("Redis health check failed: %s", str(e))

    all_healthy = all(checks.values())
    return {
        "status": "ready" if all_healthy else "degraded",
        "checks": checks,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/health/webhooks")
async def webhook_stats(
    window_minutes: int = Query(60, ge=1, le=10080),
    provider: str | None = None,
    db: AsyncSession = Depends(get_db),
):
    """Ledger totals, success rate and average duration per provider."""
    stats = await get_webhook_stats(db, provider=provider, window_minutes=window_minutes)
    return {
        "window_minutes": window_minutes,
        "providers": [s.to_dict() for s in stats.values()],
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
