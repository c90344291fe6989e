"""
HookLedger - inbound webhook processing engine.
Main FastAPI application entry point.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from hookledger.config import get_settings
from hookledger.api.router import api_router
from hookledger.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("hookledger")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Injects a correlation ID into every request context and response header."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    logger.info("HookLedger starting up (env=%s)", settings.app_env)

    if settings.allow_unsigned_webhooks and settings.app_env == "production":
        logger.warning("ALLOW_UNSIGNED_WEBHOOKS is ignored in production")

    # Initialize Sentry if configured
    if settings.sentry_dsn:
        try:
            import sentry_sdk
            sentry_sdk.init(
                dsn=settings.sentry_dsn,
                traces_sample_rate=0.1,
                environment=settings.app_env,
            )
            logger.info("Sentry initialized")
        except Exception as e:
            logger.warning("Sentry initialization failed: %s", str(e))

    worker_tasks: list[asyncio.Task] = []

    if settings.workers_enabled:
        from hookledger.workers.retry_worker import run_retry_worker
        worker_tasks.append(asyncio.create_task(run_retry_worker()))
        logger.info("Retry worker started")

        from hookledger.workers.stuck_event_sweeper import run_stuck_event_sweeper
        worker_tasks.append(asyncio.create_task(run_stuck_event_sweeper()))
        logger.info("Stuck event sweeper started")

        from hookledger.workers.error_rate_monitor import run_error_rate_monitor
        worker_tasks.append(asyncio.create_task(run_error_rate_monitor()))
        logger.info("Error-rate monitor started")
    else:
        logger.info("Background workers disabled (WORKERS_ENABLED=false)")

    yield

    # Graceful shutdown - give workers time to finish current work
    logger.info("HookLedger shutting down - stopping %d workers...", len(worker_tasks))
    for task in worker_tasks:
        task.cancel()
    if worker_tasks:
        done, pending = await asyncio.wait(worker_tasks, timeout=10.0)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    from hookledger.utils.redis_client import close_redis
    await close_redis()

    from hookledger.database import dispose_engine
    await dispose_engine()
    logger.info("HookLedger shutdown complete - all %d workers stopped", len(worker_tasks))


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    # Configure structured JSON logging with correlation IDs
    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="HookLedger",
        description="Idempotent inbound webhook processing for Stripe, Resend and Twilio",
        version="1.0.0",
        lifespan=lifespan,
    )

    application.add_middleware(CorrelationIdMiddleware)
    application.include_router(api_router)

    return application


app = create_app()
