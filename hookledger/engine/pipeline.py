"""
Webhook processing pipeline: claim -> dispatch -> record outcome.

    process_webhook(event)
      1. claim (provider, event_id)        - duplicate? acknowledge, or reclaim a retryable failure
      2. dispatch to the handler            - own transaction, bounded by a timeout
      3. record processed / skipped         - same transaction as the handler's writes
         or record failed                   - fresh transaction after rollback
      4. after commit: transition hooks, audit, slow-call check

Every error raised by a handler is caught exactly once here, classified, and
recorded against the ledger row. Exactly one outcome lands per claimed attempt.
"""
import asyncio
import logging
import uuid
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from hookledger.engine import audit
from hookledger.engine.audit import AuditStage
from hookledger.engine.errors import (
    ConcurrentModificationError,
    ErrorCategory,
    HandlerTimeoutError,
    WebhookError,
    classify_error,
    is_retryable_category,
)
from hookledger.engine.idempotency import claim_event, reclaim_event
from hookledger.engine.recorder import record_failed, record_processed, record_skipped
from hookledger.engine.router import EventRouter, HandlerContext, default_router
from hookledger.engine.state_machine import TransitionHooks, transition_hooks
from hookledger.models.webhook_event import WebhookEvent
from hookledger.schemas.results import InboundEvent, ProcessingOutcome
from hookledger.utils.alerting import AlertType, send_alert
from hookledger.utils.metrics import Timer

logger = logging.getLogger(__name__)


async def process_webhook(
    event: InboundEvent,
    *,
    session_factory=None,
    router: Optional[EventRouter] = None,
    hooks: Optional[TransitionHooks] = None,
) -> ProcessingOutcome:
    """Run one verified delivery through the engine and return its outcome."""
    from hookledger.config import get_settings
    settings = get_settings()

    if session_factory is None:
        from hookledger.database import get_session_factory
        session_factory = get_session_factory()

    timer = Timer().start()
    log_extra = {"provider": event.provider, "event_id": event.event_id, "event_type": event.event_type}

    await audit.record_stage(
        AuditStage.RECEIVED,
        provider=event.provider,
        event_id=event.event_id,
        event_type=event.event_type,
        data={"ip_address": event.ip_address, "user_agent": event.user_agent},
        session_factory=session_factory,
    )

    try:
        async with session_factory() as db:
            claim = await claim_event(db, event)
    except WebhookError as e:
        classification = classify_error(e)
        logger.error("Webhook claim rejected: %s", str(e), extra={**log_extra, "error_category": classification.category})
        return ProcessingOutcome(
            status="rejected",
            http_status=classification.http_status,
            provider=event.provider,
            event_id=event.event_id,
            error_category=classification.category,
            retryable=classification.retryable,
            duration_ms=timer.stop(),
        )

    if claim.is_duplicate:
        if (
            claim.existing_status == "failed"
            and is_retryable_category(claim.error_category)
            and claim.retry_count < settings.webhook_max_retries
        ):
            try:
                async with session_factory() as db:
                    won = await reclaim_event(db, claim.record_id, settings.webhook_max_retries)
            except WebhookError as e:
                logger.error("Reclaim failed: %s", str(e), extra=log_extra)
                return ProcessingOutcome(
                    status="rejected",
                    http_status=e.http_status,
                    provider=event.provider,
                    event_id=event.event_id,
                    record_id=claim.record_id,
                    error_category=e.category,
                    retryable=e.retryable,
                    duration_ms=timer.stop(),
                )
            if won:
                logger.info("Redelivery retrying failed event (attempt %d)", claim.retry_count + 1, extra=log_extra)
                return await execute_claimed_event(
                    claim.record_id,
                    provider=event.provider,
                    event_id=event.event_id,
                    event_type=event.event_type,
                    payload=event.payload,
                    session_factory=session_factory,
                    router=router,
                    hooks=hooks,
                    timer=timer,
                )

        await audit.record_stage(
            AuditStage.DUPLICATE,
            provider=event.provider,
            event_id=event.event_id,
            event_type=event.event_type,
            record_id=claim.record_id,
            data={"existing_status": claim.existing_status, "retry_count": claim.retry_count},
            session_factory=session_factory,
        )
        return ProcessingOutcome(
            status="duplicate",
            http_status=200,
            provider=event.provider,
            event_id=event.event_id,
            record_id=claim.record_id,
            existing_status=claim.existing_status,
            duration_ms=timer.stop(),
        )

    await audit.record_stage(
        AuditStage.CLAIMED,
        provider=event.provider,
        event_id=event.event_id,
        event_type=event.event_type,
        record_id=claim.record_id,
        session_factory=session_factory,
    )
    return await execute_claimed_event(
        claim.record_id,
        provider=event.provider,
        event_id=event.event_id,
        event_type=event.event_type,
        payload=event.payload,
        session_factory=session_factory,
        router=router,
        hooks=hooks,
        timer=timer,
    )


async def execute_claimed_event(
    record_id: uuid.UUID,
    *,
    provider: str,
    event_id: str,
    event_type: str,
    payload: dict[str, Any],
    session_factory=None,
    router: Optional[EventRouter] = None,
    hooks: Optional[TransitionHooks] = None,
    timer: Optional[Timer] = None,
) -> ProcessingOutcome:
    """
    Dispatch an event whose ledger row this caller holds in `processing`.
    Used by process_webhook and by the retry worker.
    """
    from hookledger.config import get_settings
    settings = get_settings()

    if session_factory is None:
        from hookledger.database import get_session_factory
        session_factory = get_session_factory()
    router = router or default_router()
    hooks = hooks or transition_hooks
    timer = timer or Timer().start()
    timeout = settings.webhook_handler_timeout_seconds

    await audit.record_stage(
        AuditStage.PROCESSING,
        provider=provider, event_id=event_id, event_type=event_type, record_id=record_id,
        session_factory=session_factory,
    )

    try:
        async with session_factory() as db:
            context = HandlerContext(
                db=db,
                provider=provider,
                event_id=event_id,
                event_type=event_type,
                record_id=record_id,
            )
            try:
                result = await asyncio.wait_for(
                    router.dispatch(event_type, payload, context), timeout=timeout
                )
            except asyncio.TimeoutError as e:
                raise HandlerTimeoutError(
                    f"Handler exceeded {timeout}s", provider=provider, event_id=event_id
                ) from e

            duration_ms = timer.elapsed_ms
            if result.status == "skipped":
                won = await record_skipped(db, record_id, duration_ms, result.message)
            else:
                won = await record_processed(db, record_id, duration_ms)
            if not won:
                raise ConcurrentModificationError(
                    "Ledger row left processing before the outcome was recorded",
                    provider=provider, event_id=event_id,
                )
            await db.commit()
    except asyncio.CancelledError:
        await asyncio.shield(_record_failure(
            record_id,
            HandlerTimeoutError("Processing cancelled", provider=provider, event_id=event_id),
            provider=provider, event_id=event_id, event_type=event_type,
            duration_ms=timer.elapsed_ms, session_factory=session_factory,
        ))
        raise
    except Exception as e:
        duration_ms = timer.stop()
        classification = classify_error(e)
        await _record_failure(
            record_id, e,
            provider=provider, event_id=event_id, event_type=event_type,
            duration_ms=duration_ms, session_factory=session_factory,
        )
        return ProcessingOutcome(
            status="failed",
            http_status=classification.http_status,
            provider=provider,
            event_id=event_id,
            record_id=record_id,
            error_category=classification.category,
            retryable=classification.retryable,
            duration_ms=duration_ms,
        )

    duration_ms = timer.stop()
    for change in context.pending_changes:
        await hooks.fire(change)

    stage = AuditStage.SKIPPED if result.status == "skipped" else AuditStage.PROCESSED
    await audit.record_stage(
        stage,
        provider=provider, event_id=event_id, event_type=event_type, record_id=record_id,
        duration_ms=duration_ms,
        data={"message": result.message, "changed": result.changed} if result.message or result.changed else None,
        session_factory=session_factory,
    )
    await audit.track_performance(
        duration_ms,
        provider=provider, event_id=event_id, event_type=event_type, record_id=record_id,
        threshold_ms=settings.webhook_slow_threshold_ms,
        session_factory=session_factory,
    )
    return ProcessingOutcome(
        status=result.status,
        http_status=200,
        provider=provider,
        event_id=event_id,
        record_id=record_id,
        duration_ms=duration_ms,
    )


async def _record_failure(
    record_id: uuid.UUID,
    exc: BaseException,
    *,
    provider: str,
    event_id: str,
    event_type: str,
    duration_ms: int,
    session_factory,
) -> None:
    """Mark the ledger row failed. A row the database cannot update stays
    `processing` and is picked up by the stuck-event sweeper."""
    from hookledger.config import get_settings
    settings = get_settings()

    classification = classify_error(exc)
    message = f"{type(exc).__name__}: {exc}"
    retry_count: Optional[int] = None

    try:
        async with session_factory() as db:
            won = await record_failed(
                db, record_id,
                error_message=message,
                error_category=classification.category,
                duration_ms=duration_ms,
            )
            await db.commit()
            if won:
                retry_count = (await db.execute(
                    select(WebhookEvent.retry_count).where(WebhookEvent.id == record_id)
                )).scalar_one_or_none()
    except SQLAlchemyError as e:
        logger.error(
            "Could not record failure for %s %s: %s", provider, event_id, str(e),
            extra={"provider": provider, "event_id": event_id},
        )

    await audit.record_stage(
        AuditStage.FAILED,
        provider=provider,
        event_id=event_id,
        event_type=event_type,
        record_id=record_id,
        duration_ms=duration_ms,
        error_category=classification.category,
        error_message=message,
        data={"retryable": classification.retryable, "severity": classification.severity, "retry_count": retry_count},
        session_factory=session_factory,
    )

    alert_extra = {"provider": provider, "event_id": event_id, "event_type": event_type}
    if classification.category == ErrorCategory.UNKNOWN:
        await send_alert(
            AlertType.WEBHOOK_UNKNOWN_ERROR,
            f"Unclassified failure processing {provider} {event_type}: {type(exc).__name__}",
            severity="critical",
            extra=alert_extra,
            cooldown_key=f"{AlertType.WEBHOOK_UNKNOWN_ERROR}:{provider}:{event_type}",
        )
    if (
        classification.retryable
        and retry_count is not None
        and retry_count >= settings.webhook_max_retries
    ):
        await send_alert(
            AlertType.WEBHOOK_RETRIES_EXHAUSTED,
            f"{provider} event {event_id} failed {retry_count} times and is parked for an operator",
            extra={**alert_extra, "error_category": classification.category},
            cooldown_key=f"{AlertType.WEBHOOK_RETRIES_EXHAUSTED}:{provider}:{event_id}",
        )
