"""
Tests for hookledger/engine/pipeline.py - claim, dispatch, record, end to end
against a real database.

Covers:
- Happy path with after-commit hooks and audit trail
- Duplicate deliveries (sequential and concurrent) never re-run a handler
- Error classification to ledger status and HTTP status
- Handler timeout
- Redelivery of retryable failures, parking of permanent ones
- Retries-exhausted and unknown-error alerts
"""
import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from hookledger.engine.errors import NetworkError, StorageError
from hookledger.engine.pipeline import execute_claimed_event, process_webhook
from hookledger.engine.router import EventRouter
from hookledger.engine.state_machine import TransitionHooks
from hookledger.engine.statuses import ResourceKind
from hookledger.models.email_log import EmailLog
from hookledger.models.payment import Payment
from hookledger.models.webhook_audit_log import WebhookAuditLog
from hookledger.models.webhook_event import WebhookEvent
from hookledger.schemas.results import HandlerResult
from hookledger.utils.alerting import AlertType


async def _ledger_row(session_factory, provider, event_id) -> WebhookEvent:
    async with session_factory() as db:
        result = await db.execute(
            select(WebhookEvent).where(WebhookEvent.provider == provider, WebhookEvent.event_id == event_id)
        )
        return result.scalar_one()


async def _stages(session_factory, event_id) -> list[str]:
    async with session_factory() as db:
        result = await db.execute(
            select(WebhookAuditLog.stage)
            .where(WebhookAuditLog.event_id == event_id)
            .order_by(WebhookAuditLog.created_at)
        )
        return list(result.scalars().all())


def _router_raising(exc, provider="stripe", event_type="payment_intent.succeeded"):
    router = EventRouter()

    @router.register(provider, event_type)
    async def handler(payload, ctx):
        raise exc

    return router


def _counting_router(calls, provider="stripe", event_type="payment_intent.succeeded"):
    router = EventRouter()

    @router.register(provider, event_type)
    async def handler(payload, ctx):
        calls.append(ctx.event_id)
        return HandlerResult()

    return router


@pytest.fixture
def alerts():
    with patch("hookledger.engine.pipeline.send_alert", new_callable=AsyncMock) as mock:
        mock.return_value = True
        yield mock


class TestHappyPath:
    async def test_payment_succeeded_end_to_end(self, session_factory, seed, make_event, intent_event):
        seeded = await seed.payment(status="processing")
        hooks = TransitionHooks()
        fired = []

        @hooks.on(ResourceKind.PAYMENT, "succeeded")
        async def on_succeeded(change):
            fired.append(change)

        payload = intent_event("evt_1", "payment_intent.succeeded")
        outcome = await process_webhook(
            make_event(event_id="evt_1", payload=payload), session_factory=session_factory, hooks=hooks
        )

        assert outcome.status == "processed"
        assert outcome.http_status == 200
        assert outcome.to_response() == {"received": True, "status": "processed", "event_id": "evt_1"}

        row = await _ledger_row(session_factory, "stripe", "evt_1")
        assert row.status == "processed"
        assert row.processed_at is not None
        assert row.processing_duration_ms is not None
        assert row.retry_count == 0
        assert (await seed.reload(Payment, seeded.id)).status == "succeeded"
        assert len(fired) == 1 and fired[0].resource_id == seeded.id

        assert await _stages(session_factory, "evt_1") == ["received", "claimed", "processing", "processed"]

    async def test_unknown_event_type_is_skipped(self, session_factory, make_event):
        outcome = await process_webhook(
            make_event(event_id="evt_foo", event_type="foo.bar"), session_factory=session_factory
        )

        assert outcome.status == "skipped"
        assert outcome.http_status == 200
        row = await _ledger_row(session_factory, "stripe", "evt_foo")
        assert row.status == "skipped"
        assert row.retry_count == 0

    async def test_repeat_delivered_email_fires_no_hook(self, session_factory, seed, make_event):
        seeded = await seed.email(status="delivered")
        hooks = TransitionHooks()
        fired = []

        @hooks.on(ResourceKind.EMAIL, "delivered")
        async def notify(change):
            fired.append(change)

        payload = {"type": "email.delivered", "data": {"email_id": "re_test_1"}}
        outcome = await process_webhook(
            make_event(provider="resend", event_id="msg_2", event_type="email.delivered", payload=payload),
            session_factory=session_factory,
            hooks=hooks,
        )

        assert outcome.status == "processed"
        assert outcome.http_status == 200
        assert fired == []
        assert (await seed.reload(EmailLog, seeded.id)).status == "delivered"

    async def test_slow_processing_is_flagged(self, session_factory, settings, make_event):
        settings.webhook_slow_threshold_ms = 10
        router = EventRouter()

        @router.register("stripe", "payment_intent.succeeded")
        async def slow(payload, ctx):
            await asyncio.sleep(0.05)
            return HandlerResult()

        outcome = await process_webhook(make_event(event_id="evt_slow"), session_factory=session_factory, router=router)

        assert outcome.status == "processed"
        assert "slow" in await _stages(session_factory, "evt_slow")


class TestDuplicates:
    async def test_redelivery_is_acknowledged_without_mutation(self, session_factory, seed, make_event, intent_event):
        seeded = await seed.payment(status="processing")
        hooks = TransitionHooks()
        fired = []

        @hooks.on(ResourceKind.PAYMENT, "succeeded")
        async def on_succeeded(change):
            fired.append(change)

        event = make_event(event_id="evt_1", payload=intent_event("evt_1", "payment_intent.succeeded"))
        first = await process_webhook(event, session_factory=session_factory, hooks=hooks)
        payment_after_first = await seed.reload(Payment, seeded.id)
        second = await process_webhook(event, session_factory=session_factory, hooks=hooks)

        assert first.status == "processed"
        assert second.status == "duplicate"
        assert second.http_status == 200
        assert second.existing_status == "processed"
        assert second.record_id == first.record_id
        assert len(fired) == 1
        assert (await seed.reload(Payment, seeded.id)).updated_at == payment_after_first.updated_at
        assert (await _stages(session_factory, "evt_1"))[-1] == "duplicate"

    async def test_concurrent_deliveries_run_handler_once(self, session_factory, make_event):
        calls = []
        router = _counting_router(calls)
        event = make_event(event_id="evt_parallel")

        outcomes = await asyncio.gather(*(
            process_webhook(event, session_factory=session_factory, router=router) for _ in range(3)
        ))

        assert calls == ["evt_parallel"]
        assert sorted(o.status for o in outcomes) == ["duplicate", "duplicate", "processed"]
        assert all(o.http_status == 200 for o in outcomes)

    async def test_delivery_while_processing_is_duplicate(self, session_factory, seed, make_event):
        await seed.event(event_id="evt_busy", status="processing")
        calls = []

        outcome = await process_webhook(
            make_event(event_id="evt_busy"), session_factory=session_factory, router=_counting_router(calls)
        )

        assert outcome.status == "duplicate"
        assert outcome.existing_status == "processing"
        assert calls == []


class TestFailures:
    async def test_storage_error_marks_failed_and_returns_503(self, session_factory, make_event, alerts):
        router = _router_raising(OperationalError("UPDATE payments", {}, Exception("connection lost")))

        outcome = await process_webhook(make_event(event_id="evt_db"), session_factory=session_factory, router=router)

        assert outcome.status == "failed"
        assert outcome.http_status == 503
        assert outcome.error_category == "storage"
        assert outcome.retryable is True
        assert outcome.to_response() == {
            "received": False, "status": "failed", "event_id": "evt_db", "error": "storage",
        }
        row = await _ledger_row(session_factory, "stripe", "evt_db")
        assert row.status == "failed"
        assert row.retry_count == 1
        assert row.error_category == "storage"
        assert "connection lost" in row.error_message
        assert (await _stages(session_factory, "evt_db"))[-1] == "failed"

    async def test_invalid_transition_returns_400_and_keeps_resource(self, session_factory, seed, make_event, intent_event):
        seeded = await seed.payment(status="succeeded")
        payload = intent_event("evt_cancel", "payment_intent.canceled")

        outcome = await process_webhook(
            make_event(event_id="evt_cancel", event_type="payment_intent.canceled", payload=payload),
            session_factory=session_factory,
        )

        assert outcome.http_status == 400
        assert outcome.error_category == "invalid_transition"
        assert (await seed.reload(Payment, seeded.id)).status == "succeeded"
        assert (await _ledger_row(session_factory, "stripe", "evt_cancel")).status == "failed"

    async def test_missing_resource_returns_404(self, session_factory, make_event, intent_event):
        payload = intent_event("evt_404", "payment_intent.succeeded", intent_id="pi_unknown")
        outcome = await process_webhook(make_event(event_id="evt_404", payload=payload), session_factory=session_factory)

        assert outcome.http_status == 404
        assert outcome.error_category == "not_found"

    async def test_validation_error_returns_400(self, session_factory, make_event):
        payload = {"id": "evt_bad", "type": "payment_intent.succeeded", "data": {"object": {"id": "pi_1"}}}
        outcome = await process_webhook(make_event(event_id="evt_bad", payload=payload), session_factory=session_factory)

        assert outcome.http_status == 400
        assert outcome.error_category == "validation"
        assert outcome.retryable is False

    async def test_handler_writes_roll_back_on_failure(self, session_factory, seed, make_event):
        seeded = await seed.payment(status="processing")
        router = EventRouter()

        @router.register("stripe", "payment_intent.succeeded")
        async def half_done(payload, ctx):
            payment = await ctx.db.get(Payment, seeded.id)
            payment.failure_reason = "written before the crash"
            await ctx.db.flush()
            raise NetworkError("upstream refused", provider=ctx.provider, event_id=ctx.event_id)

        outcome = await process_webhook(make_event(event_id="evt_partial"), session_factory=session_factory, router=router)

        assert outcome.error_category == "network"
        assert (await seed.reload(Payment, seeded.id)).failure_reason is None

    async def test_handler_timeout_is_recorded(self, session_factory, settings, make_event):
        settings.webhook_handler_timeout_seconds = 0.05
        router = EventRouter()

        @router.register("stripe", "payment_intent.succeeded")
        async def hangs(payload, ctx):
            await asyncio.sleep(5)
            return HandlerResult()

        outcome = await process_webhook(make_event(event_id="evt_slow"), session_factory=session_factory, router=router)

        assert outcome.status == "failed"
        assert outcome.error_category == "timeout"
        assert outcome.http_status == 503
        row = await _ledger_row(session_factory, "stripe", "evt_slow")
        assert row.status == "failed"
        assert row.error_category == "timeout"

    async def test_unknown_error_alerts(self, session_factory, make_event, alerts):
        router = _router_raising(KeyError("amount"))
        outcome = await process_webhook(make_event(event_id="evt_key"), session_factory=session_factory, router=router)

        assert outcome.error_category == "unknown"
        assert outcome.http_status == 503
        assert alerts.await_args_list[0].args[0] == AlertType.WEBHOOK_UNKNOWN_ERROR

    async def test_claim_storage_failure_is_rejected_with_503(self, session_factory, make_event):
        with patch("hookledger.engine.pipeline.claim_event", new=AsyncMock(side_effect=StorageError("down"))):
            outcome = await process_webhook(make_event(event_id="evt_x"), session_factory=session_factory)
        assert outcome.status == "rejected"
        assert outcome.http_status == 503


class TestRedelivery:
    async def test_retryable_failure_is_rerun_on_redelivery(self, session_factory, make_event, alerts):
        event = make_event(event_id="evt_retry")
        failed = await process_webhook(
            event, session_factory=session_factory, router=_router_raising(NetworkError("refused"))
        )
        calls = []
        retried = await process_webhook(event, session_factory=session_factory, router=_counting_router(calls))

        assert failed.http_status == 503
        assert retried.status == "processed"
        assert calls == ["evt_retry"]
        row = await _ledger_row(session_factory, "stripe", "evt_retry")
        assert row.status == "processed"
        assert row.retry_count == 1
        assert row.error_category is None

    async def test_permanent_failure_is_parked(self, session_factory, make_event, intent_event):
        payload = intent_event("evt_perm", "payment_intent.succeeded", intent_id="pi_unknown")
        event = make_event(event_id="evt_perm", payload=payload)

        first = await process_webhook(event, session_factory=session_factory)
        second = await process_webhook(event, session_factory=session_factory)

        assert first.http_status == 404
        assert second.status == "duplicate"
        assert second.http_status == 200
        assert second.existing_status == "failed"
        assert (await _ledger_row(session_factory, "stripe", "evt_perm")).retry_count == 1

    async def test_retries_exhausted_alert_and_park(self, session_factory, settings, make_event, alerts):
        settings.webhook_max_retries = 2
        event = make_event(event_id="evt_flaky")
        router = _router_raising(NetworkError("refused"))

        first = await process_webhook(event, session_factory=session_factory, router=router)
        second = await process_webhook(event, session_factory=session_factory, router=router)
        third = await process_webhook(event, session_factory=session_factory, router=router)

        assert first.status == "failed" and second.status == "failed"
        assert third.status == "duplicate"
        row = await _ledger_row(session_factory, "stripe", "evt_flaky")
        assert row.retry_count == 2
        sent = [c.args[0] for c in alerts.await_args_list]
        assert sent == [AlertType.WEBHOOK_RETRIES_EXHAUSTED]


class TestExecuteClaimedEvent:
    async def test_lost_outcome_rolls_back_and_fails(self, session_factory, seed, intent_event):
        """If the row left `processing` mid-flight, the handler's writes do not commit."""
        seeded = await seed.payment(status="processing")
        row = await seed.event(event_id="evt_swept", status="failed", error_category="timeout", retry_count=1)

        outcome = await execute_claimed_event(
            row.id,
            provider="stripe",
            event_id="evt_swept",
            event_type="payment_intent.succeeded",
            payload=intent_event("evt_swept", "payment_intent.succeeded"),
            session_factory=session_factory,
        )

        assert outcome.status == "failed"
        assert outcome.error_category == "storage"
        assert (await seed.reload(Payment, seeded.id)).status == "processing"
        assert (await seed.reload(WebhookEvent, row.id)).status == "failed"
