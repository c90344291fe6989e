"""
Stripe event handlers - payments, refunds and subscriptions.

Each handler validates the event's `data.object` before touching storage and
moves resource status only through the state machine.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update

from hookledger.engine.errors import PayloadValidationError, RecordNotFoundError
from hookledger.engine.router import EventRouter, HandlerContext
from hookledger.engine.state_machine import apply_transition
from hookledger.engine.statuses import SUBSCRIPTION_TRANSITIONS
from hookledger.models.payment import Payment
from hookledger.models.subscription import Subscription
from hookledger.schemas.results import HandlerResult
from hookledger.schemas.webhook_payloads import (
    StripeCharge,
    StripeInvoice,
    StripePaymentIntent,
    StripeSubscription,
    parse_payload,
)

logger = logging.getLogger(__name__)

PAYMENT_INTENT_STATUS = {
    "payment_intent.processing": "processing",
    "payment_intent.requires_action": "requires_action",
    "payment_intent.succeeded": "succeeded",
    "payment_intent.payment_failed": "failed",
    "payment_intent.canceled": "canceled",
}

# Subscription states an invoice.paid event brings back to active
_REACTIVATABLE = frozenset({"incomplete", "past_due", "unpaid"})


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _from_timestamp(ts: Optional[int]) -> Optional[datetime]:
    return datetime.fromtimestamp(ts, tz=timezone.utc) if ts else None


def _data_object(payload: dict, ctx: HandlerContext) -> dict:
    data = payload.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict):
        raise PayloadValidationError(
            "Stripe event has no data.object",
            errors=["data.object: required"],
            provider=ctx.provider,
            event_id=ctx.event_id,
        )
    return obj


async def _payment_by_intent(ctx: HandlerContext, intent_id: str) -> Payment:
    result = await ctx.db.execute(
        select(Payment).where(Payment.stripe_payment_intent_id == intent_id)
    )
    payment = result.scalar_one_or_none()
    if payment is None:
        raise RecordNotFoundError("payment", intent_id, provider=ctx.provider, event_id=ctx.event_id)
    return payment


async def _payment_for_charge(ctx: HandlerContext, charge: StripeCharge) -> Payment:
    conditions = [Payment.stripe_charge_id == charge.id]
    if charge.payment_intent:
        conditions.append(Payment.stripe_payment_intent_id == charge.payment_intent)
    for condition in conditions:
        result = await ctx.db.execute(select(Payment).where(condition))
        payment = result.scalar_one_or_none()
        if payment is not None:
            return payment
    raise RecordNotFoundError("payment", charge.id, provider=ctx.provider, event_id=ctx.event_id)


async def _subscription(ctx: HandlerContext, subscription_id: str) -> Subscription:
    result = await ctx.db.execute(
        select(Subscription).where(Subscription.stripe_subscription_id == subscription_id)
    )
    subscription = result.scalar_one_or_none()
    if subscription is None:
        raise RecordNotFoundError(
            "subscription", subscription_id, provider=ctx.provider, event_id=ctx.event_id
        )
    return subscription


async def handle_payment_intent(payload: dict, ctx: HandlerContext) -> HandlerResult:
    intent = parse_payload(
        StripePaymentIntent, _data_object(payload, ctx), provider=ctx.provider, event_id=ctx.event_id
    )
    proposed = PAYMENT_INTENT_STATUS[ctx.event_type]
    payment = await _payment_by_intent(ctx, intent.id)

    changes: dict = {}
    if proposed == "succeeded":
        changes = {
            "captured_at": _now(),
            "stripe_charge_id": intent.latest_charge or payment.stripe_charge_id,
            "failure_reason": None,
            "last_error_code": None,
        }
    elif proposed == "failed":
        error = intent.last_payment_error
        changes = {
            "failure_reason": (error.message if error else None) or "Unknown error",
            "last_error_code": (error.decline_code or error.code) if error else None,
        }
    elif proposed == "canceled":
        changes = {"failure_reason": intent.cancellation_reason}

    changed = await apply_transition(
        ctx.db, payment, proposed,
        changes=changes,
        pending_changes=ctx.pending_changes,
        provider=ctx.provider,
        event_id=ctx.event_id,
    )
    return HandlerResult(resource_id=payment.id, changed=changed)


async def handle_charge_refunded(payload: dict, ctx: HandlerContext) -> HandlerResult:
    charge = parse_payload(
        StripeCharge, _data_object(payload, ctx), provider=ctx.provider, event_id=ctx.event_id
    )
    if charge.amount_refunded <= 0:
        raise PayloadValidationError(
            "Refund amount must be positive",
            errors=["amount_refunded: must be > 0"],
            provider=ctx.provider, event_id=ctx.event_id,
        )

    payment = await _payment_for_charge(ctx, charge)
    if charge.amount_refunded > payment.amount:
        raise PayloadValidationError(
            f"Refunded amount ({charge.amount_refunded}) exceeds payment amount ({payment.amount})",
            errors=["amount_refunded: exceeds payment amount"],
            provider=ctx.provider, event_id=ctx.event_id,
        )

    proposed = "refunded" if charge.amount_refunded >= payment.amount else "partially_refunded"
    changed = await apply_transition(
        ctx.db, payment, proposed,
        changes={"amount_refunded": charge.amount_refunded, "refunded_at": _now()},
        pending_changes=ctx.pending_changes,
        provider=ctx.provider,
        event_id=ctx.event_id,
    )

    if not changed and charge.amount_refunded > payment.amount_refunded:
        # Another partial refund: status unchanged, cumulative amount only grows.
        await ctx.db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.amount_refunded < charge.amount_refunded)
            .values(amount_refunded=charge.amount_refunded, refunded_at=_now(), updated_at=_now())
            .execution_options(synchronize_session=False)
        )
        changed = True

    return HandlerResult(resource_id=payment.id, changed=changed)


async def _upsert_subscription(ctx: HandlerContext, sub: StripeSubscription) -> tuple[Subscription, bool]:
    """Insert the subscription if this is the first time we see it. Returns (row, created)."""
    from hookledger.engine.idempotency import dialect_insert

    insert = dialect_insert(ctx.db)
    result = await ctx.db.execute(
        insert(Subscription)
        .values(
            stripe_subscription_id=sub.id,
            stripe_customer_id=sub.customer,
            company_id=sub.metadata.get("companyId"),
            tier=sub.metadata.get("tier") or "starter",
            status=sub.status,
            current_period_end=_from_timestamp(sub.current_period_end),
            created_at=_now(),
            updated_at=_now(),
        )
        .on_conflict_do_nothing(index_elements=["stripe_subscription_id"])
        .returning(Subscription.id)
    )
    created = result.scalar_one_or_none() is not None
    return await _subscription(ctx, sub.id), created


async def handle_subscription_update(payload: dict, ctx: HandlerContext) -> HandlerResult:
    sub = parse_payload(
        StripeSubscription, _data_object(payload, ctx), provider=ctx.provider, event_id=ctx.event_id
    )
    if not sub.metadata.get("companyId"):
        raise PayloadValidationError(
            "Missing required metadata field: companyId",
            errors=["metadata.companyId: required"],
            provider=ctx.provider, event_id=ctx.event_id,
        )
    if sub.status not in SUBSCRIPTION_TRANSITIONS:
        raise PayloadValidationError(
            f"Unknown subscription status: {sub.status}",
            errors=["status: unknown"],
            provider=ctx.provider, event_id=ctx.event_id,
        )

    subscription, created = await _upsert_subscription(ctx, sub)
    if created:
        logger.info("Subscription %s created as %s", sub.id, sub.status)
        return HandlerResult(resource_id=subscription.id, changed=True)

    proposed = "canceled" if ctx.event_type == "customer.subscription.deleted" else sub.status
    changes = {
        "tier": sub.metadata.get("tier") or subscription.tier,
        "current_period_end": _from_timestamp(sub.current_period_end),
    }
    if proposed == "canceled":
        changes["canceled_at"] = _from_timestamp(sub.canceled_at) or _now()

    changed = await apply_transition(
        ctx.db, subscription, proposed,
        changes=changes,
        pending_changes=ctx.pending_changes,
        provider=ctx.provider,
        event_id=ctx.event_id,
    )
    return HandlerResult(resource_id=subscription.id, changed=changed)


async def handle_invoice(payload: dict, ctx: HandlerContext) -> HandlerResult:
    invoice = parse_payload(
        StripeInvoice, _data_object(payload, ctx), provider=ctx.provider, event_id=ctx.event_id
    )
    subscription = await _subscription(ctx, invoice.subscription)

    if ctx.event_type == "invoice.payment_failed":
        proposed = "past_due"
    elif subscription.status in _REACTIVATABLE:
        proposed = "active"
    else:
        logger.info(
            "Invoice %s paid for subscription %s in status %s, no change",
            invoice.id, invoice.subscription, subscription.status,
        )
        return HandlerResult(resource_id=subscription.id, changed=False)

    changed = await apply_transition(
        ctx.db, subscription, proposed,
        pending_changes=ctx.pending_changes,
        provider=ctx.provider,
        event_id=ctx.event_id,
    )
    return HandlerResult(resource_id=subscription.id, changed=changed)


async def handle_trial_will_end(payload: dict, ctx: HandlerContext) -> HandlerResult:
    sub = parse_payload(
        StripeSubscription, _data_object(payload, ctx), provider=ctx.provider, event_id=ctx.event_id
    )
    logger.info(
        "Trial ending soon for subscription %s (company %s)",
        sub.id, sub.metadata.get("companyId", "unknown"),
    )
    return HandlerResult(message="trial_will_end acknowledged")


def register(router: EventRouter) -> None:
    router.register("stripe", *PAYMENT_INTENT_STATUS)(handle_payment_intent)
    router.register("stripe", "charge.refunded")(handle_charge_refunded)
    router.register(
        "stripe",
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
    )(handle_subscription_update)
    router.register("stripe", "invoice.paid", "invoice.payment_failed")(handle_invoice)
    router.register("stripe", "customer.subscription.trial_will_end")(handle_trial_will_end)
