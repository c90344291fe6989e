"""
Resend email event handlers.

Delivery events move EmailLog.status through the state machine. Engagement
events (opened / clicked) bump counters with an atomic SQL increment, but
only once the email has been delivered. After delivery the counter moves even
when the status cannot (an open after a click); each engagement event is
already deduplicated by the ledger. Before delivery, or after a bounce or
complaint, engagement is an illegal edge and nothing is written.

Handlers read the payload as stored on the ledger row: the retry worker
replays that copy, in which credential-like keys are redacted.
"""
import logging
from datetime import datetime, timezone

from sqlalchemy import func, select, update

from hookledger.engine.errors import InvalidTransitionError, RecordNotFoundError
from hookledger.engine.router import EventRouter, HandlerContext
from hookledger.engine.state_machine import allowed_transitions, apply_transition
from hookledger.engine.statuses import ResourceKind
from hookledger.models.email_log import EmailLog
from hookledger.schemas.results import HandlerResult
from hookledger.schemas.webhook_payloads import ResendEmailEvent, parse_payload

logger = logging.getLogger(__name__)

EMAIL_EVENT_STATUS = {
    "email.sent": "sent",
    "email.delivered": "delivered",
    "email.delivery_delayed": "delayed",
    "email.bounced": "bounced",
    "email.complained": "complained",
    "email.opened": "opened",
    "email.clicked": "clicked",
}

# Statuses in which an open or click can be counted
ENGAGEABLE_STATUSES = frozenset({"delivered", "opened", "clicked"})

_TIMESTAMP_COLUMN = {
    "sent": "sent_at",
    "delivered": "delivered_at",
    "bounced": "bounced_at",
    "complained": "complained_at",
}


async def _email_log(ctx: HandlerContext, resend_id: str) -> EmailLog:
    result = await ctx.db.execute(select(EmailLog).where(EmailLog.resend_id == resend_id))
    email = result.scalar_one_or_none()
    if email is None:
        raise RecordNotFoundError("email", resend_id, provider=ctx.provider, event_id=ctx.event_id)
    return email


async def _record_engagement(ctx: HandlerContext, email: EmailLog, kind: str) -> None:
    now = datetime.now(timezone.utc)
    if kind == "opened":
        values = {
            "opened_count": EmailLog.opened_count + 1,
            "opened_at": func.coalesce(EmailLog.opened_at, now),
        }
    else:
        values = {
            "clicked_count": EmailLog.clicked_count + 1,
            "clicked_at": func.coalesce(EmailLog.clicked_at, now),
        }
    await ctx.db.execute(
        update(EmailLog)
        .where(EmailLog.id == email.id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )


async def handle_email_event(payload: dict, ctx: HandlerContext) -> HandlerResult:
    event = parse_payload(ResendEmailEvent, payload, provider=ctx.provider, event_id=ctx.event_id)
    proposed = EMAIL_EVENT_STATUS[ctx.event_type]
    email = await _email_log(ctx, event.data.email_id)

    if proposed in ("opened", "clicked"):
        if email.status not in ENGAGEABLE_STATUSES:
            raise InvalidTransitionError(
                ResourceKind.EMAIL.value, email.status, proposed,
                provider=ctx.provider, event_id=ctx.event_id,
            )
        await _record_engagement(ctx, email, proposed)
        if email.status != proposed and proposed not in allowed_transitions(ResourceKind.EMAIL, email.status):
            logger.info(
                "Email %s %s while %s, counted without status change",
                event.data.email_id, proposed, email.status,
            )
            await ctx.db.refresh(email)
            return HandlerResult(resource_id=email.id, changed=True)

    changes: dict = {}
    column = _TIMESTAMP_COLUMN.get(proposed)
    if column:
        changes[column] = datetime.now(timezone.utc)
    if proposed in ("bounced", "delayed"):
        bounce = event.data.bounce
        reason = (bounce.message if bounce else None) or event.data.reason
        if reason:
            changes["error_message"] = reason

    changed = await apply_transition(
        ctx.db, email, proposed,
        changes=changes,
        pending_changes=ctx.pending_changes,
        provider=ctx.provider,
        event_id=ctx.event_id,
    )
    return HandlerResult(resource_id=email.id, changed=changed or proposed in ("opened", "clicked"))


def register(router: EventRouter) -> None:
    router.register("resend", *EMAIL_EVENT_STATUS)(handle_email_event)
