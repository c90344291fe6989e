"""
Twilio SMS status callback handler.

Twilio posts one callback per status change of a message, all carrying the
same MessageSid. The ledger key is therefore "{MessageSid}:{MessageStatus}".
"""
import logging
from datetime import datetime, timezone

from sqlalchemy import select

from hookledger.engine.errors import RecordNotFoundError
from hookledger.engine.router import EventRouter, HandlerContext
from hookledger.engine.state_machine import apply_transition
from hookledger.models.sms_log import SmsLog
from hookledger.schemas.results import HandlerResult
from hookledger.schemas.webhook_payloads import TwilioStatusPayload, parse_payload

logger = logging.getLogger(__name__)

# Statuses tracked by the SMS state machine. Others (accepted, scheduled,
# read, canceled, receiving, received) route nowhere and are skipped.
SMS_STATUSES = ("queued", "sending", "sent", "delivered", "undelivered", "failed")


def twilio_event_id(form: dict) -> str:
    sid = form.get("MessageSid") or form.get("SmsSid") or ""
    status = form.get("MessageStatus") or form.get("SmsStatus") or ""
    if not sid:
        return ""
    return f"{sid}:{status}"


def twilio_event_type(form: dict) -> str:
    return form.get("MessageStatus") or form.get("SmsStatus") or "unknown"


async def handle_status_callback(payload: dict, ctx: HandlerContext) -> HandlerResult:
    callback = parse_payload(TwilioStatusPayload, payload, provider=ctx.provider, event_id=ctx.event_id)
    proposed = callback.MessageStatus

    result = await ctx.db.execute(select(SmsLog).where(SmsLog.twilio_sid == callback.MessageSid))
    sms = result.scalar_one_or_none()
    if sms is None:
        raise RecordNotFoundError("sms", callback.MessageSid, provider=ctx.provider, event_id=ctx.event_id)

    now = datetime.now(timezone.utc)
    changes: dict = {}
    if proposed == "sent":
        changes["sent_at"] = now
    elif proposed == "delivered":
        changes["delivered_at"] = now
    elif proposed in ("undelivered", "failed"):
        changes.update(
            failed_at=now,
            error_code=callback.ErrorCode,
            error_message=callback.ErrorMessage,
        )
        logger.warning(
            "SMS %s %s: code=%s", callback.MessageSid, proposed, callback.ErrorCode or "none",
        )

    changed = await apply_transition(
        ctx.db, sms, proposed,
        changes=changes,
        pending_changes=ctx.pending_changes,
        provider=ctx.provider,
        event_id=ctx.event_id,
    )
    return HandlerResult(resource_id=sms.id, changed=changed)


def register(router: EventRouter) -> None:
    router.register("twilio", *SMS_STATUSES)(handle_status_callback)
