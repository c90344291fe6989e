"""
Tests for hookledger/engine/handlers/twilio_handlers.py - SMS status callbacks.
"""
import pytest

from hookledger.engine.errors import InvalidTransitionError, PayloadValidationError, RecordNotFoundError
from hookledger.engine.handlers.twilio_handlers import handle_status_callback, twilio_event_id, twilio_event_type
from hookledger.engine.router import HandlerContext
from hookledger.models.sms_log import SmsLog


def _ctx(db, status):
    return HandlerContext(db=db, provider="twilio", event_id=f"SM_test_1:{status}", event_type=status)


def _callback(status, sid="SM_test_1", **fields):
    return {"MessageSid": sid, "MessageStatus": status, "To": "+15125551234", "From": "+15125550000", **fields}


class TestEventKey:
    def test_event_id_combines_sid_and_status(self):
        assert twilio_event_id({"MessageSid": "SM1", "MessageStatus": "delivered"}) == "SM1:delivered"

    def test_legacy_sms_fields(self):
        form = {"SmsSid": "SM1", "SmsStatus": "sent"}
        assert twilio_event_id(form) == "SM1:sent"
        assert twilio_event_type(form) == "sent"

    def test_missing_sid(self):
        assert twilio_event_id({"MessageStatus": "sent"}) == ""
        assert twilio_event_type({}) == "unknown"


class TestStatusCallback:
    async def test_progression_to_delivered(self, db, seed):
        seeded = await seed.sms(status="queued")

        for status in ("sending", "sent", "delivered"):
            await handle_status_callback(_callback(status), _ctx(db, status))
            await db.commit()

        sms = await seed.reload(SmsLog, seeded.id)
        assert sms.status == "delivered"
        assert sms.sent_at is not None
        assert sms.delivered_at is not None

    async def test_failure_records_error(self, db, seed):
        seeded = await seed.sms(status="sent")
        ctx = _ctx(db, "undelivered")

        await handle_status_callback(
            _callback("undelivered", ErrorCode="30003", ErrorMessage="Unreachable destination handset"), ctx
        )
        await db.commit()

        sms = await seed.reload(SmsLog, seeded.id)
        assert sms.status == "undelivered"
        assert sms.error_code == "30003"
        assert sms.error_message == "Unreachable destination handset"
        assert sms.failed_at is not None
        assert ctx.pending_changes[0].current == "undelivered"

    async def test_skipping_states_rejected(self, db, seed):
        seeded = await seed.sms(status="queued")
        with pytest.raises(InvalidTransitionError):
            await handle_status_callback(_callback("delivered"), _ctx(db, "delivered"))
        await db.rollback()
        assert (await seed.reload(SmsLog, seeded.id)).status == "queued"

    async def test_terminal_repeat_is_noop(self, db, seed):
        await seed.sms(status="delivered")
        result = await handle_status_callback(_callback("delivered"), _ctx(db, "delivered"))
        assert result.changed is False

    async def test_unknown_message(self, db):
        with pytest.raises(RecordNotFoundError):
            await handle_status_callback(_callback("sent", sid="SM_missing"), _ctx(db, "sent"))

    async def test_missing_sid_rejected(self, db):
        with pytest.raises(PayloadValidationError):
            await handle_status_callback({"MessageStatus": "sent"}, _ctx(db, "sent"))

    async def test_legacy_form_fields_accepted(self, db, seed):
        seeded = await seed.sms(status="sending")
        await handle_status_callback({"SmsSid": "SM_test_1", "SmsStatus": "sent"}, _ctx(db, "sent"))
        await db.commit()
        assert (await seed.reload(SmsLog, seeded.id)).status == "sent"
