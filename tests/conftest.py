"""
Test configuration and fixtures.
Uses a file-backed SQLite database per test (several sessions must see each
other's commits). Mocks Redis and outbound alerting.
"""
import json
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("WORKERS_ENABLED", "false")

import uuid
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.ext.compiler import compiles

import hookledger.models  # noqa: F401  (registers every table on Base.metadata)
from hookledger.config import Settings
from hookledger.database import Base
from hookledger.models.email_log import EmailLog
from hookledger.models.payment import Payment
from hookledger.models.sms_log import SmsLog
from hookledger.models.subscription import Subscription
from hookledger.models.webhook_event import WebhookEvent
from hookledger.schemas.results import InboundEvent
from hookledger.utils.webhook_signatures import compute_payload_hash


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


@pytest.fixture(autouse=True)
def settings():
    """Test settings, patched in for every get_settings() call."""
    test_settings = Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        app_env="test",
        alert_webhook_url="",
        webhook_handler_timeout_seconds=2.0,
        webhook_slow_threshold_ms=1000,
        webhook_max_retries=3,
        webhook_stuck_after_seconds=300,
        webhook_error_rate_min_events=5,
        webhook_error_rate_threshold_pct=10.0,
        workers_enabled=False,
    )
    with patch("hookledger.config.get_settings", return_value=test_settings):
        yield test_settings


@pytest.fixture(autouse=True)
def mock_redis():
    """Mock for async Redis - prevents real Redis calls in tests."""
    redis_mock = AsyncMock()
    redis_mock.set = AsyncMock(return_value=True)
    redis_mock.ping = AsyncMock(return_value=True)
    redis_mock.incr = AsyncMock(return_value=1)
    redis_mock.decr = AsyncMock(return_value=0)
    redis_mock.expire = AsyncMock(return_value=True)
    redis_mock.eval = AsyncMock(return_value=0)
    # pipeline() is sync and buffers commands; execute() returns [INCR, EXPIRE]
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[1, True])
    redis_mock.pipeline = MagicMock(return_value=pipe)
    with patch(
        "hookledger.utils.redis_client.get_redis",
        new=AsyncMock(return_value=redis_mock),
    ):
        yield redis_mock


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'hookledger.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


class Seeder:
    """Inserts domain rows in their own committed session and reads them back."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    async def add(self, row):
        async with self._session_factory() as session:
            session.add(row)
            await session.commit()
        return row

    async def reload(self, model, row_id):
        async with self._session_factory() as session:
            result = await session.execute(select(model).where(model.id == row_id))
            return result.scalar_one_or_none()

    async def payment(self, status="processing", intent_id="pi_test_1", amount=5000, **kwargs) -> Payment:
        return await self.add(Payment(
            stripe_payment_intent_id=intent_id,
            amount=amount,
            currency="usd",
            status=status,
            company_id="company_1",
            **kwargs,
        ))

    async def subscription(self, status="active", subscription_id="sub_test_1", **kwargs) -> Subscription:
        return await self.add(Subscription(
            stripe_subscription_id=subscription_id,
            stripe_customer_id="cus_test_1",
            company_id="company_1",
            tier="starter",
            status=status,
            **kwargs,
        ))

    async def email(self, status="sent", resend_id="re_test_1", **kwargs) -> EmailLog:
        return await self.add(EmailLog(
            resend_id=resend_id,
            to_email="owner@example.com",
            subject="Your receipt",
            status=status,
            **kwargs,
        ))

    async def sms(self, status="queued", twilio_sid="SM_test_1", **kwargs) -> SmsLog:
        return await self.add(SmsLog(twilio_sid=twilio_sid, to_phone="+15125551234", status=status, **kwargs))

    async def event(
        self,
        status="processing",
        provider="stripe",
        event_id=None,
        event_type="payment_intent.succeeded",
        payload=None,
        **kwargs,
    ) -> WebhookEvent:
        return await self.add(WebhookEvent(
            provider=provider,
            event_id=event_id or f"evt_{uuid.uuid4().hex[:12]}",
            event_type=event_type,
            payload=payload or {},
            status=status,
            **kwargs,
        ))


@pytest.fixture
def seed(session_factory) -> Seeder:
    return Seeder(session_factory)


@pytest.fixture
def make_event():
    """Factory for verified InboundEvents."""
    def _make(
        provider: str = "stripe",
        event_id: str = "evt_test_1",
        event_type: str = "payment_intent.succeeded",
        payload: dict | None = None,
        **kwargs,
    ) -> InboundEvent:
        payload = payload if payload is not None else {"id": event_id, "type": event_type, "data": {"object": {}}}
        body = json.dumps(payload, sort_keys=True).encode()
        return InboundEvent(
            provider=provider,
            event_id=event_id,
            event_type=event_type,
            payload=payload,
            payload_hash=compute_payload_hash(body),
            http_headers={"Stripe-Signature": "t=1,v1=abc", "User-Agent": "Stripe/1.0"},
            ip_address="127.0.0.1",
            user_agent="Stripe/1.0",
            **kwargs,
        )
    return _make


def stripe_intent_event(
    event_id: str,
    event_type: str,
    intent_id: str = "pi_test_1",
    amount: int = 5000,
    **fields,
) -> dict:
    """Stripe event envelope around a PaymentIntent."""
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": int(datetime.now(timezone.utc).timestamp()),
        "data": {
            "object": {
                "id": intent_id,
                "object": "payment_intent",
                "amount": amount,
                "currency": "usd",
                "status": event_type.split(".")[-1],
                **fields,
            }
        },
    }


@pytest.fixture
def intent_event():
    return stripe_intent_event
