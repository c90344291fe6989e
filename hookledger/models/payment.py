"""
Payment model - mirrors a Stripe PaymentIntent.
Status moves only along engine.statuses.PAYMENT_TRANSITIONS.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Integer, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from hookledger.database import Base
from hookledger.engine.statuses import ResourceKind


class Payment(Base):
    __tablename__ = "payments"
    resource_kind = ResourceKind.PAYMENT

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    stripe_payment_intent_id: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False
    )
    stripe_charge_id: Mapped[Optional[str]] = mapped_column(String(255))
    company_id: Mapped[Optional[str]] = mapped_column(String(64))

    amount: Mapped[int] = mapped_column(Integer, nullable=False)  # minor units
    amount_refunded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")

    status: Mapped[str] = mapped_column(String(30), nullable=False, default="pending")
    failure_reason: Mapped[Optional[str]] = mapped_column(Text)
    last_error_code: Mapped[Optional[str]] = mapped_column(String(100))
    captured_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    metadata_: Mapped[Optional[dict]] = mapped_column("metadata", JSONB)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_payments_status", "status"),
        Index("ix_payments_stripe_charge_id", "stripe_charge_id"),
        Index("ix_payments_company_id", "company_id"),
    )

    def __repr__(self) -> str:
        return f"<Payment {self.stripe_payment_intent_id} status={self.status}>"
