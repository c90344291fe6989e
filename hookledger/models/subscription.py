"""
Subscription model - mirrors a Stripe Subscription.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from hookledger.database import Base
from hookledger.engine.statuses import ResourceKind


class Subscription(Base):
    __tablename__ = "subscriptions"
    resource_kind = ResourceKind.SUBSCRIPTION

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    stripe_subscription_id: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False
    )
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(String(255))
    company_id: Mapped[Optional[str]] = mapped_column(String(64))
    tier: Mapped[Optional[str]] = mapped_column(String(50))

    status: Mapped[str] = mapped_column(String(30), nullable=False, default="incomplete")
    current_period_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    canceled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_subscriptions_status", "status"),
        Index("ix_subscriptions_company_id", "company_id"),
    )

    def __repr__(self) -> str:
        return f"<Subscription {self.stripe_subscription_id} status={self.status}>"
