"""
SMS delivery log - one row per message sent through Twilio.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from hookledger.database import Base
from hookledger.engine.statuses import ResourceKind


class SmsLog(Base):
    __tablename__ = "sms_logs"
    resource_kind = ResourceKind.SMS

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    twilio_sid: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    company_id: Mapped[Optional[str]] = mapped_column(String(64))
    to_phone: Mapped[Optional[str]] = mapped_column(String(20))

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    error_code: Mapped[Optional[str]] = mapped_column(String(20))
    error_message: Mapped[Optional[str]] = mapped_column(Text)

    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_sms_logs_status", "status"),
        Index("ix_sms_logs_company_id", "company_id"),
    )

    def __repr__(self) -> str:
        return f"<SmsLog {self.twilio_sid} status={self.status}>"
