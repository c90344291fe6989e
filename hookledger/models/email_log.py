"""
Email delivery log - one row per message sent through Resend.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Integer, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from hookledger.database import Base
from hookledger.engine.statuses import ResourceKind


class EmailLog(Base):
    __tablename__ = "email_logs"
    resource_kind = ResourceKind.EMAIL

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    resend_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    company_id: Mapped[Optional[str]] = mapped_column(String(64))
    to_email: Mapped[Optional[str]] = mapped_column(String(320))
    subject: Mapped[Optional[str]] = mapped_column(Text)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    error_message: Mapped[Optional[str]] = mapped_column(Text)

    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    bounced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    complained_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Engagement (incremented atomically, independent of status)
    opened_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    clicked_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    opened_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    clicked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_email_logs_status", "status"),
        Index("ix_email_logs_company_id", "company_id"),
    )

    def __repr__(self) -> str:
        return f"<EmailLog {self.resend_id} status={self.status}>"
