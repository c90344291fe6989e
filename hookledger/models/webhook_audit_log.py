"""
Webhook audit log - append-only record of every lifecycle stage of an event.
Used for debugging, compliance audits, and performance analysis.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Integer, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from hookledger.database import Base


class WebhookAuditLog(Base):
    __tablename__ = "webhook_audit_log"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    stage: Mapped[str] = mapped_column(
        String(20), nullable=False
    )  # received, claimed, duplicate, processing, processed, failed, skipped, slow
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[Optional[str]] = mapped_column(String(100))
    record_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))

    duration_ms: Mapped[Optional[int]] = mapped_column(Integer)
    error_category: Mapped[Optional[str]] = mapped_column(String(30))
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    correlation_id: Mapped[Optional[str]] = mapped_column(String(64))

    # Redacted context
    data: Mapped[Optional[dict]] = mapped_column(JSONB)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_webhook_audit_log_event", "provider", "event_id"),
        Index("ix_webhook_audit_log_stage", "stage"),
        Index("ix_webhook_audit_log_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<WebhookAuditLog {self.provider}:{self.event_id} stage={self.stage}>"
