"""
Result types passed between the engine stages and back to the HTTP layer.
"""
import uuid
from typing import Any, Optional

from pydantic import BaseModel, Field


class InboundEvent(BaseModel):
    """A verified webhook, ready to be claimed."""

    provider: str
    event_id: str
    event_type: str
    payload: dict[str, Any]
    payload_hash: Optional[str] = None
    http_headers: dict[str, str] = Field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class ClaimResult(BaseModel):
    is_duplicate: bool
    record_id: uuid.UUID
    existing_status: Optional[str] = None
    retry_count: int = 0
    error_category: Optional[str] = None


class HandlerResult(BaseModel):
    """What a handler did. status is "processed" or "skipped"."""

    status: str = "processed"
    message: Optional[str] = None
    resource_id: Optional[uuid.UUID] = None
    changed: bool = False


class ProcessingOutcome(BaseModel):
    """Final result of one delivery, mapped to the provider-visible response."""

    status: str  # processed, skipped, failed, duplicate, rejected
    http_status: int
    provider: str
    event_id: str
    record_id: Optional[uuid.UUID] = None
    existing_status: Optional[str] = None
    error_category: Optional[str] = None
    retryable: bool = False
    duration_ms: int = 0

    def to_response(self) -> dict:
        """Response body for the provider. Never carries internal error detail."""
        body: dict[str, Any] = {
            "received": self.http_status < 400,
            "status": self.status,
            "event_id": self.event_id,
        }
        if self.error_category:
            body["error"] = self.error_category
        return body
