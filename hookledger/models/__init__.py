"""
Database models - import all models here so Alembic can discover them.
"""
from hookledger.models.webhook_event import WebhookEvent
from hookledger.models.webhook_audit_log import WebhookAuditLog
from hookledger.models.payment import Payment
from hookledger.models.subscription import Subscription
from hookledger.models.email_log import EmailLog
from hookledger.models.sms_log import SmsLog

__all__ = [
    "WebhookEvent",
    "WebhookAuditLog",
    "Payment",
    "Subscription",
    "EmailLog",
    "SmsLog",
]
