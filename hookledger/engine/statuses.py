"""
Status taxonomy and transition tables.

Static data only. Each resource kind declares its status domain and the
directed edges a status may move along. Same-status "transitions" are not
listed: they are accepted as idempotent no-ops by the validator.
"""
from enum import Enum


class Provider(str, Enum):
    STRIPE = "stripe"
    RESEND = "resend"
    TWILIO = "twilio"


class LedgerStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"
    SKIPPED = "skipped"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    REQUIRES_ACTION = "requires_action"
    SUCCEEDED = "succeeded"
    CANCELED = "canceled"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class SubscriptionStatus(str, Enum):
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELED = "canceled"


class EmailStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    DELAYED = "delayed"
    FAILED = "failed"
    BOUNCED = "bounced"
    COMPLAINED = "complained"
    OPENED = "opened"
    CLICKED = "clicked"


class SmsStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    UNDELIVERED = "undelivered"
    FAILED = "failed"


class ResourceKind(str, Enum):
    LEDGER = "ledger"
    PAYMENT = "payment"
    SUBSCRIPTION = "subscription"
    EMAIL = "email"
    SMS = "sms"


LEDGER_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"processing"}),
    "processing": frozenset({"processed", "failed", "skipped"}),
    "failed": frozenset({"processing"}),
    "processed": frozenset(),
    "skipped": frozenset(),
}

PAYMENT_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"processing", "canceled", "failed"}),
    "processing": frozenset({"requires_action", "succeeded", "failed", "canceled"}),
    "requires_action": frozenset({"processing", "succeeded", "failed", "canceled"}),
    "succeeded": frozenset({"refunded", "partially_refunded"}),
    "partially_refunded": frozenset({"refunded"}),
    "failed": frozenset({"processing"}),
    "canceled": frozenset(),
    "refunded": frozenset(),
}

SUBSCRIPTION_TRANSITIONS: dict[str, frozenset[str]] = {
    "incomplete": frozenset({"active", "trialing", "incomplete_expired", "canceled"}),
    "trialing": frozenset({"active", "past_due", "canceled", "unpaid"}),
    "active": frozenset({"past_due", "canceled", "unpaid"}),
    "past_due": frozenset({"active", "canceled", "unpaid"}),
    "unpaid": frozenset({"active", "canceled"}),
    "canceled": frozenset(),
    "incomplete_expired": frozenset(),
}

EMAIL_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"sent", "failed"}),
    "sent": frozenset({"delivered", "delayed", "bounced", "failed"}),
    "delayed": frozenset({"sent", "delivered", "failed", "bounced"}),
    "delivered": frozenset({"opened", "clicked", "complained"}),
    "opened": frozenset({"clicked"}),
    "failed": frozenset(),
    "bounced": frozenset(),
    "complained": frozenset(),
    "clicked": frozenset(),
}

SMS_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"queued", "failed"}),
    "queued": frozenset({"sending", "failed"}),
    "sending": frozenset({"sent", "failed"}),
    "sent": frozenset({"delivered", "undelivered", "failed"}),
    "delivered": frozenset(),
    "undelivered": frozenset(),
    "failed": frozenset(),
}

TRANSITION_TABLES: dict[ResourceKind, dict[str, frozenset[str]]] = {
    ResourceKind.LEDGER: LEDGER_TRANSITIONS,
    ResourceKind.PAYMENT: PAYMENT_TRANSITIONS,
    ResourceKind.SUBSCRIPTION: SUBSCRIPTION_TRANSITIONS,
    ResourceKind.EMAIL: EMAIL_TRANSITIONS,
    ResourceKind.SMS: SMS_TRANSITIONS,
}

# Ledger states from which a retry may claim the row again
RECLAIMABLE_LEDGER_STATUSES = tuple(sorted(
    status for status, allowed in LEDGER_TRANSITIONS.items() if "processing" in allowed
))
