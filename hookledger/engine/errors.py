"""
Error taxonomy for webhook processing.

Every failure raised while a claimed event is being processed is classified
into one category. The category decides:
- the HTTP status returned to the provider (whether the provider retries),
- whether the ledger row may re-enter `processing` automatically,
- the severity used for logging and alerting.

Classification is a pure function of the exception type and message, never of
event content, so it is deterministic for a given failure.
"""
import asyncio
from dataclasses import dataclass
from typing import Optional


class ErrorCategory:
    AUTHENTICATION = "authentication"
    VALIDATION = "validation"
    INVALID_TRANSITION = "invalid_transition"
    NOT_FOUND = "not_found"
    STORAGE = "storage"
    NETWORK = "network"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class Severity:
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# Categories whose failures a redelivery or the retry worker may re-run.
RETRYABLE_CATEGORIES = frozenset({
    ErrorCategory.STORAGE,
    ErrorCategory.NETWORK,
    ErrorCategory.TIMEOUT,
    ErrorCategory.UNKNOWN,
})

HTTP_STATUS_BY_CATEGORY: dict[str, int] = {
    ErrorCategory.AUTHENTICATION: 401,
    ErrorCategory.VALIDATION: 400,
    ErrorCategory.INVALID_TRANSITION: 400,
    ErrorCategory.NOT_FOUND: 404,
    ErrorCategory.STORAGE: 503,
    ErrorCategory.NETWORK: 503,
    ErrorCategory.TIMEOUT: 503,
    ErrorCategory.UNKNOWN: 503,
}


class WebhookError(Exception):
    """Base class for failures the engine knows how to classify."""

    category = ErrorCategory.UNKNOWN
    severity = Severity.CRITICAL

    def __init__(self, message: str, *, provider: Optional[str] = None, event_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.event_id = event_id

    @property
    def retryable(self) -> bool:
        return self.category in RETRYABLE_CATEGORIES

    @property
    def http_status(self) -> int:
        return HTTP_STATUS_BY_CATEGORY[self.category]


class SignatureVerificationError(WebhookError):
    category = ErrorCategory.AUTHENTICATION
    severity = Severity.HIGH


class PayloadValidationError(WebhookError):
    """Payload is missing required fields or has the wrong shape."""

    category = ErrorCategory.VALIDATION
    severity = Severity.MEDIUM

    def __init__(self, message: str, errors: Optional[list[str]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.errors = errors or []


class InvalidTransitionError(WebhookError):
    category = ErrorCategory.INVALID_TRANSITION
    severity = Severity.MEDIUM

    def __init__(self, kind: str, current: str, proposed: str, **kwargs):
        super().__init__(
            f"Invalid {kind} status transition: {current} -> {proposed}", **kwargs
        )
        self.kind = kind
        self.current = current
        self.proposed = proposed


class RecordNotFoundError(WebhookError):
    category = ErrorCategory.NOT_FOUND
    severity = Severity.MEDIUM

    def __init__(self, resource: str, identifier: str, **kwargs):
        super().__init__(f"{resource} not found: {identifier}", **kwargs)
        self.resource = resource
        self.identifier = identifier


class StorageError(WebhookError):
    """Transient database failure. The caller cannot assume the write happened."""

    category = ErrorCategory.STORAGE
    severity = Severity.HIGH


class ConcurrentModificationError(StorageError):
    """A compare-and-set status update kept losing to concurrent writers."""


class NetworkError(WebhookError):
    category = ErrorCategory.NETWORK
    severity = Severity.MEDIUM


class HandlerTimeoutError(WebhookError):
    category = ErrorCategory.TIMEOUT
    severity = Severity.MEDIUM


@dataclass(frozen=True)
class ErrorClassification:
    category: str
    retryable: bool
    severity: str
    http_status: int

    @classmethod
    def for_category(cls, category: str, severity: str) -> "ErrorClassification":
        return cls(
            category=category,
            retryable=category in RETRYABLE_CATEGORIES,
            severity=severity,
            http_status=HTTP_STATUS_BY_CATEGORY[category],
        )


# Message heuristics, checked in order, for exceptions of foreign types.
_MESSAGE_RULES: tuple[tuple[tuple[str, ...], str, str], ...] = (
    (("signature",), ErrorCategory.AUTHENTICATION, Severity.HIGH),
    (("validation", "invalid"), ErrorCategory.VALIDATION, Severity.MEDIUM),
    (("database", "connection pool", "deadlock"), ErrorCategory.STORAGE, Severity.HIGH),
    (("not found",), ErrorCategory.NOT_FOUND, Severity.MEDIUM),
    (("timeout", "timed out"), ErrorCategory.TIMEOUT, Severity.MEDIUM),
    (("network", "econnrefused", "connection refused", "connection reset"), ErrorCategory.NETWORK, Severity.MEDIUM),
)


def classify_error(exc: BaseException) -> ErrorClassification:
    """Map any exception to its taxonomy category."""
    if isinstance(exc, WebhookError):
        return ErrorClassification.for_category(exc.category, exc.severity)

    import httpx
    import pydantic
    from sqlalchemy.exc import SQLAlchemyError

    if isinstance(exc, SQLAlchemyError):
        return ErrorClassification.for_category(ErrorCategory.STORAGE, Severity.HIGH)
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError, httpx.TimeoutException)):
        return ErrorClassification.for_category(ErrorCategory.TIMEOUT, Severity.MEDIUM)
    if isinstance(exc, (httpx.TransportError, ConnectionError)):
        return ErrorClassification.for_category(ErrorCategory.NETWORK, Severity.MEDIUM)
    if isinstance(exc, pydantic.ValidationError):
        return ErrorClassification.for_category(ErrorCategory.VALIDATION, Severity.MEDIUM)

    message = str(exc).lower()
    for needles, category, severity in _MESSAGE_RULES:
        if any(needle in message for needle in needles):
            return ErrorClassification.for_category(category, severity)

    return ErrorClassification.for_category(ErrorCategory.UNKNOWN, Severity.CRITICAL)


def is_retryable_category(category: Optional[str]) -> bool:
    return category in RETRYABLE_CATEGORIES
