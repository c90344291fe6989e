"""
Webhook payload schemas - one model per provider object shape.

Handlers parse the part of the payload they need into one of these before
touching storage, so a malformed payload fails with PayloadValidationError and
no side effects.
"""
from typing import Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, ValidationError, field_validator

from hookledger.engine.errors import PayloadValidationError

SUPPORTED_CURRENCIES = frozenset({"usd", "eur", "gbp", "cad", "aud", "jpy", "inr"})


class _ProviderObject(BaseModel):
    # Providers add fields over time; unknown keys are ignored, not rejected.
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# ---------------------------------------------------------------------------
# Stripe (the `data.object` of an event)
# ---------------------------------------------------------------------------

class StripeEventEnvelope(_ProviderObject):
    id: StrictStr = Field(min_length=1)
    type: StrictStr = Field(min_length=1)
    data: dict


class StripePaymentError(_ProviderObject):
    code: Optional[str] = None
    decline_code: Optional[str] = None
    message: Optional[str] = None


class StripePaymentIntent(_ProviderObject):
    """Stripe PaymentIntent."""
    id: StrictStr = Field(min_length=1)
    amount: StrictInt = Field(ge=0)
    currency: StrictStr
    status: StrictStr
    latest_charge: Optional[str] = None
    last_payment_error: Optional[StripePaymentError] = None
    cancellation_reason: Optional[str] = None
    metadata: dict = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def _supported_currency(cls, value: str) -> str:
        value = value.lower()
        if value not in SUPPORTED_CURRENCIES:
            raise ValueError(f"unsupported currency: {value}")
        return value


class StripeCharge(_ProviderObject):
    """Stripe Charge (charge.refunded)."""
    id: StrictStr = Field(min_length=1)
    amount: StrictInt = Field(ge=0)
    amount_refunded: StrictInt = Field(default=0, ge=0)
    currency: StrictStr
    payment_intent: Optional[str] = None
    refunded: bool = False


class StripeSubscription(_ProviderObject):
    """Stripe Subscription."""
    id: StrictStr = Field(min_length=1)
    status: StrictStr
    customer: Optional[str] = None
    metadata: dict
    current_period_end: Optional[int] = None
    canceled_at: Optional[int] = None


class StripeInvoice(_ProviderObject):
    """Stripe Invoice (invoice.paid / invoice.payment_failed)."""
    id: StrictStr = Field(min_length=1)
    subscription: StrictStr = Field(min_length=1)
    customer: Optional[str] = None
    amount_paid: Optional[int] = None


# ---------------------------------------------------------------------------
# Resend
# ---------------------------------------------------------------------------

class ResendBounce(_ProviderObject):
    message: Optional[str] = None
    type: Optional[str] = None


class ResendEmailData(_ProviderObject):
    email_id: StrictStr = Field(min_length=1)
    to: Optional[list[str]] = None
    subject: Optional[str] = None
    bounce: Optional[ResendBounce] = None
    reason: Optional[str] = None


class ResendEmailEvent(_ProviderObject):
    """Resend email.* webhook body."""
    type: StrictStr = Field(min_length=1)
    created_at: Optional[str] = None
    data: ResendEmailData


# ---------------------------------------------------------------------------
# Twilio
# ---------------------------------------------------------------------------

class TwilioStatusPayload(_ProviderObject):
    """Twilio delivery status callback (form-encoded)."""
    MessageSid: str = Field(min_length=1)
    MessageStatus: str = Field(min_length=1)
    ErrorCode: Optional[str] = None
    ErrorMessage: Optional[str] = None
    To: Optional[str] = None
    From: Optional[str] = None

    @classmethod
    def from_form(cls, form: dict) -> "TwilioStatusPayload":
        """Older callbacks use SmsSid / SmsStatus instead of MessageSid / MessageStatus."""
        data = dict(form)
        data.setdefault("MessageSid", form.get("SmsSid"))
        data.setdefault("MessageStatus", form.get("SmsStatus"))
        if data.get("MessageSid") is None:
            data.pop("MessageSid")
        if data.get("MessageStatus") is None:
            data.pop("MessageStatus")
        return cls.model_validate(data)


M = TypeVar("M", bound=BaseModel)


def parse_payload(model: type[M], data, *, provider: str, event_id: Optional[str] = None) -> M:
    """Validate `data` against `model`, raising PayloadValidationError with field errors."""
    try:
        if model is TwilioStatusPayload and isinstance(data, dict):
            return TwilioStatusPayload.from_form(data)
        return model.model_validate(data)
    except ValidationError as e:
        errors = [
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()
        ]
        raise PayloadValidationError(
            f"Invalid {model.__name__} payload",
            errors=errors,
            provider=provider,
            event_id=event_id,
        ) from e
