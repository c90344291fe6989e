"""
Webhook endpoints - thin boundary between providers and the processing engine.

Layers (in order):
1. Rate limiting (per source IP)
2. Signature validation (per provider) - 401 without ever invoking the engine
3. Event id / type extraction
4. In-flight admission slot (per provider)
5. process_webhook() - claim, dispatch, record; returns the HTTP status to answer with
"""
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse, Response

from hookledger.engine.errors import PayloadValidationError, SignatureVerificationError
from hookledger.engine.handlers.twilio_handlers import twilio_event_id, twilio_event_type
from hookledger.engine.pipeline import process_webhook
from hookledger.schemas.results import InboundEvent, ProcessingOutcome
from hookledger.schemas.webhook_payloads import ResendEmailEvent, StripeEventEnvelope, parse_payload
from hookledger.utils.alerting import AlertType, send_alert
from hookledger.utils.rate_limiter import admission_slot, check_webhook_rate_limits
from hookledger.utils.webhook_signatures import compute_payload_hash, verify_provider_request

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])

EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'
INFLIGHT_RETRY_AFTER_SECONDS = 30


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


async def _enforce_rate_limit(request: Request) -> None:
    """Check rate limits and raise 429 if exceeded."""
    allowed, retry_after = await check_webhook_rate_limits(_client_ip(request))
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail="Rate limit exceeded",
            headers={"Retry-After": str(retry_after or 60)},
        )


async def _verify(provider: str, request: Request, body: bytes, form_params: Optional[dict] = None) -> dict:
    """Validate the provider signature and raise 401 if invalid."""
    try:
        return verify_provider_request(provider, request, body, form_params)
    except SignatureVerificationError as e:
        client_ip = _client_ip(request)
        logger.warning(
            "Invalid webhook signature: provider=%s ip=%s reason=%s",
            provider, client_ip, e.message,
            extra={"provider": provider, "error_category": e.category},
        )
        await send_alert(
            AlertType.WEBHOOK_SIGNATURE_INVALID,
            f"Rejected {provider} webhook with invalid signature from {client_ip}",
            severity="warning",
            cooldown_key=f"{AlertType.WEBHOOK_SIGNATURE_INVALID}:{provider}",
        )
        raise HTTPException(status_code=401, detail="Invalid webhook signature")


def _bad_request(e: PayloadValidationError) -> HTTPException:
    logger.warning("Rejected webhook payload: %s %s", e.message, e.errors, extra={"provider": e.provider})
    return HTTPException(status_code=400, detail="Invalid webhook payload")


def _build_event(
    provider: str,
    event_id: str,
    event_type: str,
    payload: dict,
    request: Request,
    body: bytes,
) -> InboundEvent:
    return InboundEvent(
        provider=provider,
        event_id=event_id,
        event_type=event_type,
        payload=payload,
        payload_hash=compute_payload_hash(body),
        http_headers={k: v for k, v in request.headers.items()},
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


async def _process(event: InboundEvent) -> Optional[ProcessingOutcome]:
    """Run the engine inside an in-flight slot. None means the provider is at capacity."""
    async with admission_slot(event.provider) as admitted:
        if not admitted:
            return None
        return await process_webhook(event)


def _at_capacity() -> HTTPException:
    return HTTPException(
        status_code=503,
        detail="Too many webhooks in flight",
        headers={"Retry-After": str(INFLIGHT_RETRY_AFTER_SECONDS)},
    )


@router.post("/stripe")
async def stripe_webhook(request: Request):
    """Stripe events (payments, refunds, subscriptions, invoices)."""
    await _enforce_rate_limit(request)
    body = await request.body()
    payload = await _verify("stripe", request, body)

    try:
        envelope = parse_payload(StripeEventEnvelope, payload, provider="stripe")
    except PayloadValidationError as e:
        raise _bad_request(e)

    event = _build_event("stripe", envelope.id, envelope.type, payload, request, body)
    outcome = await _process(event)
    if outcome is None:
        raise _at_capacity()
    return JSONResponse(outcome.to_response(), status_code=outcome.http_status)


@router.post("/resend")
async def resend_webhook(request: Request):
    """Resend email delivery and engagement events."""
    await _enforce_rate_limit(request)
    body = await request.body()
    payload = await _verify("resend", request, body)

    try:
        parsed = parse_payload(ResendEmailEvent, payload, provider="resend")
    except PayloadValidationError as e:
        raise _bad_request(e)

    # One email produces many events; the delivery id identifies the event itself.
    event_id = request.headers.get("svix-id") or f"{parsed.data.email_id}:{parsed.type}"
    event = _build_event("resend", event_id, parsed.type, payload, request, body)
    outcome = await _process(event)
    if outcome is None:
        raise _at_capacity()
    return JSONResponse(outcome.to_response(), status_code=outcome.http_status)


@router.post("/twilio/status")
async def twilio_status_webhook(request: Request):
    """Twilio SMS delivery status callback. Twilio sends form-encoded data and expects TwiML."""
    await _enforce_rate_limit(request)
    body = await request.body()
    form_data = await request.form()
    form_params = dict(form_data)
    payload = await _verify("twilio", request, body, form_params)

    event_id = twilio_event_id(payload)
    if not event_id:
        raise HTTPException(status_code=400, detail="Missing MessageSid")

    event = _build_event("twilio", event_id, twilio_event_type(payload), payload, request, body)
    outcome = await _process(event)
    if outcome is None:
        raise _at_capacity()
    return Response(content=EMPTY_TWIML, media_type="application/xml", status_code=outcome.http_status)
