"""
Webhook signature validation - verify incoming webhooks are authentic.

Supported providers:
- Stripe: `Stripe-Signature` header, verified by the stripe SDK
- Resend: HMAC-SHA256 hex digest via `resend-signature`
- Twilio: HMAC-SHA1 via X-Twilio-Signature (twilio RequestValidator)

Each verifier returns the parsed event payload or raises
SignatureVerificationError. The processing engine is only invoked after a
verifier has succeeded.
"""
import hashlib
import hmac
import json
import logging
from typing import Optional

from hookledger.engine.errors import SignatureVerificationError

logger = logging.getLogger(__name__)

STRIPE_TOLERANCE_SECONDS = 300


def validate_hmac_sha256(
    secret: str,
    signature: str,
    body: bytes,
    header_prefix: str = "sha256=",
) -> bool:
    """
    Validate generic HMAC-SHA256 webhook signature.
    Handles signatures with optional prefix (e.g., "sha256=...").
    Returns True if valid, False if invalid.
    """
    if not secret or not signature:
        return False

    sig = signature
    if sig.startswith(header_prefix):
        sig = sig[len(header_prefix):]

    try:
        expected = hmac.new(
            secret.encode("utf-8"),
            body,
            hashlib.sha256,
        ).hexdigest()
        return hmac.compare_digest(expected, sig.lower())
    except Exception as e:
        logger.error("HMAC-SHA256 validation error: %s", str(e))
        return False


def compute_payload_hash(body: bytes) -> str:
    """Compute SHA-256 hash of raw payload for audit and id-reuse detection."""
    return hashlib.sha256(body).hexdigest()


def get_webhook_url(request) -> str:
    """
    Reconstruct the public URL for Twilio signature validation.
    Behind a reverse proxy, request.url returns the internal URL but Twilio
    signs against the public URL, so X-Forwarded-Proto / X-Forwarded-Host win.
    """
    proto = request.headers.get("x-forwarded-proto", "https")
    host = request.headers.get("x-forwarded-host") or request.headers.get("host", "")
    path = request.url.path
    query = request.url.query
    base = f"{proto}://{host}{path}"
    if query:
        return f"{base}?{query}"
    return base


def _parse_json(body: bytes, provider: str) -> dict:
    try:
        payload = json.loads(body)
    except (ValueError, UnicodeDecodeError) as e:
        raise SignatureVerificationError(f"Unparseable {provider} payload: {e}", provider=provider)
    if not isinstance(payload, dict):
        raise SignatureVerificationError(f"{provider} payload is not an object", provider=provider)
    return payload


def _unsigned_allowed(provider: str, secret_name: str) -> bool:
    """
    A missing secret rejects the request, except outside production with
    ALLOW_UNSIGNED_WEBHOOKS=true (local development against provider CLIs).
    """
    from hookledger.config import get_settings
    settings = get_settings()

    if settings.app_env == "production" or not settings.allow_unsigned_webhooks:
        logger.error("Missing %s - rejecting %s webhook", secret_name, provider)
        return False
    logger.warning(
        "%s not set - accepting %s webhook without signature verification",
        secret_name, provider,
    )
    return True


def verify_stripe_event(body: bytes, signature: str, secret: str) -> dict:
    """Verify a Stripe-Signature header and return the event dict."""
    if not signature:
        raise SignatureVerificationError("Missing Stripe-Signature header", provider="stripe")

    import stripe

    try:
        stripe.WebhookSignature.verify_header(
            body.decode("utf-8"), signature, secret, STRIPE_TOLERANCE_SECONDS
        )
    except Exception as e:
        logger.warning("Stripe signature verification failed: %s", str(e))
        raise SignatureVerificationError("Invalid Stripe signature", provider="stripe") from e
    return _parse_json(body, "stripe")


def verify_resend_event(body: bytes, signature: str, secret: str) -> dict:
    """Verify a resend-signature HMAC-SHA256 header and return the event dict."""
    if not signature:
        raise SignatureVerificationError("Missing resend-signature header", provider="resend")
    if not validate_hmac_sha256(secret, signature, body):
        raise SignatureVerificationError("Invalid Resend signature", provider="resend")
    return _parse_json(body, "resend")


def verify_twilio_request(auth_token: str, signature: str, url: str, params: dict) -> dict:
    """Verify X-Twilio-Signature over the public URL and form params."""
    if not signature:
        raise SignatureVerificationError("Missing X-Twilio-Signature header", provider="twilio")

    try:
        from twilio.request_validator import RequestValidator
        validator = RequestValidator(auth_token)
        valid = validator.validate(url, params, signature)
    except Exception as e:
        logger.error("Twilio signature validation error: %s", str(e))
        valid = False

    if not valid:
        raise SignatureVerificationError("Invalid Twilio signature", provider="twilio")
    return dict(params)


def verify_provider_request(
    provider: str,
    request,
    body: bytes,
    form_params: Optional[dict] = None,
) -> dict:
    """
    Dispatch to the provider's verifier using configured secrets.
    Returns the parsed payload or raises SignatureVerificationError.
    """
    from hookledger.config import get_settings
    settings = get_settings()

    if provider == "stripe":
        if not settings.stripe_webhook_secret:
            if _unsigned_allowed(provider, "STRIPE_WEBHOOK_SECRET"):
                return _parse_json(body, provider)
            raise SignatureVerificationError("Stripe webhook secret not configured", provider=provider)
        return verify_stripe_event(
            body, request.headers.get("stripe-signature", ""), settings.stripe_webhook_secret
        )

    if provider == "resend":
        if not settings.resend_webhook_secret:
            if _unsigned_allowed(provider, "RESEND_WEBHOOK_SECRET"):
                return _parse_json(body, provider)
            raise SignatureVerificationError("Resend webhook secret not configured", provider=provider)
        return verify_resend_event(
            body, request.headers.get("resend-signature", ""), settings.resend_webhook_secret
        )

    if provider == "twilio":
        params = form_params or {}
        if not settings.twilio_auth_token:
            if _unsigned_allowed(provider, "TWILIO_AUTH_TOKEN"):
                return dict(params)
            raise SignatureVerificationError("Twilio auth token not configured", provider=provider)
        return verify_twilio_request(
            settings.twilio_auth_token,
            request.headers.get("x-twilio-signature", ""),
            get_webhook_url(request),
            params,
        )

    raise SignatureVerificationError(f"Unsupported webhook provider: {provider}", provider=provider)
