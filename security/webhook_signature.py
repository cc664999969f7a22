import hashlib
import hmac
import time

import stripe

from services.errors import WebhookVerificationError


def _parse_calendly_header(header: str):
    parts = {}
    for item in (header or "").split(","):
        key, sep, value = item.strip().partition("=")
        if sep:
            parts[key] = value
    return parts.get("t"), parts.get("v1")


def verify_calendly(payload: bytes, header: str, signing_key: str, tolerance: int = 300, now=None) -> None:
    """
    Calendly-Webhook-Signature: t=<unix seconds>,v1=<hex hmac-sha256 of "t.body">

    Raises WebhookVerificationError on a missing/bad signature or a stale timestamp.
    """
    if not signing_key:
        raise WebhookVerificationError("Calendly signing key not configured")

    timestamp, signature = _parse_calendly_header(header)
    if not timestamp or not signature:
        raise WebhookVerificationError("Missing Calendly signature")

    try:
        ts = int(timestamp)
    except ValueError:
        raise WebhookVerificationError("Invalid Calendly signature timestamp")

    now = int(now if now is not None else time.time())
    if abs(now - ts) > tolerance:
        raise WebhookVerificationError("Calendly webhook timestamp outside tolerance")

    signed = timestamp.encode() + b"." + payload
    expected = hmac.new(signing_key.encode(), signed, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature):
        raise WebhookVerificationError("Invalid Calendly signature")


def sign_calendly(payload: bytes, signing_key: str, timestamp: int) -> str:
    signed = str(timestamp).encode() + b"." + payload
    digest = hmac.new(signing_key.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def verify_stripe(payload: bytes, header: str, secret: str, tolerance: int = 300) -> None:
    if not secret:
        raise WebhookVerificationError("Stripe webhook secret not configured")
    if not header:
        raise WebhookVerificationError("Missing Stripe signature")
    try:
        stripe.WebhookSignature.verify_header(payload.decode("utf-8"), header, secret, tolerance=tolerance)
    except stripe.SignatureVerificationError:
        raise WebhookVerificationError("Invalid webhook signature")
    except UnicodeDecodeError:
        raise WebhookVerificationError("Webhook body is not valid UTF-8")
