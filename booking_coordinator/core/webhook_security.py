"""Webhook signature verification for Calendly and Stripe.

Both providers sign ``"<timestamp>.<raw body>"`` with HMAC-SHA256. Calendly
is verified here against a primary and an optional secondary (rotation)
signing key; Stripe is verified with the ``stripe`` library. Failures raise
``SignatureVerificationFailed`` and are logged with the reason; callers
respond with a generic 400.
"""

import hashlib
import hmac
import logging
import time

import stripe

from booking_coordinator.core.exceptions import SignatureVerificationFailed

logger = logging.getLogger(__name__)

CALENDLY_SIGNATURE_HEADER = "Calendly-Webhook-Signature"
STRIPE_SIGNATURE_HEADER = "Stripe-Signature"

# Maximum age of webhook in seconds (5 minutes)
MAX_WEBHOOK_AGE_SECONDS = 300


def constant_time_compare(a: str, b: str) -> bool:
    """Compare two strings in constant time."""
    if not a or not b:
        return False
    return hmac.compare_digest(a, b)


def compute_hmac_sha256(secret: str, payload: bytes) -> str:
    """Compute HMAC-SHA256 signature of payload."""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def parse_signature_header(header: str) -> tuple[str | None, list[str]]:
    """Split ``t=<ts>,v1=<sig>[,v1=<sig>]`` into timestamp and signatures."""
    timestamp = None
    signatures: list[str] = []
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    return timestamp, signatures


def verify_timestamp(timestamp: str | None, max_age: int = MAX_WEBHOOK_AGE_SECONDS, now: float | None = None) -> bool:
    """Verify the webhook timestamp is within ``max_age`` seconds of now."""
    if not timestamp:
        return False

    try:
        webhook_time = int(timestamp)
    except (ValueError, TypeError):
        logger.warning(f"Invalid webhook timestamp format: {timestamp}")
        return False

    current_time = int(now if now is not None else time.time())
    age = abs(current_time - webhook_time)
    if age > max_age:
        logger.warning(f"Webhook timestamp outside tolerance: {age}s (max: {max_age}s)")
        return False
    return True


def sign_webhook_payload(signing_key: str, payload: bytes, timestamp: int) -> str:
    """Build a ``t=<ts>,v1=<hmac>`` header the way Calendly and Stripe sign requests."""
    signed = f"{timestamp}.".encode("utf-8") + payload
    return f"t={timestamp},v1={compute_hmac_sha256(signing_key, signed)}"


def verify_calendly_signature(
    payload: bytes,
    header: str | None,
    signing_keys: list[str | None],
    tolerance: int = MAX_WEBHOOK_AGE_SECONDS,
    now: float | None = None,
) -> None:
    """Verify a Calendly webhook.

    Raises:
        SignatureVerificationFailed: header missing or malformed, timestamp
            outside tolerance, or no configured key matches.
    """
    keys = [k for k in signing_keys if k]
    if not keys:
        logger.error("Calendly webhook signing key not configured")
        raise SignatureVerificationFailed("calendly", "signing key not configured")

    if not header:
        logger.warning("Calendly webhook missing signature header")
        raise SignatureVerificationFailed("calendly", "missing signature header")

    timestamp, signatures = parse_signature_header(header)
    if not timestamp or not signatures:
        logger.warning("Calendly webhook signature header malformed")
        raise SignatureVerificationFailed("calendly", "malformed signature header")

    if not verify_timestamp(timestamp, tolerance, now):
        raise SignatureVerificationFailed("calendly", "timestamp outside tolerance")

    signed = f"{timestamp}.".encode("utf-8") + payload
    for key in keys:
        expected = compute_hmac_sha256(key, signed)
        if any(constant_time_compare(expected, sig) for sig in signatures):
            return

    logger.warning("Calendly webhook signature mismatch")
    raise SignatureVerificationFailed("calendly", "signature mismatch")


def verify_stripe_signature(
    payload: bytes,
    header: str | None,
    secret: str | None,
    tolerance: int = MAX_WEBHOOK_AGE_SECONDS,
) -> None:
    """Verify a Stripe webhook with the stripe library."""
    if not secret:
        logger.error("Stripe webhook secret not configured")
        raise SignatureVerificationFailed("stripe", "webhook secret not configured")

    if not header:
        logger.warning("Stripe webhook missing signature header")
        raise SignatureVerificationFailed("stripe", "missing signature header")

    try:
        stripe.WebhookSignature.verify_header(
            payload.decode("utf-8"), header, secret, tolerance=tolerance
        )
    except stripe.SignatureVerificationError as e:
        logger.warning(f"Stripe webhook signature invalid: {e}")
        raise SignatureVerificationFailed("stripe", str(e))
    except UnicodeDecodeError:
        raise SignatureVerificationFailed("stripe", "payload is not UTF-8")
