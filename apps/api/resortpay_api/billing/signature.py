"""Stripe webhook signature verification.

Header: Stripe-Signature: t=<unix ts>,v1=<hex>[,v1=<hex>...]
Signed payload: "<t>." + raw request body bytes
Expected: HMAC-SHA256(webhook_secret, signed payload), hex encoded

The raw bytes are the only valid input. Re-serializing parsed JSON changes
whitespace and key order and breaks the signature.
"""

import hashlib
import hmac
import logging
import time
from typing import Optional

from resortpay_api.billing.errors import InvalidSignature, WebhookMisconfigured
from resortpay_api.billing.events import IncomingEvent, parse_event

logger = logging.getLogger(__name__)

SIGNATURE_SCHEME = "v1"
DEFAULT_TOLERANCE_SEC = 300


def compute_signature(secret: str, timestamp: int, raw_body: bytes) -> str:
    """HMAC-SHA256 over "<timestamp>." + raw_body."""
    signed_payload = f"{timestamp}.".encode("utf-8") + raw_body
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def build_signature_header(secret: str, raw_body: bytes, timestamp: Optional[int] = None) -> str:
    """Produce a Stripe-Signature header value (stripe-cli style test tooling)."""
    ts = int(time.time()) if timestamp is None else timestamp
    return f"t={ts},{SIGNATURE_SCHEME}={compute_signature(secret, ts, raw_body)}"


def parse_signature_header(header: str) -> tuple[int, list[str]]:
    """Split a Stripe-Signature header into (timestamp, [v1 signatures]).

    Raises:
        InvalidSignature: Header has no timestamp or no v1 signature
    """
    timestamp: Optional[int] = None
    signatures: list[str] = []

    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise InvalidSignature("Signature header timestamp is not an integer") from None
        elif key == SIGNATURE_SCHEME and value:
            signatures.append(value)

    if timestamp is None:
        raise InvalidSignature("Signature header has no timestamp")
    if not signatures:
        raise InvalidSignature(f"Signature header has no {SIGNATURE_SCHEME} signature")
    return timestamp, signatures


def verify_signature(
    raw_body: bytes,
    signature_header: Optional[str],
    secret: Optional[str],
    *,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SEC,
    now: Optional[float] = None,
) -> int:
    """Verify the signature of a raw webhook body.

    Returns:
        The signed timestamp

    Raises:
        WebhookMisconfigured: No signing secret configured (our side, retryable)
        InvalidSignature: Missing/malformed header, stale timestamp or mismatch
    """
    if not secret:
        raise WebhookMisconfigured("Webhook signing secret is not configured")
    if not signature_header:
        raise InvalidSignature("Missing Stripe-Signature header")

    timestamp, signatures = parse_signature_header(signature_header)

    expected = compute_signature(secret, timestamp, raw_body)
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise InvalidSignature("No signature matches the expected signature for the payload")

    current = time.time() if now is None else now
    if tolerance_seconds > 0 and abs(current - timestamp) > tolerance_seconds:
        raise InvalidSignature(
            f"Signature timestamp outside the {tolerance_seconds}s tolerance window"
        )

    return timestamp


def verify_and_parse(
    raw_body: bytes,
    signature_header: Optional[str],
    secret: Optional[str],
    *,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SEC,
    now: Optional[float] = None,
) -> IncomingEvent:
    """Authenticate the raw body, then parse it into a trusted IncomingEvent.

    The body is not parsed at all unless the signature checks out.
    """
    verify_signature(
        raw_body,
        signature_header,
        secret,
        tolerance_seconds=tolerance_seconds,
        now=now,
    )
    return parse_event(raw_body)
