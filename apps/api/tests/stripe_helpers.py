"""Builders for signed Stripe webhook deliveries used across tests."""

import json
from typing import Optional

from resortpay_api.billing.signature import build_signature_header

WEBHOOK_SECRET = "whsec_test_secret"


def payment_intent_event(
    event_id: str,
    *,
    event_type: str = "payment_intent.succeeded",
    amount_cents: int = 10000,
    currency: str = "eur",
    payment_intent: str = "pi_test_1",
    reference_type: Optional[str] = "restaurant_order",
    reference_id: Optional[str] = "order_1",
    user_id: Optional[str] = None,
) -> dict:
    metadata = {}
    if reference_type:
        metadata["referenceType"] = reference_type
    if reference_id:
        metadata["referenceId"] = reference_id
    if user_id:
        metadata["userId"] = user_id

    obj = {
        "id": payment_intent,
        "object": "payment_intent",
        "amount": amount_cents,
        "currency": currency,
        "latest_charge": f"ch_{payment_intent[3:]}",
        "metadata": metadata,
    }
    if event_type == "payment_intent.succeeded":
        obj["amount_received"] = amount_cents

    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": 1760000000,
        "livemode": False,
        "data": {"object": obj},
    }


def charge_refunded_event(
    event_id: str,
    *,
    amount_refunded_cents: int,
    payment_intent: str = "pi_test_1",
    currency: str = "eur",
    refund_id: str = "re_test_1",
) -> dict:
    return {
        "id": event_id,
        "object": "event",
        "type": "charge.refunded",
        "created": 1760000500,
        "livemode": False,
        "data": {
            "object": {
                "id": f"ch_{payment_intent[3:]}",
                "object": "charge",
                "amount_refunded": amount_refunded_cents,
                "currency": currency,
                "payment_intent": payment_intent,
                "metadata": {},
                "refunds": {"data": [{"id": refund_id, "status": "succeeded"}]},
            }
        },
    }


def signed(payload: dict, *, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> tuple[bytes, dict]:
    """Serialize once and sign those exact bytes."""
    raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        "Stripe-Signature": build_signature_header(secret, raw, timestamp),
    }
    return raw, headers


def post_event(client, payload: dict, **sign_kwargs):
    raw, headers = signed(payload, **sign_kwargs)
    return client.post("/webhooks/stripe", content=raw, headers=headers)
