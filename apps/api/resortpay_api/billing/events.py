"""Provider event model.

A verified Stripe event is reduced to an IncomingEvent: the provider-neutral
financial fact the reconciliation pipeline works on. Only three provider
event types carry money movements we reconcile; everything else is
acknowledged and ignored.

    payment_intent.succeeded       → payment_succeeded
    payment_intent.payment_failed  → payment_failed
    charge.refunded                → payment_refunded
"""

import json
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from resortpay_api.billing.errors import MalformedEvent
from resortpay_api.utils.money import UnsupportedCurrencyError, minor_to_major, normalize_currency


class EventType(str, Enum):
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_REFUNDED = "payment_refunded"
    UNSUPPORTED = "unsupported"


PROVIDER_EVENT_TYPES: dict[str, EventType] = {
    "payment_intent.succeeded": EventType.PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": EventType.PAYMENT_FAILED,
    "charge.refunded": EventType.PAYMENT_REFUNDED,
}

# Ledger status recorded for each reconciled event type
LEDGER_STATUS: dict[EventType, str] = {
    EventType.PAYMENT_SUCCEEDED: "succeeded",
    EventType.PAYMENT_FAILED: "failed",
    EventType.PAYMENT_REFUNDED: "refunded",
}


@dataclass(frozen=True)
class IncomingEvent:
    """Trusted, immutable view of one provider notification."""

    id: str
    type: EventType
    provider_type: str
    amount: Decimal
    currency: str
    gateway_reference: Optional[str]
    charge_id: Optional[str] = None
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None
    user_id: Optional[str] = None
    created: Optional[int] = None
    livemode: bool = False
    refund_ids: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_supported(self) -> bool:
        return self.type is not EventType.UNSUPPORTED

    @property
    def has_reference(self) -> bool:
        return bool(self.reference_type and self.reference_id)

    def ledger_metadata(self) -> dict[str, Any]:
        """Non-sensitive provider context stored alongside the ledger entry."""
        metadata: dict[str, Any] = {
            "provider": "stripe",
            "provider_event_type": self.provider_type,
            "livemode": self.livemode,
        }
        if self.charge_id:
            metadata["charge_id"] = self.charge_id
        if self.user_id:
            metadata["user_id"] = self.user_id
        if self.created is not None:
            metadata["provider_created"] = self.created
        if self.refund_ids:
            metadata["refund_ids"] = list(self.refund_ids)
        return metadata


def _require(mapping: dict, key: str, where: str) -> Any:
    value = mapping.get(key)
    if value is None or value == "":
        raise MalformedEvent(f"Missing required field '{where}.{key}'")
    return value


def _metadata_value(metadata: dict, *keys: str) -> Optional[str]:
    for key in keys:
        value = metadata.get(key)
        if value:
            return str(value)
    return None


def _amount_cents(obj: dict, *keys: str, positive: bool = False) -> int:
    for key in keys:
        value = obj.get(key)
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, int):
            raise MalformedEvent(f"Field 'data.object.{key}' must be an integer amount in minor units")
        if value < 0:
            raise MalformedEvent(f"Field 'data.object.{key}' must not be negative")
        if positive and value == 0:
            raise MalformedEvent(f"Field 'data.object.{key}' must be positive")
        return value
    raise MalformedEvent(f"Missing amount field (one of {', '.join(keys)})")


def parse_event(raw_body: bytes) -> IncomingEvent:
    """Parse a (signature-verified) Stripe event body.

    Raises:
        MalformedEvent: Body is not JSON or lacks the fields we need
    """
    try:
        payload = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as e:
        raise MalformedEvent("Request body is not valid JSON") from e

    if not isinstance(payload, dict):
        raise MalformedEvent("Event payload must be a JSON object")

    event_id = str(_require(payload, "id", "event"))
    provider_type = str(_require(payload, "type", "event"))
    data = payload.get("data")
    if not isinstance(data, dict) or not isinstance(data.get("object"), dict):
        raise MalformedEvent("Missing required field 'data.object'")
    obj: dict = data["object"]

    event_type = PROVIDER_EVENT_TYPES.get(provider_type, EventType.UNSUPPORTED)
    if event_type is EventType.UNSUPPORTED:
        return IncomingEvent(
            id=event_id,
            type=EventType.UNSUPPORTED,
            provider_type=provider_type,
            amount=Decimal("0.00"),
            currency=str(obj.get("currency") or "").upper(),
            gateway_reference=obj.get("id"),
            created=payload.get("created"),
            livemode=bool(payload.get("livemode", False)),
        )

    metadata = obj.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise MalformedEvent("Field 'data.object.metadata' must be an object")

    try:
        currency = normalize_currency(str(_require(obj, "currency", "data.object")))
    except UnsupportedCurrencyError as e:
        raise MalformedEvent(str(e)) from e

    if event_type is EventType.PAYMENT_REFUNDED:
        # Charge object: payment_intent links back to the original payment
        cents = _amount_cents(obj, "amount_refunded", positive=True)
        gateway_reference = obj.get("payment_intent")
        charge_id = obj.get("id")
        refunds = (obj.get("refunds") or {}).get("data") or []
        refund_ids = tuple(r["id"] for r in refunds if isinstance(r, dict) and r.get("id"))
    else:
        # PaymentIntent object
        if event_type is EventType.PAYMENT_SUCCEEDED:
            cents = _amount_cents(obj, "amount_received", "amount", positive=True)
        else:
            cents = _amount_cents(obj, "amount")
        gateway_reference = str(_require(obj, "id", "data.object"))
        charge_id = obj.get("latest_charge") if isinstance(obj.get("latest_charge"), str) else None
        refund_ids = ()

    return IncomingEvent(
        id=event_id,
        type=event_type,
        provider_type=provider_type,
        amount=minor_to_major(cents),
        currency=currency,
        gateway_reference=gateway_reference,
        charge_id=charge_id,
        reference_type=_metadata_value(metadata, "referenceType", "reference_type"),
        reference_id=_metadata_value(metadata, "referenceId", "reference_id"),
        user_id=_metadata_value(metadata, "userId", "user_id"),
        created=payload.get("created"),
        livemode=bool(payload.get("livemode", False)),
        refund_ids=refund_ids,
    )
