"""Payment state updater.

Reference payment status only moves forward:

    pending → partial → paid → refunded

| Event     | Precondition            | Reference status            |
|-----------|-------------------------|-----------------------------|
| succeeded | any                     | paid (refunded never regresses) |
| failed    | any                     | unchanged (Payment row only) |
| refund    | paid (Payment completed)| refunded                    |

paid → paid is a no-op. Refunding something already refunded raises
AlreadyRefunded. Writes use compare-and-set on the previous status so two
concurrent distinct events cannot interleave into a regression.

Also maintains the Payment read-model (one row per succeeded/failed event,
amended on refund).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from resortpay_api.billing.errors import (
    AlreadyRefunded,
    InvalidRefundAmount,
    ReferenceUpdateFailed,
    RefundNotAllowed,
)
from resortpay_api.billing.events import EventType, IncomingEvent
from resortpay_api.billing.ledger import is_unique_violation
from resortpay_api.billing.references import ReferenceRegistry, default_registry
from resortpay_api.db.models import Payment
from resortpay_api.utils.money import format_amount

logger = logging.getLogger(__name__)

# Compare-and-set attempts before giving up on a contended reference row
MAX_CAS_ATTEMPTS = 3


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    REFUNDED = "refunded"


class PaymentRecordStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


_RANK: dict[str, int] = {
    PaymentStatus.PENDING.value: 0,
    PaymentStatus.PARTIAL.value: 1,
    PaymentStatus.PAID.value: 2,
    PaymentStatus.REFUNDED.value: 3,
}


@dataclass(frozen=True)
class StatusTransition:
    reference: str
    previous: Optional[str]
    current: str

    @property
    def changed(self) -> bool:
        return self.previous != self.current


def _next_status(previous: str, requested: PaymentStatus, reference: str) -> str:
    """Apply the transition table; returns the status to store (may equal previous)."""
    if requested is PaymentStatus.REFUNDED:
        if previous == PaymentStatus.REFUNDED.value:
            raise AlreadyRefunded(f"{reference} is already refunded")
        if previous != PaymentStatus.PAID.value:
            raise RefundNotAllowed(f"{reference} is {previous!r}; only paid references can be refunded")
        return PaymentStatus.REFUNDED.value

    if _RANK.get(previous, -1) >= _RANK[requested.value]:
        if previous == PaymentStatus.REFUNDED.value:
            logger.warning(
                "REFERENCE_STATUS_REGRESSION_BLOCKED",
                extra={"reference": reference, "current": previous, "requested": requested.value},
            )
        return previous

    return requested.value


class PaymentStateUpdater:
    def __init__(self, db: Session, registry: Optional[ReferenceRegistry] = None):
        self.db = db
        self.registry = registry or default_registry

    # ------------------------------------------------------------------
    # Reference status
    # ------------------------------------------------------------------

    def apply_status(
        self, reference_type: str, reference_id: str, new_status: PaymentStatus | str
    ) -> StatusTransition:
        """Move a reference's payment status forward and commit.

        Raises:
            UnknownReferenceType: No handler for reference_type
            ReferenceUpdateFailed: Row missing, or contended past MAX_CAS_ATTEMPTS
            AlreadyRefunded / RefundNotAllowed: Refund preconditions
        """
        requested = PaymentStatus(new_status)
        handle = self.registry.resolve(reference_type, reference_id)

        for _attempt in range(MAX_CAS_ATTEMPTS):
            previous = handle.get_status(self.db)
            if previous is None:
                raise ReferenceUpdateFailed(f"{handle.label} not found")

            target = _next_status(previous, requested, handle.label)
            if target == previous:
                return StatusTransition(reference=handle.label, previous=previous, current=previous)

            if handle.update_status(self.db, target, expected=previous):
                self.db.commit()
                logger.info(
                    "REFERENCE_STATUS_UPDATED",
                    extra={"reference": handle.label, "previous": previous, "current": target},
                )
                return StatusTransition(reference=handle.label, previous=previous, current=target)

            # Lost the compare-and-set; re-read and re-evaluate
            self.db.rollback()

        raise ReferenceUpdateFailed(f"{handle.label} status update contended; gave up")

    # ------------------------------------------------------------------
    # Payment read-model
    # ------------------------------------------------------------------

    def find_payment_by_gateway_id(self, gateway_payment_id: str) -> Optional[Payment]:
        stmt = (
            select(Payment)
            .where(Payment.gateway_payment_id == gateway_payment_id)
            .order_by(Payment.created_at.desc())
        )
        return self.db.execute(stmt).scalars().first()

    def record_payment(
        self, event: IncomingEvent, reference_type: str, reference_id: str
    ) -> Payment:
        """Create the Payment row for a succeeded/failed event (once per event id)."""
        if event.type is EventType.PAYMENT_SUCCEEDED:
            status = PaymentRecordStatus.COMPLETED.value
        elif event.type is EventType.PAYMENT_FAILED:
            status = PaymentRecordStatus.FAILED.value
        else:
            raise ValueError(f"record_payment does not handle {event.type.value}")

        existing = self.db.execute(
            select(Payment).where(Payment.source_event_id == event.id)
        ).scalar_one_or_none()
        if existing is not None:
            return existing

        payment = Payment(
            reference_type=reference_type,
            reference_id=reference_id,
            amount=format_amount(event.amount),
            currency=event.currency,
            method="card",
            status=status,
            gateway_payment_id=event.gateway_reference,
            gateway_charge_id=event.charge_id,
            source_event_id=event.id,
            processed_at=datetime.now(timezone.utc),
            notes=None if status == PaymentRecordStatus.COMPLETED.value else "Provider reported payment failure",
        )
        self.db.add(payment)
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            if not is_unique_violation(exc):
                raise
            return self.db.execute(
                select(Payment).where(Payment.source_event_id == event.id)
            ).scalar_one()

        logger.info(
            "PAYMENT_RECORDED",
            extra={
                "payment_id": payment.id,
                "status": status,
                "amount": payment.amount,
                "currency": payment.currency,
            },
        )
        return payment

    def apply_payment_refund(
        self,
        payment: Payment,
        amount: Decimal,
        *,
        reason: str,
        processed_by: str,
        cumulative: bool = False,
    ) -> bool:
        """Amend a Payment for a refund. Does not commit.

        Args:
            amount: Refund amount, or (cumulative=True) the provider's total
                refunded so far for the charge
            cumulative: Provider webhooks report running totals

        Returns:
            True if the payment is now fully refunded

        Raises:
            AlreadyRefunded: Payment already fully refunded
            RefundNotAllowed: Payment is not completed
            InvalidRefundAmount: Refund exceeds the remaining amount
        """
        if payment.status == PaymentRecordStatus.REFUNDED.value:
            raise AlreadyRefunded(f"Payment {payment.id} is already refunded")
        if payment.status != PaymentRecordStatus.COMPLETED.value:
            raise RefundNotAllowed(
                f"Payment {payment.id} is {payment.status!r}; only completed payments can be refunded"
            )

        total = Decimal(payment.amount)
        already = Decimal(payment.refunded_amount or "0")

        if cumulative:
            if amount <= already:
                return False
            new_total = min(amount, total)
            if amount > total:
                logger.warning(
                    "REFUND_TOTAL_EXCEEDS_PAYMENT",
                    extra={"payment_id": payment.id, "reported": format_amount(amount), "amount": payment.amount},
                )
        else:
            if amount <= 0:
                raise InvalidRefundAmount("Refund amount must be positive")
            new_total = already + amount
            if new_total > total:
                raise InvalidRefundAmount(
                    f"Refund of {format_amount(amount)} exceeds remaining {format_amount(total - already)}"
                )

        fully_refunded = new_total >= total
        payment.refunded_amount = format_amount(new_total)
        if fully_refunded:
            payment.status = PaymentRecordStatus.REFUNDED.value

        note = f"Refund: {reason}. Processed by: {processed_by}"
        payment.notes = f"{payment.notes}\n{note}" if payment.notes else note
        payment.processed_by = processed_by
        return fully_refunded
