"""Staff-initiated refunds.

Order of operations:
  1. Validate locally (payment exists, completed, amount within remaining).
     AlreadyRefunded is raised here, before any provider call.
  2. Call the provider synchronously. Any provider error fails the whole
     refund with no local state change.
  3. Append the refund ledger entry (webhook_id = "refund:<refund id>").
     If another request already ledgered the same provider refund, return
     the Payment as that request left it.
  4. Amend the Payment row (refunded_amount, notes, status on full refund).
  5. On a full refund, move the reference to refunded.

The provider later sends charge.refunded for the same refund; the pipeline
sees the Payment already amended and treats it as already applied.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import httpx
from sqlalchemy.orm import Session

from resortpay_api.billing.errors import (
    AlreadyRefunded,
    DuplicateEvent,
    InvalidRefundAmount,
    PaymentNotFound,
    ReconciliationError,
    RefundNotAllowed,
    RefundProviderError,
)
from resortpay_api.billing.events import LEDGER_STATUS, EventType
from resortpay_api.billing.ledger import LedgerRecorder, NewLedgerEntry
from resortpay_api.billing.payment_state import PaymentRecordStatus, PaymentStateUpdater, PaymentStatus
from resortpay_api.billing.references import ReferenceRegistry, default_registry
from resortpay_api.billing.stripe import PaymentProvider
from resortpay_api.db.models import Payment
from resortpay_api.observability.metrics import log_payment_refund, log_reconciliation_inconsistency
from resortpay_api.utils.money import MoneyError, format_amount, major_to_minor, parse_amount
from resortpay_api.utils.sanitize import sanitize_str

logger = logging.getLogger(__name__)

DEFAULT_REFUND_REASON = "requested_by_customer"


@dataclass(frozen=True)
class RefundResult:
    payment_id: str
    refund_id: str
    amount: Decimal
    currency: str
    refunded_total: Decimal
    payment_status: str
    fully_refunded: bool


class RefundService:
    def __init__(
        self,
        db: Session,
        provider: Optional[PaymentProvider],
        registry: Optional[ReferenceRegistry] = None,
    ):
        self.db = db
        self.provider = provider
        self.ledger = LedgerRecorder(db)
        self.updater = PaymentStateUpdater(db, registry or default_registry)

    def _validate(self, payment_id: str, amount: Optional[Decimal | str]) -> tuple[Payment, Decimal]:
        payment = self.db.get(Payment, payment_id)
        if payment is None:
            raise PaymentNotFound(f"Payment {payment_id} not found")

        if payment.status == PaymentRecordStatus.REFUNDED.value:
            raise AlreadyRefunded(f"Payment {payment_id} is already refunded")
        if payment.status != PaymentRecordStatus.COMPLETED.value:
            raise RefundNotAllowed(
                f"Payment {payment_id} is {payment.status!r}; only completed payments can be refunded"
            )

        remaining = Decimal(payment.amount) - Decimal(payment.refunded_amount or "0")
        if amount is None:
            refund_amount = remaining
        else:
            try:
                refund_amount = parse_amount(amount)
            except MoneyError as e:
                raise InvalidRefundAmount(str(e)) from e

        if refund_amount <= 0:
            raise InvalidRefundAmount("Refund amount must be positive")
        if refund_amount > remaining:
            raise InvalidRefundAmount(
                f"Refund of {format_amount(refund_amount)} exceeds remaining {format_amount(remaining)}"
            )
        return payment, refund_amount

    async def _call_provider(self, payment: Payment, amount: Decimal, reason: str) -> str:
        """Issue the provider refund; returns the refund id."""
        if not payment.gateway_payment_id:
            # Cash / bank transfer: nothing to reverse at the provider
            return f"manual_{uuid.uuid4().hex}"

        if self.provider is None:
            raise RefundProviderError("Payment provider is not configured")

        amount_cents = major_to_minor(amount)
        try:
            refund = await self.provider.create_refund(
                payment_intent=payment.gateway_payment_id,
                amount_cents=amount_cents,
                reason=reason,
                metadata={
                    "payment_id": payment.id,
                    "reference_type": payment.reference_type,
                    "reference_id": payment.reference_id,
                },
                idempotency_key=f"refund-{payment.id}-{payment.refunded_amount}-{amount_cents}",
            )
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "REFUND_PROVIDER_REJECTED",
                extra={"payment_id": payment.id, "status_code": exc.response.status_code},
            )
            raise RefundProviderError(
                f"Stripe rejected the refund (HTTP {exc.response.status_code})"
            ) from exc
        except httpx.HTTPError as exc:
            logger.error(
                "REFUND_PROVIDER_UNREACHABLE",
                extra={"payment_id": payment.id, "error_type": type(exc).__name__},
            )
            raise RefundProviderError("Stripe refund request failed") from exc

        if refund.get("status") in ("failed", "canceled"):
            raise RefundProviderError(f"Stripe refund {refund.get('id')} ended {refund.get('status')}")
        if not refund.get("id"):
            raise RefundProviderError("Stripe refund response has no id")
        return str(refund["id"])

    async def refund(
        self,
        payment_id: str,
        *,
        amount: Optional[Decimal | str] = None,
        reason: Optional[str] = None,
        processed_by: Optional[str] = None,
    ) -> RefundResult:
        """Refund a completed payment (fully when amount is None).

        Raises:
            PaymentNotFound, AlreadyRefunded, RefundNotAllowed,
            InvalidRefundAmount, RefundProviderError
        """
        payment, refund_amount = self._validate(payment_id, amount)
        reason = reason or DEFAULT_REFUND_REASON
        actor = processed_by or "staff"

        refund_id = await self._call_provider(payment, refund_amount, reason)

        # Provider succeeded: record locally, ledger first
        try:
            self.ledger.append(
                NewLedgerEntry(
                    webhook_id=f"refund:{refund_id}",
                    reference_type=payment.reference_type,
                    reference_id=payment.reference_id,
                    event_type=EventType.PAYMENT_REFUNDED.value,
                    amount=refund_amount,
                    currency=payment.currency,
                    status=LEDGER_STATUS[EventType.PAYMENT_REFUNDED],
                    gateway_reference_id=payment.gateway_payment_id,
                    metadata={
                        "refund_id": refund_id,
                        "payment_id": payment.id,
                        "reason": reason,
                        "processed_by": actor,
                    },
                )
            )
        except DuplicateEvent:
            # Same provider refund replayed (Idempotency-Key hit); the request
            # that ledgered it also amended the Payment
            logger.info("REFUND_ALREADY_LEDGERED", extra={"refund_id": refund_id, "payment_id": payment.id})
            payment = self.db.get(Payment, payment.id, populate_existing=True)
            return RefundResult(
                payment_id=payment.id,
                refund_id=refund_id,
                amount=refund_amount,
                currency=payment.currency,
                refunded_total=Decimal(payment.refunded_amount or "0"),
                payment_status=payment.status,
                fully_refunded=payment.status == PaymentRecordStatus.REFUNDED.value,
            )

        fully_refunded = self.updater.apply_payment_refund(
            payment, refund_amount, reason=reason, processed_by=actor
        )
        self.db.commit()

        if fully_refunded:
            self._refund_reference(payment)

        log_payment_refund(
            payment_id=payment.id,
            amount=format_amount(refund_amount),
            currency=payment.currency,
            fully_refunded=fully_refunded,
            processed_by=actor,
        )

        return RefundResult(
            payment_id=payment.id,
            refund_id=refund_id,
            amount=refund_amount,
            currency=payment.currency,
            refunded_total=Decimal(payment.refunded_amount),
            payment_status=payment.status,
            fully_refunded=fully_refunded,
        )

    def _refund_reference(self, payment: Payment) -> None:
        """Move the reference to refunded. Money already moved; failures are logged."""
        try:
            self.updater.apply_status(payment.reference_type, payment.reference_id, PaymentStatus.REFUNDED)
        except ReconciliationError as exc:
            self.db.rollback()
            logger.warning(
                "REFUND_REFERENCE_NOT_UPDATED",
                extra={
                    "payment_id": payment.id,
                    "reference_type": payment.reference_type,
                    "reference_id": payment.reference_id,
                    "error_code": exc.code,
                },
            )
            log_reconciliation_inconsistency(
                event_id=f"refund:{payment.id}",
                reference_type=payment.reference_type,
                reference_id=payment.reference_id,
                stage="refund",
                error_type=type(exc).__name__,
                detail=sanitize_str(str(exc)),
            )
