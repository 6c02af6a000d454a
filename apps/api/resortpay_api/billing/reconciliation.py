"""Payment-event reconciliation pipeline.

    RECEIVED → VERIFIED → DUPLICATE                               (ack)
                        → IGNORED        (unsupported event type)  (ack)
                        → LEDGERED → REFERENCE_UPDATED → SIDE_EFFECTS_ATTEMPTED (ack)

Signature verification happens in the router (RECEIVED → VERIFIED); this
module starts from a trusted IncomingEvent.

Failure policy:
- Before LEDGERED: exceptions propagate → 5xx → provider retries.
- At/after LEDGERED: exceptions are absorbed (logged + inconsistency metric)
  and the delivery is still acknowledged. A retry would be indistinguishable
  from a duplicate and dropped by the idempotency guard anyway.
- LedgerMutationForbidden is never absorbed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from sqlalchemy.orm import Session

from resortpay_api.billing.errors import (
    AlreadyRefunded,
    LedgerMutationForbidden,
    ReferenceUpdateFailed,
    UnknownReferenceType,
)
from resortpay_api.billing.events import LEDGER_STATUS, EventType, IncomingEvent
from resortpay_api.billing.ledger import LedgerRecorder, NewLedgerEntry
from resortpay_api.billing.payment_state import PaymentStateUpdater, PaymentStatus, StatusTransition
from resortpay_api.billing.references import ReferenceRegistry, default_registry
from resortpay_api.billing.side_effects import SideEffectDispatcher
from resortpay_api.billing.webhook_dedup import IdempotencyGuard
from resortpay_api.context import event_id_var, reference_var
from resortpay_api.observability.metrics import log_reconciliation_inconsistency
from resortpay_api.utils.sanitize import sanitize_str

logger = logging.getLogger(__name__)

# Ledger reference_type for events whose metadata names no reference
UNLINKED_REFERENCE = "unlinked"


class PipelineState(str, Enum):
    RECEIVED = "RECEIVED"
    VERIFIED = "VERIFIED"
    DUPLICATE = "DUPLICATE"
    IGNORED = "IGNORED"
    LEDGERED = "LEDGERED"
    REFERENCE_UPDATED = "REFERENCE_UPDATED"
    SIDE_EFFECTS_ATTEMPTED = "SIDE_EFFECTS_ATTEMPTED"


_OUTCOME = {
    PipelineState.DUPLICATE: "duplicate",
    PipelineState.IGNORED: "ignored",
}


@dataclass
class ReconciliationResult:
    event_id: str
    state: PipelineState
    ledger_entry_id: Optional[int] = None
    transition: Optional[StatusTransition] = None
    issues: list[str] = field(default_factory=list)

    @property
    def outcome(self) -> str:
        """Acknowledgement status: processed | duplicate | ignored."""
        return _OUTCOME.get(self.state, "processed")


class ReconciliationPipeline:
    def __init__(
        self,
        db: Session,
        *,
        registry: Optional[ReferenceRegistry] = None,
        dispatcher: Optional[SideEffectDispatcher] = None,
    ):
        self.db = db
        self.registry = registry or default_registry
        self.guard = IdempotencyGuard(db, LedgerRecorder(db))
        self.updater = PaymentStateUpdater(db, self.registry)
        self.dispatcher = dispatcher or SideEffectDispatcher(db, self.registry)

    def process(self, event: IncomingEvent) -> ReconciliationResult:
        event_token = event_id_var.set(event.id)
        reference_token = reference_var.set("")
        try:
            return self._process(event)
        finally:
            reference_var.reset(reference_token)
            event_id_var.reset(event_token)

    def _process(self, event: IncomingEvent) -> ReconciliationResult:
        result = ReconciliationResult(event_id=event.id, state=PipelineState.VERIFIED)

        if not event.is_supported:
            logger.info(
                "WEBHOOK_EVENT_IGNORED",
                extra={"provider_event_type": event.provider_type},
            )
            result.state = PipelineState.IGNORED
            return result

        # ── Step 1: link the event to a reference (read-only, pre-ledger) ──
        reference_type, reference_id = self._link(event)
        reference_var.set(f"{reference_type}:{reference_id}")

        # ── Step 2: ledger insert = idempotency checkpoint ──────────────────
        claim = self.guard.record_if_new(
            NewLedgerEntry(
                webhook_id=event.id,
                reference_type=reference_type,
                reference_id=reference_id,
                event_type=event.type.value,
                amount=event.amount,
                currency=event.currency,
                status=LEDGER_STATUS[event.type],
                gateway_reference_id=event.gateway_reference,
                metadata=event.ledger_metadata(),
            )
        )
        if not claim.accepted:
            result.state = PipelineState.DUPLICATE
            result.ledger_entry_id = claim.entry.id if claim.entry is not None else None
            return result

        result.state = PipelineState.LEDGERED
        result.ledger_entry_id = claim.entry.id if claim.entry is not None else None

        # ── Step 3: Payment read-model + reference status (absorbed) ───────
        try:
            result.transition = self._apply(event, reference_type, reference_id)
        except LedgerMutationForbidden:
            raise
        except UnknownReferenceType as exc:
            logger.warning(
                "REFERENCE_TYPE_UNKNOWN",
                extra={"reference_type": exc.reference_type, "reference_id": reference_id},
            )
            result.issues.append("unknown_reference_type")
            return result
        except AlreadyRefunded:
            logger.info("REFUND_ALREADY_APPLIED", extra={"gateway_reference": event.gateway_reference})
            result.state = PipelineState.REFERENCE_UPDATED
            return result
        except Exception as exc:
            self.db.rollback()
            result.issues.append("reference_update_failed")
            logger.error(
                "REFERENCE_UPDATE_FAILED",
                exc_info=True,
                extra={"reference_type": reference_type, "reference_id": reference_id},
            )
            log_reconciliation_inconsistency(
                event_id=event.id,
                reference_type=reference_type,
                reference_id=reference_id,
                stage="reference_update",
                error_type=type(exc).__name__,
                detail=sanitize_str(str(exc)),
            )
            return result

        result.state = PipelineState.REFERENCE_UPDATED

        # ── Step 4: side effects, only on a real transition to paid ────────
        transition = result.transition
        if (
            event.type is EventType.PAYMENT_SUCCEEDED
            and transition is not None
            and transition.changed
            and transition.current == PaymentStatus.PAID.value
        ):
            outcome = self.dispatcher.dispatch(
                reference_type, reference_id, event.amount, webhook_id=event.id
            )
            if not outcome.ok:
                result.issues.extend(f"side_effect_failed:{name}" for name in outcome.failed)
            result.state = PipelineState.SIDE_EFFECTS_ATTEMPTED
        elif event.type is EventType.PAYMENT_SUCCEEDED:
            logger.info(
                "SIDE_EFFECTS_SKIPPED_ALREADY_PAID",
                extra={"previous": transition.previous if transition else None},
            )

        return result

    def _link(self, event: IncomingEvent) -> tuple[str, str]:
        """Pick the ledger reference for an event.

        Refund notifications usually carry no checkout metadata; they are
        linked through the Payment row of the original payment intent.
        """
        if event.has_reference:
            return event.reference_type, event.reference_id  # type: ignore[return-value]

        if event.type is EventType.PAYMENT_REFUNDED and event.gateway_reference:
            payment = self.updater.find_payment_by_gateway_id(event.gateway_reference)
            if payment is not None:
                return payment.reference_type, payment.reference_id

        logger.warning(
            "WEBHOOK_EVENT_UNLINKED",
            extra={"gateway_reference": event.gateway_reference},
        )
        return UNLINKED_REFERENCE, event.gateway_reference or event.id

    def _apply(
        self, event: IncomingEvent, reference_type: str, reference_id: str
    ) -> Optional[StatusTransition]:
        if event.type is EventType.PAYMENT_FAILED:
            self.updater.record_payment(event, reference_type, reference_id)
            logger.info("PAYMENT_FAILED_RECORDED", extra={"gateway_reference": event.gateway_reference})
            return None

        if event.type is EventType.PAYMENT_SUCCEEDED:
            self.updater.record_payment(event, reference_type, reference_id)
            return self.updater.apply_status(reference_type, reference_id, PaymentStatus.PAID)

        # PAYMENT_REFUNDED: amount is the provider's running refunded total
        payment = (
            self.updater.find_payment_by_gateway_id(event.gateway_reference)
            if event.gateway_reference
            else None
        )
        if payment is None:
            raise ReferenceUpdateFailed(
                f"No payment recorded for gateway reference {event.gateway_reference!r}"
            )
        fully_refunded = self.updater.apply_payment_refund(
            payment,
            event.amount,
            reason="refunded at provider",
            processed_by="stripe",
            cumulative=True,
        )
        self.db.commit()
        if not fully_refunded:
            return None
        return self.updater.apply_status(reference_type, reference_id, PaymentStatus.REFUNDED)
