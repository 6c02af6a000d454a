"""Webhook idempotency guard.

The ledger's UNIQUE(webhook_id) constraint is the checkpoint of record: the
guard never does SELECT-then-INSERT. Exactly one of N concurrent deliveries
of the same event wins the atomic ledger insert; every other delivery sees
"already processed" and is acknowledged with 200 and zero side effects.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from resortpay_api.billing.errors import DuplicateEvent
from resortpay_api.billing.ledger import LedgerRecorder, NewLedgerEntry
from resortpay_api.db.models import LedgerEntry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClaimResult:
    """Outcome of record_if_new().

    accepted=True  → this delivery owns the event; entry is the new row
    accepted=False → duplicate; entry is the pre-existing row (if visible)
    """

    accepted: bool
    entry: Optional[LedgerEntry]


class IdempotencyGuard:
    def __init__(self, db: Session, ledger: Optional[LedgerRecorder] = None):
        self.db = db
        self.ledger = ledger or LedgerRecorder(db)

    def is_processed(self, event_id: str) -> bool:
        """Advisory read. Never use as a gate; record_if_new() is the gate."""
        return self.ledger.get_by_webhook_id(event_id) is not None

    def record_if_new(self, entry: NewLedgerEntry) -> ClaimResult:
        """Atomically append the ledger entry unless the event was seen before.

        A unique-key collision is "already processed", not an error. Any
        other database error propagates (the provider will retry).
        """
        try:
            created = self.ledger.append(entry)
        except DuplicateEvent:
            logger.info(
                "WEBHOOK_DEDUP_DUPLICATE",
                extra={"webhook_id": entry.webhook_id, "event_type": entry.event_type},
            )
            return ClaimResult(accepted=False, entry=self.ledger.get_by_webhook_id(entry.webhook_id))

        logger.debug("WEBHOOK_DEDUP_ACQUIRED", extra={"webhook_id": entry.webhook_id})
        return ClaimResult(accepted=True, entry=created)
