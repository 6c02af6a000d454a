"""Ledger recorder: append-only audit log of provider-reported money movements.

The ledger entry for an event is committed before any Payment or reference
row changes. Rows are never updated or deleted; there is no
update/delete API here, and the storage triggers reject both statements.

Append is a single atomic statement:

    INSERT INTO payment_ledger (...) VALUES (...)
    ON CONFLICT (webhook_id) DO NOTHING
    RETURNING id

  → row returned : first delivery, entry committed
  → no row       : webhook_id already present → DuplicateEvent
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from resortpay_api.billing.errors import DuplicateEvent
from resortpay_api.db.models import LedgerEntry
from resortpay_api.utils.money import format_amount

logger = logging.getLogger(__name__)

# SQLSTATE 23505 = unique_violation
PG_UNIQUE_VIOLATION = "23505"

_ledger_table = LedgerEntry.__table__


@dataclass(frozen=True)
class NewLedgerEntry:
    """Values for a ledger row that does not exist yet."""

    webhook_id: str
    reference_type: str
    reference_id: str
    event_type: str
    amount: Decimal
    currency: str
    status: str
    gateway_reference_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def as_row(self) -> dict[str, Any]:
        return {
            "webhook_id": self.webhook_id,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "event_type": self.event_type,
            "amount": format_amount(self.amount),
            "currency": self.currency,
            "status": self.status,
            "gateway_reference_id": self.gateway_reference_id,
            "metadata": self.metadata or None,
        }


def is_unique_violation(exc: IntegrityError) -> bool:
    """True if the IntegrityError is a unique-key collision (PG 23505 / SQLite UNIQUE)."""
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code == PG_UNIQUE_VIOLATION:
        return True
    return "UNIQUE constraint failed" in str(orig)


def _insert_for(db: Session):
    """Dialect insert construct supporting ON CONFLICT DO NOTHING."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(_ledger_table)
    if dialect == "sqlite":
        return sqlite.insert(_ledger_table)
    raise RuntimeError(f"Unsupported database dialect for ledger inserts: {dialect}")


class LedgerRecorder:
    """Append and read ledger entries. There is no update or delete."""

    def __init__(self, db: Session):
        self.db = db

    def append(self, entry: NewLedgerEntry) -> LedgerEntry:
        """Insert and commit a ledger entry.

        Raises:
            DuplicateEvent: An entry with the same webhook_id already exists
        """
        stmt = (
            _insert_for(self.db)
            .values(**entry.as_row())
            .on_conflict_do_nothing(index_elements=["webhook_id"])
            .returning(_ledger_table.c.id)
        )

        try:
            row = self.db.execute(stmt).first()
        except IntegrityError as exc:
            self.db.rollback()
            if is_unique_violation(exc):
                raise DuplicateEvent(entry.webhook_id) from exc
            raise

        if row is None:
            self.db.rollback()
            raise DuplicateEvent(entry.webhook_id)

        self.db.commit()

        logger.info(
            "LEDGER_APPENDED",
            extra={
                "ledger_id": row.id,
                "webhook_id": entry.webhook_id,
                "event_type": entry.event_type,
                "amount": format_amount(entry.amount),
                "currency": entry.currency,
                "reference_type": entry.reference_type,
                "reference_id": entry.reference_id,
            },
        )
        return self.db.get(LedgerEntry, row.id)

    def get_by_webhook_id(self, webhook_id: str) -> Optional[LedgerEntry]:
        stmt = select(LedgerEntry).where(LedgerEntry.webhook_id == webhook_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def entries_for_reference(self, reference_type: str, reference_id: str) -> list[LedgerEntry]:
        """All entries for a reference, oldest first."""
        stmt = (
            select(LedgerEntry)
            .where(
                LedgerEntry.reference_type == reference_type,
                LedgerEntry.reference_id == reference_id,
            )
            .order_by(LedgerEntry.id)
        )
        return list(self.db.execute(stmt).scalars())
