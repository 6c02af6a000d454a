"""Reference resolver: (reference_type, reference_id) → the row a payment settles.

Reference kinds are a closed enumeration. Each kind has exactly one handler
exposing the capabilities reconciliation needs (read/update payment status,
resolve the owning customer); adding a kind is one register() call.

Reference rows are owned by the ordering/booking/ticketing modules. This
module only reads the owner and writes payment_status.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Protocol

from sqlalchemy import update
from sqlalchemy.orm import Session

from resortpay_api.billing.errors import ReferenceUpdateFailed, UnknownReferenceType
from resortpay_api.db.models import ChaletBooking, PoolTicket, RestaurantOrder, SnackOrder

logger = logging.getLogger(__name__)


class ReferenceKind(str, Enum):
    RESTAURANT_ORDER = "restaurant_order"
    SNACK_ORDER = "snack_order"
    CHALET_BOOKING = "chalet_booking"
    POOL_TICKET = "pool_ticket"


# Names used by older checkout clients in payment metadata
LEGACY_ALIASES: dict[str, ReferenceKind] = {
    "order": ReferenceKind.RESTAURANT_ORDER,
    "booking": ReferenceKind.CHALET_BOOKING,
}


class ReferenceHandler(Protocol):
    kind: ReferenceKind

    def get_status(self, db: Session, reference_id: str) -> Optional[str]: ...

    def update_status(
        self, db: Session, reference_id: str, status: str, *, expected: Optional[str] = None
    ) -> bool: ...

    def resolve_owner(self, db: Session, reference_id: str) -> Optional[str]: ...


class TableReferenceHandler:
    """Handler for a reference kind backed by one table with payment_status/customer_id."""

    def __init__(self, kind: ReferenceKind, model, owner_attr: str = "customer_id"):
        self.kind = kind
        self.model = model
        self.owner_attr = owner_attr

    def get_status(self, db: Session, reference_id: str) -> Optional[str]:
        row = db.get(self.model, reference_id, populate_existing=True)
        return row.payment_status if row is not None else None

    def update_status(
        self, db: Session, reference_id: str, status: str, *, expected: Optional[str] = None
    ) -> bool:
        """Set payment_status. With expected=, only if the current value still matches.

        Returns False when no row matched (missing row or lost compare-and-set).
        Does not commit.
        """
        stmt = (
            update(self.model)
            .where(self.model.id == reference_id)
            .values(payment_status=status, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        if expected is not None:
            stmt = stmt.where(self.model.payment_status == expected)
        result = db.execute(stmt)
        return result.rowcount == 1

    def resolve_owner(self, db: Session, reference_id: str) -> Optional[str]:
        row = db.get(self.model, reference_id)
        if row is None:
            raise ReferenceUpdateFailed(
                f"{self.kind.value} {reference_id!r} not found while resolving owner"
            )
        return getattr(row, self.owner_attr)


@dataclass(frozen=True)
class ReferenceHandle:
    """A resolved reference: kind + id bound to its handler."""

    kind: ReferenceKind
    reference_id: str
    handler: ReferenceHandler

    def get_status(self, db: Session) -> Optional[str]:
        return self.handler.get_status(db, self.reference_id)

    def update_status(self, db: Session, status: str, *, expected: Optional[str] = None) -> bool:
        return self.handler.update_status(db, self.reference_id, status, expected=expected)

    def resolve_owner(self, db: Session) -> Optional[str]:
        return self.handler.resolve_owner(db, self.reference_id)

    @property
    def label(self) -> str:
        return f"{self.kind.value}:{self.reference_id}"


class ReferenceRegistry:
    def __init__(self) -> None:
        self._handlers: dict[ReferenceKind, ReferenceHandler] = {}

    def register(self, handler: ReferenceHandler) -> None:
        if handler.kind in self._handlers:
            raise ValueError(f"Reference kind {handler.kind.value!r} is already registered")
        self._handlers[handler.kind] = handler

    def kinds(self) -> list[ReferenceKind]:
        return list(self._handlers)

    def parse_kind(self, reference_type: Optional[str]) -> ReferenceKind:
        """Map a metadata string to a registered kind.

        Raises:
            UnknownReferenceType: Not a known kind, or no handler registered
        """
        if not reference_type:
            raise UnknownReferenceType(str(reference_type))
        key = reference_type.strip().lower()
        try:
            kind = LEGACY_ALIASES.get(key) or ReferenceKind(key)
        except ValueError:
            raise UnknownReferenceType(reference_type) from None
        if kind not in self._handlers:
            raise UnknownReferenceType(reference_type)
        return kind

    def resolve(self, reference_type: Optional[str], reference_id: str) -> ReferenceHandle:
        kind = self.parse_kind(reference_type)
        return ReferenceHandle(kind=kind, reference_id=reference_id, handler=self._handlers[kind])


def build_default_registry() -> ReferenceRegistry:
    registry = ReferenceRegistry()
    registry.register(TableReferenceHandler(ReferenceKind.RESTAURANT_ORDER, RestaurantOrder))
    registry.register(TableReferenceHandler(ReferenceKind.SNACK_ORDER, SnackOrder))
    registry.register(TableReferenceHandler(ReferenceKind.CHALET_BOOKING, ChaletBooking))
    registry.register(TableReferenceHandler(ReferenceKind.POOL_TICKET, PoolTicket))
    return registry


default_registry = build_default_registry()


def resolve(reference_type: Optional[str], reference_id: str) -> ReferenceHandle:
    """Resolve against the default registry."""
    return default_registry.resolve(reference_type, reference_id)
