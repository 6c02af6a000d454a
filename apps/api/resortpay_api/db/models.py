"""SQLAlchemy ORM Models for ResortPay."""

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    BIGINT,
    DDL,
    INTEGER,
    Engine,
    JSON,
    TEXT,
    TIMESTAMP,
    Index,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column

from resortpay_api.billing.errors import LedgerMutationForbidden

# BIGINT autoincrement only works on PostgreSQL; SQLite needs INTEGER PRIMARY KEY
BigIntPK = BIGINT().with_variant(INTEGER(), "sqlite")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid_str() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class LedgerEntry(Base):
    """Append-only record of a financial fact reported by the provider.

    System of record for "did we ever see this event". The UNIQUE constraint
    on webhook_id is the idempotency checkpoint: the atomic
    INSERT ... ON CONFLICT (webhook_id) DO NOTHING RETURNING id decides which
    delivery of an event wins.

    Rows are never updated or deleted. Storage triggers reject both
    statements with LEDGER_MUTATION_FORBIDDEN and the ORM flush guard below
    rejects them before SQL is emitted.
    """

    __tablename__ = "payment_ledger"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    reference_type: Mapped[str] = mapped_column(TEXT, nullable=False)
    reference_id: Mapped[str] = mapped_column(TEXT, nullable=False)

    # payment_succeeded | payment_failed | payment_refunded
    event_type: Mapped[str] = mapped_column(TEXT, nullable=False)
    amount: Mapped[str] = mapped_column(TEXT, nullable=False)  # Decimal string for precision
    currency: Mapped[str] = mapped_column(TEXT, nullable=False)

    gateway_reference_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    webhook_id: Mapped[str] = mapped_column(TEXT, nullable=False)

    # succeeded | failed | refunded
    status: Mapped[str] = mapped_column(TEXT, nullable=False)

    # "metadata" is reserved on declarative classes
    entry_metadata: Mapped[Optional[dict[str, Any]]] = mapped_column(
        "metadata", JSON, nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=_utcnow,
    )

    __table_args__ = (
        UniqueConstraint("webhook_id", name="uq_payment_ledger_webhook_id"),
        Index("idx_payment_ledger_reference", "reference_type", "reference_id"),
        Index("idx_payment_ledger_gateway_ref", "gateway_reference_id"),
    )


class Payment(Base):
    """Payment read-model (status tracking, not audit-grade).

    One row per succeeded/failed event; amended in place on refund.
    """

    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(TEXT, primary_key=True, default=_uuid_str)

    reference_type: Mapped[str] = mapped_column(TEXT, nullable=False)
    reference_id: Mapped[str] = mapped_column(TEXT, nullable=False)

    amount: Mapped[str] = mapped_column(TEXT, nullable=False)  # Decimal string for precision
    refunded_amount: Mapped[str] = mapped_column(TEXT, nullable=False, default="0.00")
    currency: Mapped[str] = mapped_column(TEXT, nullable=False, default="EUR")
    method: Mapped[str] = mapped_column(TEXT, nullable=False, default="card")
    # card | cash | bank_transfer | other

    status: Mapped[str] = mapped_column(TEXT, nullable=False)
    # completed | failed | refunded

    gateway_payment_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    gateway_charge_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    source_event_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    processed_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    processed_by: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=_utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    __table_args__ = (
        UniqueConstraint("source_event_id", name="uq_payments_source_event"),
        Index("idx_payments_reference", "reference_type", "reference_id"),
        Index("idx_payments_gateway_payment", "gateway_payment_id"),
    )


# ============================================================================
# Reference entities (owned by ordering/booking/ticketing modules)
#
# Only the columns reconciliation touches are mapped: the primary key, the
# owning customer and the payment status projection.
# ============================================================================


class _ReferencePaymentColumns:
    id: Mapped[str] = mapped_column(TEXT, primary_key=True, default=_uuid_str)
    customer_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    payment_status: Mapped[str] = mapped_column(TEXT, nullable=False, default="pending")
    # pending | partial | paid | refunded
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )


class RestaurantOrder(_ReferencePaymentColumns, Base):
    __tablename__ = "restaurant_orders"


class SnackOrder(_ReferencePaymentColumns, Base):
    __tablename__ = "snack_orders"


class ChaletBooking(_ReferencePaymentColumns, Base):
    __tablename__ = "chalet_bookings"


class PoolTicket(_ReferencePaymentColumns, Base):
    __tablename__ = "pool_tickets"


# ============================================================================
# Loyalty (accrual target of the payment side-effect dispatcher)
# ============================================================================


class LoyaltyAccount(Base):
    __tablename__ = "loyalty_accounts"

    id: Mapped[str] = mapped_column(TEXT, primary_key=True, default=_uuid_str)
    user_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    tier: Mapped[str] = mapped_column(TEXT, nullable=False, default="bronze")
    # bronze | silver | gold | platinum
    available_points: Mapped[int] = mapped_column(INTEGER, nullable=False, default=0)
    lifetime_points: Mapped[int] = mapped_column(INTEGER, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=_utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    __table_args__ = (UniqueConstraint("user_id", name="uq_loyalty_accounts_user"),)


class LoyaltyTransaction(Base):
    """Points movement. (type, reference_type, reference_id) is unique so a
    replayed accrual for the same order cannot credit twice."""

    __tablename__ = "loyalty_transactions"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(TEXT, nullable=False)  # FK to loyalty_accounts
    type: Mapped[str] = mapped_column(TEXT, nullable=False)  # earn | redeem | expire | adjust
    points: Mapped[int] = mapped_column(INTEGER, nullable=False)
    reference_type: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    reference_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=_utcnow,
    )

    __table_args__ = (
        UniqueConstraint(
            "type", "reference_type", "reference_id", name="uq_loyalty_tx_reference"
        ),
        Index("idx_loyalty_tx_account", "account_id"),
    )


# ============================================================================
# Side-effect dead letters (replayed by the reaper retry loop)
# ============================================================================


class SideEffectDeadLetter(Base):
    """Failed best-effort side effect awaiting retry.

    Retry schedule: 1m, 5m, 30m, 2h, 24h; then manual_review.
    """

    __tablename__ = "side_effect_dead_letters"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    effect: Mapped[str] = mapped_column(TEXT, nullable=False)  # loyalty_accrual
    reference_type: Mapped[str] = mapped_column(TEXT, nullable=False)
    reference_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    amount: Mapped[str] = mapped_column(TEXT, nullable=False)  # Decimal string for precision
    webhook_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    payload: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)

    status: Mapped[str] = mapped_column(TEXT, nullable=False, default="pending")
    # pending | retrying | resolved | manual_review
    error_message: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    retry_count: Mapped[int] = mapped_column(INTEGER, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(INTEGER, nullable=False, default=5)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    resolved_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=_utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    __table_args__ = (
        Index("idx_dead_letters_status_next", "status", "next_retry_at"),
        Index("idx_dead_letters_reference", "reference_type", "reference_id"),
    )


# ============================================================================
# Ledger immutability (storage boundary)
#
# PostgreSQL: plpgsql trigger function (same DDL as the Alembic migration).
# SQLite (tests/dev): BEFORE UPDATE / BEFORE DELETE triggers with RAISE(ABORT).
# Both fail with the LEDGER_MUTATION_FORBIDDEN marker, which the handle_error
# listener below translates into LedgerMutationForbidden.
# ============================================================================

LEDGER_MUTATION_MARKER = "LEDGER_MUTATION_FORBIDDEN"

# No '%' in these statements: DDL text goes through %-formatting
PG_LEDGER_GUARD_FUNCTION = f"""
CREATE OR REPLACE FUNCTION payment_ledger_forbid_mutation() RETURNS trigger AS $$
BEGIN
    RAISE EXCEPTION USING
        MESSAGE = '{LEDGER_MUTATION_MARKER}: payment_ledger is append-only (' || TG_OP || ')',
        ERRCODE = 'restrict_violation';
END;
$$ LANGUAGE plpgsql
"""

PG_LEDGER_GUARD_TRIGGER = """
CREATE TRIGGER payment_ledger_no_mutation
    BEFORE UPDATE OR DELETE ON payment_ledger
    FOR EACH ROW EXECUTE FUNCTION payment_ledger_forbid_mutation()
"""

SQLITE_LEDGER_GUARD_TRIGGERS = (
    f"""
    CREATE TRIGGER IF NOT EXISTS payment_ledger_no_update
    BEFORE UPDATE ON payment_ledger
    BEGIN
        SELECT RAISE(ABORT, '{LEDGER_MUTATION_MARKER}');
    END
    """,
    f"""
    CREATE TRIGGER IF NOT EXISTS payment_ledger_no_delete
    BEFORE DELETE ON payment_ledger
    BEGIN
        SELECT RAISE(ABORT, '{LEDGER_MUTATION_MARKER}');
    END
    """,
)

_ledger_table = LedgerEntry.__table__

event.listen(
    _ledger_table,
    "after_create",
    DDL(PG_LEDGER_GUARD_FUNCTION).execute_if(dialect="postgresql"),
)
event.listen(
    _ledger_table,
    "after_create",
    DDL(PG_LEDGER_GUARD_TRIGGER).execute_if(dialect="postgresql"),
)
for _sqlite_trigger in SQLITE_LEDGER_GUARD_TRIGGERS:
    event.listen(
        _ledger_table,
        "after_create",
        DDL(_sqlite_trigger).execute_if(dialect="sqlite"),
    )


@event.listens_for(Engine, "handle_error")
def _translate_ledger_trigger_error(context) -> None:
    """Surface trigger rejections from any statement as LedgerMutationForbidden."""
    if LEDGER_MUTATION_MARKER in str(context.original_exception):
        raise LedgerMutationForbidden(
            "payment_ledger is append-only; UPDATE/DELETE rejected by storage trigger"
        ) from context.sqlalchemy_exception


@event.listens_for(Session, "before_flush")
def _forbid_ledger_mutation(session: Session, flush_context, instances) -> None:
    """Reject ORM-level UPDATE/DELETE of ledger rows before SQL is emitted."""
    for obj in session.deleted:
        if isinstance(obj, LedgerEntry):
            raise LedgerMutationForbidden(
                f"DELETE of ledger entry {obj.webhook_id!r} rejected"
            )
    for obj in session.dirty:
        if isinstance(obj, LedgerEntry) and session.is_modified(obj):
            raise LedgerMutationForbidden(
                f"UPDATE of ledger entry {obj.webhook_id!r} rejected"
            )
