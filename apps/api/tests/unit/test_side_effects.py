"""Tests for loyalty accrual and the side-effect dispatcher."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy.orm import Session

from resortpay_api.billing.references import resolve
from resortpay_api.billing.side_effects import (
    MAX_RETRIES,
    LoyaltyAccrual,
    SideEffectDispatcher,
    calculate_points,
    next_retry_delay,
    tier_for_lifetime_points,
)
from resortpay_api.db.models import LoyaltyAccount, LoyaltyTransaction, SideEffectDeadLetter


class ExplodingEffect:
    name = "exploding"

    def __call__(self, db, handle, amount):
        raise RuntimeError("downstream unavailable")


@pytest.mark.parametrize(
    "amount, tier, expected",
    [
        ("100.00", "bronze", 1000),
        ("100.00", "silver", 1250),
        ("100.00", "gold", 1500),
        ("100.00", "platinum", 2000),
        ("12.34", "bronze", 123),
        ("0.05", "bronze", 0),
        ("10.00", "unknown", 100),
    ],
)
def test_calculate_points(amount, tier, expected):
    assert calculate_points(Decimal(amount), tier) == expected


@pytest.mark.parametrize(
    "lifetime, tier",
    [(0, "bronze"), (999, "bronze"), (1000, "silver"), (5000, "gold"), (15000, "platinum")],
)
def test_tier_thresholds(lifetime, tier):
    assert tier_for_lifetime_points(lifetime) == tier


def test_retry_schedule():
    assert [next_retry_delay(n) for n in range(MAX_RETRIES)] == [
        timedelta(minutes=1),
        timedelta(minutes=5),
        timedelta(minutes=30),
        timedelta(hours=2),
        timedelta(hours=24),
    ]
    assert next_retry_delay(MAX_RETRIES) is None


def test_accrual_creates_account_and_earn_transaction(db_session: Session, seed_reference):
    seed_reference("restaurant_order", "order_1", customer_id="user_42")

    LoyaltyAccrual()(db_session, resolve("restaurant_order", "order_1"), Decimal("100.00"))

    account = db_session.query(LoyaltyAccount).filter_by(user_id="user_42").one()
    assert account.available_points == 1000
    assert account.lifetime_points == 1000
    # 1000 lifetime points crosses the silver threshold
    assert account.tier == "silver"

    tx = db_session.query(LoyaltyTransaction).one()
    assert (tx.type, tx.points, tx.reference_type, tx.reference_id) == ("earn", 1000, "restaurant_order", "order_1")
    expires = tx.expires_at.replace(tzinfo=None)
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    assert now + timedelta(days=364) < expires <= now + timedelta(days=366)


def test_accrual_uses_existing_tier(db_session: Session, seed_reference):
    db_session.add(LoyaltyAccount(user_id="user_gold", tier="gold", available_points=10, lifetime_points=6000))
    db_session.commit()
    seed_reference("snack_order", "snack_1", customer_id="user_gold")

    LoyaltyAccrual()(db_session, resolve("snack_order", "snack_1"), Decimal("20.00"))

    account = db_session.query(LoyaltyAccount).filter_by(user_id="user_gold").one()
    assert account.available_points == 310
    assert account.lifetime_points == 6300
    assert account.tier == "gold"


def test_accrual_never_credits_same_reference_twice(db_session: Session, seed_reference):
    seed_reference("pool_ticket", "ticket_1", customer_id="user_7")
    handle = resolve("pool_ticket", "ticket_1")

    LoyaltyAccrual()(db_session, handle, Decimal("15.00"))
    LoyaltyAccrual()(db_session, handle, Decimal("15.00"))

    assert db_session.query(LoyaltyTransaction).count() == 1
    assert db_session.query(LoyaltyAccount).filter_by(user_id="user_7").one().available_points == 150


def test_accrual_skipped_without_owner(db_session: Session, seed_reference):
    seed_reference("chalet_booking", "booking_1", customer_id=None)

    LoyaltyAccrual()(db_session, resolve("chalet_booking", "booking_1"), Decimal("250.00"))

    assert db_session.query(LoyaltyAccount).count() == 0
    assert db_session.query(LoyaltyTransaction).count() == 0


def test_dispatch_success(db_session: Session, seed_reference):
    seed_reference("restaurant_order", "order_2", customer_id="user_2")

    outcome = SideEffectDispatcher(db_session).dispatch("restaurant_order", "order_2", Decimal("10.00"))

    assert outcome.ok
    assert outcome.succeeded == ["loyalty_accrual"]
    assert db_session.query(SideEffectDeadLetter).count() == 0


def test_dispatch_failure_writes_dead_letter_and_does_not_raise(db_session: Session, seed_reference):
    seed_reference("restaurant_order", "order_3", customer_id="user_3")
    dispatcher = SideEffectDispatcher(db_session, effects=(ExplodingEffect(), LoyaltyAccrual()))

    outcome = dispatcher.dispatch("restaurant_order", "order_3", Decimal("40.00"), webhook_id="evt_fx_1")

    assert outcome.failed == ["exploding"]
    # Later effects still run after an earlier one fails
    assert outcome.succeeded == ["loyalty_accrual"]

    dead = db_session.query(SideEffectDeadLetter).one()
    assert dead.effect == "exploding"
    assert dead.reference_type == "restaurant_order"
    assert dead.reference_id == "order_3"
    assert dead.amount == "40.00"
    assert dead.webhook_id == "evt_fx_1"
    assert dead.status == "pending"
    assert dead.retry_count == 0
    assert dead.max_retries == MAX_RETRIES
    assert "downstream unavailable" in dead.error_message
    assert dead.next_retry_at is not None


def test_dispatch_missing_reference_is_dead_lettered(db_session: Session):
    outcome = SideEffectDispatcher(db_session).dispatch("pool_ticket", "ticket_gone", Decimal("5.00"))

    assert outcome.failed == ["loyalty_accrual"]
    assert db_session.query(SideEffectDeadLetter).filter_by(reference_id="ticket_gone").count() == 1


def test_effect_named():
    dispatcher = SideEffectDispatcher(db=None)

    assert dispatcher.effect_named("loyalty_accrual") is not None
    assert dispatcher.effect_named("nope") is None
