"""Tests for the reconciliation pipeline (trusted event in, ack outcome out)."""

import json

from sqlalchemy.orm import Session

from resortpay_api.billing.events import parse_event
from resortpay_api.billing.reconciliation import UNLINKED_REFERENCE, PipelineState, ReconciliationPipeline
from resortpay_api.billing.side_effects import LoyaltyAccrual, SideEffectDispatcher
from resortpay_api.context import event_id_var, reference_var
from resortpay_api.db.models import (
    LedgerEntry,
    LoyaltyTransaction,
    Payment,
    RestaurantOrder,
    SideEffectDeadLetter,
)
from stripe_helpers import charge_refunded_event, payment_intent_event


class ExplodingEffect:
    name = "exploding"

    def __call__(self, db, handle, amount):
        raise RuntimeError("loyalty service down")


def _event(payload: dict):
    return parse_event(json.dumps(payload).encode("utf-8"))


def _order_status(db: Session, order_id: str) -> str:
    return db.get(RestaurantOrder, order_id, populate_existing=True).payment_status


def test_payment_succeeded_full_path(db_session: Session, seed_reference):
    seed_reference("restaurant_order", "order_1", customer_id="user_1")

    result = ReconciliationPipeline(db_session).process(_event(payment_intent_event("evt_p_1")))

    assert result.state is PipelineState.SIDE_EFFECTS_ATTEMPTED
    assert result.outcome == "processed"
    assert result.issues == []

    entry = db_session.query(LedgerEntry).one()
    assert entry.id == result.ledger_entry_id
    assert (entry.webhook_id, entry.reference_type, entry.reference_id) == ("evt_p_1", "restaurant_order", "order_1")
    assert (entry.event_type, entry.amount, entry.currency, entry.status) == ("payment_succeeded", "100.00", "EUR", "succeeded")
    assert entry.gateway_reference_id == "pi_test_1"

    assert _order_status(db_session, "order_1") == "paid"
    assert db_session.query(Payment).one().status == "completed"
    assert db_session.query(LoyaltyTransaction).one().points == 1000


def test_redelivery_is_duplicate_without_side_effects(db_session: Session, seed_reference):
    seed_reference("restaurant_order", "order_1")
    pipeline = ReconciliationPipeline(db_session)
    first = pipeline.process(_event(payment_intent_event("evt_p_2")))

    again = pipeline.process(_event(payment_intent_event("evt_p_2")))

    assert again.state is PipelineState.DUPLICATE
    assert again.outcome == "duplicate"
    assert again.ledger_entry_id == first.ledger_entry_id
    assert db_session.query(LedgerEntry).count() == 1
    assert db_session.query(Payment).count() == 1
    assert db_session.query(LoyaltyTransaction).count() == 1


def test_second_success_for_paid_reference_skips_side_effects(db_session: Session, seed_reference):
    seed_reference("restaurant_order", "order_1")
    pipeline = ReconciliationPipeline(db_session)
    pipeline.process(_event(payment_intent_event("evt_p_3")))

    result = pipeline.process(_event(payment_intent_event("evt_p_4", payment_intent="pi_test_2")))

    assert result.state is PipelineState.REFERENCE_UPDATED
    assert result.transition.changed is False
    assert db_session.query(LedgerEntry).count() == 2
    assert db_session.query(LoyaltyTransaction).count() == 1


def test_side_effect_failure_does_not_affect_payment(db_session: Session, seed_reference):
    seed_reference("restaurant_order", "order_1")
    dispatcher = SideEffectDispatcher(db_session, effects=(ExplodingEffect(), LoyaltyAccrual()))

    result = ReconciliationPipeline(db_session, dispatcher=dispatcher).process(
        _event(payment_intent_event("evt_p_5"))
    )

    assert result.outcome == "processed"
    assert result.issues == ["side_effect_failed:exploding"]
    assert _order_status(db_session, "order_1") == "paid"
    assert db_session.query(LedgerEntry).count() == 1
    dead = db_session.query(SideEffectDeadLetter).one()
    assert (dead.effect, dead.webhook_id) == ("exploding", "evt_p_5")


def test_ledger_written_even_when_reference_update_fails(db_session: Session):
    # order_missing was never created
    result = ReconciliationPipeline(db_session).process(
        _event(payment_intent_event("evt_p_6", reference_id="order_missing"))
    )

    assert result.outcome == "processed"
    assert result.state is PipelineState.LEDGERED
    assert result.issues == ["reference_update_failed"]
    assert db_session.query(LedgerEntry).filter_by(webhook_id="evt_p_6").count() == 1
    assert db_session.query(LoyaltyTransaction).count() == 0


def test_unknown_reference_type_is_ledgered(db_session: Session):
    result = ReconciliationPipeline(db_session).process(
        _event(payment_intent_event("evt_p_7", reference_type="spa_booking", reference_id="spa_1"))
    )

    assert result.outcome == "processed"
    assert result.issues == ["unknown_reference_type"]
    entry = db_session.query(LedgerEntry).one()
    assert (entry.reference_type, entry.reference_id) == ("spa_booking", "spa_1")


def test_event_without_reference_is_ledgered_unlinked(db_session: Session):
    result = ReconciliationPipeline(db_session).process(
        _event(payment_intent_event("evt_p_8", reference_type=None, reference_id=None, payment_intent="pi_orphan"))
    )

    assert result.outcome == "processed"
    entry = db_session.query(LedgerEntry).one()
    assert (entry.reference_type, entry.reference_id) == (UNLINKED_REFERENCE, "pi_orphan")


def test_legacy_alias_updates_restaurant_order(db_session: Session, seed_reference):
    seed_reference("restaurant_order", "order_9")

    ReconciliationPipeline(db_session).process(
        _event(payment_intent_event("evt_p_9", reference_type="order", reference_id="order_9"))
    )

    assert _order_status(db_session, "order_9") == "paid"


def test_payment_failed_records_payment_only(db_session: Session, seed_reference):
    seed_reference("restaurant_order", "order_1")

    result = ReconciliationPipeline(db_session).process(
        _event(payment_intent_event("evt_p_10", event_type="payment_intent.payment_failed"))
    )

    assert result.outcome == "processed"
    assert result.transition is None
    assert db_session.query(LedgerEntry).one().status == "failed"
    assert db_session.query(Payment).one().status == "failed"
    assert _order_status(db_session, "order_1") == "pending"
    assert db_session.query(LoyaltyTransaction).count() == 0


def test_partial_then_full_refund_from_provider(db_session: Session, seed_reference):
    seed_reference("restaurant_order", "order_1")
    pipeline = ReconciliationPipeline(db_session)
    pipeline.process(_event(payment_intent_event("evt_r_0")))

    partial = pipeline.process(_event(charge_refunded_event("evt_r_1", amount_refunded_cents=3000)))

    assert partial.outcome == "processed"
    assert partial.issues == []
    payment = db_session.query(Payment).one()
    assert payment.refunded_amount == "30.00"
    assert payment.status == "completed"
    assert _order_status(db_session, "order_1") == "paid"

    # Refund events carry no checkout metadata; linked via the payment intent
    refund_entry = db_session.query(LedgerEntry).filter_by(webhook_id="evt_r_1").one()
    assert (refund_entry.reference_type, refund_entry.reference_id) == ("restaurant_order", "order_1")
    assert refund_entry.status == "refunded"

    full = pipeline.process(_event(charge_refunded_event("evt_r_2", amount_refunded_cents=10000, refund_id="re_test_2")))

    assert full.transition.current == "refunded"
    db_session.refresh(payment)
    assert payment.status == "refunded"
    assert payment.refunded_amount == "100.00"
    assert _order_status(db_session, "order_1") == "refunded"


def test_refund_after_full_refund_is_absorbed(db_session: Session, seed_reference):
    seed_reference("restaurant_order", "order_1")
    pipeline = ReconciliationPipeline(db_session)
    pipeline.process(_event(payment_intent_event("evt_r_3")))
    pipeline.process(_event(charge_refunded_event("evt_r_4", amount_refunded_cents=10000)))

    result = pipeline.process(_event(charge_refunded_event("evt_r_5", amount_refunded_cents=10000)))

    assert result.outcome == "processed"
    assert result.state is PipelineState.REFERENCE_UPDATED
    assert _order_status(db_session, "order_1") == "refunded"


def test_refund_for_unknown_payment_is_ledgered_unlinked(db_session: Session):
    result = ReconciliationPipeline(db_session).process(
        _event(charge_refunded_event("evt_r_6", amount_refunded_cents=500, payment_intent="pi_unknown"))
    )

    assert result.outcome == "processed"
    assert result.issues == ["reference_update_failed"]
    entry = db_session.query(LedgerEntry).one()
    assert (entry.reference_type, entry.reference_id) == (UNLINKED_REFERENCE, "pi_unknown")


def test_unsupported_event_is_ignored(db_session: Session):
    payload = payment_intent_event("evt_i_1")
    payload["type"] = "customer.created"

    result = ReconciliationPipeline(db_session).process(_event(payload))

    assert result.state is PipelineState.IGNORED
    assert result.outcome == "ignored"
    assert db_session.query(LedgerEntry).count() == 0


def test_log_context_reset_after_processing(db_session: Session, seed_reference):
    seed_reference("restaurant_order", "order_1")

    ReconciliationPipeline(db_session).process(_event(payment_intent_event("evt_ctx_1")))

    assert event_id_var.get() == ""
    assert reference_var.get() == ""
