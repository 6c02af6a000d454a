"""End-to-end tests for POST /webhooks/stripe."""

import asyncio
import time

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from resortpay_api.billing import reconciliation, side_effects
from resortpay_api.billing.errors import LedgerMutationForbidden
from resortpay_api.db.models import LedgerEntry, LoyaltyTransaction, RestaurantOrder, SideEffectDeadLetter
from stripe_helpers import WEBHOOK_SECRET, charge_refunded_event, payment_intent_event, post_event, signed


def _ledger_count(db: Session, **filters) -> int:
    return db.query(LedgerEntry).filter_by(**filters).count()


def _order_status(db: Session, order_id: str) -> str:
    return db.get(RestaurantOrder, order_id, populate_existing=True).payment_status


# ============================================================================
# Happy path + redelivery
# ============================================================================


def test_payment_succeeded_then_redelivered(test_client: TestClient, db_session: Session, seed_reference):
    seed_reference("restaurant_order", "order_1")
    payload = payment_intent_event("evt_1")

    first = post_event(test_client, payload)
    second = post_event(test_client, payload)

    assert first.status_code == 200
    assert first.json() == {"received": True, "status": "processed"}
    assert second.status_code == 200
    assert second.json() == {"received": True, "status": "duplicate"}

    assert _ledger_count(db_session, webhook_id="evt_1") == 1
    assert _order_status(db_session, "order_1") == "paid"
    assert db_session.query(LoyaltyTransaction).count() == 1


def test_unknown_reference_type_still_acknowledged(test_client: TestClient, db_session: Session):
    response = post_event(
        test_client, payment_intent_event("evt_spa_1", reference_type="spa_booking", reference_id="spa_1")
    )

    assert response.status_code == 200
    assert response.json()["status"] == "processed"
    assert _ledger_count(db_session, webhook_id="evt_spa_1", reference_type="spa_booking") == 1


def test_unsupported_event_type_ignored(test_client: TestClient, db_session: Session):
    payload = payment_intent_event("evt_other_1")
    payload["type"] = "customer.subscription.created"

    response = post_event(test_client, payload)

    assert response.status_code == 200
    assert response.json()["status"] == "ignored"
    assert _ledger_count(db_session) == 0


def test_refund_event_after_payment(test_client: TestClient, db_session: Session, seed_reference):
    seed_reference("restaurant_order", "order_1")
    post_event(test_client, payment_intent_event("evt_pay_1"))

    response = post_event(test_client, charge_refunded_event("evt_ref_1", amount_refunded_cents=10000))

    assert response.status_code == 200
    assert _order_status(db_session, "order_1") == "refunded"


# ============================================================================
# Rejections
# ============================================================================


def test_bad_signature_rejected_without_ledger(test_client: TestClient, db_session: Session, seed_reference):
    seed_reference("restaurant_order", "order_1")

    response = post_event(test_client, payment_intent_event("evt_forged"), secret="whsec_wrong_secret")

    assert response.status_code == 400
    assert response.headers["content-type"].startswith("application/problem+json")
    body = response.json()
    assert body["error_code"] == "WEBHOOK_SIGNATURE_INVALID"
    assert body["provider"] == "stripe"
    assert "payload_hash" in body
    assert _ledger_count(db_session) == 0
    assert _order_status(db_session, "order_1") == "pending"


def test_missing_signature_header_rejected(test_client: TestClient, db_session: Session):
    raw, _ = signed(payment_intent_event("evt_nosig"))

    response = test_client.post("/webhooks/stripe", content=raw, headers={"Content-Type": "application/json"})

    assert response.status_code == 400
    assert _ledger_count(db_session) == 0


def test_stale_timestamp_rejected(test_client: TestClient, db_session: Session):
    response = post_event(test_client, payment_intent_event("evt_old"), timestamp=int(time.time()) - 3600)

    assert response.status_code == 400
    assert response.json()["error_code"] == "WEBHOOK_SIGNATURE_INVALID"
    assert _ledger_count(db_session) == 0


def test_malformed_payload_rejected(test_client: TestClient, db_session: Session):
    payload = payment_intent_event("evt_bad_amount")
    del payload["data"]["object"]["amount"]
    del payload["data"]["object"]["amount_received"]

    response = post_event(test_client, payload)

    assert response.status_code == 400
    assert response.json()["error_code"] == "WEBHOOK_INVALID_PAYLOAD"
    assert _ledger_count(db_session) == 0


def test_zero_amount_payment_rejected(test_client: TestClient, db_session: Session, seed_reference):
    seed_reference("restaurant_order", "order_1")

    response = post_event(test_client, payment_intent_event("evt_zero", amount_cents=0))

    assert response.status_code == 400
    assert response.json()["error_code"] == "WEBHOOK_INVALID_PAYLOAD"
    assert _ledger_count(db_session) == 0
    assert _order_status(db_session, "order_1") == "pending"


def test_unsupported_currency_rejected(test_client: TestClient, db_session: Session):
    response = post_event(test_client, payment_intent_event("evt_jpy", currency="jpy"))

    assert response.status_code == 400
    assert response.json()["error_code"] == "WEBHOOK_INVALID_PAYLOAD"
    assert _ledger_count(db_session) == 0


def test_missing_signing_secret_is_server_error(test_client: TestClient, monkeypatch):
    monkeypatch.delenv("STRIPE_WEBHOOK_SECRET", raising=False)

    response = post_event(test_client, payment_intent_event("evt_cfg"), secret=WEBHOOK_SECRET)

    assert response.status_code == 500
    assert response.headers["Retry-After"] == "60"
    assert response.json()["error_code"] == "WEBHOOK_PROVIDER_MISCONFIG"


# ============================================================================
# Failures after (and before) the ledger commit
# ============================================================================


def test_failure_after_ledger_commit_is_acknowledged(
    test_client: TestClient, db_session: Session, seed_reference, monkeypatch
):
    def forbidden_apply(self, event, reference_type, reference_id):
        raise LedgerMutationForbidden("trigger fired")

    monkeypatch.setattr(reconciliation.ReconciliationPipeline, "_apply", forbidden_apply)
    seed_reference("restaurant_order", "order_1")

    response = post_event(test_client, payment_intent_event("evt_lm_1"))

    assert response.status_code == 200
    assert "Retry-After" not in response.headers
    assert response.json() == {"received": True, "status": "processed"}
    assert _ledger_count(db_session, webhook_id="evt_lm_1") == 1

    # Redelivery is a plain duplicate
    assert post_event(test_client, payment_intent_event("evt_lm_1")).json()["status"] == "duplicate"


def test_failure_before_ledger_commit_asks_for_retry(
    test_client: TestClient, db_session: Session, seed_reference, monkeypatch
):
    def broken_link(self, event):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(reconciliation.ReconciliationPipeline, "_link", broken_link)
    seed_reference("restaurant_order", "order_1")

    response = post_event(test_client, payment_intent_event("evt_lm_2"))

    assert response.status_code == 500
    assert response.headers["Retry-After"] == "60"
    assert response.json()["error_code"] == "WEBHOOK_INTERNAL_ERROR"
    assert _ledger_count(db_session) == 0


# ============================================================================
# Side-effect isolation
# ============================================================================


class _BrokenEffect:
    name = "broken_effect"

    def __call__(self, db, handle, amount):
        raise RuntimeError("points service timeout")


def test_side_effect_failure_still_acknowledged(
    test_client: TestClient, db_session: Session, seed_reference, monkeypatch
):
    monkeypatch.setattr(side_effects, "DEFAULT_EFFECTS", (_BrokenEffect(),))
    seed_reference("restaurant_order", "order_1")

    response = post_event(test_client, payment_intent_event("evt_fx_1"))

    assert response.status_code == 200
    assert response.json()["status"] == "processed"
    assert _order_status(db_session, "order_1") == "paid"
    assert db_session.query(SideEffectDeadLetter).filter_by(effect="broken_effect").count() == 1


# ============================================================================
# Concurrency
# ============================================================================


@pytest.mark.asyncio
async def test_concurrent_redeliveries_processed_once(app, db_session: Session, seed_reference):
    seed_reference("restaurant_order", "order_1")
    raw, headers = signed(payment_intent_event("evt_concurrent"))

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        responses = await asyncio.gather(
            *[client.post("/webhooks/stripe", content=raw, headers=headers) for _ in range(5)]
        )

    assert [r.status_code for r in responses] == [200] * 5
    statuses = sorted(r.json()["status"] for r in responses)
    assert statuses == ["duplicate"] * 4 + ["processed"]
    assert _ledger_count(db_session, webhook_id="evt_concurrent") == 1
    assert db_session.query(LoyaltyTransaction).count() == 1
