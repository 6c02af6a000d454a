"""Tests for the Stripe refund client (httpx MockTransport, no network)."""

from urllib.parse import parse_qs

import httpx
import pytest

from resortpay_api.billing.stripe import StripeClient, build_payment_provider


def _client(handler) -> StripeClient:
    return StripeClient(
        "sk_test_123",
        api_base="https://stripe.test",
        transport=httpx.MockTransport(handler),
    )


async def test_create_refund_posts_form_with_idempotency_key():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["headers"] = request.headers
        captured["form"] = parse_qs(request.content.decode())
        return httpx.Response(200, json={"id": "re_123", "status": "succeeded"})

    refund = await _client(handler).create_refund(
        payment_intent="pi_123",
        amount_cents=2550,
        reason="duplicate",
        metadata={"payment_id": "pay_1"},
        idempotency_key="refund-pay_1-0.00-2550",
    )

    assert refund == {"id": "re_123", "status": "succeeded"}
    assert captured["url"] == "https://stripe.test/v1/refunds"
    assert captured["headers"]["Authorization"] == "Bearer sk_test_123"
    assert captured["headers"]["Idempotency-Key"] == "refund-pay_1-0.00-2550"
    assert captured["form"] == {
        "payment_intent": ["pi_123"],
        "amount": ["2550"],
        "reason": ["duplicate"],
        "metadata[payment_id]": ["pay_1"],
    }


async def test_free_text_reason_sent_as_requested_by_customer():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["form"] = parse_qs(request.content.decode())
        return httpx.Response(200, json={"id": "re_124", "status": "pending"})

    await _client(handler).create_refund(
        payment_intent="pi_124", amount_cents=100, reason="guest changed plans"
    )

    assert captured["form"]["reason"] == ["requested_by_customer"]


async def test_rejected_refund_raises_http_status_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": {"code": "charge_already_refunded"}})

    with pytest.raises(httpx.HTTPStatusError):
        await _client(handler).create_refund(payment_intent="pi_125", amount_cents=100)


def test_client_detects_test_mode():
    assert StripeClient("sk_test_abc", api_base="https://stripe.test").env == "test"
    assert StripeClient("sk_live_abc", api_base="https://stripe.test").env == "live"


def test_provider_not_built_without_secret_key(monkeypatch):
    monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)

    assert build_payment_provider() is None


def test_provider_built_from_environment(monkeypatch):
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_env")
    monkeypatch.setenv("STRIPE_API_BASE", "https://stripe-mock.local/")

    provider = build_payment_provider()

    assert provider is not None
    assert provider.base_url == "https://stripe-mock.local"
