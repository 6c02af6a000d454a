"""Stripe API client.

Only the call reconciliation needs: refunds. Constructed once at application
startup and injected via app.state; there is no module-level singleton.

Stripe API Reference:
- Refunds: https://docs.stripe.com/api/refunds/create
"""

import logging
from typing import Optional, Protocol

import httpx

from resortpay_api.config.env import get_stripe_api_base, get_stripe_secret_key

logger = logging.getLogger(__name__)

# Provider-side refund reasons; anything else is sent as requested_by_customer
STRIPE_REFUND_REASONS = frozenset({"requested_by_customer", "duplicate", "fraudulent"})


class PaymentProvider(Protocol):
    async def create_refund(
        self,
        *,
        payment_intent: str,
        amount_cents: int,
        reason: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> dict: ...


class StripeClient:
    """Stripe REST client over httpx.

    Environment Variables:
    - STRIPE_SECRET_KEY: Stripe secret key (sk_test_* or sk_live_*)
    - STRIPE_API_BASE: API base URL override (stripe-mock in CI)
    """

    def __init__(
        self,
        secret_key: Optional[str] = None,
        *,
        api_base: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.secret_key = secret_key or get_stripe_secret_key()
        self.env = "test" if self.secret_key.startswith("sk_test_") else "live"
        self.base_url = (api_base or get_stripe_api_base()).rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _headers(self, idempotency_key: Optional[str] = None) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, transport=self._transport)

    async def create_refund(
        self,
        *,
        payment_intent: str,
        amount_cents: int,
        reason: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> dict:
        """Refund (part of) a payment intent.

        Args:
            payment_intent: Stripe PaymentIntent id (pi_...)
            amount_cents: Amount to refund in minor units
            reason: requested_by_customer | duplicate | fraudulent
            metadata: Flat string metadata stored on the refund
            idempotency_key: Stripe Idempotency-Key (safe client retries)

        Returns:
            Refund object dict

        Raises:
            httpx.HTTPStatusError: If Stripe rejects the refund
            httpx.HTTPError: On transport failure
        """
        form: dict[str, str] = {
            "payment_intent": payment_intent,
            "amount": str(amount_cents),
        }
        if reason:
            form["reason"] = reason if reason in STRIPE_REFUND_REASONS else "requested_by_customer"
        for key, value in (metadata or {}).items():
            form[f"metadata[{key}]"] = str(value)

        async with self._client() as client:
            response = await client.post(
                "/v1/refunds",
                data=form,
                headers=self._headers(idempotency_key),
                timeout=self.timeout,
            )
            response.raise_for_status()

            result = response.json()
            logger.info(
                "Stripe refund created",
                extra={
                    "event": "stripe.refund.created",
                    "refund_id": result.get("id"),
                    "payment_intent": payment_intent,
                    "amount_cents": amount_cents,
                    "status": result.get("status"),
                },
            )
            return result


def build_payment_provider() -> Optional[StripeClient]:
    """Build the Stripe client from environment, or None if not configured."""
    try:
        return StripeClient()
    except ValueError as e:
        logger.warning(
            "STRIPE_CLIENT_NOT_CONFIGURED",
            extra={"event": "stripe.client.not_configured", "reason": str(e)},
        )
        return None
