"""Log-based metrics for payment reconciliation.

Each helper emits one structured log line with a stable "event" field that
log pipelines (Datadog, CloudWatch metric filters) count and alert on.

Usage:
    from resortpay_api.observability.metrics import log_webhook_outcome

    log_webhook_outcome(provider="stripe", event_id="evt_1", outcome="processed")

Alerting:
- payment.reconciliation.inconsistency  → page (manual reconciliation needed)
- payment.side_effect.failed            → ticket
- payment.side_effect.exhausted         → page (dead letter parked in manual_review)

Card data and secrets are never passed to these helpers.
"""

import logging
from typing import Optional

logger = logging.getLogger(__name__)


# ============================================================================
# Webhook metrics
# ============================================================================


def log_webhook_outcome(
    provider: str,
    event_id: str,
    outcome: str,
    event_type: Optional[str] = None,
    duration_ms: Optional[float] = None,
) -> None:
    """Log the terminal outcome of a webhook delivery.

    Args:
        provider: Payment provider (stripe)
        event_id: Provider event id
        outcome: processed | duplicate | ignored
        event_type: Provider event type (optional)
        duration_ms: Handler duration (optional)
    """
    logger.info(
        "payment.webhook.outcome",
        extra={
            "event": "payment.webhook.outcome",
            "provider": provider,
            "event_id": event_id,
            "outcome": outcome,
            "event_type": event_type,
            "duration_ms": duration_ms,
        },
    )


def log_reconciliation_inconsistency(
    event_id: str,
    reference_type: Optional[str],
    reference_id: Optional[str],
    stage: str,
    error_type: str,
    detail: Optional[str] = None,
) -> None:
    """Log a post-ledger failure that left the reference out of sync.

    The ledger entry exists, so the provider was acknowledged; this line is
    the only recovery signal.

    Args:
        event_id: Provider event id (ledger webhook_id)
        reference_type: Reference kind from event metadata
        reference_id: Reference id from event metadata
        stage: Pipeline stage that failed (payment_record, reference_update, refund)
        error_type: Exception class name
        detail: Sanitized error detail (optional)
    """
    logger.error(
        "payment.reconciliation.inconsistency",
        extra={
            "event": "payment.reconciliation.inconsistency",
            "event_id": event_id,
            "reference_type": reference_type,
            "reference_id": reference_id,
            "stage": stage,
            "error_type": error_type,
            "detail": detail,
        },
    )


# ============================================================================
# Side-effect metrics
# ============================================================================


def log_side_effect_failure(
    effect: str,
    reference_type: str,
    reference_id: str,
    error_type: str,
    retry_count: int = 0,
) -> None:
    """Log a failed best-effort side effect (dead-lettered for retry)."""
    logger.warning(
        "payment.side_effect.failed",
        extra={
            "event": "payment.side_effect.failed",
            "effect": effect,
            "reference_type": reference_type,
            "reference_id": reference_id,
            "error_type": error_type,
            "retry_count": retry_count,
        },
    )


def log_dead_letter_exhausted(
    dead_letter_id: int,
    effect: str,
    reference_type: str,
    reference_id: str,
    retry_count: int,
) -> None:
    """Log a dead letter that ran out of retries and moved to manual_review."""
    logger.error(
        "payment.side_effect.exhausted",
        extra={
            "event": "payment.side_effect.exhausted",
            "dead_letter_id": dead_letter_id,
            "effect": effect,
            "reference_type": reference_type,
            "reference_id": reference_id,
            "retry_count": retry_count,
        },
    )


# ============================================================================
# Refund metrics
# ============================================================================


def log_payment_refund(
    payment_id: str,
    amount: str,
    currency: str,
    fully_refunded: bool,
    processed_by: Optional[str] = None,
) -> None:
    """Log a completed refund.

    Args:
        payment_id: Payment row id
        amount: Refunded amount (string for precision)
        currency: ISO currency code
        fully_refunded: True if the payment is now fully refunded
        processed_by: Staff actor (optional)
    """
    logger.info(
        "payment.refund",
        extra={
            "event": "payment.refund",
            "payment_id": payment_id,
            "amount": amount,
            "currency": currency,
            "fully_refunded": fully_refunded,
            "processed_by": processed_by,
        },
    )


def log_loyalty_points_awarded(
    user_id: str,
    points: int,
    reference_type: str,
    reference_id: str,
    tier: str,
) -> None:
    """Log loyalty points credited for a settled payment."""
    logger.info(
        "loyalty.points.awarded",
        extra={
            "event": "loyalty.points.awarded",
            "user_id": user_id,
            "points": points,
            "reference_type": reference_type,
            "reference_id": reference_id,
            "tier": tier,
        },
    )
