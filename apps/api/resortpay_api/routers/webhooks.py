"""Stripe webhook handler.

Error taxonomy (retry storm prevention):
  (A) Signature header missing / malformed / mismatched / stale → 400
  (B) Valid signature but malformed payload                    → 400
  (C) Our misconfig (missing signing secret)                   → 500 WEBHOOK_PROVIDER_MISCONFIG
  (D) Internal DB error before the ledger entry is committed   → 500 WEBHOOK_INTERNAL_ERROR
  Once the ledger entry exists the response is always 200, even when a later
  step raises (logged as payment.reconciliation.inconsistency).
  500 is ONLY for (C)(D). Signature mismatch is NEVER 500.
"""

import logging
import time
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from resortpay_api.billing.errors import (
    InvalidSignature,
    LedgerMutationForbidden,
    MalformedEvent,
    WebhookMisconfigured,
)
from resortpay_api.billing.events import IncomingEvent
from resortpay_api.billing.ledger import LedgerRecorder
from resortpay_api.billing.reconciliation import ReconciliationPipeline
from resortpay_api.billing.signature import verify_and_parse
from resortpay_api.config.env import get_stripe_webhook_secret, get_webhook_tolerance_sec
from resortpay_api.context import request_id_var
from resortpay_api.db.session import get_db
from resortpay_api.observability.metrics import log_reconciliation_inconsistency, log_webhook_outcome
from resortpay_api.schemas import WebhookAck
from resortpay_api.utils.sanitize import payload_hash_bytes, sanitize_str

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)

PROVIDER = "stripe"


# ============================================================================
# Webhook Problem Details helper
# ============================================================================


def _webhook_problem(
    request: Request,
    status: int,
    *,
    code: str,
    title: str,
    detail: str | None,
    payload_hash: str | None,
    extra: dict | None = None,
) -> JSONResponse:
    """Log once + return RFC 9457 Problem Details response with webhook extensions.

    4xx failures → warning log.
    5xx failures → error log + Retry-After: 60 response header.

    Response extensions: provider, payload_hash, error_code (never raw payload/secrets).
    """
    request_id = request_id_var.get()
    instance = f"urn:resortpay:trace:{request_id}" if request_id else str(request.url.path)

    log_extra: dict = {
        "event": f"webhook.{code.lower()}",
        "provider": PROVIDER,
        "payload_hash": payload_hash,
        "error_code": code,
    }
    if extra:
        log_extra.update(extra)

    if status >= 500:
        logger.error(code, extra=log_extra)
    else:
        logger.warning(code, extra=log_extra)

    content: dict = {
        "type": f"urn:resortpay:webhook:{code.lower()}",
        "title": title,
        "status": status,
        "provider": PROVIDER,
        "error_code": code,
        "instance": instance,
    }
    if detail is not None:
        content["detail"] = detail
    if payload_hash is not None:
        content["payload_hash"] = payload_hash

    headers = {}
    if status >= 500:
        headers["Retry-After"] = "60"

    return JSONResponse(
        status_code=status,
        content=content,
        media_type="application/problem+json",
        headers=headers,
    )


def _is_ledgered(db: Session, event_id: str) -> bool:
    """True if the event's ledger entry was committed before the failure."""
    try:
        return LedgerRecorder(db).get_by_webhook_id(event_id) is not None
    except SQLAlchemyError:
        db.rollback()
        return False


def _ledgered_ack(event: IncomingEvent, *, stage: str, error_type: str) -> WebhookAck:
    """Acknowledge an event whose post-ledger processing failed.

    A retry would only hit the duplicate path, so the provider gets 200 and
    the failure is left to the inconsistency log.
    """
    logger.error(
        "WEBHOOK_FAILED_AFTER_LEDGER",
        extra={"provider": PROVIDER, "event_id": event.id, "stage": stage, "error_type": error_type},
    )
    log_reconciliation_inconsistency(
        event_id=event.id,
        reference_type=event.reference_type,
        reference_id=event.reference_id,
        stage=stage,
        error_type=error_type,
    )
    log_webhook_outcome(
        provider=PROVIDER,
        event_id=event.id,
        outcome="processed",
        event_type=event.provider_type,
    )
    return WebhookAck(received=True, status="processed")


# ============================================================================
# Stripe Webhook Handler
# ============================================================================


@router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    db: Session = Depends(get_db),
):
    """Receive a Stripe event and reconcile it exactly once."""
    start = time.perf_counter()

    # ── Step 1: raw bytes (signature is computed over these, never re-serialized JSON) ──
    raw_body = await request.body()
    payload_hash = payload_hash_bytes(raw_body)
    logger.info(
        "WEBHOOK_RECEIVED",
        extra={"provider": PROVIDER, "payload_hash": payload_hash, "payload_size": len(raw_body)},
    )

    # ── Step 2: signing secret (C → 500) ──────────────────────────────────────
    try:
        secret = get_stripe_webhook_secret()
    except ValueError as e:
        return _webhook_problem(
            request, 500,
            code=WebhookMisconfigured.code,
            title=WebhookMisconfigured.title,
            detail="Webhook signing secret is not configured",
            payload_hash=payload_hash,
            extra={"reason": sanitize_str(str(e))},
        )

    # ── Step 3: verify, then parse (A/B → 400) ────────────────────────────────
    try:
        event = verify_and_parse(
            raw_body,
            stripe_signature,
            secret,
            tolerance_seconds=get_webhook_tolerance_sec(),
        )
    except (InvalidSignature, MalformedEvent) as e:
        return _webhook_problem(
            request, e.status_code,
            code=e.code,
            title=e.title,
            detail=sanitize_str(e.detail),
            payload_hash=payload_hash,
        )
    except WebhookMisconfigured as e:
        return _webhook_problem(
            request, 500,
            code=e.code,
            title=e.title,
            detail=e.detail,
            payload_hash=payload_hash,
        )

    # ── Step 4: reconcile (D → 500 only before the ledger commit) ─────────────
    try:
        result = ReconciliationPipeline(db).process(event)
    except LedgerMutationForbidden as e:
        db.rollback()
        if _is_ledgered(db, event.id):
            return _ledgered_ack(event, stage="ledger_mutation", error_type=type(e).__name__)
        return _webhook_problem(
            request, 500,
            code=e.code,
            title=e.title,
            detail="Ledger immutability violation",
            payload_hash=payload_hash,
            extra={"event_id": event.id},
        )
    except Exception as exc:
        db.rollback()
        if _is_ledgered(db, event.id):
            return _ledgered_ack(event, stage="post_ledger", error_type=type(exc).__name__)
        return _webhook_problem(
            request, 500,
            code="WEBHOOK_INTERNAL_ERROR",
            title="Internal processing error",
            detail="An internal error occurred while processing the webhook",
            payload_hash=payload_hash,
            extra={
                "event_id": event.id,
                "error_type": type(exc).__name__,
                "error_msg": sanitize_str(str(exc)),
            },
        )

    log_webhook_outcome(
        provider=PROVIDER,
        event_id=event.id,
        outcome=result.outcome,
        event_type=event.provider_type,
        duration_ms=round((time.perf_counter() - start) * 1000, 2),
    )
    if result.issues:
        logger.warning(
            "WEBHOOK_PROCESSED_WITH_ISSUES",
            extra={"event_id": event.id, "state": result.state.value, "issues": result.issues},
        )

    return WebhookAck(received=True, status=result.outcome)
