"""Payment operations for staff.

WARNING: These endpoints are for authorized operators only.
- Protected by ADMIN_TOKEN header
- Every refund is ledgered and logged
"""

import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from resortpay_api.billing.refunds import RefundService
from resortpay_api.billing.stripe import PaymentProvider
from resortpay_api.config.env import get_admin_token
from resortpay_api.context import request_id_var
from resortpay_api.db.session import get_db
from resortpay_api.schemas import RefundRequest, RefundResponse
from resortpay_api.utils.money import format_amount

router = APIRouter(prefix="/v1/payments", tags=["payments"])
logger = logging.getLogger(__name__)


def get_payment_provider(request: Request) -> Optional[PaymentProvider]:
    """Provider client built once in create_app() and stored on app.state."""
    return getattr(request.app.state, "payment_provider", None)


def _verify_admin_token(provided_token: Optional[str]) -> None:
    """Verify admin token using constant-time comparison.

    Raises:
        HTTPException 401: If token is missing or invalid
        HTTPException 500: If ADMIN_TOKEN not configured
    """
    expected_token = get_admin_token()
    if not expected_token:
        logger.error("ADMIN_TOKEN not configured; refund endpoints are disabled")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Admin token not configured on server",
        )

    if not provided_token or not secrets.compare_digest(provided_token, expected_token):
        logger.warning(
            "Invalid admin token attempt",
            extra={"event": "admin.auth_failed", "request_id": request_id_var.get()},
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid X-Admin-Token",
            headers={"WWW-Authenticate": "Header"},
        )


@router.post("/{payment_id}/refund", response_model=RefundResponse)
async def refund_payment(
    payment_id: str,
    body: RefundRequest,
    x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token"),
    db: Session = Depends(get_db),
    provider: Optional[PaymentProvider] = Depends(get_payment_provider),
) -> RefundResponse:
    """Refund a completed payment, fully or partially.

    Errors (application/problem+json):
    - 401: bad X-Admin-Token
    - 404: PAYMENT_NOT_FOUND
    - 409: ALREADY_REFUNDED / REFUND_NOT_ALLOWED (no provider call made)
    - 422: INVALID_REFUND_AMOUNT
    - 502: REFUND_PROVIDER_ERROR (no local state changed)
    """
    _verify_admin_token(x_admin_token)

    logger.info(
        "Refund requested",
        extra={
            "event": "payment.refund.requested",
            "payment_id": payment_id,
            "amount": body.amount,
            "processed_by": body.processed_by,
        },
    )

    result = await RefundService(db, provider).refund(
        payment_id,
        amount=body.amount,
        reason=body.reason,
        processed_by=body.processed_by,
    )

    return RefundResponse(
        payment_id=result.payment_id,
        refund_id=result.refund_id,
        amount=format_amount(result.amount),
        currency=result.currency,
        refunded_total=format_amount(result.refunded_total),
        payment_status=result.payment_status,
        fully_refunded=result.fully_refunded,
    )
