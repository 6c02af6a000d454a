"""Pydantic schemas for API requests/responses."""

from typing import Any, Optional

from pydantic import BaseModel, Field


# ============================================================================
# POST /webhooks/stripe - Response
# ============================================================================


class WebhookAck(BaseModel):
    """Acknowledgement returned to the provider (always 200 once ledgered)."""

    received: bool = True
    status: str = Field(..., description="processed | duplicate | ignored")


# ============================================================================
# POST /v1/payments/{payment_id}/refund - Request/Response
# ============================================================================


class RefundRequest(BaseModel):
    """Request body for POST /v1/payments/{payment_id}/refund."""

    amount: Optional[str] = Field(
        None,
        description="Amount to refund (2dp string). Omit for a full refund of the remaining amount.",
        pattern=r"^\d+(\.\d{1,2})?$",
    )
    reason: Optional[str] = Field(
        None,
        description="requested_by_customer | duplicate | fraudulent, or free text for the payment notes",
        max_length=500,
    )
    processed_by: Optional[str] = Field(None, description="Staff member issuing the refund", max_length=255)


class RefundResponse(BaseModel):
    """Response for POST /v1/payments/{payment_id}/refund."""

    payment_id: str
    refund_id: str
    amount: str = Field(..., description="Refunded amount (2dp string)")
    currency: str
    refunded_total: str = Field(..., description="Total refunded on this payment so far")
    payment_status: str = Field(..., description="completed | refunded")
    fully_refunded: bool


# ============================================================================
# RFC 9457 Problem Details
# ============================================================================


class ProblemDetail(BaseModel):
    """RFC 9457 Problem Details for HTTP API errors.

    RFC 9457: detail can be either a string or a structured object (dict).
    """

    type: str = Field(..., description="URI reference identifying the problem type")
    title: str = Field(..., description="Short, human-readable summary")
    status: int = Field(..., description="HTTP status code")
    detail: str | dict[str, Any] = Field(..., description="Human-readable explanation or structured error details")
    instance: Optional[str] = Field(None, description="URI reference identifying the specific occurrence")
    error_code: Optional[str] = Field(None, description="Stable machine-readable error code")
