"""Health check endpoints."""

import logging

from fastapi import APIRouter, Request, Response, status
from pydantic import BaseModel
from sqlalchemy import text

from resortpay_api.db.session import engine

router = APIRouter()
logger = logging.getLogger(__name__)

VERSION = "0.3.0"


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    version: str
    services: dict[str, str]


def check_database() -> str:
    """Check database connectivity.

    Returns:
        str: "up" if healthy, error message otherwise
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return "up"
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return f"down: {str(e)[:50]}"


def check_payment_provider(request: Request) -> str:
    """Report whether the Stripe client was configured at startup (no network call)."""
    if getattr(request.app.state, "payment_provider", None) is None:
        return "not_configured"
    return "configured"


@router.get("/health", response_model=HealthResponse)
async def health(request: Request, response: Response) -> HealthResponse:
    """Liveness + dependency status. 503 if the database is down."""
    services = {
        "database": check_database(),
        "payment_provider": check_payment_provider(request),
    }
    healthy = services["database"] == "up"
    if not healthy:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return HealthResponse(
        status="healthy" if healthy else "degraded",
        version=VERSION,
        services=services,
    )
