"""ResortPay API - FastAPI Application Entry Point."""

import logging
import os
import time
import uuid
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from resortpay_api.billing.errors import ReconciliationError
from resortpay_api.billing.stripe import PaymentProvider, build_payment_provider
from resortpay_api.config.env import is_json_logging_enabled, is_otel_enabled
from resortpay_api.context import event_id_var, reference_var, request_id_var
from resortpay_api.routers import health, payments, webhooks
from resortpay_api.schemas import ProblemDetail
from resortpay_api.utils import configure_json_logging

logger = logging.getLogger(__name__)

API_VERSION = "0.3.0"
PROBLEM_BASE = "https://api.resortpay.example/problems"


def _instance() -> str:
    """Opaque per-request instance identifier for problem+json bodies."""
    request_id = request_id_var.get()
    return f"urn:resortpay:trace:{request_id}" if request_id else f"urn:resortpay:trace:{uuid.uuid4()}"


def _get_title_for_status(status_code: int) -> str:
    """Get human-readable title for HTTP status code."""
    titles = {
        400: "Bad Request",
        401: "Unauthorized",
        403: "Forbidden",
        404: "Not Found",
        405: "Method Not Allowed",
        409: "Conflict",
        422: "Unprocessable Entity",
        500: "Internal Server Error",
        502: "Bad Gateway",
        503: "Service Unavailable",
    }
    return titles.get(status_code, f"HTTP {status_code}")


# ============================================================================
# RFC 9457 Exception Handlers
# ============================================================================


async def reconciliation_error_handler(request: Request, exc: ReconciliationError) -> JSONResponse:
    """Map domain errors (refund conflicts, provider failures) to problem+json.

    5xx responses carry Retry-After: 60.
    """
    problem = ProblemDetail(
        type=f"{PROBLEM_BASE}/{exc.code.lower().replace('_', '-')}",
        title=exc.title,
        status=exc.status_code,
        detail=exc.detail,
        instance=_instance(),
        error_code=exc.code,
    )

    headers = {}
    if exc.status_code >= 500:
        headers["Retry-After"] = "60"
        logger.error(exc.code, extra={"error_code": exc.code, "path": request.url.path})
    else:
        logger.info(exc.code, extra={"error_code": exc.code, "path": request.url.path})

    return JSONResponse(
        status_code=exc.status_code,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
        headers=headers,
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Handle HTTP exceptions with RFC 9457 Problem Details format.

    Returns application/problem+json with top-level RFC 9457 fields.
    No {"detail": ...} wrapper.
    """
    detail_value = exc.detail if exc.detail is not None else _get_title_for_status(exc.status_code)

    problem = ProblemDetail(
        type=f"{PROBLEM_BASE}/http-{exc.status_code}",
        title=_get_title_for_status(exc.status_code),
        status=exc.status_code,
        detail=detail_value,
        instance=_instance(),
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle request validation errors (422) with RFC 9457 Problem Details format."""
    first_error = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(loc) for loc in first_error.get("loc", []))
    msg = first_error.get("msg", "Validation error")

    problem = ProblemDetail(
        type=f"{PROBLEM_BASE}/validation-error",
        title="Request Validation Failed",
        status=422,
        detail=f"Invalid field '{field}': {msg}",
        instance=_instance(),
    )

    return JSONResponse(
        status_code=422,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle uncaught exceptions with RFC 9457 Problem Details format."""
    problem = ProblemDetail(
        type=f"{PROBLEM_BASE}/internal-error",
        title="Internal Server Error",
        status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="An unexpected error occurred. Please try again later.",
        instance=_instance(),
    )

    logger.error(f"Unhandled exception: {type(exc).__name__}", exc_info=True)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
        headers={"Retry-After": "60"},
    )


# ============================================================================
# Application Factory
# ============================================================================


def create_app(
    *,
    payment_provider: Optional[PaymentProvider] = None,
    otel_enabled: Optional[bool] = None,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        payment_provider: Refund client override (tests inject a mock).
            Defaults to a StripeClient when STRIPE_SECRET_KEY is set.
        otel_enabled: Enable OpenTelemetry FastAPI instrumentation.
            Defaults to RESORTPAY_OTEL_ENABLED.

    Returns:
        Configured FastAPI application instance
    """
    if is_json_logging_enabled():
        configure_json_logging(log_level=os.getenv("LOG_LEVEL", "INFO"))

    if otel_enabled is None:
        otel_enabled = is_otel_enabled()

    new_app = FastAPI(
        title="ResortPay API",
        description="Payment-event reconciliation: Stripe webhooks, immutable ledger, staff refunds.",
        version=API_VERSION,
        docs_url="/api-docs",
        redoc_url="/redoc",
    )

    new_app.add_exception_handler(ReconciliationError, reconciliation_error_handler)
    new_app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    new_app.add_exception_handler(RequestValidationError, validation_exception_handler)
    new_app.add_exception_handler(Exception, general_exception_handler)

    new_app.include_router(health.router, tags=["health"])
    new_app.include_router(webhooks.router)
    new_app.include_router(payments.router)

    # Instrument before the other middlewares so spans wrap them
    if otel_enabled:
        from opentelemetry import trace
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

        FastAPIInstrumentor.instrument_app(new_app, tracer_provider=trace.get_tracer_provider())

    new_app.state.otel_enabled = otel_enabled
    new_app.state.payment_provider = (
        payment_provider if payment_provider is not None else build_payment_provider()
    )

    @new_app.middleware("http")
    async def completion_logging_mw(request: Request, call_next):
        """Log HTTP request completion (http.request.completed)."""
        event_id_var.set("")
        reference_var.set("")

        start_time = time.perf_counter()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            logger.info(
                "http.request.completed",
                extra={
                    "event": "http.request.completed",
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": status_code,
                    "duration_ms": round((time.perf_counter() - start_time) * 1000, 2),
                },
            )
            event_id_var.set("")
            reference_var.set("")

    # Request ID middleware (outermost for context propagation)
    @new_app.middleware("http")
    async def request_id_mw(request: Request, call_next):
        """Generate and propagate request_id."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request_id_var.set(request_id)
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    return new_app


app = create_app()
