"""Reconciliation error taxonomy.

Each error carries the HTTP mapping used by the API exception handlers
(RFC 9457 problem+json). Errors raised after the ledger write are absorbed
by the pipeline and never reach the provider as a non-2xx.

    InvalidSignature / MalformedEvent  → 400 (provider must not retry)
    WebhookMisconfigured               → 500 (our misconfig; retryable)
    LedgerMutationForbidden            → 500 (never swallowed)
    AlreadyRefunded / RefundNotAllowed → 409
    PaymentNotFound                    → 404
    InvalidRefundAmount                → 422
    RefundProviderError                → 502
"""


class ReconciliationError(Exception):
    """Base exception for payment reconciliation errors."""

    code: str = "RECONCILIATION_ERROR"
    title: str = "Payment reconciliation error"
    status_code: int = 500

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.title
        super().__init__(self.detail)


class InvalidSignature(ReconciliationError):
    """Webhook signature header missing, malformed, stale or mismatched."""

    code = "WEBHOOK_SIGNATURE_INVALID"
    title = "Webhook signature verification failed"
    status_code = 400


class MalformedEvent(ReconciliationError):
    """Signature valid but the body is not a usable provider event."""

    code = "WEBHOOK_INVALID_PAYLOAD"
    title = "Malformed webhook payload"
    status_code = 400


class WebhookMisconfigured(ReconciliationError):
    """Signing secret not configured on our side."""

    code = "WEBHOOK_PROVIDER_MISCONFIG"
    title = "Webhook provider misconfigured"
    status_code = 500


class DuplicateEvent(ReconciliationError):
    """A ledger entry for this webhook id already exists."""

    code = "WEBHOOK_DUPLICATE"
    title = "Webhook already processed"
    status_code = 200

    def __init__(self, webhook_id: str):
        self.webhook_id = webhook_id
        super().__init__(f"Ledger entry already exists for webhook {webhook_id}")


class LedgerMutationForbidden(ReconciliationError):
    """UPDATE or DELETE attempted against an append-only ledger row."""

    code = "LEDGER_MUTATION_FORBIDDEN"
    title = "Ledger entries are immutable"
    status_code = 500


class UnknownReferenceType(ReconciliationError):
    """Event metadata names a reference kind with no registered handler."""

    code = "UNKNOWN_REFERENCE_TYPE"
    title = "Unknown reference type"
    status_code = 422

    def __init__(self, reference_type: str):
        self.reference_type = reference_type
        super().__init__(f"No handler registered for reference type {reference_type!r}")


class ReferenceUpdateFailed(ReconciliationError):
    """Reference row missing or its status update failed."""

    code = "REFERENCE_UPDATE_FAILED"
    title = "Reference payment status update failed"
    status_code = 500


class SideEffectFailed(ReconciliationError):
    """A best-effort side effect (loyalty accrual) failed."""

    code = "SIDE_EFFECT_FAILED"
    title = "Side effect failed"
    status_code = 500

    def __init__(self, effect: str, detail: str | None = None):
        self.effect = effect
        super().__init__(detail or f"Side effect {effect!r} failed")


class AlreadyRefunded(ReconciliationError):
    """Refund requested for a payment/reference that is already refunded."""

    code = "ALREADY_REFUNDED"
    title = "Payment already refunded"
    status_code = 409


RefundAlreadyApplied = AlreadyRefunded


class RefundNotAllowed(ReconciliationError):
    """Payment is not in a refundable state (only completed payments are)."""

    code = "REFUND_NOT_ALLOWED"
    title = "Payment cannot be refunded"
    status_code = 409


class PaymentNotFound(ReconciliationError):
    code = "PAYMENT_NOT_FOUND"
    title = "Payment not found"
    status_code = 404


class InvalidRefundAmount(ReconciliationError):
    code = "INVALID_REFUND_AMOUNT"
    title = "Invalid refund amount"
    status_code = 422


class RefundProviderError(ReconciliationError):
    """Provider rejected or failed the refund call; no local state changed."""

    code = "REFUND_PROVIDER_ERROR"
    title = "Payment provider refund failed"
    status_code = 502
