# schemas/payment_errors.py
# ============================================================================
# DEAL ROOM PAYMENTS - ERROR TAXONOMY
# ============================================================================
# Every error carries a public message (safe to return to a client) and a
# private context dict that is only ever logged server-side.
# ============================================================================

from typing import Dict, Any, Optional


class PaymentError(Exception):
    """Base class. Unexpected failures map to the ``internal`` category."""

    category: str = "internal"
    http_status: int = 500
    public_message: str = "Internal server error"

    def __init__(
        self,
        message: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message or self.public_message
        self.context = context or {}
        super().__init__(self.message)

    def to_response(self) -> Dict[str, Any]:
        return {"success": False, "error": self.message}


class PaymentValidationError(PaymentError):
    category = "validation"
    http_status = 400
    public_message = "Invalid request data"


class GatewayError(PaymentError):
    """Processor rejected the request or could not be reached."""

    category = "gateway"
    http_status = 502
    public_message = "Failed to create payment order"


class GatewayConfigurationError(GatewayError):
    public_message = "Payment provider is not configured"


class WebhookVerificationError(PaymentError):
    category = "webhook_verification"
    http_status = 401
    public_message = "Invalid webhook signature"


class TransactionNotFoundError(PaymentError):
    category = "not_found"
    http_status = 404
    public_message = "Payment not found"


class PaymentAccessDeniedError(PaymentError):
    category = "forbidden"
    http_status = 403
    public_message = "Access denied"


class DuplicateSubscriptionError(PaymentError):
    """Raised by a repository when a subscription already references a transaction."""

    category = "conflict"
    http_status = 409
    public_message = "Subscription already exists"
