"""
Orchestrator Errors
===================
Every error that can cross the HTTP boundary carries a stable machine-readable
``kind``, the HTTP status it maps to, and a human-readable ``detail``.

    PaymentOrchestratorError
    ├── ValidationError            (400)
    │   └── DuplicateOrderError    (400)
    ├── MissingCallbackDataError   (400)
    ├── DecodeError                (400)
    ├── AuthError                  (401)
    ├── OrderNotFoundError         (404)
    ├── GatewayError               (500, or 200 for a business decline)
    └── InconsistencyError         (never surfaced over HTTP)
"""

from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from schemas.payment_schemas import Order


class PaymentOrchestratorError(Exception):
    kind: str = "INTERNAL_ERROR"
    http_status: int = 500
    message: str = "Internal server error"

    def __init__(self, detail: str = "", **context: Any):
        super().__init__(detail or self.message)
        self.detail = detail or self.message
        self.context = context

    def to_response(self) -> dict:
        return {"error": self.message, "kind": self.kind, "details": self.detail}


class ValidationError(PaymentOrchestratorError):
    """Bad caller input. Never retried."""
    kind = "VALIDATION_ERROR"
    http_status = 400
    message = "Invalid request"


class DuplicateOrderError(ValidationError):
    """merchantOrderId already belongs to a finished order."""
    kind = "DUPLICATE_ORDER"
    message = "Merchant order id already used"


class MissingCallbackDataError(PaymentOrchestratorError):
    kind = "MISSING_CALLBACK_DATA"
    http_status = 400
    message = "Missing authorization header or response body"


class DecodeError(PaymentOrchestratorError):
    kind = "DECODE_ERROR"
    http_status = 400
    message = "Undecodable callback payload"


class AuthError(PaymentOrchestratorError):
    kind = "AUTH_ERROR"
    http_status = 401
    message = "Callback verification failed"


class OrderNotFoundError(PaymentOrchestratorError):
    kind = "ORDER_NOT_FOUND"
    http_status = 404
    message = "Order not found"


class GatewayError(PaymentOrchestratorError):
    """
    Failure reported by (or while talking to) the payment gateway.
    ``error_code`` and ``detailed_error_code`` are the gateway's own values.
    """
    kind = "GATEWAY_ERROR"
    http_status = 500
    message = "Payment gateway error"

    def __init__(
        self,
        detail: str = "",
        error_code: Optional[str] = None,
        detailed_error_code: Optional[str] = None,
        status_code: Optional[int] = None,
        **context: Any,
    ):
        super().__init__(detail, **context)
        self.error_code = error_code
        self.detailed_error_code = detailed_error_code
        self.status_code = status_code

    @property
    def is_business_decline(self) -> bool:
        # 4xx from the gateway that is not an auth problem
        return (
            self.status_code is not None
            and 400 <= self.status_code < 500
            and self.status_code not in (401, 403, 404)
            and self.error_code not in (None, "NETWORK_ERROR", "INVALID_CREDENTIALS")
        )

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404

    def to_response(self) -> dict:
        body = super().to_response()
        body["errorCode"] = self.error_code
        body["detailedErrorCode"] = self.detailed_error_code
        return body


class InconsistencyError(PaymentOrchestratorError):
    """
    An update tried to move an order out of a terminal state.
    ``order`` is the stored order, which keeps its earliest terminal state.
    """
    kind = "STATE_INCONSISTENCY"
    http_status = 409
    message = "Conflicting order state"

    def __init__(self, detail: str, order: "Order", incoming_state: Any = None):
        super().__init__(detail)
        self.order = order
        self.incoming_state = incoming_state
