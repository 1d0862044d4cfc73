"""
Webhook Verifier & Decoder
==========================
Authenticates an inbound gateway callback and decodes it into a
WebhookNotification.

Order of operations is strict:
1. Reject calls missing the Authorization header or the body
2. Verify the header against the RAW body string (never a re-serialized copy)
3. Only then parse and classify the event

Event names are allow-listed. Two different success events exist
(checkout.order.completed and pg.order.completed) and both count as one
logical success; anything not listed is logged and never treated as a
state update.
"""

from typing import Any, Dict, NamedTuple, Optional

import structlog
from pydantic import ValidationError as PydanticValidationError

from errors import AuthError, DecodeError, MissingCallbackDataError
from gateway.base import IGatewayClient
from schemas.payment_schemas import (
    OrderState,
    WebhookEventType,
    WebhookNotification,
    WebhookPayload,
)

logger = structlog.get_logger(component="webhook_verifier")


class EventClass(NamedTuple):
    event_type: WebhookEventType
    affects_order: bool


EVENT_CLASSIFICATION: Dict[str, EventClass] = {
    # Success
    "checkout.order.completed": EventClass(WebhookEventType.ORDER_COMPLETED, True),
    "pg.order.completed": EventClass(WebhookEventType.ORDER_COMPLETED, True),
    # Failures
    "checkout.order.failed": EventClass(WebhookEventType.OTHER, True),
    "pg.order.failed": EventClass(WebhookEventType.OTHER, True),
    "checkout.transaction.attempt.failed": EventClass(WebhookEventType.OTHER, True),
    "pg.transaction.attempt.failed": EventClass(WebhookEventType.OTHER, True),
    # Refunds report the refund's state, not the order's
    "pg.refund.accepted": EventClass(WebhookEventType.OTHER, False),
    "pg.refund.completed": EventClass(WebhookEventType.OTHER, False),
    "pg.refund.failed": EventClass(WebhookEventType.OTHER, False),
}

UNRECOGNIZED = EventClass(WebhookEventType.OTHER, False)


def resolve_order_state(event_class: EventClass, reported_state: Optional[str]) -> Optional[OrderState]:
    """The gateway's own state field wins over the event-name classification."""
    if not event_class.affects_order:
        return None
    state = OrderState.parse(reported_state)
    if state is not None:
        return state
    if event_class.event_type == WebhookEventType.ORDER_COMPLETED:
        return OrderState.COMPLETED
    return OrderState.PENDING


class WebhookVerifier:
    """
    Example:
        verifier = WebhookVerifier(gateway, username="merchant", password="secret")
        notification = verifier.handle(request.headers["authorization"], raw_body)
    """

    def __init__(self, gateway: IGatewayClient, username: str, password: str):
        self._gateway = gateway
        self._username = username
        self._password = password

    def handle(self, authorization: Optional[str], raw_body: Optional[str]) -> WebhookNotification:
        if not authorization or not raw_body:
            raise MissingCallbackDataError()

        # sha256(":") is public; no callback is trusted without credentials
        if not self._username or not self._password:
            logger.error("webhook_rejected_no_credentials", body_length=len(raw_body))
            raise AuthError("Callback credentials are not configured")

        try:
            document = self._gateway.validate_callback(
                self._username, self._password, authorization, raw_body
            )
        except AuthError:
            logger.warning("webhook_auth_failed", reason="possible_spoofing", body_length=len(raw_body))
            raise

        return self.decode(document)

    def decode(self, document: Dict[str, Any]) -> WebhookNotification:
        event_name = document.get("event") or document.get("type")
        if not isinstance(event_name, str) or not event_name:
            raise DecodeError("Callback is missing the event name")

        raw_payload = document.get("payload")
        if not isinstance(raw_payload, dict):
            raise DecodeError("Callback is missing the payload object")

        try:
            payload = WebhookPayload.model_validate(raw_payload)
        except PydanticValidationError as e:
            raise DecodeError(f"Callback payload has invalid fields: {e.error_count()} error(s)") from None
        if not payload.order_id and not payload.merchant_order_id:
            raise DecodeError("Callback payload has neither orderId nor merchantOrderId")

        # The "type" field uses CHECKOUT_ORDER_COMPLETED for checkout.order.completed
        event_class = EVENT_CLASSIFICATION.get(event_name.strip().lower().replace("_", "."))
        if event_class is None:
            logger.warning("webhook_event_unrecognized", event_name=event_name, order_id=payload.order_id)
            event_class = UNRECOGNIZED

        order_state = resolve_order_state(event_class, payload.state)
        if (
            order_state is not None
            and event_class.event_type == WebhookEventType.ORDER_COMPLETED
            and order_state != OrderState.COMPLETED
        ):
            logger.warning(
                "webhook_state_disagrees_with_event",
                event_name=event_name,
                reported_state=payload.state,
                order_id=payload.order_id,
            )

        return WebhookNotification(
            event_type=event_class.event_type,
            event_name=event_name,
            order_state=order_state,
            payload=payload,
        )
