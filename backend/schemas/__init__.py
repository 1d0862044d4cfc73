# schemas/__init__.py
# ============================================================================
# PHONEPE ORDER ORCHESTRATOR — SCHEMAS
# ============================================================================

from schemas.payment_schemas import (
    TERMINAL_STATES,
    CreateOrderResult,
    Order,
    OrderRequest,
    OrderState,
    TransitionOutcome,
    TransitionRecord,
    UpdateSource,
    WebhookEventType,
    WebhookNotification,
    WebhookPayload,
)

__all__ = [
    "TERMINAL_STATES",
    "CreateOrderResult",
    "Order",
    "OrderRequest",
    "OrderState",
    "TransitionOutcome",
    "TransitionRecord",
    "UpdateSource",
    "WebhookEventType",
    "WebhookNotification",
    "WebhookPayload",
]
