# services/__init__.py
# ============================================================================
# PHONEPE ORDER ORCHESTRATOR — SERVICES MODULE
# ============================================================================
# Order building, webhook verification, reconciliation and orchestration
# ============================================================================

from services.order_builder import (
    OrderRequestBuilder,
    format_major_units,
    to_major_units,
    to_minor_units,
)

from services.webhook_verifier import WebhookVerifier

from services.reconciler import OrderStateReconciler

from services.payment_orchestrator import PaymentOrchestrator, order_view

__all__ = [
    # Builder
    "OrderRequestBuilder",
    "format_major_units",
    "to_major_units",
    "to_minor_units",
    # Webhooks
    "WebhookVerifier",
    # Reconciliation
    "OrderStateReconciler",
    # Orchestration
    "PaymentOrchestrator",
    "order_view",
]
