"""
Payment Order Orchestrator
==========================
Wires the order builder, gateway adapter, webhook verifier and reconciler
behind the three operations the HTTP boundary exposes:

- initiate: build → (dedupe on merchantOrderId) → create gateway order → register
- callback: verify → decode → reconcile (source=WEBHOOK)
- status:   reconciler read, polling the gateway when stale (source=POLL)

All collaborators are injected so tests can substitute a fake gateway client.
"""

import uuid
from typing import Any, Dict, List, Optional

import structlog

from config import Settings
from errors import DuplicateOrderError, GatewayError, InconsistencyError, ValidationError
from gateway.base import IGatewayClient
from schemas.payment_schemas import Order, OrderState, UpdateSource, utcnow
from services.order_builder import OrderRequestBuilder, format_major_units
from services.reconciler import OrderStateReconciler
from services.webhook_verifier import WebhookVerifier
from storage.order_store import (
    InMemoryOrderStore,
    InMemoryTransitionLog,
    IOrderStore,
    ITransitionLog,
)

ORDER_VIEW_EXCLUDE = {"version", "last_source", "last_observed_at", "created_at", "updated_at"}


def order_view(order: Order) -> Dict[str, Any]:
    """Full order as returned to clients, amounts in minor units plus a display value."""
    view = order.model_dump(by_alias=True, mode="json", exclude=ORDER_VIEW_EXCLUDE)
    view["amountDisplay"] = format_major_units(order.amount)
    return view


class PaymentOrchestrator:
    """
    Example:
        orchestrator = PaymentOrchestrator(settings, PhonePeClient(settings))
        await orchestrator.initiate(amount=100, merchant_order_id="ORDER_1")
        await orchestrator.handle_callback(authorization, raw_body)
        await orchestrator.get_status("ORDER_1")
    """

    def __init__(
        self,
        settings: Settings,
        gateway: IGatewayClient,
        store: Optional[IOrderStore] = None,
        transition_log: Optional[ITransitionLog] = None,
    ):
        self.settings = settings
        self.gateway = gateway
        self.store = store or InMemoryOrderStore()
        self.transitions = transition_log or InMemoryTransitionLog()

        self.builder = OrderRequestBuilder(
            default_redirect_url=settings.redirect_url,
            generate_missing_id=settings.auto_merchant_order_id,
        )
        self.verifier = WebhookVerifier(
            gateway,
            username=settings.callback_username,
            password=settings.callback_password,
        )
        self.reconciler = OrderStateReconciler(
            self.store,
            self.transitions,
            gateway,
            freshness_seconds=settings.status_freshness_seconds,
        )

        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: str):
        return self._base_logger.bind(component="orchestrator", correlation_id=correlation_id)

    async def close(self) -> None:
        await self.gateway.close()

    # =========================================================================
    # INITIATE
    # =========================================================================

    async def initiate(
        self,
        amount: Any,
        merchant_order_id: Optional[str] = None,
        redirect_url: Optional[str] = None,
        message: Optional[str] = None,
    ) -> Dict[str, Any]:
        correlation_id = str(uuid.uuid4())
        log = self._get_logger(correlation_id)

        request = self.builder.build(amount, merchant_order_id, redirect_url, message)
        log.info("checkout_initiated",
                 merchant_order_id=request.merchant_order_id,
                 amount=request.amount)

        async with self.store.lock(f"merchant:{request.merchant_order_id}"):
            existing = await self.store.get_by_merchant_order_id(request.merchant_order_id)
            if existing is not None:
                if existing.is_terminal:
                    log.warning("merchant_order_id_reused",
                                merchant_order_id=request.merchant_order_id,
                                state=existing.state.value)
                    raise DuplicateOrderError(
                        f"merchantOrderId {request.merchant_order_id} already finished as {existing.state.value}"
                    )
                if existing.amount != request.amount:
                    raise ValidationError(
                        f"merchantOrderId {request.merchant_order_id} is pending with a different amount"
                    )
                log.info("checkout_reused_pending_order", order_id=existing.order_id)
                return self._initiate_response(existing)

            try:
                result = await self.gateway.create_order(request)
            except GatewayError as e:
                if not e.is_business_decline:
                    log.error("checkout_failed",
                              merchant_order_id=request.merchant_order_id,
                              error_code=e.error_code,
                              detailed_error_code=e.detailed_error_code)
                    raise
                log.warning("checkout_declined",
                            merchant_order_id=request.merchant_order_id,
                            error_code=e.error_code,
                            detailed_error_code=e.detailed_error_code)
                return {
                    "success": False,
                    "merchantOrderId": request.merchant_order_id,
                    "state": OrderState.FAILED.value,
                    "errorCode": e.error_code,
                    "detailedErrorCode": e.detailed_error_code,
                }
            observed_at = utcnow()

            snapshot = Order(
                order_id=result.order_id,
                merchant_order_id=request.merchant_order_id,
                amount=request.amount,
                state=result.state,
                expire_at=result.expire_at,
                redirect_url=result.redirect_url,
            )
            try:
                order = await self.reconciler.apply(
                    result.order_id,
                    result.state,
                    UpdateSource.INITIATE,
                    snapshot=snapshot,
                    observed_at=observed_at,
                    correlation_id=correlation_id,
                )
            except InconsistencyError as e:
                # A callback for this order landed before the pay call returned
                order = e.order

        log.info("order_created", order_id=order.order_id, state=order.state.value, expire_at=order.expire_at)
        return self._initiate_response(order)

    @staticmethod
    def _initiate_response(order: Order) -> Dict[str, Any]:
        return {
            "success": True,
            "orderId": order.order_id,
            "merchantOrderId": order.merchant_order_id,
            "state": order.state.value,
            "expireAt": order.expire_at,
            "redirectUrl": order.redirect_url,
        }

    # =========================================================================
    # CALLBACK
    # =========================================================================

    async def handle_callback(self, authorization: Optional[str], raw_body: Optional[str]) -> Dict[str, Any]:
        correlation_id = str(uuid.uuid4())
        log = self._get_logger(correlation_id)

        notification = self.verifier.handle(authorization, raw_body)
        payload = notification.payload
        log.info("webhook_received",
                 event_name=notification.event_name,
                 event_type=notification.event_type.value,
                 order_id=payload.order_id,
                 merchant_order_id=payload.merchant_order_id)

        if not notification.affects_order:
            log.info("webhook_not_applied", event_name=notification.event_name)
            return {
                "success": False,
                "orderId": payload.order_id,
                "merchantOrderId": payload.merchant_order_id or payload.original_merchant_order_id,
                "state": payload.state,
                "errorCode": payload.error_code,
                "detailedErrorCode": payload.detailed_error_code,
            }

        order_id = payload.order_id or payload.merchant_order_id
        try:
            order = await self.reconciler.apply(
                order_id,
                notification.order_state,
                UpdateSource.WEBHOOK,
                snapshot=payload.to_snapshot(notification.order_state),
                correlation_id=correlation_id,
            )
        except InconsistencyError as e:
            order = e.order

        success = order.state == OrderState.COMPLETED
        response: Dict[str, Any] = {
            "success": success,
            "orderId": order.order_id,
            "merchantOrderId": order.merchant_order_id,
            "state": order.state.value,
            "amount": order.amount,
            "amountDisplay": format_major_units(order.amount),
        }
        if not success:
            response["errorCode"] = order.error_code
            response["detailedErrorCode"] = order.detailed_error_code

        log.info("webhook_processed", order_id=order.order_id, state=order.state.value, success=success)
        return response

    # =========================================================================
    # STATUS
    # =========================================================================

    async def get_status(self, order_id: Optional[str]) -> Dict[str, Any]:
        if not order_id or not order_id.strip():
            raise ValidationError("Missing required field: orderId")

        correlation_id = str(uuid.uuid4())
        order = await self.reconciler.refresh(order_id.strip(), correlation_id=correlation_id)
        return {"success": True, **order_view(order)}

    async def get_history(self, order_id: str) -> List[Dict[str, Any]]:
        records = await self.reconciler.history(order_id)
        return [r.model_dump(mode="json") for r in records]
