import json
from typing import Any, Dict, List, Optional, Tuple

import pytest

from config import Settings
from errors import GatewayError
from gateway.base import IGatewayClient
from gateway.phonepe_client import (
    callback_authorization,
    decode_callback_body,
    verify_callback_authorization,
)
from schemas.payment_schemas import CreateOrderResult, Order, OrderRequest, OrderState
from services.payment_orchestrator import PaymentOrchestrator

CALLBACK_USERNAME = "merchant"
CALLBACK_PASSWORD = "s3cret"
REDIRECT_URL = "https://shop.example/payment/result"
EXPIRE_AT = 1_900_000_000_000


class FakeGatewayClient(IGatewayClient):
    """In-memory gateway: remembers the orders it created and answers status queries from them."""

    def __init__(self):
        self.created: List[OrderRequest] = []
        self.status_queries: List[str] = []
        self.remote: Dict[str, Order] = {}
        self.create_error: Optional[GatewayError] = None
        self.status_error: Optional[GatewayError] = None
        self.next_order_id: Optional[str] = None
        self.callback_validations = 0
        self.closed = False

    async def create_order(self, request: OrderRequest) -> CreateOrderResult:
        self.created.append(request)
        if self.create_error is not None:
            raise self.create_error

        order_id = self.next_order_id or f"OMO{len(self.created):04d}"
        self.next_order_id = None
        redirect = f"https://mercury-uat.phonepe.com/transact/{order_id}"
        self.remote[request.merchant_order_id] = Order(
            order_id=order_id,
            merchant_order_id=request.merchant_order_id,
            amount=request.amount,
            state=OrderState.PENDING,
            expire_at=EXPIRE_AT,
        )
        return CreateOrderResult(
            order_id=order_id,
            state=OrderState.PENDING,
            expire_at=EXPIRE_AT,
            redirect_url=redirect,
        )

    async def get_order_status(self, merchant_order_id: str) -> Order:
        self.status_queries.append(merchant_order_id)
        if self.status_error is not None:
            raise self.status_error
        order = self.remote.get(merchant_order_id)
        if order is None:
            raise GatewayError("Order not found", error_code="NOT_FOUND", status_code=404)
        return order

    def set_remote_state(self, merchant_order_id: str, state: OrderState, **fields: Any) -> None:
        self.remote[merchant_order_id] = self.remote[merchant_order_id].model_copy(
            update={"state": state, **fields}
        )

    def validate_callback(self, username, password, authorization, raw_body):
        self.callback_validations += 1
        verify_callback_authorization(username, password, authorization)
        return decode_callback_body(raw_body)

    async def close(self) -> None:
        self.closed = True


def signed_callback(
    event: str,
    payload: Dict[str, Any],
    username: str = CALLBACK_USERNAME,
    password: str = CALLBACK_PASSWORD,
) -> Tuple[str, str]:
    """(Authorization header, raw body) as the gateway would send them."""
    raw_body = json.dumps({"event": event, "payload": payload})
    return callback_authorization(username, password), raw_body


@pytest.fixture
def settings() -> Settings:
    return Settings(
        client_id="TEST_CLIENT",
        client_secret="TEST_SECRET",
        redirect_url=REDIRECT_URL,
        callback_username=CALLBACK_USERNAME,
        callback_password=CALLBACK_PASSWORD,
        log_format="console",
    )


@pytest.fixture
def gateway() -> FakeGatewayClient:
    return FakeGatewayClient()


@pytest.fixture
def orchestrator(settings, gateway) -> PaymentOrchestrator:
    return PaymentOrchestrator(settings, gateway)
