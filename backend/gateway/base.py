"""
Gateway Client Interface
========================
The orchestrator only talks to the payment gateway through this interface,
so tests (and a future provider) can substitute their own client.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict

from schemas.payment_schemas import CreateOrderResult, Order, OrderRequest


class IGatewayClient(ABC):
    """Payment gateway adapter. One instance is shared by all requests."""

    @abstractmethod
    async def create_order(self, request: OrderRequest) -> CreateOrderResult:
        """Submit a checkout order. Raises GatewayError."""
        pass

    @abstractmethod
    async def get_order_status(self, merchant_order_id: str) -> Order:
        """Fetch the gateway's current view of an order. Raises GatewayError."""
        pass

    @abstractmethod
    def validate_callback(
        self,
        username: str,
        password: str,
        authorization: str,
        raw_body: str,
    ) -> Dict[str, Any]:
        """
        Authenticate a callback against the raw body and return the decoded
        JSON document. Raises AuthError before anything is parsed.
        """
        pass

    async def close(self) -> None:
        pass
