# schemas/payment_schemas.py
# ============================================================================
# PHONEPE ORDER ORCHESTRATOR — PAYMENT SCHEMAS
# ============================================================================
# Domain models shared by the builder, gateway adapter, webhook verifier,
# reconciler and HTTP boundary. Wire names are camelCase (the gateway's and
# the frontend's convention); Python attributes are snake_case.
# ============================================================================

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# SECTION 1: ENUMS
# ============================================================================

class OrderState(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @classmethod
    def parse(cls, value: Any) -> Optional["OrderState"]:
        """Gateway state string to OrderState, None when unrecognized."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().upper())
        except ValueError:
            return None


TERMINAL_STATES = frozenset({OrderState.COMPLETED, OrderState.FAILED, OrderState.EXPIRED})


class UpdateSource(str, Enum):
    """Where an order state observation came from."""
    INITIATE = "INITIATE"
    WEBHOOK = "WEBHOOK"
    POLL = "POLL"


class WebhookEventType(str, Enum):
    ORDER_COMPLETED = "ORDER_COMPLETED"
    OTHER = "OTHER"


class TransitionOutcome(str, Enum):
    CREATED = "created"
    APPLIED = "applied"
    REFRESHED = "refreshed"
    NOOP = "noop"
    STALE = "stale"
    INCONSISTENT = "inconsistent"


# ============================================================================
# SECTION 2: DOMAIN MODELS
# ============================================================================

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class OrderRequest(CamelModel):
    """Normalized create-order request, amount in minor units (paisa)."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    amount: int = Field(gt=0)
    merchant_order_id: str = Field(min_length=1, max_length=63)
    redirect_url: str
    message: str


class CreateOrderResult(CamelModel):
    order_id: str
    state: OrderState
    expire_at: Optional[int] = None
    redirect_url: Optional[str] = None


class Order(CamelModel):
    """Canonical order view. ``state`` is only written by the reconciler."""
    order_id: str
    merchant_order_id: Optional[str] = None
    amount: Optional[int] = None
    state: OrderState = OrderState.PENDING
    expire_at: Optional[int] = None
    error_code: Optional[str] = None
    detailed_error_code: Optional[str] = None
    payment_details: Optional[List[Dict[str, Any]]] = None

    # Extra fields reported by the status API
    payable_amount: Optional[int] = None
    fee_amount: Optional[int] = None
    merchant_id: Optional[str] = None
    redirect_url: Optional[str] = None

    # Bookkeeping
    version: int = 1
    last_source: Optional[UpdateSource] = None
    last_observed_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def transition_to(
        self,
        new_state: OrderState,
        source: UpdateSource,
        observed_at: datetime,
        snapshot: Optional["Order"] = None,
    ) -> "Order":
        """Immutable update: returns a new version, merging gateway-reported fields."""
        update: Dict[str, Any] = {
            "state": new_state,
            "last_source": source,
            "last_observed_at": observed_at,
            "updated_at": utcnow(),
            "version": self.version + 1,
        }
        if snapshot is not None:
            for name in MERGEABLE_FIELDS:
                value = getattr(snapshot, name)
                if value is not None:
                    update[name] = value
        return self.model_copy(update=update)


# orderId is immutable; state goes through transition_to
MERGEABLE_FIELDS = (
    "merchant_order_id",
    "amount",
    "expire_at",
    "error_code",
    "detailed_error_code",
    "payment_details",
    "payable_amount",
    "fee_amount",
    "merchant_id",
    "redirect_url",
)


class WebhookPayload(CamelModel):
    """Order-shaped subset delivered in a callback."""
    order_id: Optional[str] = None
    merchant_order_id: Optional[str] = None
    original_merchant_order_id: Optional[str] = None
    state: Optional[str] = None
    amount: Optional[int] = None
    expire_at: Optional[int] = None
    error_code: Optional[str] = None
    detailed_error_code: Optional[str] = None
    payment_details: Optional[List[Dict[str, Any]]] = None

    def to_snapshot(self, state: OrderState) -> Order:
        return Order(
            order_id=self.order_id or self.merchant_order_id or "",
            merchant_order_id=self.merchant_order_id,
            amount=self.amount,
            state=state,
            expire_at=self.expire_at,
            error_code=self.error_code,
            detailed_error_code=self.detailed_error_code,
            payment_details=self.payment_details,
        )


class WebhookNotification(CamelModel):
    """
    Decoded, verified callback. Ephemeral: only used to update an Order.
    ``order_state`` is None when the event does not describe an order state.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    event_type: WebhookEventType
    event_name: str
    order_state: Optional[OrderState] = None
    payload: WebhookPayload

    @property
    def affects_order(self) -> bool:
        return self.order_state is not None


class TransitionRecord(BaseModel):
    """Append-only history entry for one reconciliation decision"""
    order_id: str
    previous_state: Optional[OrderState] = None
    incoming_state: OrderState
    resulting_state: OrderState
    source: UpdateSource
    outcome: TransitionOutcome
    observed_at: datetime
    correlation_id: Optional[str] = None
    recorded_at: datetime = Field(default_factory=utcnow)


# ============================================================================
# SECTION 3: HTTP REQUEST MODELS
# ============================================================================

class InitiatePaymentRequest(CamelModel):
    """Shape check only; the order builder owns value validation."""
    amount: Any = None
    merchant_order_id: Optional[str] = None
    redirect_url: Optional[str] = None
    message: Optional[str] = None


class StatusRequest(CamelModel):
    order_id: Optional[str] = None
