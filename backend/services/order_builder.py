# services/order_builder.py
# ============================================================================
# PHONEPE ORDER ORCHESTRATOR — ORDER REQUEST BUILDER
# ============================================================================
# Validates and normalizes a create-order request into the gateway's shape.
#
# AMOUNT CONTRACT:
# - Callers submit amounts in major units (rupees)
# - The gateway works in minor units (paisa): minor = major * 100, rounded
#   half-up to a whole paisa using decimal arithmetic
# - Every place that displays an amount goes back through to_major_units()
#
# Pure: no network or storage access.
# ============================================================================

import re
import secrets
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from errors import ValidationError
from schemas.payment_schemas import OrderRequest

MINOR_UNITS_PER_MAJOR = 100
DEFAULT_MESSAGE = "Payment for order"
MERCHANT_ORDER_ID_MAX_LENGTH = 63
MERCHANT_ORDER_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
REDIRECT_ORDER_PARAM = "orderId"


# =============================================================================
# AMOUNT CONVERSION
# =============================================================================

def to_minor_units(amount: Any) -> int:
    """Major units (int, float, Decimal or numeric string) to minor units."""
    if amount is None or amount == "":
        raise ValidationError("Missing required field: amount")
    if isinstance(amount, bool) or not isinstance(amount, (int, float, Decimal, str)):
        raise ValidationError("amount must be a number")

    try:
        major = Decimal(str(amount).strip())
    except InvalidOperation:
        raise ValidationError("amount must be a number") from None
    if not major.is_finite():
        raise ValidationError("amount must be a finite number")
    if major <= 0:
        raise ValidationError("amount must be greater than zero")

    minor = int((major * MINOR_UNITS_PER_MAJOR).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if minor < 1:
        raise ValidationError("amount is smaller than the minimum chargeable unit")
    return minor


def to_major_units(minor: int) -> Decimal:
    return (Decimal(minor) / MINOR_UNITS_PER_MAJOR).quantize(Decimal("0.01"))


def format_major_units(minor: Optional[int]) -> Optional[str]:
    if minor is None:
        return None
    return f"{to_major_units(minor):.2f}"


# =============================================================================
# IDENTIFIERS & URLS
# =============================================================================

def generate_merchant_order_id() -> str:
    """Time-based id with a random suffix. Unlikely to collide, not guaranteed."""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    return f"ORD_{stamp}_{secrets.token_hex(6).upper()}"


def validate_merchant_order_id(merchant_order_id: str) -> str:
    merchant_order_id = merchant_order_id.strip()
    if not merchant_order_id:
        raise ValidationError("Missing required field: merchantOrderId")
    if len(merchant_order_id) > MERCHANT_ORDER_ID_MAX_LENGTH:
        raise ValidationError(
            f"merchantOrderId must be at most {MERCHANT_ORDER_ID_MAX_LENGTH} characters"
        )
    if not MERCHANT_ORDER_ID_PATTERN.match(merchant_order_id):
        raise ValidationError("merchantOrderId may only contain letters, digits, '_' and '-'")
    return merchant_order_id


def append_order_param(redirect_url: str, merchant_order_id: str) -> str:
    """Add ?orderId=<merchantOrderId> so the landing page can recover context."""
    parts = urlsplit(redirect_url.strip())
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ValidationError("redirectUrl must be an absolute http(s) URL")

    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != REDIRECT_ORDER_PARAM]
    query.append((REDIRECT_ORDER_PARAM, merchant_order_id))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


# =============================================================================
# BUILDER
# =============================================================================

class OrderRequestBuilder:
    """
    Turns caller input into an OrderRequest or raises ValidationError.

    Example:
        builder = OrderRequestBuilder(default_redirect_url="https://shop.example/payment/result")
        request = builder.build(amount=100, merchant_order_id="ORDER_1")
        request.amount  # 10000
    """

    def __init__(self, default_redirect_url: str = "", generate_missing_id: bool = False):
        self.default_redirect_url = default_redirect_url
        self.generate_missing_id = generate_missing_id

    def build(
        self,
        amount: Any,
        merchant_order_id: Optional[str] = None,
        redirect_url: Optional[str] = None,
        message: Optional[str] = None,
    ) -> OrderRequest:
        minor_amount = to_minor_units(amount)

        if merchant_order_id is None or not str(merchant_order_id).strip():
            if not self.generate_missing_id:
                raise ValidationError("Missing required field: merchantOrderId")
            merchant_order_id = generate_merchant_order_id()
        merchant_order_id = validate_merchant_order_id(str(merchant_order_id))

        base_redirect = redirect_url or self.default_redirect_url
        if not base_redirect:
            raise ValidationError("Missing redirectUrl and no default redirect is configured")

        return OrderRequest(
            amount=minor_amount,
            merchant_order_id=merchant_order_id,
            redirect_url=append_order_param(base_redirect, merchant_order_id),
            message=(message or "").strip() or DEFAULT_MESSAGE,
        )
