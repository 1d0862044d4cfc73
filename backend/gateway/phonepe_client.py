# gateway/phonepe_client.py
# ============================================================================
# PHONEPE ORDER ORCHESTRATOR — PHONEPE STANDARD CHECKOUT CLIENT
# ============================================================================
# Gateway Client Adapter backed by the PhonePe Standard Checkout v2 REST API.
#
# ARCHITECTURE:
# - One pooled httpx.AsyncClient per process, built from immutable settings
# - OAuth client-credentials token cached until shortly before it expires
# - Gateway error codes surfaced verbatim through GatewayError
#
# FAILURE HANDLING:
# - Transport errors on status queries are retried up to max_retries
# - Order creation is never retried (a retry could create a second order)
# ============================================================================

import asyncio
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
import structlog

from config import GatewayEnvironment, Settings
from errors import AuthError, DecodeError, GatewayError
from gateway.base import IGatewayClient
from schemas.payment_schemas import CreateOrderResult, Order, OrderRequest, OrderState

logger = structlog.get_logger(component="phonepe_client")

TOKEN_REFRESH_MARGIN_SECONDS = 60
PAY_PATH = "/checkout/v2/pay"
STATUS_PATH = "/checkout/v2/order/{merchant_order_id}/status"
TOKEN_PATH = "/v1/oauth/token"


# ============================================================================
# SECTION 1: ENDPOINTS
# ============================================================================

@dataclass(frozen=True)
class PhonePeHosts:
    auth_base_url: str
    pg_base_url: str

    @classmethod
    def for_environment(cls, environment: GatewayEnvironment) -> "PhonePeHosts":
        if environment == GatewayEnvironment.PRODUCTION:
            return cls(
                auth_base_url="https://api.phonepe.com/apis/identity-manager",
                pg_base_url="https://api.phonepe.com/apis/pg",
            )
        return cls(
            auth_base_url="https://api-preprod.phonepe.com/apis/pg-sandbox",
            pg_base_url="https://api-preprod.phonepe.com/apis/pg-sandbox",
        )


# ============================================================================
# SECTION 2: CALLBACK AUTHORIZATION
# ============================================================================

def callback_authorization(username: str, password: str) -> str:
    """Value PhonePe sends in the Authorization header: sha256("user:pass") hex."""
    return hashlib.sha256(f"{username}:{password}".encode()).hexdigest()


def verify_callback_authorization(username: str, password: str, authorization: str) -> None:
    expected = callback_authorization(username, password).encode()
    # Header values arrive latin-1 decoded; compare bytes so non-ASCII input is a mismatch
    received = authorization.strip().lower().encode("utf-8", "surrogateescape")
    if not hmac.compare_digest(expected, received):
        raise AuthError("Authorization header does not match callback credentials")


def decode_callback_body(raw_body: str) -> Dict[str, Any]:
    try:
        document = json.loads(raw_body)
    except json.JSONDecodeError as e:
        raise DecodeError(f"Callback body is not valid JSON: {e.msg}") from None
    if not isinstance(document, dict):
        raise DecodeError("Callback body must be a JSON object")
    return document


# ============================================================================
# SECTION 3: CLIENT
# ============================================================================

class PhonePeClient(IGatewayClient):
    """
    PhonePe Standard Checkout client.

    Example:
        client = PhonePeClient(Settings.from_env())
        result = await client.create_order(order_request)
        order = await client.get_order_status(order_request.merchant_order_id)
        await client.close()
    """

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.hosts = PhonePeHosts.for_environment(settings.environment)
        self._client = httpx.AsyncClient(
            timeout=settings.timeout_seconds,
            transport=transport,
            headers={"Accept": "application/json"},
        )
        self._token: Optional[str] = None
        self._token_type = "O-Bearer"
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    async def close(self) -> None:
        await self._client.aclose()

    # =========================================================================
    # AUTH TOKEN
    # =========================================================================

    def _token_valid(self) -> bool:
        return self._token is not None and time.time() < self._token_expires_at - TOKEN_REFRESH_MARGIN_SECONDS

    async def _authorization_header(self) -> str:
        if not self._token_valid():
            async with self._token_lock:
                if not self._token_valid():
                    await self._fetch_token()
        return f"{self._token_type} {self._token}"

    async def _fetch_token(self) -> None:
        if not self.settings.has_gateway_credentials:
            raise GatewayError("Gateway credentials are not configured", error_code="INVALID_CREDENTIALS")

        try:
            response = await self._client.post(
                self.hosts.auth_base_url + TOKEN_PATH,
                data={
                    "client_id": self.settings.client_id,
                    "client_version": str(self.settings.client_version),
                    "client_secret": self.settings.client_secret,
                    "grant_type": "client_credentials",
                },
            )
        except httpx.HTTPError as e:
            logger.error("token_request_failed", error=str(e), error_type=type(e).__name__)
            raise GatewayError("Could not reach the payment gateway", error_code="NETWORK_ERROR") from e

        data = self._parse_response(response)
        token = data.get("access_token")
        if not token:
            raise GatewayError("Token response missing access_token", error_code="INVALID_RESPONSE")

        self._token = token
        self._token_type = data.get("token_type") or "O-Bearer"
        expires_at = data.get("expires_at")
        if expires_at is None and data.get("expires_in") is not None:
            expires_at = time.time() + float(data["expires_in"])
        self._token_expires_at = float(expires_at or 0)
        logger.info("token_refreshed", expires_at=self._token_expires_at)

    def _invalidate_token(self) -> None:
        self._token = None
        self._token_expires_at = 0.0

    # =========================================================================
    # RESPONSE HANDLING
    # =========================================================================

    def _parse_response(self, response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            data = None

        if response.is_success:
            if not isinstance(data, dict):
                raise GatewayError(
                    "Gateway returned a non-JSON response",
                    error_code="INVALID_RESPONSE",
                    status_code=response.status_code,
                )
            return data

        body = data if isinstance(data, dict) else {}
        if response.status_code in (401, 403):
            error_code = body.get("code") or body.get("errorCode") or "INVALID_CREDENTIALS"
        else:
            error_code = body.get("code") or body.get("errorCode") or f"HTTP_{response.status_code}"
        detailed = body.get("detailedErrorCode") or (body.get("context") or {}).get("detailedErrorCode")
        message = body.get("message") or f"Gateway responded with HTTP {response.status_code}"

        logger.warning(
            "gateway_error_response",
            status_code=response.status_code,
            error_code=error_code,
            detailed_error_code=detailed,
        )
        raise GatewayError(
            message,
            error_code=error_code,
            detailed_error_code=detailed,
            status_code=response.status_code,
        )

    async def _send(self, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        headers = {"Authorization": await self._authorization_header()}
        response = await self._client.request(method, url, headers=headers, **kwargs)
        if response.status_code == 401:
            # Token revoked server-side; refresh once
            self._invalidate_token()
            headers = {"Authorization": await self._authorization_header()}
            response = await self._client.request(method, url, headers=headers, **kwargs)
        return self._parse_response(response)

    # =========================================================================
    # ORDER OPERATIONS
    # =========================================================================

    async def create_order(self, request: OrderRequest) -> CreateOrderResult:
        body = {
            "merchantOrderId": request.merchant_order_id,
            "amount": request.amount,
            "paymentFlow": {
                "type": "PG_CHECKOUT",
                "message": request.message,
                "merchantUrls": {"redirectUrl": request.redirect_url},
            },
        }

        try:
            data = await self._send("POST", self.hosts.pg_base_url + PAY_PATH, json=body)
        except httpx.HTTPError as e:
            logger.error(
                "create_order_network_error",
                merchant_order_id=request.merchant_order_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise GatewayError("Could not reach the payment gateway", error_code="NETWORK_ERROR") from e

        state = OrderState.parse(data.get("state"))
        if not data.get("orderId") or state is None:
            raise GatewayError("Pay response missing orderId or state", error_code="INVALID_RESPONSE")

        logger.info(
            "gateway_order_created",
            merchant_order_id=request.merchant_order_id,
            order_id=data["orderId"],
            state=state.value,
        )
        return CreateOrderResult(
            order_id=data["orderId"],
            state=state,
            expire_at=data.get("expireAt"),
            redirect_url=data.get("redirectUrl"),
        )

    async def get_order_status(self, merchant_order_id: str) -> Order:
        url = self.hosts.pg_base_url + STATUS_PATH.format(merchant_order_id=merchant_order_id)
        attempts = self.settings.max_retries + 1

        for attempt in range(1, attempts + 1):
            try:
                data = await self._send("GET", url, params={"details": "false"})
                break
            except httpx.HTTPError as e:
                logger.warning(
                    "status_query_network_error",
                    merchant_order_id=merchant_order_id,
                    attempt=attempt,
                    error=str(e),
                )
                if attempt == attempts:
                    raise GatewayError(
                        "Could not reach the payment gateway", error_code="NETWORK_ERROR"
                    ) from e

        state = OrderState.parse(data.get("state"))
        if not data.get("orderId") or state is None:
            raise GatewayError("Status response missing orderId or state", error_code="INVALID_RESPONSE")

        return Order(
            order_id=data["orderId"],
            merchant_order_id=data.get("merchantOrderId") or merchant_order_id,
            amount=data.get("amount"),
            state=state,
            expire_at=data.get("expireAt"),
            error_code=data.get("errorCode"),
            detailed_error_code=data.get("detailedErrorCode"),
            payment_details=data.get("paymentDetails"),
            payable_amount=data.get("payableAmount"),
            fee_amount=data.get("feeAmount"),
            merchant_id=data.get("merchantId"),
        )

    # =========================================================================
    # CALLBACKS
    # =========================================================================

    def validate_callback(
        self,
        username: str,
        password: str,
        authorization: str,
        raw_body: str,
    ) -> Dict[str, Any]:
        # Authenticate first; the body is not parsed until this passes
        verify_callback_authorization(username, password, authorization)
        return decode_callback_body(raw_body)
