"""
PhonePe Order Orchestrator Server
=================================
FastAPI boundary over the payment orchestrator:
- POST /api/phonepe/initiate   create a checkout order
- POST /api/phonepe/callback   gateway webhook (raw body + Authorization)
- POST /api/phonepe/status     current order state
- GET  /api/phonepe/orders/{order_id}/history   reconciliation history
- GET  /health

The boundary only adapts HTTP to orchestrator calls; it never mutates
order data itself.

pip install fastapi uvicorn pydantic httpx structlog
"""

import asyncio
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

import structlog
import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import Settings, configure_logging
from errors import DecodeError, PaymentOrchestratorError
from gateway.phonepe_client import PhonePeClient
from schemas.payment_schemas import InitiatePaymentRequest, StatusRequest
from services.payment_orchestrator import PaymentOrchestrator
from tasks.status_poller import StatusPoller

logger = structlog.get_logger(component="server")

VERSION = "1.0.0"


# =============================================================================
# LIFESPAN MANAGEMENT
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic"""
    settings: Settings = app.state.settings
    logger.info("server_starting", version=VERSION, env=settings.env, gateway_env=settings.environment.value)

    if app.state.orchestrator is None:
        if not settings.has_gateway_credentials:
            logger.warning("gateway_credentials_missing", hint="set PHONEPE_CLIENT_ID and PHONEPE_CLIENT_SECRET")
        if not (settings.callback_username and settings.callback_password):
            logger.warning("callback_credentials_missing")
        app.state.orchestrator = PaymentOrchestrator(settings, PhonePeClient(settings))

    poller_task: Optional[asyncio.Task] = None
    if settings.poller_enabled:
        poller = StatusPoller(app.state.orchestrator.reconciler, settings)
        poller_task = asyncio.create_task(poller.run_forever())

    yield

    logger.info("server_shutting_down")
    if poller_task is not None:
        poller_task.cancel()
        try:
            await poller_task
        except asyncio.CancelledError:
            pass
    await app.state.orchestrator.close()


def get_orchestrator(request: Request) -> PaymentOrchestrator:
    return request.app.state.orchestrator


# =============================================================================
# ERROR HANDLERS
# =============================================================================

async def orchestrator_error_handler(request: Request, exc: PaymentOrchestratorError) -> JSONResponse:
    log = logger.bind(path=request.url.path, kind=exc.kind, status=exc.http_status)
    if exc.http_status >= 500:
        log.error("request_failed", detail=exc.detail)
    else:
        log.info("request_rejected", detail=exc.detail)
    return JSONResponse(status_code=exc.http_status, content=exc.to_response())


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = sorted({".".join(str(p) for p in err.get("loc", ()) if p != "body") for err in exc.errors()})
    detail = f"Invalid request body: {', '.join(f for f in fields if f) or 'expected a JSON object'}"
    logger.info("request_rejected", path=request.url.path, kind="VALIDATION_ERROR", detail=detail)
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request", "kind": "VALIDATION_ERROR", "details": detail},
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled_error", path=request.url.path, error_type=type(exc).__name__, exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "kind": "INTERNAL_ERROR", "details": "Unexpected error"},
    )


# =============================================================================
# FASTAPI APP
# =============================================================================

def create_app(
    settings: Optional[Settings] = None,
    orchestrator: Optional[PaymentOrchestrator] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings)

    app = FastAPI(
        title="PhonePe Order Orchestrator",
        description="Payment order lifecycle: initiate, webhook callback, status",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.orchestrator = orchestrator
    app.state.started_at = datetime.now(timezone.utc)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(PaymentOrchestratorError, orchestrator_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing and request ID headers"""
        request_id = str(uuid4())[:8]
        start = time.perf_counter()

        response = await call_next(request)

        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        response.headers["X-Request-ID"] = request_id
        return response

    # =========================================================================
    # HEALTH
    # =========================================================================

    @app.get("/health")
    async def health_check(request: Request):
        state = request.app.state
        orders = await state.orchestrator.store.count() if state.orchestrator else 0
        return {
            "status": "healthy",
            "version": VERSION,
            "gateway_environment": state.settings.environment.value,
            "uptime_seconds": (datetime.now(timezone.utc) - state.started_at).total_seconds(),
            "tracked_orders": orders,
        }

    # =========================================================================
    # PAYMENT ENDPOINTS
    # =========================================================================

    @app.post("/api/phonepe/initiate")
    async def initiate_payment(
        body: InitiatePaymentRequest,
        orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
    ):
        """Validate, build and submit a checkout order."""
        return await orchestrator.initiate(
            amount=body.amount,
            merchant_order_id=body.merchant_order_id,
            redirect_url=body.redirect_url,
            message=body.message,
        )

    @app.post("/api/phonepe/callback")
    async def phonepe_callback(
        request: Request,
        orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
    ):
        """
        Gateway webhook. Verified against the raw body; always 200 once
        verified and processed, whatever the payment outcome.
        """
        authorization = request.headers.get("authorization")
        raw = await request.body()
        try:
            raw_body = raw.decode("utf-8")
        except UnicodeDecodeError:
            raise DecodeError("Callback body is not UTF-8") from None

        return await orchestrator.handle_callback(authorization, raw_body)

    @app.post("/api/phonepe/status")
    async def order_status(
        body: StatusRequest,
        orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
    ):
        """Current order view, refreshed from the gateway when stale."""
        return await orchestrator.get_status(body.order_id)

    @app.get("/api/phonepe/orders/{order_id}/history")
    async def order_history(
        order_id: str,
        orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
    ):
        """Reconciliation decisions for one order (operator use)."""
        return {"orderId": order_id, "transitions": await orchestrator.get_history(order_id)}

    return app


app = create_app()


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    settings = app.state.settings
    uvicorn.run(
        "api.server:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="info",
    )
