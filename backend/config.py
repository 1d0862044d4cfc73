# config.py
# ============================================================================
# PHONEPE ORDER ORCHESTRATOR — CONFIGURATION
# ============================================================================
# Immutable settings built once from the environment at process start and
# passed to every component that needs them.
# ============================================================================

import logging
import os
import sys
from dataclasses import dataclass, field
from enum import Enum
from typing import List

import structlog


class GatewayEnvironment(str, Enum):
    SANDBOX = "SANDBOX"
    PRODUCTION = "PRODUCTION"


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    """Service configuration from environment"""

    # Gateway credentials
    client_id: str = ""
    client_secret: str = ""
    client_version: int = 1
    environment: GatewayEnvironment = GatewayEnvironment.SANDBOX
    timeout_seconds: float = 15.0
    max_retries: int = 2

    # Checkout
    redirect_url: str = ""
    auto_merchant_order_id: bool = False

    # Webhook credentials (configured in the PhonePe dashboard)
    callback_username: str = ""
    callback_password: str = ""

    # Reconciliation
    status_freshness_seconds: float = 5.0
    poller_enabled: bool = False
    poller_interval_seconds: int = 60
    poller_stale_after_seconds: int = 120
    poller_batch_size: int = 20

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    env: str = "development"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    @property
    def debug(self) -> bool:
        return self.env == "development"

    @property
    def has_gateway_credentials(self) -> bool:
        return bool(self.client_id and self.client_secret)

    @classmethod
    def from_env(cls) -> "Settings":
        raw_environment = os.getenv("PHONEPE_ENVIRONMENT", "SANDBOX").strip().upper()
        try:
            environment = GatewayEnvironment(raw_environment)
        except ValueError:
            raise ValueError(
                f"PHONEPE_ENVIRONMENT must be SANDBOX or PRODUCTION, got {raw_environment!r}"
            ) from None

        return cls(
            client_id=os.getenv("PHONEPE_CLIENT_ID", ""),
            client_secret=os.getenv("PHONEPE_CLIENT_SECRET", ""),
            client_version=int(os.getenv("PHONEPE_CLIENT_VERSION", "1")),
            environment=environment,
            timeout_seconds=float(os.getenv("PHONEPE_TIMEOUT", "15.0")),
            max_retries=int(os.getenv("PHONEPE_MAX_RETRIES", "2")),
            redirect_url=os.getenv("PHONEPE_REDIRECT_URL", ""),
            auto_merchant_order_id=_env_bool("PHONEPE_AUTO_MERCHANT_ORDER_ID"),
            callback_username=os.getenv("PHONEPE_CALLBACK_USERNAME", ""),
            callback_password=os.getenv("PHONEPE_CALLBACK_PASSWORD", ""),
            status_freshness_seconds=float(os.getenv("STATUS_FRESHNESS_SECONDS", "5")),
            poller_enabled=_env_bool("POLLER_ENABLED"),
            poller_interval_seconds=int(os.getenv("POLLER_INTERVAL", "60")),
            poller_stale_after_seconds=int(os.getenv("POLLER_STALE_AFTER", "120")),
            poller_batch_size=int(os.getenv("POLLER_BATCH_SIZE", "20")),
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "8000")),
            env=os.getenv("ENV", "development"),
            cors_origins=os.getenv("CORS_ORIGINS", "*").split(","),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_format=os.getenv("LOG_FORMAT", "json").lower(),
        )


# =============================================================================
# STRUCTURED LOGGING SETUP
# =============================================================================

def configure_logging(settings: Settings) -> None:
    """Configure structlog for the whole process."""
    level = logging.getLevelName(settings.log_level)
    if not isinstance(level, int):
        level = logging.INFO

    if settings.log_format == "console":
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
