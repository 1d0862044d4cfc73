# gateway/__init__.py
# ============================================================================
# PHONEPE ORDER ORCHESTRATOR — GATEWAY ADAPTERS
# ============================================================================

from gateway.base import IGatewayClient
from gateway.phonepe_client import (
    PhonePeClient,
    PhonePeHosts,
    callback_authorization,
    verify_callback_authorization,
)

__all__ = [
    "IGatewayClient",
    "PhonePeClient",
    "PhonePeHosts",
    "callback_authorization",
    "verify_callback_authorization",
]
