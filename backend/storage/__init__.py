# storage/__init__.py
# ============================================================================
# PHONEPE ORDER ORCHESTRATOR — STORAGE MODULE
# ============================================================================
# Order table and transition history
# ============================================================================

from storage.order_store import (
    IOrderStore,
    ITransitionLog,
    InMemoryOrderStore,
    InMemoryTransitionLog,
)

__all__ = [
    "IOrderStore",
    "ITransitionLog",
    "InMemoryOrderStore",
    "InMemoryTransitionLog",
]
