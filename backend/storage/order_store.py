# storage/order_store.py
# ============================================================================
# PHONEPE ORDER ORCHESTRATOR — ORDER STORE
# ============================================================================
# Keyed order table (orderId primary, merchantOrderId secondary index) with
# per-key locking and compare-and-set on ``version``. The in-memory
# implementations can be swapped for Redis/Postgres without touching callers.
# ============================================================================

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional

from schemas.payment_schemas import Order, OrderState, TransitionRecord


# =============================================================================
# INTERFACES
# =============================================================================

class IOrderStore(ABC):
    """Order persistence with per-key mutual exclusion"""

    @abstractmethod
    async def get(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_by_merchant_order_id(self, merchant_order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def insert(self, order: Order) -> bool:
        """Add a new order. Returns False if the orderId already exists."""
        pass

    @abstractmethod
    async def compare_and_set(self, order: Order, expected_version: int) -> bool:
        """Replace the stored order only if its version still equals expected_version."""
        pass

    @abstractmethod
    async def list_pending(self, observed_before: datetime, limit: int = 100) -> List[Order]:
        pass

    @abstractmethod
    async def count(self) -> int:
        pass

    @abstractmethod
    def lock(self, key: str) -> "AsyncIterator[None]":
        """Async context manager holding the mutex for ``key``."""
        pass


class ITransitionLog(ABC):
    """Append-only history of reconciliation decisions"""

    @abstractmethod
    async def append(self, record: TransitionRecord) -> None:
        pass

    @abstractmethod
    async def get_by_order_id(self, order_id: str) -> List[TransitionRecord]:
        pass


# =============================================================================
# IN-MEMORY IMPLEMENTATIONS
# =============================================================================

class InMemoryOrderStore(IOrderStore):
    """Async-safe in-memory order table"""

    def __init__(self):
        self._orders: Dict[str, Order] = {}
        self._by_merchant_id: Dict[str, str] = {}
        self._lock = asyncio.Lock()
        self._key_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._key_locks_mutex = asyncio.Lock()

    async def get(self, order_id: str) -> Optional[Order]:
        async with self._lock:
            return self._orders.get(order_id)

    async def get_by_merchant_order_id(self, merchant_order_id: str) -> Optional[Order]:
        async with self._lock:
            order_id = self._by_merchant_id.get(merchant_order_id)
            return self._orders.get(order_id) if order_id else None

    async def insert(self, order: Order) -> bool:
        async with self._lock:
            if order.order_id in self._orders:
                return False
            self._orders[order.order_id] = order
            if order.merchant_order_id:
                self._by_merchant_id[order.merchant_order_id] = order.order_id
            return True

    async def compare_and_set(self, order: Order, expected_version: int) -> bool:
        async with self._lock:
            current = self._orders.get(order.order_id)
            if current is None or current.version != expected_version:
                return False
            self._orders[order.order_id] = order
            if order.merchant_order_id:
                self._by_merchant_id[order.merchant_order_id] = order.order_id
            return True

    async def list_pending(self, observed_before: datetime, limit: int = 100) -> List[Order]:
        async with self._lock:
            pending = [
                o for o in self._orders.values()
                if o.state == OrderState.PENDING and o.last_observed_at <= observed_before
            ]
        pending.sort(key=lambda o: o.last_observed_at)
        return pending[:limit]

    async def count(self) -> int:
        async with self._lock:
            return len(self._orders)

    async def _get_key_lock(self, key: str) -> asyncio.Lock:
        async with self._key_locks_mutex:
            return self._key_locks[key]

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        key_lock = await self._get_key_lock(key)
        async with key_lock:
            yield


class InMemoryTransitionLog(ITransitionLog):
    """Append-only transition log"""

    def __init__(self):
        self._records: List[TransitionRecord] = []
        self._by_order: Dict[str, List[TransitionRecord]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def append(self, record: TransitionRecord) -> None:
        async with self._lock:
            self._records.append(record)
            self._by_order[record.order_id].append(record)

    async def get_by_order_id(self, order_id: str) -> List[TransitionRecord]:
        async with self._lock:
            return list(self._by_order.get(order_id, []))
