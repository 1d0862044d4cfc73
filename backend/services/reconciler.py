# services/reconciler.py
# ============================================================================
# PHONEPE ORDER ORCHESTRATOR — ORDER STATE RECONCILER
# ============================================================================
# Sole writer of Order.state. Webhook pushes and status polls both land here
# and converge on one value.
#
# STATE MACHINE:
#   PENDING → COMPLETED | FAILED | EXPIRED      (terminal, final)
#   PENDING → PENDING                           (refresh of non-state fields)
#
# RULES:
# - Terminal + same state          → no-op, unchanged order returned
# - Terminal + different state     → InconsistencyError, earliest state kept
# - Pending + older observation    → ignored (latest observation wins)
# - Mutation happens under the per-order lock and commits by compare-and-set
# ============================================================================

import uuid
from datetime import datetime, timedelta
from typing import Dict, FrozenSet, List, Optional

import structlog

from errors import GatewayError, InconsistencyError, OrderNotFoundError, PaymentOrchestratorError
from gateway.base import IGatewayClient
from schemas.payment_schemas import (
    Order,
    OrderState,
    TransitionOutcome,
    TransitionRecord,
    UpdateSource,
    utcnow,
)
from storage.order_store import IOrderStore, ITransitionLog

ALLOWED_TRANSITIONS: Dict[OrderState, FrozenSet[OrderState]] = {
    OrderState.PENDING: frozenset({
        OrderState.PENDING,
        OrderState.COMPLETED,
        OrderState.FAILED,
        OrderState.EXPIRED,
    }),
    OrderState.COMPLETED: frozenset(),
    OrderState.FAILED: frozenset(),
    OrderState.EXPIRED: frozenset(),
}

MAX_CAS_ATTEMPTS = 3


def decide(current: Order, incoming_state: OrderState, observed_at: datetime) -> TransitionOutcome:
    """Pure transition decision for an existing order."""
    if current.is_terminal:
        if incoming_state == current.state:
            return TransitionOutcome.NOOP
        return TransitionOutcome.INCONSISTENT

    if incoming_state not in ALLOWED_TRANSITIONS[current.state]:
        return TransitionOutcome.INCONSISTENT
    if observed_at < current.last_observed_at:
        return TransitionOutcome.STALE
    if incoming_state == current.state:
        return TransitionOutcome.REFRESHED
    return TransitionOutcome.APPLIED


class OrderStateReconciler:
    """
    Merges webhook-pushed and poll-pulled observations into one canonical order.

    Example:
        reconciler = OrderStateReconciler(store, transition_log, gateway)
        order = await reconciler.apply("OID1", OrderState.COMPLETED, UpdateSource.WEBHOOK)
        order = await reconciler.refresh("OID1")  # polls the gateway only when stale
    """

    def __init__(
        self,
        store: IOrderStore,
        transition_log: ITransitionLog,
        gateway: IGatewayClient,
        freshness_seconds: float = 5.0,
    ):
        self.store = store
        self.transitions = transition_log
        self.gateway = gateway
        self.freshness = timedelta(seconds=freshness_seconds)
        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: Optional[str] = None):
        return self._base_logger.bind(
            component="reconciler",
            correlation_id=correlation_id or str(uuid.uuid4()),
        )

    # =========================================================================
    # WRITE PATH
    # =========================================================================

    async def apply(
        self,
        order_id: str,
        incoming_state: OrderState,
        source: UpdateSource,
        snapshot: Optional[Order] = None,
        observed_at: Optional[datetime] = None,
        correlation_id: Optional[str] = None,
    ) -> Order:
        log = self._get_logger(correlation_id)
        observed_at = observed_at or utcnow()
        key = await self._canonical_id(order_id, snapshot)

        for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
            async with self.store.lock(key):
                current = await self.store.get(key)

                if current is None:
                    if snapshot is None:
                        raise OrderNotFoundError(f"Unknown order: {order_id}")
                    order = snapshot.model_copy(update={
                        "order_id": key,
                        "state": incoming_state,
                        "last_source": source,
                        "last_observed_at": observed_at,
                        "version": 1,
                    })
                    if await self.store.insert(order):
                        await self._record(order.order_id, None, incoming_state, order.state, source,
                                           TransitionOutcome.CREATED, observed_at, correlation_id)
                        log.info("order_registered", order_id=key, state=order.state.value, source=source.value)
                        return order
                    continue

                outcome = decide(current, incoming_state, observed_at)

                if outcome in (TransitionOutcome.NOOP, TransitionOutcome.STALE):
                    await self._record(key, current.state, incoming_state, current.state, source,
                                       outcome, observed_at, correlation_id)
                    if outcome == TransitionOutcome.STALE:
                        log.info("stale_observation_ignored",
                                 order_id=key,
                                 incoming_state=incoming_state.value,
                                 source=source.value,
                                 observed_at=observed_at.isoformat(),
                                 last_observed_at=current.last_observed_at.isoformat())
                    return current

                if outcome == TransitionOutcome.INCONSISTENT:
                    await self._record(key, current.state, incoming_state, current.state, source,
                                       outcome, observed_at, correlation_id)
                    log.error("state_inconsistency",
                              order_id=key,
                              stored_state=current.state.value,
                              incoming_state=incoming_state.value,
                              source=source.value,
                              last_source=current.last_source.value if current.last_source else None)
                    raise InconsistencyError(
                        f"Order {key} is {current.state.value}; refusing {incoming_state.value}",
                        order=current,
                        incoming_state=incoming_state,
                    )

                updated = current.transition_to(incoming_state, source, observed_at, snapshot)
                if await self.store.compare_and_set(updated, expected_version=current.version):
                    await self._record(key, current.state, incoming_state, updated.state, source,
                                       outcome, observed_at, correlation_id)
                    if outcome == TransitionOutcome.APPLIED:
                        log.info("order_state_changed",
                                 order_id=key,
                                 previous_state=current.state.value,
                                 new_state=updated.state.value,
                                 source=source.value,
                                 version=updated.version)
                    return updated

            log.warning("order_cas_conflict", order_id=key, attempt=attempt)

        raise PaymentOrchestratorError(f"Could not commit update for order {key}")

    async def _canonical_id(self, order_id: str, snapshot: Optional[Order]) -> str:
        if await self.store.get(order_id) is not None:
            return order_id
        merchant_order_id = snapshot.merchant_order_id if snapshot else None
        if merchant_order_id:
            existing = await self.store.get_by_merchant_order_id(merchant_order_id)
            if existing is not None:
                return existing.order_id
        return order_id

    async def _record(
        self,
        order_id: str,
        previous_state: Optional[OrderState],
        incoming_state: OrderState,
        resulting_state: OrderState,
        source: UpdateSource,
        outcome: TransitionOutcome,
        observed_at: datetime,
        correlation_id: Optional[str],
    ) -> None:
        await self.transitions.append(TransitionRecord(
            order_id=order_id,
            previous_state=previous_state,
            incoming_state=incoming_state,
            resulting_state=resulting_state,
            source=source,
            outcome=outcome,
            observed_at=observed_at,
            correlation_id=correlation_id,
        ))

    # =========================================================================
    # READ PATH
    # =========================================================================

    async def current(self, order_id: str) -> Optional[Order]:
        """Latest known order by gateway orderId or merchantOrderId."""
        order = await self.store.get(order_id)
        if order is None:
            order = await self.store.get_by_merchant_order_id(order_id)
        return order

    def is_fresh(self, order: Order, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) - order.last_observed_at < self.freshness

    async def refresh(self, order_id: str, correlation_id: Optional[str] = None) -> Order:
        """
        Latest state, polling the gateway when the local view is PENDING and
        older than the freshness window (which also rate-limits polling).
        """
        log = self._get_logger(correlation_id)
        local = await self.current(order_id)

        if local is not None and (local.is_terminal or self.is_fresh(local)):
            return local

        # One in-flight poll per order; later callers see its result
        async with self.store.lock(f"poll:{local.order_id if local else order_id}"):
            local = await self.current(order_id)
            if local is not None and (local.is_terminal or self.is_fresh(local)):
                return local

            # The status API is keyed by merchantOrderId
            merchant_order_id = local.merchant_order_id if local and local.merchant_order_id else order_id
            try:
                remote = await self.gateway.get_order_status(merchant_order_id)
            except GatewayError as e:
                if e.is_not_found and local is None:
                    raise OrderNotFoundError(f"Unknown order: {order_id}") from e
                raise
            observed_at = utcnow()

            log.info("order_polled",
                     order_id=remote.order_id,
                     merchant_order_id=merchant_order_id,
                     remote_state=remote.state.value,
                     local_state=local.state.value if local else None)

            try:
                return await self.apply(
                    local.order_id if local else remote.order_id,
                    remote.state,
                    UpdateSource.POLL,
                    snapshot=remote,
                    observed_at=observed_at,
                    correlation_id=correlation_id,
                )
            except InconsistencyError as e:
                return e.order

    async def history(self, order_id: str) -> List[TransitionRecord]:
        order = await self.current(order_id)
        return await self.transitions.get_by_order_id(order.order_id if order else order_id)
