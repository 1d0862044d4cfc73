"""
Status Poller - The Safety Net
==============================
Background task that finds orders still PENDING long after their last
observation (a webhook was lost or never sent) and reconciles them against
the gateway's status API.

Features:
- Runs every POLLER_INTERVAL seconds when POLLER_ENABLED is set
- Picks orders not observed for POLLER_STALE_AFTER seconds
- Applies the gateway's answer with source=POLL
- Marks orders EXPIRED when the gateway still says PENDING past expireAt
"""

import asyncio
from datetime import timedelta
from typing import Dict

import structlog

from config import Settings
from errors import InconsistencyError, PaymentOrchestratorError
from schemas.payment_schemas import Order, OrderState, UpdateSource, utcnow
from services.reconciler import OrderStateReconciler

logger = structlog.get_logger(component="status_poller")


def is_past_expiry(order: Order, now_ms: int) -> bool:
    return order.expire_at is not None and order.expire_at <= now_ms


class StatusPoller:
    """
    Example:
        poller = StatusPoller(orchestrator.reconciler, settings)
        stats = await poller.run_cycle()
        task = asyncio.create_task(poller.run_forever())
    """

    def __init__(self, reconciler: OrderStateReconciler, settings: Settings):
        self.reconciler = reconciler
        self.interval = settings.poller_interval_seconds
        self.stale_after = timedelta(seconds=settings.poller_stale_after_seconds)
        self.batch_size = settings.poller_batch_size

    async def poll_order(self, order: Order) -> Order:
        remote = await self.reconciler.gateway.get_order_status(order.merchant_order_id or order.order_id)
        observed_at = utcnow()

        state = remote.state
        now_ms = int(observed_at.timestamp() * 1000)
        if state == OrderState.PENDING and (is_past_expiry(remote, now_ms) or is_past_expiry(order, now_ms)):
            logger.warning("order_expired_while_pending", order_id=order.order_id, expire_at=order.expire_at)
            state = OrderState.EXPIRED

        try:
            return await self.reconciler.apply(
                order.order_id,
                state,
                UpdateSource.POLL,
                snapshot=remote,
                observed_at=observed_at,
            )
        except InconsistencyError as e:
            return e.order

    async def run_cycle(self) -> Dict[str, int]:
        cutoff = utcnow() - self.stale_after
        pending = await self.reconciler.store.list_pending(observed_before=cutoff, limit=self.batch_size)

        stats = {"checked": 0, "resolved": 0, "still_pending": 0, "errors": 0}
        if not pending:
            return stats

        logger.info("stale_pending_orders_found", count=len(pending))

        for order in pending:
            stats["checked"] += 1
            try:
                updated = await self.poll_order(order)
            except PaymentOrchestratorError as e:
                stats["errors"] += 1
                logger.error("poll_failed", order_id=order.order_id, error_kind=e.kind, error=e.detail)
                continue

            if updated.is_terminal:
                stats["resolved"] += 1
            else:
                stats["still_pending"] += 1

        logger.info("poll_cycle_complete", **stats)
        return stats

    async def run_forever(self) -> None:
        logger.info("status_poller_started", interval=self.interval, stale_after=self.stale_after.total_seconds())

        while True:
            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("poll_cycle_error")

            await asyncio.sleep(self.interval)
