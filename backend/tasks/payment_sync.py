"""
Payment Sync - Poll Reconciliation
==================================
Catches orders whose payment webhook was missed or is late by asking the
gateway directly.

Features:
- Single-order sync with an in-flight guard (no duplicate gateway queries)
- Bounded batch cycle, sequential, with a pause between gateway calls
- Cooperative auto-sync timer that can be toggled and re-timed
- Rolling activity log for the admin dashboard
"""

import asyncio
import os
from collections import deque
from datetime import datetime
from typing import Deque, Dict, Any, List, Optional, Set, Union

import structlog

from pipeline.errors import (
    MissingGatewayTransaction,
    OrderNotFound,
    StockCompensationPartialFailure,
)
from pipeline.midtrans_gateway import IPaymentGateway
from pipeline.order_state_machine import apply_gateway_status
from pipeline.order_store import IActivityLog, IOrderStore, record_activity
from schemas.order_models import (
    BatchSyncReport,
    ConcurrentSyncSkipped,
    GatewayNotification,
    Order,
    SyncLogEntry,
    SyncResult,
)

logger = structlog.get_logger().bind(component="payment_sync")


# =============================================================================
# CONFIGURATION
# =============================================================================

class SyncConfig:
    """Payment sync configuration"""

    # Start the auto-sync timer with the app
    ENABLED = os.getenv("PAYMENT_SYNC_ENABLED", "true").lower() == "true"

    # Seconds between auto-sync cycles
    INTERVAL_SECONDS = int(os.getenv("PAYMENT_SYNC_INTERVAL", "60"))
    MIN_INTERVAL_SECONDS = 10
    MAX_INTERVAL_SECONDS = 300

    # Orders queried per auto-sync cycle
    BATCH_SIZE = int(os.getenv("PAYMENT_SYNC_BATCH_SIZE", "5"))

    # Pause between gateway calls (rate limiting)
    DELAY_MS = int(os.getenv("PAYMENT_SYNC_DELAY_MS", "500"))
    SYNC_ALL_DELAY_MS = int(os.getenv("PAYMENT_SYNC_ALL_DELAY_MS", "300"))

    # Lines kept in the rolling dashboard log
    LOG_SIZE = int(os.getenv("PAYMENT_SYNC_LOG_SIZE", "10"))


config = SyncConfig()

SyncOutcome = Union[SyncResult, ConcurrentSyncSkipped]


def validate_interval(seconds: int) -> int:
    seconds = int(seconds)
    if not config.MIN_INTERVAL_SECONDS <= seconds <= config.MAX_INTERVAL_SECONDS:
        raise ValueError(
            f"Sync interval must be between {config.MIN_INTERVAL_SECONDS} "
            f"and {config.MAX_INTERVAL_SECONDS} seconds"
        )
    return seconds


# =============================================================================
# SYNC COORDINATOR
# =============================================================================

class SyncCoordinator:
    """
    Owns the in-flight set and the auto-sync timer. One per process.

    Example:
        coordinator = SyncCoordinator(store, gateway, activity_log)
        await coordinator.start()
        result = await coordinator.sync_one(order_id)
        await coordinator.stop()
    """

    def __init__(
        self,
        store: IOrderStore,
        gateway: IPaymentGateway,
        activity_log: IActivityLog,
        batch_size: Optional[int] = None,
        interval_seconds: Optional[int] = None,
        delay_seconds: Optional[float] = None,
        sync_all_delay_seconds: Optional[float] = None,
        log_size: Optional[int] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.activity_log = activity_log

        self.batch_size = batch_size or config.BATCH_SIZE
        self.interval_seconds = validate_interval(interval_seconds or config.INTERVAL_SECONDS)
        self.delay_seconds = config.DELAY_MS / 1000 if delay_seconds is None else delay_seconds
        self.sync_all_delay_seconds = (
            config.SYNC_ALL_DELAY_MS / 1000 if sync_all_delay_seconds is None else sync_all_delay_seconds
        )

        self._in_flight: Set[str] = set()
        self._sync_log: Deque[SyncLogEntry] = deque(maxlen=log_size or config.LOG_SIZE)
        self._timer: Optional[asyncio.Task] = None
        self._cycle: Optional[asyncio.Task] = None
        self._generation = 0
        self._control_lock = asyncio.Lock()
        self._enabled = False
        self.last_sync_time: Optional[datetime] = None

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def is_running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    @property
    def in_flight(self) -> frozenset:
        return frozenset(self._in_flight)

    @property
    def sync_log(self) -> List[SyncLogEntry]:
        """Newest first."""
        return list(reversed(self._sync_log))

    def _record(self, success: bool, message: str, order_id: Optional[str] = None) -> None:
        self._sync_log.append(SyncLogEntry(
            order_ref=order_id[:8] if order_id else None,
            success=success,
            message=message,
        ))

    async def status(self) -> Dict[str, Any]:
        return {
            "enabled": self._enabled,
            "running": self.is_running,
            "intervalSeconds": self.interval_seconds,
            "batchSize": self.batch_size,
            "lastSyncTime": self.last_sync_time.isoformat() if self.last_sync_time else None,
            "inFlight": sorted(self._in_flight),
            "pendingCount": await self.store.count_pending_payment_orders(),
            "log": [entry.render() for entry in self.sync_log],
        }

    # -------------------------------------------------------------------------
    # Single order
    # -------------------------------------------------------------------------

    async def sync_one(
        self,
        order_id: str,
        actor_id: Optional[str] = None,
        ip_address: str = "unknown",
    ) -> SyncOutcome:
        """
        Query the gateway for one order and apply the result.

        Returns ConcurrentSyncSkipped without touching the gateway when the
        order is already being synced. Errors propagate to the caller.
        """
        if order_id in self._in_flight:
            logger.info("sync_skipped_in_flight", order_id=order_id)
            return ConcurrentSyncSkipped(order_id=order_id)

        # Marked before the first await so a concurrent caller sees it
        self._in_flight.add(order_id)
        log = logger.bind(order_id=order_id)

        try:
            order = await self.store.get_order(order_id)
            if order is None:
                raise OrderNotFound(order_id)
            if not order.midtrans_order_id:
                raise MissingGatewayTransaction(order_id)

            report = await self.gateway.query_transaction_status(order.midtrans_order_id)

            try:
                outcome = await apply_gateway_status(self.store, order, report)
            except StockCompensationPartialFailure:
                await self._audit(order, report, actor_id, ip_address)
                self._record(False, "stock restore failed, reconcile manually", order_id)
                raise

            await self._audit(order, report, actor_id, ip_address)
            self._record(True, outcome.payment_status, order_id)
            log.info("order_synced",
                     transaction_status=report.transaction_status,
                     status=outcome.status.value,
                     payment_status=outcome.payment_status)

            return SyncResult(
                order_id=order_id,
                status=outcome.status,
                payment_status=outcome.payment_status,
                transaction_status=report.transaction_status,
                changed=outcome.changed,
            )

        except StockCompensationPartialFailure:
            raise
        except Exception as e:
            self._record(False, str(e), order_id)
            log.warning("order_sync_failed", error=str(e), error_type=type(e).__name__)
            raise

        finally:
            self._in_flight.discard(order_id)

    async def _audit(
        self,
        order: Order,
        report: GatewayNotification,
        actor_id: Optional[str],
        ip_address: str,
    ) -> None:
        who = "Admin" if actor_id else "Auto-sync"
        await record_activity(
            self.activity_log,
            actor_id,
            "SYNC_PAYMENT_STATUS",
            f"{who} synced payment status for order {order.id}: {report.transaction_status}",
            ip_address,
        )

    # -------------------------------------------------------------------------
    # Batches
    # -------------------------------------------------------------------------

    async def sync_pending(self) -> BatchSyncReport:
        """One bounded cycle over orders still awaiting payment."""
        candidates = await self.store.list_pending_payment_orders(
            limit=self.batch_size + len(self._in_flight)
        )
        batch = [o for o in candidates if o.id not in self._in_flight][:self.batch_size]
        return await self._sync_sequential(batch, self.delay_seconds)

    async def sync_all_pending(self) -> BatchSyncReport:
        """Every order awaiting payment, unbounded, with a shorter pause."""
        candidates = await self.store.list_pending_payment_orders()
        batch = [o for o in candidates if o.id not in self._in_flight]
        return await self._sync_sequential(batch, self.sync_all_delay_seconds)

    async def _sync_sequential(
        self,
        orders: List[Order],
        delay: float,
        generation: Optional[int] = None,
    ) -> BatchSyncReport:
        report = BatchSyncReport(selected=len(orders))
        if not orders:
            report.finished_at = datetime.utcnow()
            return report

        self._record(True, f"Syncing {len(orders)} pending orders")
        logger.info("batch_sync_started", orders=len(orders))

        for index, order in enumerate(orders):
            if index and delay:
                await asyncio.sleep(delay)
            if generation is not None and generation != self._generation:
                logger.info("batch_sync_stopped", remaining=len(orders) - index)
                break

            try:
                result = await self.sync_one(order.id)
            except Exception as e:
                # sync_one already logged and recorded it
                report.failed[order.id] = str(e)
                continue

            if isinstance(result, ConcurrentSyncSkipped):
                report.skipped.append(order.id)
            else:
                report.synced.append(result)

        report.finished_at = datetime.utcnow()
        self.last_sync_time = report.finished_at
        logger.info("batch_sync_complete",
                    synced=len(report.synced),
                    skipped=len(report.skipped),
                    failed=len(report.failed))
        return report

    # -------------------------------------------------------------------------
    # Auto-sync timer
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Enable auto-sync: run a cycle now, then every interval."""
        async with self._control_lock:
            await self._retire_timer()
            self._enabled = True
            self._timer = asyncio.create_task(self._run_timer(self._generation), name="payment-sync-timer")
        logger.info("auto_sync_enabled", interval=self.interval_seconds)

    async def stop(self) -> None:
        """
        Disable auto-sync. Returns once no cycle is running: a sync already
        talking to the gateway finishes, the rest of its batch is dropped.
        """
        async with self._control_lock:
            self._enabled = False
            await self._retire_timer()
        logger.info("auto_sync_disabled")

    async def set_interval(self, seconds: int) -> None:
        self.interval_seconds = validate_interval(seconds)
        if self.is_running:
            await self.start()

    async def _retire_timer(self) -> None:
        # A new generation tells the current cycle to stop between orders
        self._generation += 1

        timer, self._timer = self._timer, None
        if timer is not None and not timer.done():
            timer.cancel()
            try:
                await timer
            except asyncio.CancelledError:
                pass

        cycle, self._cycle = self._cycle, None
        if cycle is not None and not cycle.done():
            await cycle

    async def _run_timer(self, generation: int) -> None:
        while self._enabled and generation == self._generation:
            # Shielded so cancelling the timer never interrupts an in-flight sync
            self._cycle = asyncio.create_task(self._auto_cycle(generation))
            await asyncio.shield(self._cycle)
            await asyncio.sleep(self.interval_seconds)

    async def _auto_cycle(self, generation: int) -> None:
        try:
            candidates = await self.store.list_pending_payment_orders(
                limit=self.batch_size + len(self._in_flight)
            )
            batch = [o for o in candidates if o.id not in self._in_flight][:self.batch_size]
            await self._sync_sequential(batch, self.delay_seconds, generation=generation)
        except Exception as e:
            logger.error("auto_sync_cycle_error", error=str(e))
