"""
Expiry Sweeper
Periodic job that expires overdue reservations and marks silent devices
offline. Runs are mutually exclusive within the process (asyncio.Lock) and,
when Redis is configured, across nodes (SET NX EX lock).
"""
import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import List, Optional

from . import metrics
from .models import Reservation
from .notifications import RESERVATION_EXPIRED, LifecycleEvent, NotificationDispatcher
from .reservations import ReservationEngine
from .telemetry import TelemetryReconciler

logger = logging.getLogger(__name__)

SWEEP_LOCK_KEY = "lock:expiry_sweep"

RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


@dataclass
class SweepReport:
    expired: List[Reservation] = field(default_factory=list)
    devices_marked_offline: int = 0
    skipped: bool = False

    @property
    def count(self) -> int:
        return len(self.expired)


class ExpirySweeper:
    """
    Usage:
        sweeper = ExpirySweeper(engine, reconciler, dispatcher, interval_seconds=30)
        await sweeper.start()
        ...
        await sweeper.stop()
    """

    def __init__(
        self,
        engine: ReservationEngine,
        reconciler: Optional[TelemetryReconciler] = None,
        notifier: Optional[NotificationDispatcher] = None,
        redis_client=None,
        interval_seconds: int = 30,
        lock_ttl_seconds: int = 55,
    ):
        self.engine = engine
        self.reconciler = reconciler
        self.notifier = notifier
        self.redis_client = redis_client
        self.interval_seconds = interval_seconds
        self.lock_ttl_seconds = lock_ttl_seconds
        self._local_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self.running = False

    async def start(self):
        """Start the periodic loop"""
        if self.running:
            return
        self.running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info(f"Expiry sweeper started (interval={self.interval_seconds}s)")

    async def stop(self):
        """Stop the periodic loop; an in-flight sweep is cancelled and rolled back"""
        if not self.running:
            return
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Expiry sweeper stopped")

    async def _sweep_loop(self):
        while self.running:
            try:
                await asyncio.sleep(self.interval_seconds)
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Expiry sweep error: {e}", exc_info=True)

    async def run_once(self) -> SweepReport:
        """
        One sweep; also backs the internal HTTP trigger

        Returns a skipped report when another run holds the lock.
        """
        if self._local_lock.locked():
            metrics.sweep_skipped_total.inc()
            logger.debug("Expiry sweep already running in this process, skipping")
            return SweepReport(skipped=True)

        async with self._local_lock:
            async with self._distributed_lock() as acquired:
                if not acquired:
                    metrics.sweep_skipped_total.inc()
                    logger.debug("Expiry sweep lock held by another node, skipping")
                    return SweepReport(skipped=True)
                return await self._sweep()

    async def _sweep(self) -> SweepReport:
        started = time.perf_counter()
        report = SweepReport()

        report.expired = await self.engine.expire_overdue()
        if self.notifier is not None:
            for reservation in report.expired:
                self.notifier.publish(LifecycleEvent.from_reservation(RESERVATION_EXPIRED, reservation))

        if self.reconciler is not None:
            report.devices_marked_offline = await self.reconciler.mark_stale_devices_offline()

        metrics.sweep_duration_seconds.observe(time.perf_counter() - started)
        if report.expired or report.devices_marked_offline:
            logger.info(
                f"Expiry sweep: expired={report.count} "
                f"devices_offline={report.devices_marked_offline}"
            )
        return report

    @asynccontextmanager
    async def _distributed_lock(self):
        """Redis SET NX EX lock; always acquired when Redis is not configured"""
        if self.redis_client is None:
            yield True
            return

        lock_value = uuid.uuid4().hex
        acquired = await self.redis_client.set(
            SWEEP_LOCK_KEY,
            lock_value,
            nx=True,  # Only set if not exists
            ex=self.lock_ttl_seconds,
        )
        try:
            yield bool(acquired)
        finally:
            if acquired:
                # Atomic compare-and-delete: an expired lock may already belong to another node
                await self.redis_client.eval(RELEASE_LOCK_SCRIPT, 1, SWEEP_LOCK_KEY, lock_value)
