"""
Reservation sweeper.

Expires PENDING reservations whose TTL has passed, returning their hold to
available stock. A cluster-wide Redlock keeps concurrent schedulers from
sweeping at the same time.
"""
import asyncio
from datetime import datetime
from typing import Any, Optional

import structlog
from pydantic import BaseModel, ConfigDict
from redlock import Redlock

from fulfillment.config import Settings
from fulfillment.core.inventory import InventoryLedger
from fulfillment.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

SWEEPER_LOCK_RESOURCE = "fulfillment:locks:reservation-sweeper"


class SweepResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    found: int = 0
    expired: int = 0
    failed: int = 0
    skipped: bool = False


def create_lock_manager(settings: Settings) -> Redlock:
    """Redlock over the configured Redis instance."""
    return Redlock([settings.redis_url], retry_count=1)


class ReservationSweeper:
    """Expires abandoned reservations, one sweep at a time cluster-wide."""

    def __init__(
        self,
        inventory: InventoryLedger,
        lock_manager: Any,
        lock_ttl_seconds: int = 240,
    ):
        """
        Initialize sweeper.

        Args:
            inventory: Inventory ledger
            lock_manager: Redlock-compatible object (``lock``/``unlock``)
            lock_ttl_seconds: Lock lifetime, shorter than the sweep interval
        """
        self.inventory = inventory
        self.lock_manager = lock_manager
        self.lock_ttl_ms = lock_ttl_seconds * 1000

    async def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        """
        Run one sweep if the cluster lock is free.

        Returns:
            SweepResult: Counts for this sweep, ``skipped`` if another
            instance holds the lock
        """
        lock = await asyncio.to_thread(
            self.lock_manager.lock, SWEEPER_LOCK_RESOURCE, self.lock_ttl_ms
        )
        if not lock:
            logger.info("reservation_sweep_skipped", reason="lock_held")
            metrics.record_sweep("skipped")
            return SweepResult(skipped=True)

        try:
            result = await self._expire_all(now)
        finally:
            await asyncio.to_thread(self.lock_manager.unlock, lock)

        metrics.record_sweep("failed" if result.failed else "completed", result.expired)
        logger.info(
            "reservation_sweep_completed",
            found=result.found,
            expired=result.expired,
            failed=result.failed,
        )
        return result

    async def _expire_all(self, now: Optional[datetime]) -> SweepResult:
        expired_reservations = await self.inventory.list_expired(now)
        expired = failed = 0

        for reservation in expired_reservations:
            try:
                if await self.inventory.expire(reservation.id, now):
                    expired += 1
            except Exception as e:
                failed += 1
                logger.error(
                    "reservation_expire_failed",
                    reservation_id=reservation.id,
                    order_id=reservation.order_id,
                    error=str(e),
                )

        return SweepResult(found=len(expired_reservations), expired=expired, failed=failed)
