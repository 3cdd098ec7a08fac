"""
Reservation sweeper background worker.

Runs a sweep every ``sweeper_interval_seconds`` (5 minutes by default). Any
number of instances may run; the Redlock in the sweeper lets only one of
them sweep at a time.
"""
import argparse
import asyncio
import signal
from datetime import timedelta
from typing import Any, Optional

import structlog

from fulfillment.config import get_settings
from fulfillment.core.inventory import InventoryLedger
from fulfillment.core.sweeper import ReservationSweeper, create_lock_manager
from fulfillment.database.connection import close_db, get_session_factory
from fulfillment.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def start_sweeper_worker(
    interval_seconds: Optional[float] = None, run_once: bool = False
) -> None:
    """
    Start the sweeper worker.

    Args:
        interval_seconds: Seconds between sweeps (default from settings)
        run_once: Run a single sweep and exit
    """
    setup_logging()
    settings = get_settings()
    interval = interval_seconds or settings.sweeper_interval_seconds

    sweeper = ReservationSweeper(
        InventoryLedger(
            get_session_factory(),
            reservation_ttl=timedelta(minutes=settings.reservation_ttl_minutes),
        ),
        create_lock_manager(settings),
        lock_ttl_seconds=settings.sweeper_lock_ttl_seconds,
    )

    logger.info("sweeper_worker_starting", interval_seconds=interval)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("sweeper_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            try:
                await sweeper.sweep()
            except Exception as e:
                logger.error("sweeper_execution_error", error=str(e))
                # Continue running even if one sweep fails

            if run_once:
                break

            # Wait for the next sweep, checking for shutdown every second
            remaining = interval
            while remaining > 0 and running:
                sleep_time = min(remaining, 1.0)
                await asyncio.sleep(sleep_time)
                remaining -= sleep_time
    finally:
        await close_db()
        logger.info("sweeper_worker_stopped")


def main() -> None:
    parser = argparse.ArgumentParser(description="Reservation sweeper worker")
    parser.add_argument(
        "--interval", type=float, default=None, help="Seconds between sweeps"
    )
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    args = parser.parse_args()

    asyncio.run(start_sweeper_worker(interval_seconds=args.interval, run_once=args.once))


if __name__ == "__main__":
    main()
