"""
Compensation task worker.

Pops confirm/release tasks from the Redis queue, applies them with the
configured retry schedule and acknowledges each one afterwards. Tasks a
crashed worker left unacknowledged are requeued on start.
"""
import argparse
import asyncio
import signal
from datetime import timedelta
from typing import Any

import structlog

from fulfillment.config import get_settings
from fulfillment.core.inventory import InventoryLedger
from fulfillment.core.task_queue import RedisTaskQueue, StockTaskHandler, run_with_retry
from fulfillment.database.connection import close_db, get_session_factory
from fulfillment.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def start_stock_task_worker(concurrency: int = 4) -> None:
    """
    Start the compensation task worker.

    Args:
        concurrency: Number of tasks processed in parallel
    """
    setup_logging()
    settings = get_settings()

    queue = RedisTaskQueue.from_url(settings.redis_url, settings.task_queue_name)
    handler = StockTaskHandler(
        InventoryLedger(
            get_session_factory(),
            reservation_ttl=timedelta(minutes=settings.reservation_ttl_minutes),
        )
    )

    logger.info("stock_task_worker_starting", queue=queue.key, concurrency=concurrency)
    await queue.requeue_inflight()

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("stock_task_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    async def consume(worker_id: int) -> None:
        while running:
            try:
                task = await queue.dequeue(timeout=1)
            except Exception as e:
                logger.error("stock_task_dequeue_failed", worker_id=worker_id, error=str(e))
                await asyncio.sleep(1)
                continue

            if task is None:
                continue

            task_type, payload = task
            await run_with_retry(
                handler,
                task_type,
                payload,
                max_attempts=settings.task_max_attempts,
                backoff_seconds=settings.task_backoff_seconds,
            )
            try:
                await queue.ack(task)
            except Exception as e:
                # left on the processing list; redelivered after the next restart
                logger.error("stock_task_ack_failed", worker_id=worker_id, error=str(e))

    try:
        await asyncio.gather(*(consume(i) for i in range(concurrency)))
    finally:
        await queue.close()
        await close_db()
        logger.info("stock_task_worker_stopped")


def main() -> None:
    parser = argparse.ArgumentParser(description="Stock compensation task worker")
    parser.add_argument(
        "--concurrency", type=int, default=4, help="Tasks processed in parallel"
    )
    args = parser.parse_args()

    asyncio.run(start_stock_task_worker(concurrency=args.concurrency))


if __name__ == "__main__":
    main()
