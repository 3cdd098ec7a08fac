"""
Outbox publisher background worker.

Continuously polls the outbox table and publishes order events to a Redis
pub/sub channel per event type.
"""
import asyncio
import json
import signal
from typing import Any, Dict

import structlog
from redis import asyncio as aioredis

from fulfillment.config import get_settings
from fulfillment.core.outbox import OutboxPublisher
from fulfillment.database.connection import close_db, get_session_factory
from fulfillment.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


def redis_publisher(redis: aioredis.Redis):
    """Publisher function sending each event to ``fulfillment:events:<type>``."""

    async def publish(event_data: Dict[str, Any]) -> None:
        channel = f"fulfillment:events:{event_data['event_type']}"
        await redis.publish(channel, json.dumps(event_data, default=str))
        logger.info(
            "event_published_to_channel",
            channel=channel,
            aggregate_id=event_data.get("aggregate_id"),
        )

    return publish


async def start_outbox_publisher() -> None:
    """
    Start the outbox publisher worker.

    Runs continuously until stopped.
    """
    setup_logging()
    settings = get_settings()

    logger.info("outbox_publisher_worker_starting")

    redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    publisher = OutboxPublisher(
        get_session_factory(),
        publisher_func=redis_publisher(redis),
        batch_size=settings.outbox_batch_size,
        poll_interval_seconds=settings.outbox_poll_interval_seconds,
    )

    # Setup signal handlers for graceful shutdown
    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("outbox_publisher_worker_shutdown_signal_received", signal=sig)
        publisher.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await publisher.start()
    except Exception as e:
        logger.error("outbox_publisher_worker_error", error=str(e))
        raise
    finally:
        await redis.aclose()
        await close_db()
        logger.info("outbox_publisher_worker_stopped")


def main() -> None:
    asyncio.run(start_outbox_publisher())


if __name__ == "__main__":
    main()
