"""
Transactional outbox for order status events.

``write_outbox_event`` adds the event to the caller's transaction, so the
event exists if and only if the order state change committed. The publisher
then delivers events at-least-once from a background worker.
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment.core.values import utcnow
from fulfillment.database.models import OutboxEvent
from fulfillment.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

PublisherFunc = Callable[[Dict[str, Any]], Awaitable[Any]]


async def write_outbox_event(
    db: AsyncSession,
    aggregate_id: str,
    aggregate_type: str,
    event_type: str,
    payload: Dict[str, Any],
) -> None:
    """
    Write event to transactional outbox.

    Args:
        db: Session of the enclosing transaction
        aggregate_id: Aggregate ID (e.g., order ID)
        aggregate_type: Aggregate type (e.g., 'order')
        event_type: Event type (e.g., 'order.status_updated')
        payload: Event payload
    """
    db.add(
        OutboxEvent(
            aggregate_id=aggregate_id,
            aggregate_type=aggregate_type,
            event_type=event_type,
            payload=payload,
            published=False,
            created_at=utcnow(),
        )
    )


class OutboxPublisher:
    """
    Publishes events from the outbox table.

    1. Read unpublished events in creation order
    2. Hand each one to the publisher function
    3. Mark the delivered ones as published
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        publisher_func: Optional[PublisherFunc] = None,
        batch_size: int = 100,
        poll_interval_seconds: float = 1.0,
    ):
        """
        Initialize outbox publisher.

        Args:
            session_factory: Session factory for outbox reads and updates
            publisher_func: Coroutine delivering one event
            batch_size: Number of events to process per batch
            poll_interval_seconds: Polling interval when the outbox is empty
        """
        self._session_factory = session_factory
        self.publisher_func = publisher_func or self._default_publisher
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self._running = False

    async def _default_publisher(self, event_data: Dict[str, Any]) -> None:
        """Default publisher that just logs events."""
        logger.info(
            "outbox_event_published_default",
            event_type=event_data.get("event_type"),
            aggregate_id=event_data.get("aggregate_id"),
        )

    async def _publish_event(self, event: OutboxEvent) -> bool:
        try:
            await self.publisher_func(
                {
                    "id": event.id,
                    "aggregate_id": event.aggregate_id,
                    "aggregate_type": event.aggregate_type,
                    "event_type": event.event_type,
                    "payload": event.payload,
                    "created_at": event.created_at.isoformat(),
                }
            )
        except Exception as e:
            logger.error("outbox_event_publish_failed", event_id=event.id, error=str(e))
            return False

        metrics.record_outbox_event_published(event.event_type)
        return True

    async def process_batch(self) -> int:
        """
        Process a batch of unpublished events.

        Returns:
            int: Number of events published
        """
        async with self._session_factory() as db:
            result = await db.execute(
                select(OutboxEvent)
                .where(OutboxEvent.published.is_(False))
                .order_by(OutboxEvent.id)
                .limit(self.batch_size)
            )
            events = list(result.scalars().all())

            if not events:
                return 0

            published_ids: List[int] = []
            for event in events:
                if await self._publish_event(event):
                    published_ids.append(event.id)

            if published_ids:
                await db.execute(
                    update(OutboxEvent)
                    .where(OutboxEvent.id.in_(published_ids))
                    .values(published=True, published_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                await db.commit()

            logger.info(
                "outbox_batch_processed",
                total=len(events),
                published=len(published_ids),
                failed=len(events) - len(published_ids),
            )
            return len(published_ids)

    async def start(self) -> None:
        """Poll and publish until ``stop`` is called."""
        self._running = True
        logger.info("outbox_publisher_started")

        try:
            while self._running:
                try:
                    published_count = await self.process_batch()
                    metrics.set_outbox_queue_depth(await self.get_pending_count())
                    if published_count == 0:
                        await asyncio.sleep(self.poll_interval_seconds)
                except Exception as e:
                    logger.error("outbox_publisher_error", error=str(e))
                    await asyncio.sleep(self.poll_interval_seconds)
        finally:
            logger.info("outbox_publisher_stopped")

    def stop(self) -> None:
        """Stop the outbox publisher."""
        self._running = False
        logger.info("outbox_publisher_stop_requested")

    async def get_pending_count(self) -> int:
        """Number of unpublished events."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(func.count()).select_from(OutboxEvent).where(
                    OutboxEvent.published.is_(False)
                )
            )
            return int(result.scalar_one())
