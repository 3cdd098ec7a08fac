"""
Compensation tasks: confirm or release the reservation of a finalized order.

Delivery is at-least-once. The handler leans on the inventory ledger's
guarded transitions, so a duplicate confirm or release is a no-op.
"""
import asyncio
import json
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Sequence, Tuple

import structlog
from redis import asyncio as aioredis
from tenacity import AsyncRetrying, RetryCallState, RetryError, stop_after_attempt

from fulfillment.core.inventory import InventoryLedger
from fulfillment.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

Task = Tuple["TaskType", Dict[str, Any]]


class TaskType(str, Enum):
    CONFIRM_RESERVATION = "confirm_reservation"
    RELEASE_RESERVATION = "release_reservation"


class TaskQueue(Protocol):
    """Handle the orchestrator uses to dispatch compensation work."""

    async def enqueue(self, task_type: TaskType, payload: Dict[str, Any]) -> None:
        ...


class InMemoryTaskQueue:
    """Single-process queue backed by ``asyncio.Queue``."""

    def __init__(self) -> None:
        self._queue: "asyncio.Queue[Task]" = asyncio.Queue()

    async def enqueue(self, task_type: TaskType, payload: Dict[str, Any]) -> None:
        await self._queue.put((TaskType(task_type), dict(payload)))
        logger.info("task_enqueued", task_type=TaskType(task_type).value, payload=payload)

    async def dequeue(self, timeout: Optional[float] = None) -> Optional[Task]:
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def qsize(self) -> int:
        return self._queue.qsize()


class RedisTaskQueue:
    """
    Redis list queue. Producers ``LPUSH``; workers ``BLMOVE`` each task onto a
    processing list and ``ack`` it once handled.

    A task whose worker dies before ``ack`` stays on the processing list until
    ``requeue_inflight`` puts it back, so it is delivered again.
    """

    def __init__(self, redis: aioredis.Redis, queue_name: str = "stock"):
        self.redis = redis
        self.key = f"fulfillment:tasks:{queue_name}"
        self.processing_key = f"{self.key}:processing"

    @classmethod
    def from_url(cls, url: str, queue_name: str = "stock") -> "RedisTaskQueue":
        return cls(aioredis.from_url(url, decode_responses=True), queue_name)

    @staticmethod
    def _encode(task_type: TaskType, payload: Dict[str, Any]) -> str:
        # stable key order so ack can rebuild the exact message
        return json.dumps(
            {"task_type": TaskType(task_type).value, "payload": payload}, sort_keys=True
        )

    async def enqueue(self, task_type: TaskType, payload: Dict[str, Any]) -> None:
        await self.redis.lpush(self.key, self._encode(task_type, payload))
        logger.info("task_enqueued", task_type=TaskType(task_type).value, payload=payload)

    async def dequeue(self, timeout: Optional[float] = None) -> Optional[Task]:
        raw = await self.redis.blmove(
            self.key, self.processing_key, timeout or 0, src="RIGHT", dest="LEFT"
        )
        if raw is None:
            return None
        message = json.loads(raw)
        return TaskType(message["task_type"]), message["payload"]

    async def ack(self, task: Task) -> None:
        """Drop a handled task from the processing list."""
        task_type, payload = task
        removed = await self.redis.lrem(self.processing_key, 1, self._encode(task_type, payload))
        if not removed:
            logger.warning(
                "task_ack_missing", task_type=TaskType(task_type).value, payload=payload
            )

    async def requeue_inflight(self) -> int:
        """
        Move every task left on the processing list back onto the queue.

        Run at worker start. Tasks still held by a live worker may be delivered
        twice; the handler treats a repeat as a no-op.

        Returns:
            int: Number of tasks requeued
        """
        requeued = 0
        # oldest in-flight task ends up next in line
        while await self.redis.lmove(
            self.processing_key, self.key, src="LEFT", dest="RIGHT"
        ) is not None:
            requeued += 1
        if requeued:
            logger.warning("tasks_requeued", queue=self.key, count=requeued)
        return requeued

    async def close(self) -> None:
        await self.redis.aclose()


class StockTaskHandler:
    """Applies a compensation task to the order's reservation."""

    def __init__(self, inventory: InventoryLedger):
        self.inventory = inventory

    async def handle(self, task_type: TaskType, payload: Dict[str, Any]) -> bool:
        """
        Confirm or release the reservation of ``payload["order_id"]``.

        Returns:
            bool: True if the reservation moved, False for a no-op
        """
        order_id = payload["order_id"]
        reservation = await self.inventory.find_by_order(order_id)
        if reservation is None:
            logger.warning(
                "task_reservation_not_found",
                task_type=TaskType(task_type).value,
                order_id=order_id,
            )
            return False

        if TaskType(task_type) == TaskType.CONFIRM_RESERVATION:
            return await self.inventory.confirm(reservation.id)
        return await self.inventory.release(reservation.id)


def backoff_wait(backoff_seconds: Sequence[float]) -> Callable[[RetryCallState], float]:
    """tenacity wait that walks a fixed backoff schedule, repeating the last step."""

    def _wait(retry_state: RetryCallState) -> float:
        index = min(retry_state.attempt_number - 1, len(backoff_seconds) - 1)
        return float(backoff_seconds[index])

    return _wait


async def run_with_retry(
    handler: StockTaskHandler,
    task_type: TaskType,
    payload: Dict[str, Any],
    max_attempts: int = 3,
    backoff_seconds: Sequence[float] = (5.0, 15.0, 30.0),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> bool:
    """
    Run one task, retrying failures on a fixed backoff schedule.

    Returns:
        bool: True if the task completed (moved or no-op), False if it failed
        permanently
    """
    task_name = TaskType(task_type).value
    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max_attempts),
            wait=backoff_wait(backoff_seconds),
            sleep=sleep,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(
                        "task_retrying",
                        task_type=task_name,
                        payload=payload,
                        attempt=attempt.retry_state.attempt_number,
                    )
                await handler.handle(task_type, payload)
    except RetryError as e:
        error = e.last_attempt.exception()
        logger.error(
            "task_permanently_failed",
            task_type=task_name,
            payload=payload,
            attempts=max_attempts,
            error=str(error),
        )
        metrics.record_compensation_task(task_name, "failed")
        return False

    metrics.record_compensation_task(task_name, "completed")
    return True
