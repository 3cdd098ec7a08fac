"""
Tests for the background worker entry points.
"""
import json
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from fulfillment.core.task_queue import RedisTaskQueue, TaskType
from fulfillment.core.values import utcnow
from fulfillment.database.models import ReservationStatus
from fulfillment.workers import outbox_publisher, stock_task_worker, sweeper_worker
from tests.conftest import ListRedis


class TestSweeperWorker:
    """Test suite for the sweeper loop."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_run_once_sweeps_and_closes(
        self, session_factory, inventory, open_order, make_product, mocker
    ) -> None:
        product_id = await make_product(stock=5)
        _, reservation_id = await open_order(product_id, quantity=2)

        lock_manager = MagicMock()
        mocker.patch.object(sweeper_worker, "setup_logging")
        mocker.patch.object(sweeper_worker.signal, "signal")
        mocker.patch.object(sweeper_worker, "get_session_factory", return_value=session_factory)
        mocker.patch.object(sweeper_worker, "create_lock_manager", return_value=lock_manager)
        close_db = mocker.patch.object(sweeper_worker, "close_db", new=AsyncMock())
        mocker.patch(
            "fulfillment.core.inventory.utcnow",
            return_value=utcnow() + timedelta(minutes=11),
        )

        await sweeper_worker.start_sweeper_worker(run_once=True)

        assert (await inventory.get(reservation_id)).status == ReservationStatus.EXPIRED.value
        lock_manager.unlock.assert_called_once()
        close_db.assert_awaited_once()


class TestStockTaskWorker:
    """Test suite for the compensation task loop."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_requeues_unacked_task_then_acks_it(self, session_factory, mocker) -> None:
        redis = ListRedis()
        previous = RedisTaskQueue(redis, "stock")
        await previous.enqueue(TaskType.CONFIRM_RESERVATION, {"order_id": 3})
        await previous.dequeue(timeout=1)
        # the previous worker process died here

        handlers = {}
        handled = []

        async def handle_then_stop(handler, task_type, payload, **kwargs):
            handled.append((task_type, payload))
            handlers[stock_task_worker.signal.SIGTERM](stock_task_worker.signal.SIGTERM, None)
            return True

        mocker.patch.object(stock_task_worker, "setup_logging")
        mocker.patch.object(
            stock_task_worker.signal,
            "signal",
            side_effect=lambda sig, fn: handlers.__setitem__(sig, fn),
        )
        mocker.patch.object(
            stock_task_worker, "get_session_factory", return_value=session_factory
        )
        mocker.patch.object(
            stock_task_worker.RedisTaskQueue,
            "from_url",
            return_value=RedisTaskQueue(redis, "stock"),
        )
        mocker.patch.object(stock_task_worker, "run_with_retry", side_effect=handle_then_stop)
        mocker.patch.object(stock_task_worker, "close_db", new=AsyncMock())

        await stock_task_worker.start_stock_task_worker(concurrency=1)

        assert handled == [(TaskType.CONFIRM_RESERVATION, {"order_id": 3})]
        assert len(redis.lists[previous.key]) == 0
        assert len(redis.lists[previous.processing_key]) == 0


class TestOutboxWorker:
    """Test suite for the Redis event publisher."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_publishes_to_event_type_channel(self) -> None:
        redis = AsyncMock()
        publish = outbox_publisher.redis_publisher(redis)

        await publish({"event_type": "order.status_updated", "aggregate_id": "7", "payload": {}})

        channel, body = redis.publish.await_args.args
        assert channel == "fulfillment:events:order.status_updated"
        assert json.loads(body)["aggregate_id"] == "7"
