"""
Pytest configuration and fixtures.
"""
from collections import deque
from decimal import Decimal
from typing import Any, AsyncGenerator, Awaitable, Callable, Deque, Dict, List, Optional, Tuple
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from fulfillment.config import Settings
from fulfillment.core.inventory import InventoryLedger
from fulfillment.core.order_fulfillment import OrderFulfillmentOrchestrator
from fulfillment.core.orders import OrderLedger
from fulfillment.core.payments import PaymentLedger
from fulfillment.core.task_queue import InMemoryTaskQueue, StockTaskHandler
from fulfillment.core.values import ChargeResult
from fulfillment.database.connection import (
    create_engine_from_settings,
    create_session_factory,
    init_db,
)
from fulfillment.database.models import Product
from fulfillment.integrations.gateways import PaymentGatewayRegistry, PaymentMethod


class ScriptedGateway:
    """Gateway double returning a fixed outcome and recording every charge."""

    def __init__(
        self,
        method: PaymentMethod = PaymentMethod.STRIPE,
        succeed: bool = True,
        token: Optional[str] = None,
    ):
        self.method = method
        self.succeed = succeed
        self.token = token
        self.calls: List[Tuple[Decimal, Dict[str, Any]]] = []

    async def charge(self, amount: Decimal, metadata: Dict[str, Any]) -> ChargeResult:
        self.calls.append((amount, metadata))
        token = self.token or f"tok-{metadata['order_number']}"
        if self.succeed:
            return ChargeResult(
                success=True,
                idempotency_token=token,
                transaction_id=f"txn-{metadata['order_id']}",
                message="Payment successful",
            )
        return ChargeResult(success=False, idempotency_token=token, message="Card declined")


class ListRedis:
    """Redis list commands the task queue uses, kept in process memory."""

    def __init__(self) -> None:
        self.lists: Dict[str, Deque[str]] = {}

    def _list(self, key: str) -> Deque[str]:
        return self.lists.setdefault(key, deque())

    async def lpush(self, key: str, value: str) -> int:
        self._list(key).appendleft(value)
        return len(self._list(key))

    async def lmove(self, source: str, destination: str, src: str, dest: str) -> Optional[str]:
        items = self._list(source)
        if not items:
            return None
        value = items.popleft() if src == "LEFT" else items.pop()
        if dest == "LEFT":
            self._list(destination).appendleft(value)
        else:
            self._list(destination).append(value)
        return value

    async def blmove(
        self, source: str, destination: str, timeout: float, src: str, dest: str
    ) -> Optional[str]:
        return await self.lmove(source, destination, src=src, dest=dest)

    async def lrem(self, key: str, count: int, value: str) -> int:
        items = self._list(key)
        if value not in items:
            return 0
        items.remove(value)
        return 1

    async def aclose(self) -> None:
        pass


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings backed by a throwaway SQLite file."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'fulfillment_test.db'}",
        redis_url="redis://localhost:6379/1",
        app_name="order-fulfillment-test",
        app_env="test",
        log_level="DEBUG",
        debug=True,
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """Create test engine with all tables."""
    engine = create_engine_from_settings(test_settings)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
def inventory(session_factory: async_sessionmaker[AsyncSession]) -> InventoryLedger:
    return InventoryLedger(session_factory)


@pytest.fixture
def orders() -> OrderLedger:
    return OrderLedger()


@pytest.fixture
def payments() -> PaymentLedger:
    return PaymentLedger()


@pytest.fixture
def task_queue() -> InMemoryTaskQueue:
    return InMemoryTaskQueue()


@pytest.fixture
def task_handler(inventory: InventoryLedger) -> StockTaskHandler:
    return StockTaskHandler(inventory)


@pytest.fixture
def gateway() -> ScriptedGateway:
    return ScriptedGateway()


@pytest.fixture
def registry(gateway: ScriptedGateway) -> PaymentGatewayRegistry:
    registry = PaymentGatewayRegistry()
    registry.register(PaymentMethod.STRIPE, gateway)
    return registry


@pytest.fixture
def backoff_sleep() -> AsyncMock:
    """Stand-in for asyncio.sleep so reserve retries run without delay."""
    return AsyncMock()


@pytest.fixture
def orchestrator(
    session_factory: async_sessionmaker[AsyncSession],
    inventory: InventoryLedger,
    orders: OrderLedger,
    payments: PaymentLedger,
    registry: PaymentGatewayRegistry,
    task_queue: InMemoryTaskQueue,
    backoff_sleep: AsyncMock,
    test_settings: Settings,
) -> OrderFulfillmentOrchestrator:
    return OrderFulfillmentOrchestrator(
        session_factory,
        inventory,
        orders,
        payments,
        registry,
        task_queue,
        sleep=backoff_sleep,
        settings=test_settings,
    )


@pytest.fixture
def make_product(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[int]]:
    """Factory inserting a product and returning its id."""

    async def _make(stock: int = 10, price: str = "25.00", name: str = "Widget") -> int:
        async with session_factory() as db:
            product = Product(name=name, price=Decimal(price), stock=stock, reserved=0)
            db.add(product)
            await db.commit()
            return product.id

    return _make


@pytest.fixture
def open_order(
    session_factory: async_sessionmaker[AsyncSession],
    inventory: InventoryLedger,
    orders: OrderLedger,
) -> Callable[..., Awaitable[Tuple[int, int]]]:
    """Factory creating a pending order holding a reservation."""
    counter = {"n": 0}

    async def _open(product_id: int, quantity: int = 1, user_id: int = 1) -> Tuple[int, int]:
        counter["n"] += 1
        async with session_factory() as db:
            order_id = await orders.create(
                db, user_id, f"ORD-20260101-{counter['n']:08X}", Decimal("0.00")
            )
            reservation_id = await inventory.reserve(db, product_id, order_id, quantity)
            await db.commit()
        return order_id, reservation_id

    return _open


@pytest.fixture
def load_product(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[[int], Awaitable[Product]]:
    async def _load(product_id: int) -> Product:
        async with session_factory() as db:
            result = await db.execute(select(Product).where(Product.id == product_id))
            return result.scalar_one()

    return _load


async def drain(queue: InMemoryTaskQueue, handler: StockTaskHandler) -> int:
    """Apply every queued compensation task; returns how many ran."""
    handled = 0
    while queue.qsize():
        task = await queue.dequeue()
        assert task is not None
        task_type, payload = task
        await handler.handle(task_type, payload)
        handled += 1
    return handled
