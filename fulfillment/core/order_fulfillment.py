"""
Order fulfillment saga.

One ``place_order`` call walks:

    START → CREATE_ORDER → RESERVE_STOCK → CHARGE_PAYMENT
          → FINALIZE_ORDER → DISPATCH_COMPENSATION → DONE

Transaction A creates the order, holds the stock and attaches the lines.
The gateway is called with no transaction open. Transaction B records the
payment and finalizes the order. Only after B commits is the confirm or
release task enqueued; if that never happens the sweeper expires the hold.
"""
import asyncio
import time
import uuid
from datetime import timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment.config import Settings, get_settings
from fulfillment.core.exceptions import (
    FulfillmentError,
    InsufficientStockError,
    ProductNotFoundError,
)
from fulfillment.core.inventory import InventoryLedger
from fulfillment.core.orders import OrderLedger
from fulfillment.core.payments import PaymentLedger
from fulfillment.core.task_queue import TaskQueue, TaskType
from fulfillment.core.values import (
    ChargeResult,
    LineTotal,
    OrderLineInput,
    OrderNumber,
    OrderResult,
    ProductSnapshot,
)
from fulfillment.database.models import OrderStatus
from fulfillment.integrations.gateways import (
    PaymentGateway,
    PaymentGatewayRegistry,
    PaymentMethod,
)
from fulfillment.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class FulfillmentStep(Enum):
    """Saga steps, in order."""

    START = "start"
    CREATE_ORDER = "create_order"
    RESERVE_STOCK = "reserve_stock"
    CHARGE_PAYMENT = "charge_payment"
    FINALIZE_ORDER = "finalize_order"
    DISPATCH_COMPENSATION = "dispatch_compensation"
    DONE = "done"


class OrderFulfillmentOrchestrator:
    """
    Coordinates the ledgers, the gateway and the task queue for one purchase.

    Callers see either an ``OrderResult`` (a declined payment is a FAILED
    order, not an error) or a ``FulfillmentError`` subclass.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        inventory: InventoryLedger,
        orders: OrderLedger,
        payments: PaymentLedger,
        gateways: PaymentGatewayRegistry,
        task_queue: TaskQueue,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize orchestrator.

        Args:
            session_factory: Factory for transactions A and B
            inventory: Inventory ledger
            orders: Order ledger
            payments: Payment ledger
            gateways: Gateway registry
            task_queue: Compensation task queue
            sleep: Backoff between reserve attempts
            settings: Retry settings (defaults to application settings)
        """
        settings = settings or get_settings()
        self._session_factory = session_factory
        self.inventory = inventory
        self.orders = orders
        self.payments = payments
        self.gateways = gateways
        self.task_queue = task_queue
        self._sleep = sleep
        self.max_attempts = settings.reserve_max_attempts
        self.backoff_seconds = settings.reserve_backoff_seconds

    async def place_order(
        self,
        user_id: int,
        product_id: int,
        quantity: int,
        payment_method: PaymentMethod | str,
    ) -> OrderResult:
        """
        Reserve, charge and finalize one order.

        Args:
            user_id: Buyer
            product_id: Product to buy
            quantity: Units to buy
            payment_method: Gateway method

        Returns:
            OrderResult: Finalized order, COMPLETED/PAID or FAILED/FAILED

        Raises:
            UnsupportedPaymentMethodError: If no gateway serves the method
            ProductNotFoundError: If the product does not exist
            InvalidLineItemError: If quantity or price is invalid
            InsufficientStockError: If stock stayed short for every attempt
            FulfillmentError: On infrastructure failure
        """
        start_time = time.time()
        step = FulfillmentStep.START
        log = logger.bind(user_id=user_id, product_id=product_id, quantity=quantity)

        def mark(next_step: FulfillmentStep) -> None:
            nonlocal step
            step = next_step

        try:
            gateway = self.gateways.get(payment_method)
            method = PaymentMethod(payment_method)
            order_number = OrderNumber.generate()
            log = log.bind(order_number=str(order_number))

            step = FulfillmentStep.CREATE_ORDER
            order_id, total = await self._open_order(
                user_id, product_id, quantity, order_number, mark
            )
            log = log.bind(order_id=order_id)

            step = FulfillmentStep.CHARGE_PAYMENT
            charge = await self._charge(
                gateway,
                total,
                {"order_id": order_id, "order_number": str(order_number), "user_id": user_id},
            )

            step = FulfillmentStep.FINALIZE_ORDER
            order = await self._finalize(order_id, method, total, charge)

            step = FulfillmentStep.DISPATCH_COMPENSATION
            await self._dispatch_compensation(order_id, order.status == OrderStatus.COMPLETED.value)
            step = FulfillmentStep.DONE

        except FulfillmentError as e:
            metrics.record_order(e.error_code, time.time() - start_time)
            log.warning("order_placement_rejected", step=step.value, error_code=e.error_code)
            raise
        except Exception as e:
            metrics.record_order("error", time.time() - start_time)
            log.error("order_placement_failed", step=step.value, error=str(e), exc_info=True)
            raise FulfillmentError(
                "Order fulfillment failed", step=step.value, error=str(e)
            ) from e

        metrics.record_order(order.status, time.time() - start_time)
        log.info(
            "order_placed",
            status=order.status,
            payment_status=order.payment_status,
            duration_ms=int((time.time() - start_time) * 1000),
        )
        return order

    async def _open_order(
        self,
        user_id: int,
        product_id: int,
        quantity: int,
        order_number: OrderNumber,
        mark: Callable[[FulfillmentStep], None],
    ) -> Tuple[int, Decimal]:
        """Run transaction A, retrying only on insufficient stock."""
        for attempt in range(1, self.max_attempts + 1):
            product = await self.inventory.get_product(product_id)
            if product is None:
                raise ProductNotFoundError(product_id)
            line = LineTotal.calculate(product.price, quantity)

            try:
                order_id = await self._reserve_and_create(
                    user_id, product, line, order_number, mark
                )
                return order_id, line.total
            except InsufficientStockError as e:
                logger.info(
                    "order_reserve_retry",
                    product_id=product_id,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    available=e.available,
                )
                if attempt == self.max_attempts:
                    raise
                await self._sleep(self.backoff_seconds * attempt)

        raise FulfillmentError("Reserve attempts must be at least 1")

    async def _reserve_and_create(
        self,
        user_id: int,
        product: ProductSnapshot,
        line: LineTotal,
        order_number: OrderNumber,
        mark: Callable[[FulfillmentStep], None],
    ) -> int:
        async with self._session_factory() as db:
            # the order row must exist before the reservation can reference it
            mark(FulfillmentStep.CREATE_ORDER)
            order_id = await self.orders.create(db, user_id, str(order_number), line.total)
            mark(FulfillmentStep.RESERVE_STOCK)
            await self.inventory.reserve(db, product.id, order_id, line.quantity)
            mark(FulfillmentStep.CREATE_ORDER)
            await self.orders.add_lines(
                db,
                order_id,
                [
                    OrderLineInput(
                        product_id=product.id,
                        product_name=product.name,
                        unit_price=line.unit_price,
                        quantity=line.quantity,
                        line_total=line.total,
                    )
                ],
            )
            await db.commit()
        return order_id

    async def _charge(
        self, gateway: PaymentGateway, amount: Decimal, metadata: Dict[str, Any]
    ) -> ChargeResult:
        try:
            return await gateway.charge(amount, metadata)
        except Exception as e:
            # an adapter that raises is treated like a decline so the hold is released
            logger.error(
                "gateway_charge_raised",
                method=gateway.method.value,
                order_id=metadata.get("order_id"),
                error=str(e),
            )
            return ChargeResult(
                success=False,
                idempotency_token=f"{gateway.method.value}-error-{uuid.uuid4().hex}",
                message=str(e),
            )

    async def _finalize(
        self,
        order_id: int,
        method: PaymentMethod,
        amount: Decimal,
        charge: ChargeResult,
    ) -> OrderResult:
        """Run transaction B: record the payment once and finalize the order."""
        async with self._session_factory() as db:
            payment, deduplicated = await self.payments.record_charge(
                db, order_id, method.value, amount, charge
            )
            order = await self.orders.finalize(db, order_id, payment.succeeded)
            await db.commit()

        logger.info(
            "order_payment_applied",
            order_id=order_id,
            payment_id=payment.id,
            payment_status=payment.status,
            deduplicated=deduplicated,
        )
        return order

    async def _dispatch_compensation(self, order_id: int, succeeded: bool) -> None:
        task_type = TaskType.CONFIRM_RESERVATION if succeeded else TaskType.RELEASE_RESERVATION
        try:
            await self.task_queue.enqueue(task_type, {"order_id": order_id})
        except Exception as e:
            # order is already final; the sweeper expires the pending hold
            metrics.record_compensation_task(task_type.value, "dispatch_failed")
            logger.error(
                "compensation_dispatch_failed",
                order_id=order_id,
                task_type=task_type.value,
                error=str(e),
            )
            return

        metrics.record_compensation_task(task_type.value, "enqueued")


def create_orchestrator(
    session_factory: async_sessionmaker[AsyncSession],
    gateways: PaymentGatewayRegistry,
    task_queue: TaskQueue,
    settings: Optional[Settings] = None,
) -> OrderFulfillmentOrchestrator:
    """Wire an orchestrator with ledgers built from settings."""
    settings = settings or get_settings()
    return OrderFulfillmentOrchestrator(
        session_factory,
        InventoryLedger(
            session_factory,
            reservation_ttl=timedelta(minutes=settings.reservation_ttl_minutes),
        ),
        OrderLedger(),
        PaymentLedger(),
        gateways,
        task_queue,
        settings=settings,
    )
