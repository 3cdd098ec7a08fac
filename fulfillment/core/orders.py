"""
Order ledger: order and order-line records and their status transitions.

All writes join the caller's transaction. Finalization is a guarded update
from (pending, pending), so an order is finalized exactly once, and it writes
the ``order.status_updated`` outbox event in the same transaction.
"""
from decimal import Decimal
from typing import List, Optional, Sequence

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from fulfillment.core.exceptions import (
    InvalidLineItemError,
    OrderAlreadyFinalizedError,
    OrderNotFoundError,
)
from fulfillment.core.outbox import write_outbox_event
from fulfillment.core.values import (
    OrderLineInput,
    OrderLineResult,
    OrderResult,
    as_utc,
    to_money,
    utcnow,
)
from fulfillment.database.models import (
    Order,
    OrderLine,
    OrderPaymentStatus,
    OrderStatus,
)

logger = structlog.get_logger(__name__)

ORDER_STATUS_UPDATED = "order.status_updated"


def _to_result(order: Order) -> OrderResult:
    return OrderResult(
        id=order.id,
        order_number=order.order_number,
        user_id=order.user_id,
        status=order.status,
        payment_status=order.payment_status,
        total_amount=order.total_amount,
        created_at=as_utc(order.created_at),
        lines=[
            OrderLineResult(
                id=line.id,
                product_id=line.product_id,
                product_name=line.product_name,
                unit_price=line.unit_price,
                quantity=line.quantity,
                line_total=line.line_total,
            )
            for line in order.lines
        ],
    )


class OrderLedger:
    """Owns orders, their lines and their status transitions."""

    async def create(
        self,
        db: AsyncSession,
        user_id: int,
        order_number: str,
        total_amount: Decimal,
    ) -> int:
        """
        Create a PENDING/PENDING order.

        Args:
            db: Session of the enclosing transaction
            user_id: Buyer
            order_number: Generated order number (unique)
            total_amount: Order total

        Returns:
            int: Order ID
        """
        now = utcnow()
        order = Order(
            user_id=user_id,
            order_number=order_number,
            status=OrderStatus.PENDING.value,
            payment_status=OrderPaymentStatus.PENDING.value,
            total_amount=to_money(total_amount),
            created_at=now,
            updated_at=now,
        )
        db.add(order)
        await db.flush()

        logger.info(
            "order_created",
            order_id=order.id,
            order_number=order_number,
            user_id=user_id,
            total_amount=str(order.total_amount),
        )
        return order.id

    async def add_lines(
        self, db: AsyncSession, order_id: int, lines: Sequence[OrderLineInput]
    ) -> None:
        """
        Attach lines to an order.

        Raises:
            InvalidLineItemError: If a line total disagrees with price × quantity
                or the lines do not sum to the order total
        """
        order = await db.get(Order, order_id)
        if order is None:
            raise OrderNotFoundError(order_id)

        lines_total = Decimal("0.00")
        for line in lines:
            expected = to_money(line.unit_price * line.quantity)
            if to_money(line.line_total) != expected:
                raise InvalidLineItemError(
                    "Line total does not match unit price × quantity",
                    product_id=line.product_id,
                    line_total=str(line.line_total),
                    expected=str(expected),
                )
            lines_total += expected
            db.add(
                OrderLine(
                    order_id=order_id,
                    product_id=line.product_id,
                    product_name=line.product_name,
                    unit_price=to_money(line.unit_price),
                    quantity=line.quantity,
                    line_total=expected,
                )
            )

        if lines_total != to_money(order.total_amount):
            raise InvalidLineItemError(
                "Order lines do not add up to the order total",
                order_id=order_id,
                lines_total=str(lines_total),
                total_amount=str(order.total_amount),
            )

        await db.flush()
        logger.info("order_lines_added", order_id=order_id, line_count=len(lines))

    async def finalize(
        self, db: AsyncSession, order_id: int, succeeded: bool
    ) -> OrderResult:
        """
        Move an order to (completed, paid) or (failed, failed).

        Args:
            db: Session of the enclosing transaction
            order_id: Order ID
            succeeded: Payment outcome

        Returns:
            OrderResult: The finalized order with its lines

        Raises:
            OrderNotFoundError: If the order does not exist
            OrderAlreadyFinalizedError: If the order already left PENDING
        """
        if succeeded:
            status, payment_status = OrderStatus.COMPLETED, OrderPaymentStatus.PAID
        else:
            status, payment_status = OrderStatus.FAILED, OrderPaymentStatus.FAILED

        result = await db.execute(
            update(Order)
            .where(Order.id == order_id)
            .where(Order.status == OrderStatus.PENDING.value)
            .where(Order.payment_status == OrderPaymentStatus.PENDING.value)
            .values(
                status=status.value,
                payment_status=payment_status.value,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            current = (
                await db.execute(select(Order.status).where(Order.id == order_id))
            ).scalar_one_or_none()
            if current is None:
                raise OrderNotFoundError(order_id)
            raise OrderAlreadyFinalizedError(order_id, current)

        order = await self._load(db, order_id)

        await write_outbox_event(
            db,
            aggregate_id=str(order_id),
            aggregate_type="order",
            event_type=ORDER_STATUS_UPDATED,
            payload={
                "order_id": order_id,
                "order_number": order.order_number,
                "status": order.status,
                "payment_status": order.payment_status,
                "updated_at": utcnow().isoformat(),
            },
        )

        logger.info(
            "order_finalized",
            order_id=order_id,
            status=status.value,
            payment_status=payment_status.value,
        )
        return _to_result(order)

    async def find_by_id(self, db: AsyncSession, order_id: int) -> Optional[OrderResult]:
        order = await self._load(db, order_id, required=False)
        return _to_result(order) if order is not None else None

    async def find_by_user(self, db: AsyncSession, user_id: int) -> List[OrderResult]:
        """Orders of one user, newest first."""
        result = await db.execute(
            select(Order)
            .where(Order.user_id == user_id)
            .options(selectinload(Order.lines))
            .order_by(Order.created_at.desc(), Order.id.desc())
        )
        return [_to_result(order) for order in result.scalars().all()]

    async def _load(
        self, db: AsyncSession, order_id: int, required: bool = True
    ) -> Optional[Order]:
        result = await db.execute(
            select(Order)
            .where(Order.id == order_id)
            .options(selectinload(Order.lines))
            .execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if order is None and required:
            raise OrderNotFoundError(order_id)
        return order
