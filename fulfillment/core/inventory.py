"""
Inventory ledger: product stock and reservation bookkeeping.

Stock moves through two counters on the product row:
- ``reserved`` grows when a reservation is created PENDING and shrinks when
  the reservation leaves PENDING
- ``stock`` shrinks only when a reservation is CONFIRMED

Every transition out of PENDING is a guarded ``UPDATE ... WHERE status =
'pending'`` so duplicate task delivery, a racing sweeper and a late confirm all
collapse to a single effect.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment.core.exceptions import (
    DuplicateReservationError,
    InsufficientStockError,
    InvalidLineItemError,
    ProductNotFoundError,
)
from fulfillment.core.values import ProductSnapshot, ReservationRecord, as_utc, utcnow
from fulfillment.database.models import Product, ReservationStatus, StockReservation
from fulfillment.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

DEFAULT_RESERVATION_TTL = timedelta(minutes=10)


def _to_record(row: StockReservation) -> ReservationRecord:
    return ReservationRecord(
        id=row.id,
        order_id=row.order_id,
        product_id=row.product_id,
        quantity=row.quantity,
        status=row.status,
        expires_at=as_utc(row.expires_at),
    )


class InventoryLedger:
    """
    Owns product stock and stock reservations.

    ``reserve`` joins the caller's transaction; the other transitions run in
    their own short transaction because they are driven by queue workers and
    the sweeper.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        reservation_ttl: timedelta = DEFAULT_RESERVATION_TTL,
    ):
        """
        Initialize inventory ledger.

        Args:
            session_factory: Factory for ledger-owned transactions
            reservation_ttl: Lifetime of a PENDING reservation
        """
        self._session_factory = session_factory
        self.reservation_ttl = reservation_ttl

    async def get_product(self, product_id: int) -> Optional[ProductSnapshot]:
        """
        Read a product with its current counters.

        Args:
            product_id: Product ID

        Returns:
            Optional[ProductSnapshot]: Product or None if not found
        """
        async with self._session_factory() as db:
            row = await db.get(Product, product_id)
            if row is None:
                return None
            return ProductSnapshot(
                id=row.id,
                name=row.name,
                price=row.price,
                stock=row.stock,
                reserved=row.reserved,
            )

    async def reserve(
        self,
        db: AsyncSession,
        product_id: int,
        order_id: int,
        quantity: int,
    ) -> int:
        """
        Hold ``quantity`` units of a product for an order.

        The availability check and the hold are one conditional UPDATE, so
        concurrent callers for the same product cannot both pass the check.
        Runs inside the caller's transaction; the caller commits.

        Args:
            db: Session of the enclosing transaction
            product_id: Product ID
            order_id: Order the reservation belongs to
            quantity: Units to hold

        Returns:
            int: Reservation ID

        Raises:
            InvalidLineItemError: If quantity is not positive
            ProductNotFoundError: If the product does not exist
            InsufficientStockError: If available stock is below quantity
            DuplicateReservationError: If the order already holds a reservation
        """
        if quantity <= 0:
            raise InvalidLineItemError("Quantity must be greater than zero", quantity=quantity)

        existing = await db.execute(
            select(StockReservation.id).where(StockReservation.order_id == order_id)
        )
        if existing.scalar_one_or_none() is not None:
            raise DuplicateReservationError(order_id)

        result = await db.execute(
            update(Product)
            .where(Product.id == product_id)
            .where(Product.stock - Product.reserved >= quantity)
            .values(reserved=Product.reserved + quantity)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            counters = (
                await db.execute(
                    select(Product.stock, Product.reserved).where(Product.id == product_id)
                )
            ).one_or_none()
            if counters is None:
                raise ProductNotFoundError(product_id)

            available = counters.stock - counters.reserved
            metrics.record_reservation_attempt("insufficient")
            logger.info(
                "stock_reservation_insufficient",
                product_id=product_id,
                order_id=order_id,
                requested=quantity,
                available=available,
            )
            raise InsufficientStockError(product_id, quantity, available)

        now = utcnow()
        reservation = StockReservation(
            order_id=order_id,
            product_id=product_id,
            quantity=quantity,
            status=ReservationStatus.PENDING.value,
            expires_at=now + self.reservation_ttl,
            created_at=now,
            updated_at=now,
        )
        db.add(reservation)
        try:
            await db.flush()
        except IntegrityError as e:
            raise DuplicateReservationError(order_id) from e

        metrics.record_reservation_attempt("reserved")
        logger.info(
            "stock_reserved",
            reservation_id=reservation.id,
            product_id=product_id,
            order_id=order_id,
            quantity=quantity,
            expires_at=reservation.expires_at.isoformat(),
        )
        return reservation.id

    async def confirm(self, reservation_id: int) -> bool:
        """
        Turn a PENDING reservation into a stock decrement.

        Returns:
            bool: True if this call moved the reservation, False for a no-op
        """
        return await self._leave_pending(
            reservation_id,
            ReservationStatus.CONFIRMED,
            decrement_stock=True,
            extra_values={"confirmed_at": utcnow()},
        )

    async def release(self, reservation_id: int) -> bool:
        """
        Give a PENDING reservation's hold back to available stock.

        Returns:
            bool: True if this call moved the reservation, False for a no-op
        """
        return await self._leave_pending(
            reservation_id,
            ReservationStatus.RELEASED,
            decrement_stock=False,
            extra_values={"released_at": utcnow()},
        )

    async def expire(self, reservation_id: int, now: Optional[datetime] = None) -> bool:
        """
        Expire a PENDING reservation whose ``expires_at`` has passed.

        Returns:
            bool: True if this call moved the reservation, False for a no-op
        """
        now = now or utcnow()
        return await self._leave_pending(
            reservation_id,
            ReservationStatus.EXPIRED,
            decrement_stock=False,
            extra_values={"released_at": now},
            expired_before=now,
        )

    async def list_expired(self, now: Optional[datetime] = None) -> List[ReservationRecord]:
        """Return PENDING reservations whose expiry is in the past."""
        now = now or utcnow()
        async with self._session_factory() as db:
            result = await db.execute(
                select(StockReservation)
                .where(StockReservation.status == ReservationStatus.PENDING.value)
                .where(StockReservation.expires_at < now)
                .order_by(StockReservation.expires_at)
            )
            return [_to_record(row) for row in result.scalars().all()]

    async def get(self, reservation_id: int) -> Optional[ReservationRecord]:
        async with self._session_factory() as db:
            row = await db.get(StockReservation, reservation_id)
            return _to_record(row) if row is not None else None

    async def find_by_order(self, order_id: int) -> Optional[ReservationRecord]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(StockReservation).where(StockReservation.order_id == order_id)
            )
            row = result.scalar_one_or_none()
            return _to_record(row) if row is not None else None

    async def available_stock(self, product_id: int) -> int:
        """
        Compute ``stock - Σ PENDING quantities`` from the reservations table.

        This is the ledger's definition of available stock; the ``reserved``
        counter on the product row must always agree with it.
        """
        async with self._session_factory() as db:
            stock = (
                await db.execute(select(Product.stock).where(Product.id == product_id))
            ).scalar_one_or_none()
            if stock is None:
                raise ProductNotFoundError(product_id)

            held = (
                await db.execute(
                    select(func.coalesce(func.sum(StockReservation.quantity), 0))
                    .where(StockReservation.product_id == product_id)
                    .where(StockReservation.status == ReservationStatus.PENDING.value)
                )
            ).scalar_one()
            return stock - int(held)

    async def _leave_pending(
        self,
        reservation_id: int,
        target: ReservationStatus,
        decrement_stock: bool,
        extra_values: Dict[str, Any],
        expired_before: Optional[datetime] = None,
    ) -> bool:
        async with self._session_factory() as db:
            now = utcnow()
            stmt = (
                update(StockReservation)
                .where(StockReservation.id == reservation_id)
                .where(StockReservation.status == ReservationStatus.PENDING.value)
                .values(status=target.value, updated_at=now, **extra_values)
                .execution_options(synchronize_session=False)
            )
            if expired_before is not None:
                stmt = stmt.where(StockReservation.expires_at < expired_before)

            result = await db.execute(stmt)

            if result.rowcount == 0:
                current = (
                    await db.execute(
                        select(StockReservation.status).where(
                            StockReservation.id == reservation_id
                        )
                    )
                ).scalar_one_or_none()
                await db.rollback()

                if current is None:
                    logger.warning(
                        "stock_reservation_not_found",
                        reservation_id=reservation_id,
                        target=target.value,
                    )
                else:
                    logger.info(
                        "stock_reservation_transition_noop",
                        reservation_id=reservation_id,
                        target=target.value,
                        current_status=current,
                    )
                metrics.record_reservation_transition(target.value, applied=False)
                return False

            held = (
                await db.execute(
                    select(StockReservation.product_id, StockReservation.quantity).where(
                        StockReservation.id == reservation_id
                    )
                )
            ).one()

            values: Dict[str, Any] = {"reserved": Product.reserved - held.quantity}
            if decrement_stock:
                values["stock"] = Product.stock - held.quantity

            await db.execute(
                update(Product)
                .where(Product.id == held.product_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        metrics.record_reservation_transition(target.value, applied=True)
        logger.info(
            "stock_reservation_transitioned",
            reservation_id=reservation_id,
            status=target.value,
            product_id=held.product_id,
            quantity=held.quantity,
            stock_decremented=decrement_stock,
        )
        return True
