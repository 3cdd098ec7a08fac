"""
Payment ledger: one row per distinct gateway charge attempt.

Rows are keyed by the gateway's idempotency token. Recording a charge whose
token is already on file returns the stored row instead of writing a second
one, which is what makes a replayed charge harmless.
"""
from decimal import Decimal
from typing import List, Optional, Tuple

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.core.values import ChargeResult, PaymentRecord, to_money, utcnow
from fulfillment.database.models import Payment, PaymentStatus
from fulfillment.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def _to_record(row: Payment) -> PaymentRecord:
    return PaymentRecord(
        id=str(row.id),
        idempotency_key=row.idempotency_key,
        order_id=row.order_id,
        payment_method=row.payment_method,
        amount=row.amount,
        status=row.status,
        transaction_id=row.transaction_id,
        error_message=row.error_message,
        attempt_number=row.attempt_number,
    )


class PaymentLedger:
    """Stores payment attempts. All methods join the caller's transaction."""

    async def find_by_idempotency_key(
        self, db: AsyncSession, idempotency_key: str
    ) -> Optional[PaymentRecord]:
        """
        Look up a payment attempt by its gateway token.

        Args:
            db: Database session
            idempotency_key: Token returned by the gateway

        Returns:
            Optional[PaymentRecord]: Stored attempt or None
        """
        result = await db.execute(
            select(Payment).where(Payment.idempotency_key == idempotency_key)
        )
        row = result.scalar_one_or_none()
        return _to_record(row) if row is not None else None

    async def find_by_order(self, db: AsyncSession, order_id: int) -> List[PaymentRecord]:
        """All attempts for an order, oldest first."""
        result = await db.execute(
            select(Payment)
            .where(Payment.order_id == order_id)
            .order_by(Payment.attempt_number)
        )
        return [_to_record(row) for row in result.scalars().all()]

    async def next_attempt_number(self, db: AsyncSession, order_id: int) -> int:
        result = await db.execute(
            select(func.coalesce(func.max(Payment.attempt_number), 0)).where(
                Payment.order_id == order_id
            )
        )
        return int(result.scalar_one()) + 1

    async def record(
        self,
        db: AsyncSession,
        order_id: int,
        payment_method: str,
        amount: Decimal,
        result: ChargeResult,
        attempt_number: int,
    ) -> PaymentRecord:
        """
        Insert a payment attempt row.

        Raises:
            IntegrityError: If the token is already recorded
        """
        now = utcnow()
        payment = Payment(
            idempotency_key=result.idempotency_token,
            order_id=order_id,
            payment_method=payment_method,
            amount=to_money(amount),
            status=(PaymentStatus.SUCCESS if result.success else PaymentStatus.FAILED).value,
            transaction_id=result.transaction_id,
            error_message=None if result.success else result.message,
            attempt_number=attempt_number,
            payment_metadata={"message": result.message},
            processed_at=now,
            created_at=now,
        )
        async with db.begin_nested():
            db.add(payment)

        logger.info(
            "payment_recorded",
            payment_id=str(payment.id),
            order_id=order_id,
            payment_method=payment_method,
            status=payment.status,
            attempt_number=attempt_number,
        )
        return _to_record(payment)

    async def record_charge(
        self,
        db: AsyncSession,
        order_id: int,
        payment_method: str,
        amount: Decimal,
        result: ChargeResult,
    ) -> Tuple[PaymentRecord, bool]:
        """
        Record a charge outcome once per idempotency token.

        Args:
            db: Session of the enclosing transaction
            order_id: Order charged
            payment_method: Gateway method name
            amount: Amount charged
            result: Gateway outcome

        Returns:
            Tuple[PaymentRecord, bool]: The stored attempt and whether it was
            already on file
        """
        existing = await self.find_by_idempotency_key(db, result.idempotency_token)
        if existing is not None:
            metrics.record_idempotency_hit()
            logger.info(
                "payment_idempotency_hit",
                order_id=order_id,
                payment_id=existing.id,
                status=existing.status,
            )
            return existing, True

        attempt_number = await self.next_attempt_number(db, order_id)
        try:
            return (
                await self.record(db, order_id, payment_method, amount, result, attempt_number),
                False,
            )
        except IntegrityError:
            # another writer stored the same token between our read and insert
            stored = await self.find_by_idempotency_key(db, result.idempotency_token)
            if stored is None:
                raise
            metrics.record_idempotency_hit()
            return stored, True
