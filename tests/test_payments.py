"""
Tests for payment idempotency in the payment ledger.
"""
from decimal import Decimal

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import func, select

from fulfillment.core.values import ChargeResult
from fulfillment.database.models import Payment


async def _order(session_factory, orders, number: str = "ORD-20260101-00000001") -> int:
    async with session_factory() as db:
        order_id = await orders.create(db, 1, number, Decimal("10.00"))
        await db.commit()
    return order_id


class TestPaymentIdempotency:
    """Test suite for deduplicating gateway charges."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_same_token_is_recorded_once(self, session_factory, orders, payments) -> None:
        order_id = await _order(session_factory, orders)
        charge = ChargeResult(success=True, idempotency_token="tok_1", transaction_id="txn_1")
        hits_before = REGISTRY.get_sample_value("payment_idempotency_hits_total") or 0.0

        async with session_factory() as db:
            first, first_dup = await payments.record_charge(
                db, order_id, "stripe", Decimal("10.00"), charge
            )
            await db.commit()

        # a replayed charge returning the same token
        async with session_factory() as db:
            second, second_dup = await payments.record_charge(
                db, order_id, "stripe", Decimal("10.00"), charge
            )
            await db.commit()

        assert first_dup is False
        assert second_dup is True
        assert second.id == first.id
        assert second.succeeded
        assert REGISTRY.get_sample_value("payment_idempotency_hits_total") == hits_before + 1

        async with session_factory() as db:
            count = (await db.execute(select(func.count()).select_from(Payment))).scalar_one()
        assert count == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stored_failure_wins_over_replay(
        self, session_factory, orders, payments
    ) -> None:
        order_id = await _order(session_factory, orders)

        async with session_factory() as db:
            await payments.record_charge(
                db,
                order_id,
                "stripe",
                Decimal("10.00"),
                ChargeResult(success=False, idempotency_token="tok_2", message="Card declined"),
            )
            await db.commit()

        async with session_factory() as db:
            stored, deduplicated = await payments.record_charge(
                db,
                order_id,
                "stripe",
                Decimal("10.00"),
                ChargeResult(success=True, idempotency_token="tok_2"),
            )

        assert deduplicated is True
        assert stored.status == "failed"
        assert stored.error_message == "Card declined"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_distinct_tokens_number_attempts(
        self, session_factory, orders, payments
    ) -> None:
        order_id = await _order(session_factory, orders)

        async with session_factory() as db:
            for token, success in [("tok_a", False), ("tok_b", True)]:
                await payments.record_charge(
                    db,
                    order_id,
                    "iyzico",
                    Decimal("10.00"),
                    ChargeResult(success=success, idempotency_token=token),
                )
            await db.commit()

        async with session_factory() as db:
            attempts = await payments.find_by_order(db, order_id)
            found = await payments.find_by_idempotency_key(db, "tok_b")
            missing = await payments.find_by_idempotency_key(db, "tok_zzz")

        assert [(p.attempt_number, p.status) for p in attempts] == [(1, "failed"), (2, "success")]
        assert found.attempt_number == 2
        assert missing is None
