"""
Tests for the reservation sweeper.
"""
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from fulfillment.core.sweeper import SWEEPER_LOCK_RESOURCE, ReservationSweeper
from fulfillment.core.values import utcnow
from fulfillment.database.models import ReservationStatus


@pytest.fixture
def lock_manager() -> MagicMock:
    """Redlock double that grants the lock."""
    manager = MagicMock()
    manager.lock.return_value = MagicMock(name="lock")
    return manager


class TestReservationSweeper:
    """Test suite for expiring abandoned reservations."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sweep_expires_overdue_reservations(
        self, inventory, open_order, make_product, lock_manager
    ) -> None:
        product_id = await make_product(stock=10)
        _, first = await open_order(product_id, quantity=3)
        _, second = await open_order(product_id, quantity=2)
        await inventory.confirm(second)

        sweeper = ReservationSweeper(inventory, lock_manager, lock_ttl_seconds=240)
        result = await sweeper.sweep(now=utcnow() + timedelta(minutes=11))

        assert (result.found, result.expired, result.failed) == (1, 1, 0)
        assert result.skipped is False
        assert (await inventory.get(first)).status == ReservationStatus.EXPIRED.value
        assert await inventory.available_stock(product_id) == 8

        lock_manager.lock.assert_called_once_with(SWEEPER_LOCK_RESOURCE, 240_000)
        lock_manager.unlock.assert_called_once_with(lock_manager.lock.return_value)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fresh_reservations_are_left_alone(
        self, inventory, open_order, make_product, lock_manager
    ) -> None:
        product_id = await make_product(stock=10)
        _, reservation_id = await open_order(product_id, quantity=3)

        result = await ReservationSweeper(inventory, lock_manager).sweep()

        assert (result.found, result.expired) == (0, 0)
        assert (await inventory.get(reservation_id)).status == ReservationStatus.PENDING.value

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sweep_skipped_when_lock_held(
        self, inventory, open_order, make_product, lock_manager
    ) -> None:
        lock_manager.lock.return_value = False
        product_id = await make_product(stock=10)
        _, reservation_id = await open_order(product_id, quantity=3)

        result = await ReservationSweeper(inventory, lock_manager).sweep(
            now=utcnow() + timedelta(minutes=11)
        )

        assert result.skipped is True
        assert (await inventory.get(reservation_id)).status == ReservationStatus.PENDING.value
        lock_manager.unlock.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failure_does_not_stop_the_sweep(
        self, inventory, open_order, make_product, lock_manager, mocker
    ) -> None:
        product_id = await make_product(stock=10)
        await open_order(product_id, quantity=1)
        await open_order(product_id, quantity=1)
        await open_order(product_id, quantity=1)

        real_expire = inventory.expire
        calls = []

        async def flaky_expire(reservation_id, now=None):
            calls.append(reservation_id)
            if len(calls) == 1:
                raise RuntimeError("database is locked")
            return await real_expire(reservation_id, now)

        mocker.patch.object(inventory, "expire", side_effect=flaky_expire)

        result = await ReservationSweeper(inventory, lock_manager).sweep(
            now=utcnow() + timedelta(minutes=11)
        )

        assert (result.found, result.expired, result.failed) == (3, 2, 1)
        assert len(calls) == 3
        lock_manager.unlock.assert_called_once()
