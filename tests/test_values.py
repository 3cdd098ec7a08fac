"""
Tests for order numbers and line totals.
"""
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from fulfillment.core.exceptions import InvalidLineItemError
from fulfillment.core.values import ORDER_NUMBER_PATTERN, LineTotal, OrderNumber


class TestOrderNumber:
    """Test suite for order number generation."""

    @pytest.mark.unit
    def test_format_uses_date_and_hex_suffix(self) -> None:
        number = OrderNumber.generate(datetime(2026, 3, 7, 12, 0, tzinfo=timezone.utc))

        assert str(number).startswith("ORD-20260307-")
        assert ORDER_NUMBER_PATTERN.match(str(number))

    @pytest.mark.unit
    def test_parallel_generation_is_unique_and_well_formed(self) -> None:
        """Every number generated across threads matches the format, none repeat."""
        with ThreadPoolExecutor(max_workers=8) as pool:
            numbers = [str(n) for n in pool.map(lambda _: OrderNumber.generate(), range(500))]

        assert all(ORDER_NUMBER_PATTERN.match(n) for n in numbers)
        assert len(set(numbers)) == len(numbers)

    @pytest.mark.unit
    def test_from_string_rejects_malformed_numbers(self) -> None:
        assert OrderNumber.from_string("ORD-20260101-0A1B2C3D").value == "ORD-20260101-0A1B2C3D"

        for bad in ["ORD-2026011-0A1B2C3D", "ord-20260101-0A1B2C3D", "ORD-20260101-0a1b2c3d"]:
            assert not OrderNumber.is_valid(bad)
            with pytest.raises(ValueError, match="Invalid order number"):
                OrderNumber.from_string(bad)


class TestLineTotal:
    """Test suite for line total calculation."""

    @pytest.mark.unit
    def test_rounds_half_up_to_cents(self) -> None:
        line = LineTotal.calculate(Decimal("0.125"), 1)
        assert line.total == Decimal("0.13")

        line = LineTotal.calculate(Decimal("19.99"), 3)
        assert line.total == Decimal("59.97")
        assert line.unit_price == Decimal("19.99")

    @pytest.mark.unit
    @pytest.mark.parametrize("quantity", [0, -1])
    def test_rejects_non_positive_quantity(self, quantity: int) -> None:
        with pytest.raises(InvalidLineItemError, match="Quantity must be greater than zero"):
            LineTotal.calculate(Decimal("10.00"), quantity)

    @pytest.mark.unit
    def test_rejects_negative_price(self) -> None:
        with pytest.raises(InvalidLineItemError, match="negative"):
            LineTotal.calculate(Decimal("-0.01"), 1)

    @pytest.mark.unit
    def test_free_item_is_allowed(self) -> None:
        assert LineTotal.calculate(Decimal("0"), 2).total == Decimal("0.00")
