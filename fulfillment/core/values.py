"""
Value objects for the fulfillment domain.

Immutable pydantic models passed between the ledgers, the gateways and the
orchestrator. ORM rows never leave the ledger that loaded them.
"""
from __future__ import annotations

import re
import secrets
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict

from fulfillment.core.exceptions import InvalidLineItemError

ORDER_NUMBER_PATTERN = re.compile(r"^ORD-\d{8}-[A-Z0-9]{8}$")

CENT = Decimal("0.01")


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_money(value: Decimal | int | float | str) -> Decimal:
    """Quantize an amount to cents."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


class OrderNumber(BaseModel):
    """
    Human-facing order number, ``ORD-YYYYMMDD-XXXXXXXX``.

    The suffix is 8 upper-case hex characters from a CSPRNG, so two orders on
    the same day collide with probability ~1/2^32.
    """

    model_config = ConfigDict(frozen=True)

    value: str

    @classmethod
    def generate(cls, now: Optional[datetime] = None) -> OrderNumber:
        now = now or utcnow()
        return cls(value=f"ORD-{now:%Y%m%d}-{secrets.token_hex(4).upper()}")

    @classmethod
    def from_string(cls, value: str) -> OrderNumber:
        if not cls.is_valid(value):
            raise ValueError(f"Invalid order number format: {value}")
        return cls(value=value)

    @staticmethod
    def is_valid(value: str) -> bool:
        return ORDER_NUMBER_PATTERN.match(value) is not None

    def __str__(self) -> str:
        return self.value


class LineTotal(BaseModel):
    """Unit price × quantity, rounded half-up to cents."""

    model_config = ConfigDict(frozen=True)

    unit_price: Decimal
    quantity: int
    total: Decimal

    @classmethod
    def calculate(cls, unit_price: Decimal | int | float | str, quantity: int) -> LineTotal:
        """
        Compute a line total.

        Raises:
            InvalidLineItemError: If quantity <= 0 or unit price < 0
        """
        price = Decimal(str(unit_price))
        if price < 0:
            raise InvalidLineItemError("Unit price cannot be negative", unit_price=str(price))
        if quantity <= 0:
            raise InvalidLineItemError(
                "Quantity must be greater than zero", quantity=quantity
            )
        return cls(unit_price=to_money(price), quantity=quantity, total=to_money(price * quantity))


class ProductSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    price: Decimal
    stock: int
    reserved: int

    @property
    def available(self) -> int:
        return self.stock - self.reserved


class ReservationRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    order_id: int
    product_id: int
    quantity: int
    status: str
    expires_at: datetime


class OrderLineInput(BaseModel):
    """A line to attach to an order, with the product snapshot it was priced from."""

    model_config = ConfigDict(frozen=True)

    product_id: int
    product_name: str
    unit_price: Decimal
    quantity: int
    line_total: Decimal


class OrderLineResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    product_id: int
    product_name: str
    unit_price: Decimal
    quantity: int
    line_total: Decimal


class OrderResult(BaseModel):
    """The caller-facing view of an order."""

    model_config = ConfigDict(frozen=True)

    id: int
    order_number: str
    user_id: int
    status: str
    payment_status: str
    total_amount: Decimal
    lines: List[OrderLineResult]
    created_at: datetime


class ChargeResult(BaseModel):
    """
    Outcome of one gateway charge.

    ``idempotency_token`` is always set, failures included, so a retried
    charge for the same purchase can be deduplicated.
    """

    model_config = ConfigDict(frozen=True)

    success: bool
    idempotency_token: str
    transaction_id: Optional[str] = None
    message: str = ""


class PaymentRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    idempotency_key: str
    order_id: int
    payment_method: str
    amount: Decimal
    status: str
    transaction_id: Optional[str]
    error_message: Optional[str]
    attempt_number: int

    @property
    def succeeded(self) -> bool:
        return self.status == "success"
