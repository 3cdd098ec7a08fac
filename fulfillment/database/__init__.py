"""Database package for the fulfillment pipeline."""
from .connection import (
    close_db,
    create_engine_from_settings,
    create_session_factory,
    get_session_factory,
    init_db,
)
from .models import (
    Base,
    Order,
    OrderLine,
    OrderPaymentStatus,
    OrderStatus,
    OutboxEvent,
    Payment,
    PaymentStatus,
    Product,
    ReservationStatus,
    StockReservation,
)

__all__ = [
    "Base",
    "Order",
    "OrderLine",
    "OrderPaymentStatus",
    "OrderStatus",
    "OutboxEvent",
    "Payment",
    "PaymentStatus",
    "Product",
    "ReservationStatus",
    "StockReservation",
    "close_db",
    "create_engine_from_settings",
    "create_session_factory",
    "get_session_factory",
    "init_db",
]
