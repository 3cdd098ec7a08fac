"""Order fulfillment core: ledgers, outbox and compensation tasks.

The saga and the sweeper are imported from ``core.order_fulfillment`` and
``core.sweeper``.
"""
from .exceptions import (
    DuplicateReservationError,
    FulfillmentError,
    InsufficientStockError,
    InvalidLineItemError,
    OrderAlreadyFinalizedError,
    OrderNotFoundError,
    ProductNotFoundError,
    UnsupportedPaymentMethodError,
)
from .inventory import InventoryLedger
from .orders import OrderLedger
from .outbox import OutboxPublisher, write_outbox_event
from .payments import PaymentLedger
from .task_queue import (
    InMemoryTaskQueue,
    RedisTaskQueue,
    StockTaskHandler,
    TaskQueue,
    TaskType,
    run_with_retry,
)

__all__ = [
    "DuplicateReservationError",
    "FulfillmentError",
    "InMemoryTaskQueue",
    "InsufficientStockError",
    "InvalidLineItemError",
    "InventoryLedger",
    "OrderAlreadyFinalizedError",
    "OrderLedger",
    "OrderNotFoundError",
    "OutboxPublisher",
    "PaymentLedger",
    "ProductNotFoundError",
    "RedisTaskQueue",
    "StockTaskHandler",
    "TaskQueue",
    "TaskType",
    "UnsupportedPaymentMethodError",
    "run_with_retry",
    "write_outbox_event",
]
