"""
Exception taxonomy for the fulfillment pipeline.

Callers of ``place_order`` only ever see subclasses of ``FulfillmentError``:
- fatal preconditions (product missing, invalid line item, unsupported method)
- stock exhaustion after the reserve retries are used up
- ``FulfillmentError`` itself for infrastructure failures
"""
from typing import Any, Dict, Optional


class FulfillmentError(Exception):
    """Base exception for order fulfillment errors."""

    error_code = "fulfillment_error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for callers that report errors as data."""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "type": self.__class__.__name__,
            }
        }


class ProductNotFoundError(FulfillmentError):
    """Raised when the requested product does not exist."""

    error_code = "product_not_found"

    def __init__(self, product_id: int):
        super().__init__(f"Product {product_id} not found", product_id=product_id)
        self.product_id = product_id


class InvalidLineItemError(FulfillmentError):
    """Raised for a non-positive quantity or a negative unit price."""

    error_code = "invalid_line_item"


class UnsupportedPaymentMethodError(FulfillmentError):
    """Raised when no gateway is registered for a payment method."""

    error_code = "unsupported_payment_method"

    def __init__(self, method: Any):
        value = getattr(method, "value", method)
        super().__init__(
            f"Payment service for method '{value}' is not registered", method=value
        )
        self.method = value


class InsufficientStockError(FulfillmentError):
    """Raised when available stock cannot cover the requested quantity."""

    error_code = "insufficient_stock"

    def __init__(self, product_id: int, requested: int, available: Optional[int] = None):
        message = f"Insufficient stock for product {product_id}: requested={requested}"
        if available is not None:
            message += f", available={available}"
        super().__init__(
            message, product_id=product_id, requested=requested, available=available
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class DuplicateReservationError(FulfillmentError):
    """Raised when an order already holds a reservation."""

    error_code = "duplicate_reservation"

    def __init__(self, order_id: int):
        super().__init__(f"Order {order_id} already has a reservation", order_id=order_id)
        self.order_id = order_id


class OrderNotFoundError(FulfillmentError):
    """Raised when an order id does not exist."""

    error_code = "order_not_found"

    def __init__(self, order_id: int):
        super().__init__(f"Order {order_id} not found", order_id=order_id)
        self.order_id = order_id


class OrderAlreadyFinalizedError(FulfillmentError):
    """Raised when finalizing an order that already left PENDING."""

    error_code = "order_already_finalized"

    def __init__(self, order_id: int, status: str):
        super().__init__(
            f"Order {order_id} is already finalized with status '{status}'",
            order_id=order_id,
            status=status,
        )
        self.order_id = order_id
        self.status = status
