"""Payment gateway integrations."""
from .gateways import (
    CircuitBreaker,
    GatewayError,
    GatewayErrorType,
    PaymentGateway,
    PaymentGatewayRegistry,
    PaymentMethod,
    SimulatedGateway,
    StripeGateway,
    build_registry,
)

__all__ = [
    "CircuitBreaker",
    "GatewayError",
    "GatewayErrorType",
    "PaymentGateway",
    "PaymentGatewayRegistry",
    "PaymentMethod",
    "SimulatedGateway",
    "StripeGateway",
    "build_registry",
]
