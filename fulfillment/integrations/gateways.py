"""
Payment gateway adapters.

Implements:
- A registry selecting the adapter for a payment method
- Stripe charges with retry, circuit breaker and timeout
- A simulated provider for development and tests

``charge`` never raises for a gateway problem. Declines, permanent errors,
exhausted retries, an open circuit and timeouts all come back as a failed
``ChargeResult`` that still carries an idempotency token.
"""
import asyncio
import random
import time
import uuid
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol

import stripe
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from fulfillment.config import Settings
from fulfillment.core.exceptions import UnsupportedPaymentMethodError
from fulfillment.core.values import ChargeResult, to_money
from fulfillment.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class PaymentMethod(str, Enum):
    STRIPE = "stripe"
    IYZICO = "iyzico"
    PAYTR = "paytr"


class GatewayErrorType(Enum):
    """Classification of gateway errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class GatewayError(Exception):
    """Gateway failure raised inside an adapter, turned into a failed charge."""

    def __init__(
        self,
        message: str,
        error_type: GatewayErrorType,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize gateway error.

        Args:
            message: Error message
            error_type: Classification of error
            original_error: Original provider exception
        """
        super().__init__(message)
        self.error_type = error_type
        self.original_error = original_error


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, GatewayError) and error.error_type != GatewayErrorType.PERMANENT


def idempotency_token(method: PaymentMethod, metadata: Mapping[str, Any]) -> str:
    """
    Token for one logical purchase.

    Derived from the order number so a repeated charge for the same order
    reuses it; random when no order number is given.
    """
    order_number = metadata.get("order_number")
    if order_number:
        return f"{method.value}-{order_number}"
    return f"{method.value}-{uuid.uuid4().hex}"


class CircuitBreaker:
    """
    Circuit breaker for gateway calls.

    Prevents cascading failures by temporarily stopping requests
    when error rate exceeds threshold.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize circuit breaker.

        Args:
            name: Gateway the breaker protects (metrics label)
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
            clock: Time source
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open
        self._clock = clock

    def before_call(self) -> None:
        """
        Check the circuit before a call.

        Raises:
            GatewayError: If circuit is open
        """
        if self.state != "open":
            return

        if self.last_failure_time and self._clock() - self.last_failure_time > self.timeout:
            self._set_state("half_open")
            self.success_count = 0
            logger.info("circuit_breaker_half_open", gateway=self.name)
            return

        raise GatewayError("Circuit breaker is open", GatewayErrorType.TRANSIENT)

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed", gateway=self.name)

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = self._clock()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                gateway=self.name,
                failure_count=self.failure_count,
            )

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(self.name, state)


class PaymentGateway(Protocol):
    """A payment provider adapter."""

    method: PaymentMethod

    async def charge(self, amount: Decimal, metadata: Dict[str, Any]) -> ChargeResult:
        ...


class StripeGateway:
    """
    Stripe adapter charging through confirmed PaymentIntents.

    The idempotency token is sent to Stripe as the request idempotency key, so
    a repeated charge for the same order is answered from Stripe's cache
    instead of moving money twice.
    """

    method = PaymentMethod.STRIPE

    def __init__(
        self,
        api_key: str,
        currency: str = "usd",
        api_version: Optional[str] = None,
        timeout_seconds: float = 10.0,
        max_attempts: int = 3,
        retry_wait: Optional[wait_base] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self.currency = currency
        self.timeout_seconds = timeout_seconds
        # a hung request must free its executor thread once the charge times out
        self.http_client = stripe.RequestsClient(timeout=timeout_seconds)
        self.client = stripe.StripeClient(
            api_key,
            stripe_version=api_version,
            http_client=self.http_client,
            max_network_retries=0,
        )
        self.max_attempts = max_attempts
        self.retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=8)
        self.circuit_breaker = circuit_breaker or CircuitBreaker(self.method.value)

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> GatewayErrorType:
        """
        Classify Stripe error for retry logic.

        Args:
            error: Stripe error

        Returns:
            GatewayErrorType: Error classification
        """
        if isinstance(error, stripe.RateLimitError):
            return GatewayErrorType.RATE_LIMIT
        elif isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            return GatewayErrorType.TRANSIENT
        elif isinstance(
            error,
            (
                stripe.CardError,
                stripe.InvalidRequestError,
                stripe.AuthenticationError,
                stripe.PermissionError,
            ),
        ):
            return GatewayErrorType.PERMANENT
        else:
            # Unknown errors are treated as transient
            return GatewayErrorType.TRANSIENT

    def _create_payment_intent(
        self, amount_cents: int, token: str, metadata: Dict[str, Any]
    ) -> Any:
        params: Dict[str, Any] = {
            "amount": amount_cents,
            "currency": self.currency,
            "confirm": True,
            "payment_method": metadata.get("payment_method_token", "pm_card_visa"),
            "automatic_payment_methods": {"enabled": True, "allow_redirects": "never"},
            "metadata": {
                key: str(value)
                for key, value in metadata.items()
                if key != "payment_method_token"
            },
        }
        return self.client.v1.payment_intents.create(
            params=params, options={"idempotency_key": token}
        )

    async def _attempt(self, amount_cents: int, token: str, metadata: Dict[str, Any]) -> Any:
        self.circuit_breaker.before_call()
        try:
            intent = await asyncio.to_thread(
                self._create_payment_intent, amount_cents, token, metadata
            )
        except stripe.StripeError as e:
            error_type = self._classify_error(e)
            # declines say nothing about gateway health
            if error_type == GatewayErrorType.PERMANENT:
                self.circuit_breaker.on_success()
            else:
                self.circuit_breaker.on_failure()
            metrics.record_gateway_error(self.method.value, error_type.value)
            logger.error(
                "stripe_api_error",
                error_type=error_type.value,
                error_code=getattr(e, "code", None),
                error_message=str(e),
            )
            raise GatewayError(str(e), error_type, original_error=e) from e

        self.circuit_breaker.on_success()
        return intent

    async def _charge_with_retry(
        self, amount_cents: int, token: str, metadata: Dict[str, Any]
    ) -> Any:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.max_attempts),
            wait=self.retry_wait,
            reraise=True,
        ):
            with attempt:
                return await self._attempt(amount_cents, token, metadata)

    async def charge(self, amount: Decimal, metadata: Dict[str, Any]) -> ChargeResult:
        """
        Charge an amount.

        Args:
            amount: Amount in the configured currency
            metadata: Order context (order_id, order_number, user_id)

        Returns:
            ChargeResult: Outcome, always carrying the idempotency token
        """
        token = idempotency_token(self.method, metadata)
        amount_cents = int(to_money(amount) * 100)
        start_time = time.time()

        logger.info(
            "creating_payment_intent",
            amount_cents=amount_cents,
            currency=self.currency,
            idempotency_key=token,
        )

        try:
            intent = await asyncio.wait_for(
                self._charge_with_retry(amount_cents, token, metadata),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            metrics.record_gateway_error(self.method.value, "timeout")
            result = ChargeResult(
                success=False,
                idempotency_token=token,
                message=f"Gateway timed out after {self.timeout_seconds}s",
            )
        except GatewayError as e:
            result = ChargeResult(success=False, idempotency_token=token, message=str(e))
        else:
            succeeded = intent["status"] == "succeeded"
            result = ChargeResult(
                success=succeeded,
                idempotency_token=token,
                transaction_id=intent["id"],
                message="Payment successful" if succeeded else f"Payment {intent['status']}",
            )

        self._observe(result, time.time() - start_time)
        return result

    def _observe(self, result: ChargeResult, duration: float) -> None:
        metrics.record_gateway_charge(
            self.method.value, "success" if result.success else "failed", duration
        )
        logger.info(
            "gateway_charge_completed",
            method=self.method.value,
            success=result.success,
            idempotency_key=result.idempotency_token,
            transaction_id=result.transaction_id,
            duration_ms=int(duration * 1000),
        )


class SimulatedGateway:
    """
    Development provider approving a configurable share of charges.

    Used for methods without a live integration and in tests.
    """

    def __init__(
        self,
        method: PaymentMethod,
        success_rate: float = 1.0,
        latency_seconds: float = 0.0,
        timeout_seconds: float = 10.0,
        rng: Optional[random.Random] = None,
    ):
        if not 0.0 <= success_rate <= 1.0:
            raise ValueError("success_rate must be between 0 and 1")
        self.method = method
        self.success_rate = success_rate
        self.latency_seconds = latency_seconds
        self.timeout_seconds = timeout_seconds
        self._rng = rng or random.Random()

    async def charge(self, amount: Decimal, metadata: Dict[str, Any]) -> ChargeResult:
        token = idempotency_token(self.method, metadata)
        start_time = time.time()

        try:
            await asyncio.wait_for(
                asyncio.sleep(self.latency_seconds), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            metrics.record_gateway_error(self.method.value, "timeout")
            result = ChargeResult(
                success=False,
                idempotency_token=token,
                message=f"Gateway timed out after {self.timeout_seconds}s",
            )
        else:
            if self._rng.random() < self.success_rate:
                result = ChargeResult(
                    success=True,
                    idempotency_token=token,
                    transaction_id=f"{self.method.value}_txn_{uuid.uuid4().hex[:16]}",
                    message="Payment successful",
                )
            else:
                result = ChargeResult(
                    success=False, idempotency_token=token, message="Payment declined"
                )

        duration = time.time() - start_time
        metrics.record_gateway_charge(
            self.method.value, "success" if result.success else "failed", duration
        )
        logger.info(
            "gateway_charge_completed",
            method=self.method.value,
            success=result.success,
            amount=str(amount),
            idempotency_key=token,
        )
        return result


class PaymentGatewayRegistry:
    """Maps payment methods to gateway adapters."""

    def __init__(self) -> None:
        self._gateways: Dict[PaymentMethod, PaymentGateway] = {}

    def register(self, method: PaymentMethod | str, gateway: PaymentGateway) -> None:
        self._gateways[PaymentMethod(method)] = gateway
        logger.info("payment_gateway_registered", method=PaymentMethod(method).value)

    def get(self, method: PaymentMethod | str) -> PaymentGateway:
        """
        Adapter for a payment method.

        Raises:
            UnsupportedPaymentMethodError: If nothing is registered for it
        """
        try:
            return self._gateways[PaymentMethod(method)]
        except (KeyError, ValueError) as e:
            raise UnsupportedPaymentMethodError(method) from e

    def has(self, method: PaymentMethod | str) -> bool:
        try:
            return PaymentMethod(method) in self._gateways
        except ValueError:
            return False

    def available_methods(self) -> List[PaymentMethod]:
        return list(self._gateways)


def build_registry(settings: Settings) -> PaymentGatewayRegistry:
    """
    Registry for the configured environment.

    Stripe is live when a secret key is configured; every other method, and
    Stripe without a key, uses the simulated provider.
    """
    registry = PaymentGatewayRegistry()
    for method in PaymentMethod:
        if method == PaymentMethod.STRIPE and settings.stripe_enabled:
            registry.register(
                method,
                StripeGateway(
                    api_key=settings.stripe_secret_key,
                    currency=settings.stripe_currency,
                    api_version=settings.stripe_api_version,
                    timeout_seconds=settings.gateway_timeout_seconds,
                    max_attempts=settings.gateway_retry_max_attempts,
                ),
            )
        else:
            registry.register(
                method,
                SimulatedGateway(method, timeout_seconds=settings.gateway_timeout_seconds),
            )
    return registry
