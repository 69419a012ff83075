"""
Gateway adapter contract.

Every provider integration implements GatewayAdapter. Managed
subscriptions are an optional capability expressed by the
SubscriptionCapable protocol.
"""
import hashlib
import hmac
import json
import secrets
import time
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol, TypeVar, runtime_checkable

import structlog
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from tenant_billing.gateways.resilience import (
    CircuitBreaker,
    ProviderError,
    ProviderErrorType,
    call_with_timeout,
)
from tenant_billing.gateways.types import (
    CreatePaymentParams,
    GatewayConfig,
    GatewayProvider,
    NormalizedWebhookEvent,
    PaymentIntent,
    PaymentIntentStatus,
    PaymentState,
    PaymentStatus,
    RefundParams,
    RefundResult,
    RefundStatus,
    SubscriptionCreateParams,
    SubscriptionResult,
    WebhookEventType,
)
from tenant_billing.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def compute_hmac(secret: str, raw_body: bytes, digestmod: Any = hashlib.sha256) -> str:
    """Hex HMAC of a raw request body."""
    return hmac.new(secret.encode("utf-8"), raw_body, digestmod).hexdigest()


def verify_hmac(
    secret: Optional[str],
    raw_body: bytes,
    signature: Optional[str],
    digestmod: Any = hashlib.sha256,
) -> bool:
    """
    Constant-time comparison of a hex HMAC signature.

    Returns False when either the secret or the signature is missing.
    """
    if not secret or not signature:
        return False
    expected = compute_hmac(secret, raw_body, digestmod)
    return hmac.compare_digest(
        expected.encode(), signature.strip().lower().encode("utf-8", "replace")
    )


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, ProviderError) and error.error_type in (
        ProviderErrorType.TRANSIENT,
        ProviderErrorType.RATE_LIMIT,
    )


class GatewayAdapter(ABC):
    """
    Base class for payment provider adapters.

    Subclasses implement the provider calls; this class owns
    configuration state, the circuit breaker, timeouts, retries and
    conversion of provider errors into failed results.
    """

    provider: GatewayProvider
    signature_header: str
    supports_subscriptions = False

    retry_attempts = 3
    retry_wait: Any = wait_exponential(multiplier=0.5, min=0.5, max=4)

    def __init__(self) -> None:
        self.config: Optional[GatewayConfig] = None
        self._configured = False
        self.circuit_breaker = CircuitBreaker(self.provider.value)

    @property
    def name(self) -> str:
        return self.provider.value

    def initialize(self, config: GatewayConfig) -> None:
        """
        Configure the adapter.

        Never raises: missing credentials or a failed bootstrap leave the
        adapter unconfigured.
        """
        self.config = config
        try:
            self._configured = self._setup(config)
        except Exception as e:
            logger.warning("gateway_initialization_failed", provider=self.name, error=str(e))
            self._configured = False
            return

        if self._configured:
            logger.info("gateway_initialized", provider=self.name, mode=config.mode.value)
        else:
            logger.warning("gateway_not_configured", provider=self.name)

    def is_configured(self) -> bool:
        """Whether the adapter can be used for payments."""
        return self._configured

    @abstractmethod
    def _setup(self, config: GatewayConfig) -> bool:
        """Validate credentials and prepare clients. Returns configured state."""

    @abstractmethod
    async def create_payment(self, params: CreatePaymentParams) -> PaymentIntent:
        """Create a payment. Provider failures come back as a failed intent."""

    @abstractmethod
    async def get_payment_status(self, external_payment_id: str) -> PaymentStatus:
        """Poll the provider for a payment's status."""

    @abstractmethod
    async def refund(self, params: RefundParams) -> RefundResult:
        """Refund all or part of a payment."""

    @abstractmethod
    def verify_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        """Verify a webhook signature over the raw request body."""

    @abstractmethod
    def normalize_webhook_event(self, payload: Mapping[str, Any]) -> NormalizedWebhookEvent:
        """Convert a provider payload into the canonical event. Pure."""

    def generate_transaction_id(self) -> str:
        """Internal id for intents and refunds."""
        return f"txn_{int(time.time() * 1000)}_{secrets.token_hex(5)}"

    @property
    def timeout_seconds(self) -> float:
        return self.config.timeout_seconds if self.config else 15.0

    async def _call(
        self,
        operation: str,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        retry: bool = False,
        **kwargs: Any,
    ) -> T:
        """
        Run a provider call through the circuit breaker with a timeout.

        Args:
            operation: Operation name for logs and metrics
            func: Coroutine function performing the call
            retry: Retry transient errors with exponential backoff;
                only for reads and idempotency-keyed creates

        Raises:
            ProviderError: Classified error
        """
        start = time.perf_counter()
        try:
            if retry:
                result = await self._with_retries(operation, func, *args, **kwargs)
            else:
                result = await self._guarded(func, *args, **kwargs)
        except ProviderError as e:
            metrics.record_provider_api_call(
                self.name, operation, "error", time.perf_counter() - start
            )
            metrics.record_provider_api_error(self.name, e.error_type.value)
            logger.error(
                "provider_api_error",
                provider=self.name,
                operation=operation,
                error_type=e.error_type.value,
                error_code=e.code,
                error_message=str(e),
            )
            raise

        metrics.record_provider_api_call(
            self.name, operation, "success", time.perf_counter() - start
        )
        return result

    async def _guarded(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        try:
            return await self.circuit_breaker.call(
                call_with_timeout, func, self.timeout_seconds, *args, **kwargs
            )
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(str(e), ProviderErrorType.TRANSIENT, original_error=e) from e

    async def _with_retries(
        self, operation: str, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any
    ) -> T:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.retry_attempts),
            wait=self.retry_wait,
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(
                        "provider_call_retry",
                        provider=self.name,
                        operation=operation,
                        attempt=attempt.retry_state.attempt_number,
                    )
                return await self._guarded(func, *args, **kwargs)
        raise AssertionError("unreachable")  # pragma: no cover

    def _failed_intent(
        self, params: CreatePaymentParams, message: str, code: Optional[str] = None
    ) -> PaymentIntent:
        metadata: dict[str, Any] = {"error": message}
        if code:
            metadata["error_code"] = code
        return PaymentIntent(
            id=self.generate_transaction_id(),
            provider=self.provider,
            amount=params.amount,
            currency=params.currency,
            status=PaymentIntentStatus.FAILED,
            metadata=metadata,
        )

    def _failed_status(self, external_payment_id: str, error: ProviderError) -> PaymentStatus:
        return PaymentStatus(
            external_payment_id=external_payment_id,
            status=PaymentState.FAILED,
            amount=Decimal("0.00"),
            currency="",
            error_code=error.code,
            error_message=str(error),
        )

    def _failed_refund(self, params: RefundParams, message: str) -> RefundResult:
        return RefundResult(
            id=self.generate_transaction_id(),
            external_payment_id=params.external_payment_id,
            amount=params.amount or Decimal("0.00"),
            status=RefundStatus.FAILED,
            error=message,
        )

    def _unknown_event(
        self, payload: Mapping[str, Any], event_id: Optional[str] = None
    ) -> NormalizedWebhookEvent:
        """Canonical 'unknown' event; derives a stable id when none is given."""
        if not event_id:
            digest = hashlib.sha256(
                json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
            ).hexdigest()
            event_id = f"{self.name}_unparsed_{digest[:32]}"
        return NormalizedWebhookEvent(
            type=WebhookEventType.UNKNOWN,
            external_event_id=event_id,
            raw_payload=dict(payload),
        )

    def _not_configured_error(self) -> ProviderError:
        return ProviderError(
            f"{self.name} gateway is not configured",
            ProviderErrorType.PERMANENT,
            code="not_configured",
        )


@runtime_checkable
class SubscriptionCapable(Protocol):
    """Adapters that can manage provider-side subscriptions."""

    async def create_subscription(self, params: SubscriptionCreateParams) -> SubscriptionResult:
        ...

    async def cancel_subscription(self, external_subscription_id: str) -> bool:
        ...
