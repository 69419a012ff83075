"""
Resilience primitives for provider calls.

Implements:
- Circuit breaker pattern
- Per-call timeout
- Provider error classification for retry logic
"""
import asyncio
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog

from tenant_billing.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class ProviderErrorType(Enum):
    """Classification of provider errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class ProviderError(Exception):
    """
    Error raised inside an adapter.

    Never leaves an adapter; converted to a failed result first.
    """

    def __init__(
        self,
        message: str,
        error_type: ProviderErrorType,
        original_error: Optional[Exception] = None,
        code: Optional[str] = None,
    ):
        """
        Initialize provider error.

        Args:
            message: Error message
            error_type: Classification of error
            original_error: Original SDK/transport exception
            code: Provider error code, when one was returned
        """
        super().__init__(message)
        self.error_type = error_type
        self.original_error = original_error
        self.code = code


class CircuitBreaker:
    """
    Circuit breaker for provider API calls.

    Prevents cascading failures by temporarily stopping requests
    when error rate exceeds threshold.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            name: Provider name, used in logs and metrics
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """
        Execute coroutine function with circuit breaker protection.

        Args:
            func: Coroutine function to execute
            *args: Positional arguments
            **kwargs: Keyword arguments

        Returns:
            Function result

        Raises:
            ProviderError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.monotonic() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open", provider=self.name)
            else:
                raise ProviderError(
                    f"Circuit breaker is open for {self.name}",
                    ProviderErrorType.TRANSIENT,
                )

        try:
            result = await func(*args, **kwargs)
        except ProviderError as e:
            # Declines and validation errors say nothing about provider health.
            if e.error_type != ProviderErrorType.PERMANENT:
                self.on_failure()
            raise
        except Exception:
            self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed", provider=self.name)

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.monotonic()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                provider=self.name,
                failure_count=self.failure_count,
            )

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(self.name, state)


async def call_with_timeout(
    func: Callable[..., Awaitable[T]], timeout_seconds: float, *args: Any, **kwargs: Any
) -> T:
    """
    Await a provider call bounded by a timeout.

    Raises:
        ProviderError: Transient error when the call exceeds the timeout
    """
    try:
        return await asyncio.wait_for(func(*args, **kwargs), timeout=timeout_seconds)
    except asyncio.TimeoutError as e:
        raise ProviderError(
            f"Provider call timed out after {timeout_seconds}s",
            ProviderErrorType.TRANSIENT,
            original_error=e,
            code="timeout",
        ) from e
