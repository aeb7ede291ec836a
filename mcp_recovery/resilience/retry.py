"""RetryExecutor: bounded retries with exponential backoff and jitter.

Each call is gated by the endpoint's ``CircuitBreaker``.  Failures are
classified through the shared ``ErrorClassifier``; non-retryable errors
stop the loop on the spot, retryable ones feed the breaker and back off:

    delay(n) = min(base_delay * backoff_multiplier ** (n - 1), max_delay)

optionally perturbed by ``± delay * jitter_factor``.  Backoff uses
``asyncio.sleep`` so one operation's wait never blocks another.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Generic, TypeVar

from mcp_recovery.classifier import ErrorClassifier
from mcp_recovery.core.config import RetryConfig
from mcp_recovery.core.errors import CircuitOpenError, EndpointError, RecoveryStrategy
from mcp_recovery.models.context import OperationContext
from mcp_recovery.resilience.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]


@dataclass
class RetryAttempt:
    """One invocation of the wrapped operation.

    Attributes:
        attempt:   1-based attempt number.
        delay:     Seconds slept after this attempt (0 for the last one).
        timestamp: When the attempt finished (UTC).
        success:   Whether the operation returned normally.
        error:     Classified error for failed attempts.
    """

    attempt: int
    delay: float
    timestamp: datetime
    success: bool
    error: EndpointError | None = None


@dataclass
class RetryResult(Generic[T]):
    """Outcome of ``RetryExecutor.execute``, with the full attempt history."""

    success: bool
    attempts: list[RetryAttempt] = field(default_factory=list)
    total_time: float = 0.0
    final_attempt: int = 0
    result: T | None = None
    error: EndpointError | None = None
    strategy: RecoveryStrategy = RecoveryStrategy.RETRY
    rejected: bool = False  # True when the circuit breaker refused the call


def compute_backoff_delay(
    attempt: int,
    config: RetryConfig,
    rng: Callable[[], float] = random.random,
) -> float:
    """Return the delay (seconds) to wait after failed *attempt*."""
    delay = min(config.base_delay * config.backoff_multiplier ** (attempt - 1), config.max_delay)
    if config.jitter:
        jitter_amount = delay * config.jitter_factor
        delay += (rng() - 0.5) * 2 * jitter_amount
    return max(0.0, delay)


class RetryExecutor:
    """Runs operations with retry, backoff and per-endpoint circuit breaking.

    Args:
        config:     Default retry configuration.  Breaker threshold and
                    timeout are fixed here; per-call overrides only change
                    the retry loop itself.
        classifier: Shared classifier; a private one is created if omitted.
        sleep:      Awaitable sleep used for backoff (tests inject a recorder).
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        classifier: ErrorClassifier | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config or RetryConfig()
        self.classifier = classifier or ErrorClassifier()
        self._sleep = sleep
        self._breakers = CircuitBreakerRegistry(
            failure_threshold=self.config.circuit_breaker_threshold,
            recovery_timeout=self.config.circuit_breaker_timeout,
        )

    @property
    def circuit_breakers(self) -> CircuitBreakerRegistry:
        return self._breakers

    def _resolve_config(self, override: RetryConfig | dict | None) -> RetryConfig:
        if override is None:
            return self.config
        if isinstance(override, RetryConfig):
            return override
        return RetryConfig.model_validate({**self.config.model_dump(), **override})

    def is_retryable(self, error: EndpointError, config: RetryConfig | None = None) -> bool:
        """Deny-listed error types and ``retryable=False`` errors are final."""
        config = config or self.config
        if type(error).__name__ in config.non_retryable_errors:
            return False
        return error.is_retryable()

    async def execute(
        self,
        operation: Operation[T],
        context: OperationContext,
        config_override: RetryConfig | dict | None = None,
    ) -> RetryResult[T]:
        """Invoke *operation* up to ``max_attempts`` times.

        Never raises for failures of *operation*; the outcome and every
        attempt are reported in the returned ``RetryResult``.
        """
        config = self._resolve_config(config_override)
        breaker = self._breakers.get(context.endpoint_id) if config.enable_circuit_breaker else None
        attempts: list[RetryAttempt] = []
        start = time.monotonic()
        last_error: EndpointError | None = None

        for attempt in range(1, config.max_attempts + 1):
            if breaker is not None:
                try:
                    await breaker.pre_check()
                except CircuitOpenError as exc:
                    return self._rejected(exc, context, attempts, start, last_error)

            logger.debug(
                "Attempt %d/%d for operation %s",
                attempt,
                config.max_attempts,
                context.operation_name,
                extra={"endpoint_id": context.endpoint_id, "correlation_id": context.correlation_id},
            )

            try:
                result = await operation()
            except Exception as exc:
                error = self.classifier.classify(exc, context)
                last_error = error
                record = RetryAttempt(
                    attempt=attempt,
                    delay=0.0,
                    timestamp=datetime.now(UTC),
                    success=False,
                    error=error,
                )
                attempts.append(record)

                if not self.is_retryable(error, config):
                    if breaker is not None:
                        await breaker.release_probe()
                    logger.error(
                        "Non-retryable error on attempt %d for %s: %s",
                        attempt,
                        context.operation_name,
                        error.message,
                    )
                    return self._failed(error, attempts, start, attempt)

                if breaker is not None:
                    await breaker.on_failure()

                if attempt == config.max_attempts:
                    logger.error(
                        "Final attempt %d failed for %s: %s",
                        attempt,
                        context.operation_name,
                        error.message,
                    )
                    return self._failed(error, attempts, start, attempt)

                if breaker is not None and breaker.is_open:
                    logger.warning(
                        "Circuit for %s opened during retries of %s, giving up",
                        context.endpoint_id,
                        context.operation_name,
                    )
                    return self._failed(
                        error, attempts, start, attempt, strategy=RecoveryStrategy.CIRCUIT_BREAKER
                    )

                delay = compute_backoff_delay(attempt, config)
                record.delay = delay
                logger.warning(
                    "Attempt %d failed for %s, retrying in %.3fs: %s",
                    attempt,
                    context.operation_name,
                    delay,
                    error.message,
                )
                await self._sleep(delay)
                continue

            attempts.append(RetryAttempt(attempt=attempt, delay=0.0, timestamp=datetime.now(UTC), success=True))
            if breaker is not None:
                await breaker.on_success()
            if attempt > 1:
                logger.info("Operation %s succeeded on attempt %d", context.operation_name, attempt)
            return RetryResult(
                success=True,
                attempts=attempts,
                total_time=time.monotonic() - start,
                final_attempt=attempt,
                result=result,
            )

        # Only reachable with max_attempts < 1, which RetryConfig forbids.
        raise AssertionError("retry loop exited without a result")

    def _failed(
        self,
        error: EndpointError,
        attempts: list[RetryAttempt],
        start: float,
        attempt: int,
        strategy: RecoveryStrategy = RecoveryStrategy.RETRY,
    ) -> RetryResult:
        return RetryResult(
            success=False,
            attempts=attempts,
            total_time=time.monotonic() - start,
            final_attempt=attempt,
            error=error,
            strategy=strategy,
        )

    def _rejected(
        self,
        exc: CircuitOpenError,
        context: OperationContext,
        attempts: list[RetryAttempt],
        start: float,
        last_error: EndpointError | None,
    ) -> RetryResult:
        """Build the result for a call refused by the circuit breaker."""
        if last_error is not None:
            return self._failed(
                last_error, attempts, start, len(attempts), strategy=RecoveryStrategy.CIRCUIT_BREAKER
            )

        exc.correlation_id = context.correlation_id
        exc.tool_name = context.tool_name
        logger.warning(
            "Circuit open for %s, rejecting %s",
            context.endpoint_id,
            context.operation_name,
            extra={"endpoint_id": context.endpoint_id, "correlation_id": context.correlation_id},
        )
        return RetryResult(
            success=False,
            attempts=[],
            total_time=time.monotonic() - start,
            final_attempt=0,
            error=exc,
            strategy=RecoveryStrategy.CIRCUIT_BREAKER,
            rejected=True,
        )

    # ── Circuit breaker management ───────────────────────────────────

    def _find(self, endpoint_id: str) -> CircuitBreaker | None:
        return self._breakers.find(endpoint_id)

    def is_circuit_open(self, endpoint_id: str) -> bool:
        breaker = self._find(endpoint_id)
        return breaker is not None and breaker.is_open

    def get_circuit_breaker_status(self) -> dict[str, dict]:
        """Return ``{endpoint_id: snapshot}`` for every known endpoint."""
        return self._breakers.all_snapshots()

    async def reset_circuit_breaker(self, endpoint_id: str) -> None:
        breaker = self._find(endpoint_id)
        if breaker is not None:
            await breaker.reset()
            logger.info("Circuit breaker reset for %s", endpoint_id)

    async def reset_all_circuit_breakers(self) -> None:
        await self._breakers.reset_all()
