"""RecoveryOrchestrator: public entry point of the recovery engine.

``execute_with_recovery`` always runs the ``RetryExecutor`` first.  A
retry success returns immediately.  Operator-actionable failures
(authentication, configuration, validation) fail fast.  Anything else is
handed to the ``DegradationManager``.  The orchestrator owns every piece
of mutable state (classifier counters, circuit breakers, cache, metrics
and history), so independent orchestrators never share state.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Generic, TypeVar

from mcp_recovery.classifier import ErrorClassifier
from mcp_recovery.core.config import RecoveryConfig, RetryConfig
from mcp_recovery.core.errors import EndpointError, RecoveryStrategy
from mcp_recovery.models.context import OperationContext
from mcp_recovery.models.schemas import HealthStatus, OperationRecord, OverallHealth, RecoveryMetrics
from mcp_recovery.resilience.degradation import (
    DegradationLevel,
    DegradationManager,
    DegradationResult,
    DegradationStrategy,
)
from mcp_recovery.resilience.retry import RetryExecutor, RetryResult

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Health thresholds
_CRITICAL_ERROR_RATE = 0.5
_DEGRADED_ERROR_RATE = 0.2
_DEGRADED_OPERATION_SHARE = 0.3
_RESPONSE_TIME_WINDOW = 100


@dataclass
class RecoveryResultMetrics:
    """Per-call metrics attached to a ``RecoveryResult``."""

    total_time: float = 0.0
    retry_attempts: int = 0
    fallback_used: bool = False
    cache_used: bool = False
    degradation_level: DegradationLevel = DegradationLevel.NONE


@dataclass
class RecoveryResult(Generic[T]):
    """Final outcome of ``execute_with_recovery``.

    ``error`` is only set when ``success`` is ``False``.  A successful
    result with ``result=None`` after a skip means "no data available".
    """

    success: bool
    strategy: RecoveryStrategy
    result: T | None = None
    error: EndpointError | None = None
    retry_result: RetryResult[T] | None = None
    degradation_result: DegradationResult[T] | None = None
    metrics: RecoveryResultMetrics = field(default_factory=RecoveryResultMetrics)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "strategy": self.strategy.value,
            "error": self.error.to_dict() if self.error is not None else None,
            "degradation_strategy": (
                self.degradation_result.strategy.value if self.degradation_result is not None else None
            ),
            "metrics": {
                "total_time": self.metrics.total_time,
                "retry_attempts": self.metrics.retry_attempts,
                "fallback_used": self.metrics.fallback_used,
                "cache_used": self.metrics.cache_used,
                "degradation_level": self.metrics.degradation_level.value,
            },
        }


class RecoveryOrchestrator:
    """Sequences retry and graceful degradation, and keeps the books.

    Args:
        config: Full engine configuration; defaults everywhere if omitted.
        sleep:  Optional backoff sleep passed to the ``RetryExecutor``.
    """

    def __init__(
        self,
        config: RecoveryConfig | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        self.config = config or RecoveryConfig()
        self.classifier = ErrorClassifier(self.config.classifier)
        retry_kwargs: dict[str, Any] = {"sleep": sleep} if sleep is not None else {}
        self.retry_executor = RetryExecutor(self.config.retry, self.classifier, **retry_kwargs)
        self.degradation_manager = DegradationManager(self.config.degradation, self.classifier)
        self._metrics = RecoveryMetrics()
        self._history: deque[OperationRecord] = deque(maxlen=self.config.history_max_entries)

    async def execute_with_recovery(
        self,
        operation: Callable[[], Awaitable[T]],
        context: OperationContext,
    ) -> RecoveryResult[T]:
        """Run *operation* with retry, then graceful degradation.

        Never raises for failures of *operation* or of the engine itself;
        inspect ``RecoveryResult.success``.
        """
        start = time.monotonic()
        self._metrics.total_operations += 1
        retry_result: RetryResult[T] | None = None

        try:
            retry_result = await self.retry_executor.execute(operation, context)

            if retry_result.success:
                return self._on_retry_success(context, retry_result, start)

            if retry_result.rejected:
                self._metrics.circuit_breaker_activations += 1

            error = retry_result.error
            if error is not None and error.recovery_strategy == RecoveryStrategy.MANUAL_INTERVENTION:
                return self._on_failure(
                    context,
                    start,
                    error,
                    strategy=RecoveryStrategy.MANUAL_INTERVENTION,
                    retry_result=retry_result,
                )

            # Calls stopped by the breaker never reach the primary again.
            skip_primary = retry_result.strategy == RecoveryStrategy.CIRCUIT_BREAKER or (
                self.retry_executor.is_circuit_open(context.endpoint_id)
            )
            degradation_result = await self.degradation_manager.execute_with_degradation(
                operation,
                context,
                skip_primary=skip_primary,
            )

            if degradation_result.success:
                return self._on_degradation_success(context, retry_result, degradation_result, start)

            return self._on_failure(
                context,
                start,
                retry_result.error or degradation_result.original_error,
                strategy=RecoveryStrategy.NONE,
                retry_result=retry_result,
                degradation_result=degradation_result,
            )

        except Exception as exc:
            # A failure of the engine itself, not of the wrapped operation.
            logger.exception("Recovery engine failed for %s", context.operation_name)
            error = self.classifier.classify(exc, context)
            return self._on_failure(
                context,
                start,
                error,
                strategy=RecoveryStrategy.NONE,
                retry_result=retry_result,
                degradation_level=DegradationLevel.FULL,
            )

    # ── Outcome bookkeeping ──────────────────────────────────────────

    def _on_retry_success(
        self,
        context: OperationContext,
        retry_result: RetryResult[T],
        start: float,
    ) -> RecoveryResult[T]:
        self._metrics.successful_operations += 1
        if retry_result.final_attempt > 1:
            self._metrics.retried_operations += 1
            self._update_average_retry_attempts(retry_result.final_attempt)
        self.degradation_manager.record_success(context, retry_result.result)
        self._count_strategy(RecoveryStrategy.RETRY.value)

        duration = time.monotonic() - start
        self._record_operation(context.operation_name, True, RecoveryStrategy.RETRY, duration)
        return RecoveryResult(
            success=True,
            strategy=RecoveryStrategy.RETRY,
            result=retry_result.result,
            retry_result=retry_result,
            metrics=RecoveryResultMetrics(
                total_time=duration,
                retry_attempts=retry_result.final_attempt,
            ),
        )

    def _on_degradation_success(
        self,
        context: OperationContext,
        retry_result: RetryResult[T],
        degradation_result: DegradationResult[T],
        start: float,
    ) -> RecoveryResult[T]:
        self._metrics.successful_operations += 1
        # A primary success inside the degradation step is not a degraded result.
        if degradation_result.strategy != DegradationStrategy.NONE:
            self._metrics.degraded_operations += 1
        self._count_strategy(degradation_result.strategy.value)
        if degradation_result.fallback_used:
            self._metrics.fallback_usage += 1
        if degradation_result.cache_used:
            self._metrics.cache_hits += 1

        duration = time.monotonic() - start
        self._record_operation(context.operation_name, True, RecoveryStrategy.GRACEFUL_DEGRADATION, duration)
        logger.info(
            "Operation %s recovered via %s",
            context.operation_name,
            degradation_result.strategy.value,
            extra={"endpoint_id": context.endpoint_id, "correlation_id": context.correlation_id},
        )
        return RecoveryResult(
            success=True,
            strategy=RecoveryStrategy.GRACEFUL_DEGRADATION,
            result=degradation_result.result,
            retry_result=retry_result,
            degradation_result=degradation_result,
            metrics=RecoveryResultMetrics(
                total_time=duration,
                retry_attempts=retry_result.final_attempt,
                fallback_used=degradation_result.fallback_used,
                cache_used=degradation_result.cache_used,
                degradation_level=degradation_result.degradation_level,
            ),
        )

    def _on_failure(
        self,
        context: OperationContext,
        start: float,
        error: EndpointError | None,
        *,
        strategy: RecoveryStrategy,
        retry_result: RetryResult | None = None,
        degradation_result: DegradationResult | None = None,
        degradation_level: DegradationLevel | None = None,
    ) -> RecoveryResult:
        self._metrics.failed_operations += 1
        self._update_error_metrics(error)
        self._count_strategy(strategy.value)

        if degradation_level is None:
            degradation_level = (
                degradation_result.degradation_level if degradation_result is not None else DegradationLevel.NONE
            )

        duration = time.monotonic() - start
        self._record_operation(context.operation_name, False, strategy, duration)
        return RecoveryResult(
            success=False,
            strategy=strategy,
            error=error,
            retry_result=retry_result,
            degradation_result=degradation_result,
            metrics=RecoveryResultMetrics(
                total_time=duration,
                retry_attempts=retry_result.final_attempt if retry_result is not None else 0,
                fallback_used=degradation_result.fallback_used if degradation_result is not None else False,
                degradation_level=degradation_level,
            ),
        )

    def _update_average_retry_attempts(self, attempts: int) -> None:
        retried = self._metrics.retried_operations
        current = self._metrics.average_retry_attempts
        self._metrics.average_retry_attempts = (current * (retried - 1) + attempts) / retried

    def _update_error_metrics(self, error: EndpointError | None) -> None:
        if error is None:
            return
        by_category = self._metrics.errors_by_category
        by_category[error.category.value] = by_category.get(error.category.value, 0) + 1
        by_severity = self._metrics.errors_by_severity
        by_severity[error.severity.value] = by_severity.get(error.severity.value, 0) + 1

    def _count_strategy(self, strategy: str) -> None:
        used = self._metrics.recovery_strategies_used
        used[strategy] = used.get(strategy, 0) + 1

    def _record_operation(
        self,
        operation_name: str,
        success: bool,
        strategy: RecoveryStrategy,
        duration: float,
    ) -> None:
        now = datetime.now(UTC)
        self._history.append(
            OperationRecord(
                timestamp=now,
                operation_name=operation_name,
                success=success,
                strategy=strategy,
                duration=duration,
            )
        )
        if self.config.enable_metrics:
            cutoff = now - timedelta(seconds=self.config.metrics_retention)
            while self._history and self._history[0].timestamp <= cutoff:
                self._history.popleft()

    # ── Queries ──────────────────────────────────────────────────────

    def get_metrics(self) -> RecoveryMetrics:
        """Return a copy of the current counters."""
        return self._metrics.model_copy(deep=True)

    def get_operation_history(self, limit: int | None = None) -> list[OperationRecord]:
        """Return history entries, newest first."""
        history = list(reversed(self._history))
        return history[:limit] if limit is not None else history

    def get_health_status(self) -> HealthStatus:
        total = self._metrics.total_operations
        success_rate = self._metrics.successful_operations / total if total else 1.0
        error_rate = self._metrics.failed_operations / total if total else 0.0

        recent = self.get_operation_history(_RESPONSE_TIME_WINDOW)
        average_response_time = sum(r.duration for r in recent) / len(recent) if recent else 0.0

        if error_rate > _CRITICAL_ERROR_RATE:
            overall = OverallHealth.CRITICAL
        elif error_rate > _DEGRADED_ERROR_RATE or self._metrics.degraded_operations > total * _DEGRADED_OPERATION_SHARE:
            overall = OverallHealth.DEGRADED
        else:
            overall = OverallHealth.HEALTHY

        return HealthStatus(
            overall_health=overall,
            success_rate=success_rate,
            error_rate=error_rate,
            average_response_time=average_response_time,
            circuit_breakers=self.retry_executor.get_circuit_breaker_status(),
            degradation_status=self.degradation_manager.get_degradation_status(),
        )

    async def reset(self) -> None:
        """Clear counters, history, cache, circuit breakers and availability flags."""
        self._metrics = RecoveryMetrics()
        self._history.clear()
        await self.retry_executor.reset_all_circuit_breakers()
        self.retry_executor.circuit_breakers.clear()
        self.classifier.reset_all()
        self.degradation_manager.clear_cache()
        self.degradation_manager.reset_degradation_tracking()
        logger.info("Recovery state reset")


# ── Convenience helpers ─────────────────────────────────────────────────


def create_orchestrator(config: RecoveryConfig | None = None) -> RecoveryOrchestrator:
    return RecoveryOrchestrator(config)


async def with_recovery(
    operation: Callable[[], Awaitable[T]],
    context: OperationContext,
    config: RecoveryConfig | None = None,
) -> RecoveryResult[T]:
    """One-shot ``execute_with_recovery`` on a fresh orchestrator."""
    return await create_orchestrator(config).execute_with_recovery(operation, context)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    context: OperationContext,
    config: RetryConfig | None = None,
) -> RetryResult[T]:
    """One-shot retry without degradation."""
    return await RetryExecutor(config).execute(operation, context)
