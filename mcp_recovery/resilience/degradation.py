"""DegradationManager: fallbacks when an operation cannot run as requested.

Strategy precedence depends on how critical the operation is:

* critical      → fallback endpoints → cached result → manual intervention
* non-critical  → simplified value → skip
* anything else → fallback endpoints → cached result → simplified value
                  → error response

Critical operations never resolve silently: with no fallback endpoint and
no cached result they fail with ``manual_intervention``.  A skipped
non-critical operation succeeds with ``result=None``, which callers treat
as "no data available".
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Generic, TypeVar

from mcp_recovery.classifier import ErrorClassifier
from mcp_recovery.core.config import DegradationConfig
from mcp_recovery.core.errors import EndpointError
from mcp_recovery.models.context import OperationContext
from mcp_recovery.models.schemas import DegradationStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DegradationStrategy(str, Enum):
    """How a degraded result was produced."""

    NONE = "none"
    FALLBACK_ENDPOINT = "fallback_endpoint"
    CACHED_RESPONSE = "cached_response"
    SIMPLIFIED_RESPONSE = "simplified_response"
    ERROR_RESPONSE = "error_response"
    SKIP_OPERATION = "skip_operation"
    MANUAL_INTERVENTION = "manual_intervention"


class DegradationLevel(str, Enum):
    NONE = "none"
    PARTIAL = "partial"
    FULL = "full"


@dataclass
class DegradationResult(Generic[T]):
    """Outcome of ``DegradationManager.execute_with_degradation``."""

    success: bool
    strategy: DegradationStrategy
    degradation_level: DegradationLevel
    message: str
    result: T | None = None
    fallback_used: bool = False
    fallback_endpoint: str | None = None
    original_error: EndpointError | None = None

    @property
    def cache_used(self) -> bool:
        return self.strategy == DegradationStrategy.CACHED_RESPONSE


@dataclass
class CacheEntry:
    """A cached operation result.

    ``stored_at`` is a monotonic timestamp used for expiry; ``timestamp``
    is the wall-clock time for display.
    """

    payload: Any
    timestamp: datetime
    stored_at: float
    endpoint_id: str
    operation_name: str

    def age(self) -> float:
        return time.monotonic() - self.stored_at


class DegradationManager:
    """Selects and applies a fallback strategy for failed operations.

    Owns the TTL result cache, per-endpoint availability flags and the
    per-endpoint degradation start times.

    Args:
        config:     Caching, fallback map, simplified responses and
                    operation criticality lists.
        classifier: Shared classifier; a private one is created if omitted.
    """

    def __init__(
        self,
        config: DegradationConfig | None = None,
        classifier: ErrorClassifier | None = None,
    ) -> None:
        self.config = config or DegradationConfig()
        self.classifier = classifier or ErrorClassifier()
        self._cache: dict[str, CacheEntry] = {}
        self._availability: dict[str, bool] = {}
        self._degraded_since: dict[str, float] = {}
        self._over_budget_logged: set[str] = set()

    # ── Entry point ──────────────────────────────────────────────────

    async def execute_with_degradation(
        self,
        operation: Callable[[], Awaitable[T]],
        context: OperationContext,
        *,
        skip_primary: bool = False,
    ) -> DegradationResult[T]:
        """Run *operation* once, degrading if it fails.

        Args:
            operation:    Zero-argument coroutine function for the primary endpoint.
            context:      Operation description (criticality, fallbacks, cache key).
            skip_primary: Go straight to the fallback strategies, e.g. when the
                          primary endpoint's circuit is open.
        """
        if skip_primary or not self.is_endpoint_available(context.endpoint_id):
            return await self._degrade(context, None)

        try:
            result = await operation()
        except Exception as exc:
            error = self.classifier.classify(exc, context)
            self.mark_endpoint_unavailable(context.endpoint_id)
            return await self._degrade(context, error)

        self.record_success(context, result)
        return DegradationResult(
            success=True,
            strategy=DegradationStrategy.NONE,
            degradation_level=DegradationLevel.NONE,
            message="Operation completed successfully",
            result=result,
        )

    def record_success(self, context: OperationContext, result: Any) -> None:
        """Cache *result* (when configured) and mark the endpoint available."""
        if self.config.enable_caching and context.cache_key:
            self._cache[context.cache_key] = CacheEntry(
                payload=result,
                timestamp=datetime.now(UTC),
                stored_at=time.monotonic(),
                endpoint_id=context.endpoint_id,
                operation_name=context.operation_name,
            )
        self.mark_endpoint_available(context.endpoint_id)

    # ── Strategy selection ───────────────────────────────────────────

    def is_critical(self, context: OperationContext) -> bool:
        return context.is_critical or context.operation_name in self.config.critical_operations

    def is_non_critical(self, context: OperationContext) -> bool:
        return not self.is_critical(context) and context.operation_name in self.config.non_critical_operations

    async def _degrade(
        self,
        context: OperationContext,
        error: EndpointError | None,
    ) -> DegradationResult:
        self._start_degradation_tracking(context.endpoint_id)

        if self.is_critical(context):
            outcome = await self._try_fallback_endpoints(context, error)
            if outcome is None:
                outcome = self._try_cache(context, error)
            return outcome or self._require_manual_intervention(context, error)

        if self.is_non_critical(context):
            outcome = self._use_simplified_response(context, error)
            return outcome or self._skip_operation(context, error)

        outcome = await self._try_fallback_endpoints(context, error)
        if outcome is None:
            outcome = self._try_cache(context, error)
        if outcome is None:
            outcome = self._use_simplified_response(context, error)
        return outcome or self._error_response(context, error)

    def _fallback_endpoints_for(self, context: OperationContext) -> list[str]:
        if context.fallback_endpoints:
            return list(context.fallback_endpoints)
        return list(self.config.fallback_endpoints.get(context.endpoint_id, []))

    async def _try_fallback_endpoints(
        self,
        context: OperationContext,
        error: EndpointError | None,
    ) -> DegradationResult | None:
        endpoints = self._fallback_endpoints_for(context)
        if not endpoints:
            return None
        if context.fallback_operation is None:
            logger.warning(
                "Fallback endpoints configured for %s but no fallback operation supplied",
                context.operation_name,
                extra={"endpoint_id": context.endpoint_id},
            )
            return None

        for endpoint_id in endpoints:
            if not self.is_endpoint_available(endpoint_id):
                logger.debug("Skipping unavailable fallback endpoint %s", endpoint_id)
                continue

            logger.info("Trying fallback endpoint %s for %s", endpoint_id, context.operation_name)
            try:
                result = await context.fallback_operation(endpoint_id)
            except Exception as exc:
                logger.warning(
                    "Fallback endpoint %s also failed for %s: %s",
                    endpoint_id,
                    context.operation_name,
                    exc,
                )
                self.mark_endpoint_unavailable(endpoint_id)
                continue

            self.mark_endpoint_available(endpoint_id)
            return DegradationResult(
                success=True,
                strategy=DegradationStrategy.FALLBACK_ENDPOINT,
                degradation_level=DegradationLevel.PARTIAL,
                message=f"Operation completed using fallback endpoint: {endpoint_id}",
                result=result,
                fallback_used=True,
                fallback_endpoint=endpoint_id,
                original_error=error,
            )
        return None

    def _try_cache(self, context: OperationContext, error: EndpointError | None) -> DegradationResult | None:
        if not self.config.enable_caching or not context.cache_key:
            return None
        entry = self.get_cached_entry(context.cache_key)
        if entry is None:
            return None

        logger.info("Using cached response for %s", context.operation_name)
        return DegradationResult(
            success=True,
            strategy=DegradationStrategy.CACHED_RESPONSE,
            degradation_level=DegradationLevel.PARTIAL,
            message="Using cached response due to endpoint unavailability",
            result=entry.payload,
            fallback_used=True,
            original_error=error,
        )

    def _use_simplified_response(
        self,
        context: OperationContext,
        error: EndpointError | None,
    ) -> DegradationResult | None:
        value = context.simplified_fallback_value
        if value is None:
            value = self.config.simplified_responses.get(context.operation_name)
        if value is None:
            return None

        logger.info("Using simplified response for %s", context.operation_name)
        return DegradationResult(
            success=True,
            strategy=DegradationStrategy.SIMPLIFIED_RESPONSE,
            degradation_level=DegradationLevel.FULL,
            message="Using simplified response due to endpoint unavailability",
            result=value,
            fallback_used=True,
            original_error=error,
        )

    def _skip_operation(self, context: OperationContext, error: EndpointError | None) -> DegradationResult:
        logger.info("Skipping non-critical operation %s", context.operation_name)
        return DegradationResult(
            success=True,
            strategy=DegradationStrategy.SKIP_OPERATION,
            degradation_level=DegradationLevel.FULL,
            message="Operation skipped due to endpoint unavailability",
            fallback_used=True,
            original_error=error,
        )

    def _error_response(self, context: OperationContext, error: EndpointError | None) -> DegradationResult:
        logger.error("No fallback available for %s", context.operation_name)
        return DegradationResult(
            success=False,
            strategy=DegradationStrategy.ERROR_RESPONSE,
            degradation_level=DegradationLevel.FULL,
            message="Operation failed and no fallback available",
            original_error=error,
        )

    def _require_manual_intervention(
        self,
        context: OperationContext,
        error: EndpointError | None,
    ) -> DegradationResult:
        logger.critical(
            "Manual intervention required for critical operation %s",
            context.operation_name,
            extra={"endpoint_id": context.endpoint_id, "correlation_id": context.correlation_id},
        )
        return DegradationResult(
            success=False,
            strategy=DegradationStrategy.MANUAL_INTERVENTION,
            degradation_level=DegradationLevel.FULL,
            message="Critical operation failed, manual intervention required",
            original_error=error,
        )

    # ── Cache ────────────────────────────────────────────────────────

    def get_cached_entry(self, key: str) -> CacheEntry | None:
        """Return the live entry for *key*; expired entries are dropped here."""
        entry = self._cache.get(key)
        if entry is None:
            return None
        if entry.age() > self.config.cache_timeout:
            del self._cache[key]
            return None
        return entry

    def get_cached_result(self, key: str) -> Any:
        entry = self.get_cached_entry(key)
        return entry.payload if entry is not None else None

    def has_valid_cache(self, key: str) -> bool:
        return self.get_cached_entry(key) is not None

    def clear_cache(self) -> None:
        self._cache.clear()

    # ── Availability / degradation tracking ──────────────────────────

    def is_endpoint_available(self, endpoint_id: str) -> bool:
        """Endpoints are available until a failure marks them otherwise."""
        return self._availability.get(endpoint_id, True)

    def mark_endpoint_available(self, endpoint_id: str) -> None:
        self._availability[endpoint_id] = True
        if self._degraded_since.pop(endpoint_id, None) is not None:
            logger.info("Endpoint %s recovered", endpoint_id)
        self._over_budget_logged.discard(endpoint_id)

    def mark_endpoint_unavailable(self, endpoint_id: str) -> None:
        self._availability[endpoint_id] = False

    def _start_degradation_tracking(self, endpoint_id: str) -> None:
        if endpoint_id not in self._degraded_since:
            self._degraded_since[endpoint_id] = time.monotonic()

    def get_degradation_duration(self, endpoint_id: str) -> float | None:
        """Seconds *endpoint_id* has been degraded, or ``None`` if it is not."""
        since = self._degraded_since.get(endpoint_id)
        if since is None:
            return None
        return time.monotonic() - since

    def get_degradation_status(self) -> DegradationStatus:
        durations = {
            endpoint_id: time.monotonic() - since for endpoint_id, since in self._degraded_since.items()
        }
        exceeded = sorted(
            endpoint_id for endpoint_id, seconds in durations.items() if seconds > self.config.max_degradation_time
        )
        for endpoint_id in exceeded:
            if endpoint_id not in self._over_budget_logged:
                self._over_budget_logged.add(endpoint_id)
                logger.warning(
                    "Endpoint %s degraded for %.0fs, longer than %.0fs",
                    endpoint_id,
                    durations[endpoint_id],
                    self.config.max_degradation_time,
                )
        return DegradationStatus(
            degraded_endpoints=list(self._degraded_since),
            cache_size=len(self._cache),
            endpoint_availability=dict(self._availability),
            degradation_durations=durations,
            exceeded_max_degradation=exceeded,
        )

    def reset_degradation_tracking(self) -> None:
        self._degraded_since.clear()
        self._availability.clear()
        self._over_budget_logged.clear()
