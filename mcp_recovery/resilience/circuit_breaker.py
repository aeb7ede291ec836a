"""Async per-endpoint circuit breaker.

Implements the standard three-state circuit breaker:

    CLOSED    →  (failure_threshold reached)  →  OPEN
    OPEN      →  (recovery_timeout elapsed)   →  HALF_OPEN
    HALF_OPEN →  (probe succeeds)             →  CLOSED
    HALF_OPEN →  (probe fails)                →  OPEN

Each endpoint gets its own ``CircuitBreaker`` via ``CircuitBreakerRegistry``
so that one failing endpoint never rejects calls to the others.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import UTC, datetime
from enum import Enum

from mcp_recovery.core.errors import CircuitOpenError

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Async-safe circuit breaker for a single endpoint.

    Args:
        name:               Endpoint id (for logging/errors).
        failure_threshold:  Consecutive failures before opening the circuit.
        recovery_timeout:   Seconds the circuit stays OPEN before probing.
        half_open_max:      Max concurrent probes in HALF_OPEN state.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        half_open_max: int = 1,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max = half_open_max

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: float = 0.0
        self._last_failure_at: datetime | None = None
        self._half_open_calls = 0
        self._lock = asyncio.Lock()

        # Metrics
        self.total_calls = 0
        self.total_failures = 0
        self.total_rejections = 0
        self.total_successes = 0
        self.total_openings = 0

    # ── Public properties ────────────────────────────────────────────

    @property
    def state(self) -> CircuitState:
        """Return the current state, auto-transitioning OPEN → HALF_OPEN."""
        if self._state == CircuitState.OPEN:
            if self._elapsed_since_failure() >= self.recovery_timeout:
                return CircuitState.HALF_OPEN
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def last_failure_time(self) -> datetime | None:
        return self._last_failure_at

    def _elapsed_since_failure(self) -> float:
        return time.monotonic() - self._last_failure_time

    # ── Core call wrapper ────────────────────────────────────────────

    async def pre_check(self) -> None:
        """Check whether a call is allowed; raise if circuit is open.

        Must be called **before** invoking the operation.

        Raises:
            CircuitOpenError: If the circuit is OPEN, or HALF_OPEN with all
                probe slots taken.
        """
        async with self._lock:
            current = self.state

            if current == CircuitState.OPEN:
                retry_after = self.recovery_timeout - self._elapsed_since_failure()
                self.total_rejections += 1
                raise CircuitOpenError(self.name, retry_after)

            if current == CircuitState.HALF_OPEN:
                if self._state != CircuitState.HALF_OPEN:
                    self._state = CircuitState.HALF_OPEN
                    self._half_open_calls = 0
                    logger.info("Circuit for %s is half-open, admitting a probe", self.name)
                if self._half_open_calls >= self.half_open_max:
                    self.total_rejections += 1
                    raise CircuitOpenError(self.name, 1.0)
                self._half_open_calls += 1

            self.total_calls += 1

    async def on_success(self) -> None:
        """Record a successful call; close the circuit if probing."""
        async with self._lock:
            self.total_successes += 1
            if self._state in (CircuitState.HALF_OPEN, CircuitState.OPEN):
                # Probe succeeded, back to CLOSED
                logger.info("Circuit for %s closed after successful probe", self.name)
                self._state = CircuitState.CLOSED
                self._failure_count = 0
                self._half_open_calls = 0
            elif self._failure_count:
                logger.info("Circuit for %s reset after success", self.name)
                self._failure_count = 0

    async def on_failure(self) -> None:
        """Record a failed call; potentially open the circuit."""
        async with self._lock:
            self._failure_count += 1
            self.total_failures += 1
            self._last_failure_time = time.monotonic()
            self._last_failure_at = datetime.now(UTC)

            if self._state == CircuitState.HALF_OPEN:
                # Probe failed, reopen
                self._state = CircuitState.OPEN
                self._half_open_calls = 0
                self.total_openings += 1
                logger.warning("Circuit for %s reopened after failed probe", self.name)
            elif self._state == CircuitState.CLOSED and self._failure_count >= self.failure_threshold:
                self._state = CircuitState.OPEN
                self.total_openings += 1
                logger.warning(
                    "Circuit for %s opened after %d failures",
                    self.name,
                    self._failure_count,
                    extra={"endpoint_id": self.name},
                )

    async def release_probe(self) -> None:
        """Free a HALF_OPEN probe slot without recording an outcome.

        Used when a probe ended with a failure that says nothing about the
        endpoint's health (e.g. rejected credentials).
        """
        async with self._lock:
            if self._state == CircuitState.HALF_OPEN and self._half_open_calls > 0:
                self._half_open_calls -= 1

    async def reset(self) -> None:
        """Force-reset the circuit breaker to CLOSED state."""
        async with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._half_open_calls = 0

    def snapshot(self) -> dict:
        """Return a JSON-serializable snapshot for health/metrics."""
        return {
            "name": self.name,
            "state": self.state.value,
            "is_open": self.is_open,
            "failure_count": self._failure_count,
            "last_failure_time": self._last_failure_at.isoformat() if self._last_failure_at else None,
            "total_calls": self.total_calls,
            "total_failures": self.total_failures,
            "total_rejections": self.total_rejections,
            "total_successes": self.total_successes,
            "total_openings": self.total_openings,
        }


class CircuitBreakerRegistry:
    """Manages per-endpoint ``CircuitBreaker`` instances.

    Usage::

        registry = CircuitBreakerRegistry(failure_threshold=5, recovery_timeout=60.0)
        cb = registry.get("docs-server")
        await cb.pre_check()
        # ... invoke ...
        await cb.on_success()
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        half_open_max: int = 1,
    ) -> None:
        self._threshold = failure_threshold
        self._recovery = recovery_timeout
        self._half_open_max = half_open_max
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, endpoint_id: str) -> CircuitBreaker:
        """Return (or create) the circuit breaker for *endpoint_id*."""
        if endpoint_id not in self._breakers:
            self._breakers[endpoint_id] = CircuitBreaker(
                name=endpoint_id,
                failure_threshold=self._threshold,
                recovery_timeout=self._recovery,
                half_open_max=self._half_open_max,
            )
        return self._breakers[endpoint_id]

    def find(self, endpoint_id: str) -> CircuitBreaker | None:
        """Return the breaker for *endpoint_id* without creating one."""
        return self._breakers.get(endpoint_id)

    def all_snapshots(self) -> dict[str, dict]:
        """Return snapshots for every registered breaker, keyed by endpoint."""
        return {name: cb.snapshot() for name, cb in self._breakers.items()}

    async def reset_all(self) -> None:
        """Reset every circuit breaker to CLOSED."""
        for cb in self._breakers.values():
            await cb.reset()

    def clear(self) -> None:
        """Drop every breaker (state and metrics)."""
        self._breakers.clear()
