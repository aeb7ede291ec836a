"""Resilience patterns: circuit breaker, retry and graceful degradation.

Per-endpoint circuit breakers stop calls to persistently failing
endpoints, ``RetryExecutor`` retries transient failures with backoff, and
``DegradationManager`` falls back to alternate endpoints, cached results
or simplified values.
"""

from mcp_recovery.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
)
from mcp_recovery.resilience.degradation import (
    CacheEntry,
    DegradationLevel,
    DegradationManager,
    DegradationResult,
    DegradationStrategy,
)
from mcp_recovery.resilience.retry import (
    RetryAttempt,
    RetryExecutor,
    RetryResult,
    compute_backoff_delay,
)

__all__ = [
    "CacheEntry",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    "DegradationLevel",
    "DegradationManager",
    "DegradationResult",
    "DegradationStrategy",
    "RetryAttempt",
    "RetryExecutor",
    "RetryResult",
    "compute_backoff_delay",
]
