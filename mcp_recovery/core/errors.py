"""Typed error taxonomy for endpoint failures.

Every failure that passes through the recovery engine is turned into an
``EndpointError`` carrying a category, a severity, a recovery-strategy hint
and a retryable flag.  Concrete subclasses fix those defaults per category;
callers may still override ``severity`` and ``retryable`` per instance.

``StructuredErrorResponse`` renders any exception into a flat, JSON-safe
record without leaking internals of untyped exceptions.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel

# ── Enums ───────────────────────────────────────────────────────────────


class ErrorCategory(str, Enum):
    """What kind of failure occurred."""

    CONNECTION = "connection"
    AUTHENTICATION = "authentication"
    CONFIGURATION = "configuration"
    SERVER = "server"
    TOOL_EXECUTION = "tool_execution"
    LLM = "llm"
    VALIDATION = "validation"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    UNKNOWN = "unknown"


_SEVERITY_RANK = {"low": 0, "medium": 1, "high": 2, "critical": 3}


class ErrorSeverity(str, Enum):
    """Ordered severity levels: LOW < MEDIUM < HIGH < CRITICAL."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self.value]

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, ErrorSeverity):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, ErrorSeverity):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, ErrorSeverity):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, ErrorSeverity):
            return NotImplemented
        return self.rank >= other.rank


class RecoveryStrategy(str, Enum):
    """Recovery hint attached to an error, and the strategy a result used."""

    RETRY = "retry"
    FALLBACK = "fallback"
    GRACEFUL_DEGRADATION = "graceful_degradation"
    CIRCUIT_BREAKER = "circuit_breaker"
    MANUAL_INTERVENTION = "manual_intervention"
    NONE = "none"


# ── Exception hierarchy ─────────────────────────────────────────────────


class RecoveryEngineError(Exception):
    """Base exception for all mcp-recovery errors."""


class EndpointError(RecoveryEngineError):
    """A classified failure of an operation against a remote endpoint.

    Subclasses set ``default_*`` class attributes; the constructor lets a
    caller override severity and retryability for a single instance.

    Attributes:
        category:          ``ErrorCategory`` of the failure.
        severity:          ``ErrorSeverity`` of the failure.
        recovery_strategy: Suggested ``RecoveryStrategy``.
        retryable:         Whether retrying may succeed.
        endpoint_id:       Endpoint the operation targeted, if known.
        tool_name:         Tool being invoked, if any.
        correlation_id:    Token linking all records of one logical operation.
        context:           Open-ended metadata (ports, paths, retry-after...).
        cause:             The original exception, also chained as ``__cause__``.
        timestamp:         When the error was created (UTC).
    """

    default_category: ErrorCategory = ErrorCategory.UNKNOWN
    default_severity: ErrorSeverity = ErrorSeverity.MEDIUM
    default_strategy: RecoveryStrategy = RecoveryStrategy.NONE
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        severity: ErrorSeverity | None = None,
        recovery_strategy: RecoveryStrategy | None = None,
        retryable: bool | None = None,
        endpoint_id: str | None = None,
        tool_name: str | None = None,
        correlation_id: str | None = None,
        context: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.severity = severity or self.default_severity
        self.recovery_strategy = recovery_strategy or self.default_strategy
        self.retryable = self.default_retryable if retryable is None else retryable
        self.endpoint_id = endpoint_id
        self.tool_name = tool_name
        self.correlation_id = correlation_id
        self.context: dict[str, Any] = dict(context or {})
        self.cause = cause
        self.timestamp = datetime.now(UTC)
        if cause is not None:
            self.__cause__ = cause

    def is_retryable(self) -> bool:
        return self.retryable

    def is_critical(self) -> bool:
        return self.severity == ErrorSeverity.CRITICAL

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serializable representation (no stack trace)."""
        data: dict[str, Any] = {
            "name": type(self).__name__,
            "message": self.message,
            "category": self.category.value,
            "severity": self.severity.value,
            "recovery_strategy": self.recovery_strategy.value,
            "retryable": self.retryable,
            "endpoint_id": self.endpoint_id,
            "tool_name": self.tool_name,
            "correlation_id": self.correlation_id,
            "timestamp": self.timestamp.isoformat(),
            "context": self.context,
        }
        if self.cause is not None:
            data["cause"] = {"name": type(self.cause).__name__, "message": str(self.cause)}
        return data

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}({self.message!r}, category={self.category.value}, "
            f"severity={self.severity.value}, endpoint_id={self.endpoint_id!r})"
        )


class ConnectionFailedError(EndpointError):
    """The endpoint could not be reached (refused, reset, DNS, socket)."""

    default_category = ErrorCategory.CONNECTION
    default_severity = ErrorSeverity.HIGH
    default_strategy = RecoveryStrategy.RETRY
    default_retryable = True


class AuthenticationFailedError(EndpointError):
    """Credentials were rejected; needs an operator and is never retried."""

    default_category = ErrorCategory.AUTHENTICATION
    default_severity = ErrorSeverity.HIGH
    default_strategy = RecoveryStrategy.MANUAL_INTERVENTION
    default_retryable = False


class ConfigurationError(EndpointError):
    """The engine or an endpoint is misconfigured."""

    default_category = ErrorCategory.CONFIGURATION
    default_severity = ErrorSeverity.CRITICAL
    default_strategy = RecoveryStrategy.MANUAL_INTERVENTION
    default_retryable = False


class ServerError(EndpointError):
    """The endpoint answered with an internal failure (5xx)."""

    default_category = ErrorCategory.SERVER
    default_severity = ErrorSeverity.HIGH
    default_strategy = RecoveryStrategy.CIRCUIT_BREAKER
    default_retryable = True


class ToolExecutionError(EndpointError):
    """A tool ran but failed."""

    default_category = ErrorCategory.TOOL_EXECUTION
    default_severity = ErrorSeverity.MEDIUM
    default_strategy = RecoveryStrategy.FALLBACK
    default_retryable = True


class LLMError(EndpointError):
    """The LLM provider failed to produce a completion."""

    default_category = ErrorCategory.LLM
    default_severity = ErrorSeverity.HIGH
    default_strategy = RecoveryStrategy.RETRY
    default_retryable = True


class OperationTimeoutError(EndpointError):
    """An operation exceeded its time budget.

    ``timeout`` (seconds, 0 when unknown) is stored in ``context``.
    """

    default_category = ErrorCategory.TIMEOUT
    default_severity = ErrorSeverity.MEDIUM
    default_strategy = RecoveryStrategy.RETRY
    default_retryable = True

    def __init__(self, message: str, *, timeout: float = 0.0, **kwargs: Any) -> None:
        context = {"timeout": timeout, **(kwargs.pop("context", None) or {})}
        super().__init__(message, context=context, **kwargs)
        self.timeout = timeout


class RateLimitedError(EndpointError):
    """The endpoint throttled the caller.  ``retry_after`` goes in ``context``."""

    default_category = ErrorCategory.RATE_LIMIT
    default_severity = ErrorSeverity.MEDIUM
    default_strategy = RecoveryStrategy.RETRY
    default_retryable = True

    def __init__(self, message: str, *, retry_after: float | None = None, **kwargs: Any) -> None:
        context = {"retry_after": retry_after, **(kwargs.pop("context", None) or {})}
        super().__init__(message, context=context, **kwargs)
        self.retry_after = retry_after


class ValidationFailedError(EndpointError):
    """The request was rejected as invalid."""

    default_category = ErrorCategory.VALIDATION
    default_severity = ErrorSeverity.LOW
    default_strategy = RecoveryStrategy.MANUAL_INTERVENTION
    default_retryable = False

    def __init__(
        self,
        message: str,
        *,
        validation_errors: list[str] | None = None,
        **kwargs: Any,
    ) -> None:
        context = {"validation_errors": validation_errors, **(kwargs.pop("context", None) or {})}
        super().__init__(message, context=context, **kwargs)
        self.validation_errors = validation_errors or []


class CircuitOpenError(EndpointError):
    """Raised when a call is rejected because the endpoint's circuit is open.

    Attributes:
        retry_after: Seconds until the circuit admits a half-open probe.
    """

    default_category = ErrorCategory.SERVER
    default_severity = ErrorSeverity.HIGH
    default_strategy = RecoveryStrategy.CIRCUIT_BREAKER
    default_retryable = False

    def __init__(self, endpoint_id: str, retry_after: float, **kwargs: Any) -> None:
        self.retry_after = max(0.0, retry_after)
        context = {"retry_after": self.retry_after, **(kwargs.pop("context", None) or {})}
        super().__init__(
            f"Circuit open for '{endpoint_id}', retry after {self.retry_after:.1f}s",
            endpoint_id=endpoint_id,
            context=context,
            **kwargs,
        )


# ── Structured response ─────────────────────────────────────────────────


class StructuredErrorResponse(BaseModel):
    """Flat error record: ``{error, code, category, severity, request_id}``.

    No stack traces, and no details at all for untyped exceptions.
    """

    error: str
    code: str
    category: str = ErrorCategory.UNKNOWN.value
    severity: str = ErrorSeverity.MEDIUM.value
    endpoint_id: str | None = None
    correlation_id: str | None = None
    request_id: str

    @classmethod
    def from_exception(cls, exc: BaseException, request_id: str) -> StructuredErrorResponse:
        """Create from an exception, mapping to machine-readable codes."""
        if isinstance(exc, CircuitOpenError):
            code = "CIRCUIT_OPEN"
        elif isinstance(exc, EndpointError):
            code = exc.category.value.upper()
        elif isinstance(exc, RecoveryEngineError):
            code = "RECOVERY_ERROR"
        else:
            # Unhandled: never expose internal details
            return cls(
                error="An internal error occurred",
                code="INTERNAL_ERROR",
                request_id=request_id,
            )

        if isinstance(exc, EndpointError):
            return cls(
                error=exc.message,
                code=code,
                category=exc.category.value,
                severity=exc.severity.value,
                endpoint_id=exc.endpoint_id,
                correlation_id=exc.correlation_id,
                request_id=request_id,
            )
        return cls(error=str(exc), code=code, request_id=request_id)
