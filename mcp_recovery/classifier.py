"""ErrorClassifier: turns arbitrary failures into typed ``EndpointError``s.

Classification order:

1. Already-typed errors are returned unchanged.
2. Structured rules: httpx status codes and exception types, builtin
   ``TimeoutError`` / ``ConnectionError``.
3. Message rules: an ordered table of ``category → regex list``; the first
   matching category wins.
4. Anything else becomes an ``unknown`` error that is not retried.

Message matching is a fallback for opaque third-party failures; callers
that know what went wrong should raise the concrete ``EndpointError``
subclass instead.

The classifier also keeps an advisory per-endpoint failure counter and
flags an endpoint as open once the counter reaches the configured
threshold.  Execution gating is done by the retry layer's circuit
breakers, not by this flag.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import httpx

from mcp_recovery.core.config import ClassifierConfig
from mcp_recovery.core.errors import (
    AuthenticationFailedError,
    ConnectionFailedError,
    EndpointError,
    ErrorCategory,
    ErrorSeverity,
    OperationTimeoutError,
    RateLimitedError,
    RecoveryStrategy,
    ServerError,
    ValidationFailedError,
)
from mcp_recovery.models.context import OperationContext

logger = logging.getLogger(__name__)

UNKNOWN_ERROR_MESSAGE = "Unknown error occurred"

# Failures without an endpoint id are counted under this key.
GLOBAL_KEY = "global"


# ── Rule table ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ClassificationRule:
    """Maps message patterns to the ``EndpointError`` subclass to build."""

    category: ErrorCategory
    error_class: type[EndpointError]
    patterns: tuple[re.Pattern[str], ...]

    def matches(self, message: str) -> bool:
        return any(p.search(message) for p in self.patterns)


def _rule(category: ErrorCategory, error_class: type[EndpointError], *patterns: str) -> ClassificationRule:
    # Status-code patterns match whole numbers only, never ports or ids.
    compiled = tuple(re.compile(rf"\b{p}\b") if p.isdigit() else re.compile(p, re.IGNORECASE) for p in patterns)
    return ClassificationRule(category=category, error_class=error_class, patterns=compiled)


# Order matters: "timeout" is also a connection pattern, so a bare
# "Request timeout" message classifies as a connection failure.
DEFAULT_CLASSIFICATION_RULES: tuple[ClassificationRule, ...] = (
    _rule(
        ErrorCategory.CONNECTION,
        ConnectionFailedError,
        r"connection.*failed",
        r"network.*error",
        r"econnrefused",
        r"enotfound",
        r"timeout",
        r"socket.*hang.*up",
    ),
    _rule(
        ErrorCategory.AUTHENTICATION,
        AuthenticationFailedError,
        r"unauthorized",
        r"invalid.*api.*key",
        r"authentication.*failed",
        r"401",
        r"403",
        r"access.*denied",
    ),
    _rule(
        ErrorCategory.SERVER,
        ServerError,
        r"server.*error",
        r"internal.*server.*error",
        r"500",
        r"502",
        r"503",
        r"504",
    ),
    _rule(
        ErrorCategory.RATE_LIMIT,
        RateLimitedError,
        r"rate.*limit",
        r"too.*many.*requests",
        r"429",
        r"quota.*exceeded",
    ),
    _rule(
        ErrorCategory.TIMEOUT,
        OperationTimeoutError,
        r"timeout",
        r"timed.*out",
        r"request.*timeout",
        r"408",
    ),
    _rule(
        ErrorCategory.VALIDATION,
        ValidationFailedError,
        r"validation.*error",
        r"invalid.*input",
        r"bad.*request",
        r"400",
    ),
)

_SEVERITY_LOG_LEVELS: dict[ErrorSeverity, int] = {
    ErrorSeverity.CRITICAL: logging.ERROR,
    ErrorSeverity.HIGH: logging.ERROR,
    ErrorSeverity.MEDIUM: logging.WARNING,
    ErrorSeverity.LOW: logging.INFO,
}


# ── Pure helpers ────────────────────────────────────────────────────────


def extract_message(error: Any) -> str:
    """Pull a human-readable message out of *error*."""
    if isinstance(error, str):
        return error or UNKNOWN_ERROR_MESSAGE
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    if isinstance(error, Mapping) and "message" in error:
        return str(error["message"])
    message = getattr(error, "message", None)
    if message is not None:
        return str(message)
    return UNKNOWN_ERROR_MESSAGE


def _parse_retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _classify_structured(error: Any) -> tuple[type[EndpointError], dict[str, Any]] | None:
    """Map well-known exception types and HTTP status codes to a class."""
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        extra: dict[str, Any] = {"status_code": status, "url": str(error.request.url)}
        if status in (401, 403):
            return AuthenticationFailedError, extra
        if status == 408:
            return OperationTimeoutError, extra
        if status == 429:
            return RateLimitedError, {**extra, "retry_after": _parse_retry_after(error.response)}
        if status in (400, 422):
            return ValidationFailedError, extra
        if status >= 500:
            return ServerError, extra
        # Any other status (3xx, 404, 409...) is an unknown, final failure.
        return EndpointError, extra
    if isinstance(error, httpx.TimeoutException):
        return OperationTimeoutError, {}
    if isinstance(error, httpx.NetworkError):
        return ConnectionFailedError, {}
    # asyncio.TimeoutError is an alias of TimeoutError
    if isinstance(error, TimeoutError):
        return OperationTimeoutError, {}
    if isinstance(error, ConnectionError):
        return ConnectionFailedError, {}
    return None


def build_error(
    error: Any,
    context: OperationContext | None = None,
    rules: tuple[ClassificationRule, ...] = DEFAULT_CLASSIFICATION_RULES,
) -> EndpointError:
    """Classify *error* without side effects (no logging, no counting)."""
    if isinstance(error, EndpointError):
        return error

    message = extract_message(error)
    kwargs: dict[str, Any] = {
        "cause": error if isinstance(error, BaseException) else None,
    }
    metadata: dict[str, Any] = {}
    if context is not None:
        kwargs["endpoint_id"] = context.endpoint_id
        kwargs["tool_name"] = context.tool_name
        kwargs["correlation_id"] = context.correlation_id
        metadata.update(context.metadata)

    structured = _classify_structured(error)
    if structured is not None:
        error_class, extra = structured
        if error_class is RateLimitedError:
            retry_after = extra.pop("retry_after", None)
            return RateLimitedError(message, retry_after=retry_after, context={**metadata, **extra}, **kwargs)
        return error_class(message, context={**metadata, **extra}, **kwargs)

    for rule in rules:
        if rule.matches(message):
            return rule.error_class(message, context=metadata, **kwargs)

    return EndpointError(
        message,
        category=ErrorCategory.UNKNOWN,
        severity=ErrorSeverity.MEDIUM,
        recovery_strategy=RecoveryStrategy.NONE,
        retryable=False,
        context=metadata,
        **kwargs,
    )


def is_retryable_error(error: Any) -> bool:
    """Return whether *error* is worth retrying."""
    return build_error(error).is_retryable()


def get_error_severity(error: Any) -> ErrorSeverity:
    """Return the severity *error* would be classified with."""
    return build_error(error).severity


def get_recovery_strategy(error: Any) -> RecoveryStrategy:
    """Return the recovery strategy hint *error* would be classified with."""
    return build_error(error).recovery_strategy


# ── Classifier ──────────────────────────────────────────────────────────


class ErrorClassifier:
    """Classifies, logs and counts failures per endpoint.

    Args:
        config: Logging and failure-threshold settings.
        rules:  Ordered message rule table (first match wins).
    """

    def __init__(
        self,
        config: ClassifierConfig | None = None,
        rules: tuple[ClassificationRule, ...] = DEFAULT_CLASSIFICATION_RULES,
    ) -> None:
        self.config = config or ClassifierConfig()
        self.rules = rules
        self._failure_counts: dict[str, int] = {}
        self._open_endpoints: set[str] = set()

    def classify(self, error: Any, context: OperationContext | None = None) -> EndpointError:
        """Return a typed error for *error*, logging and counting it.

        An ``EndpointError`` input is returned as the very same object.
        """
        typed = build_error(error, context, self.rules)

        if self.config.enable_logging:
            self._log_error(typed, context)

        key = typed.endpoint_id or (context.endpoint_id if context else None) or GLOBAL_KEY
        self._failure_counts[key] = self._failure_counts.get(key, 0) + 1

        if self.config.enable_circuit_breaker and key != GLOBAL_KEY:
            self._update_open_state(key)

        return typed

    def _log_error(self, error: EndpointError, context: OperationContext | None) -> None:
        level = _SEVERITY_LOG_LEVELS.get(error.severity, logging.WARNING)
        logger.log(
            level,
            "[%s] %s",
            error.category.value.upper(),
            error.message,
            extra={
                "category": error.category.value,
                "severity": error.severity.value,
                "endpoint_id": error.endpoint_id,
                "tool_name": error.tool_name,
                "correlation_id": error.correlation_id,
                "operation": context.operation_name if context else None,
            },
        )

    def _update_open_state(self, endpoint_id: str) -> None:
        if endpoint_id in self._open_endpoints:
            return
        if self._failure_counts[endpoint_id] >= self.config.circuit_breaker_threshold:
            self._open_endpoints.add(endpoint_id)
            logger.warning(
                "Failure threshold reached for endpoint %s (%d failures)",
                endpoint_id,
                self._failure_counts[endpoint_id],
                extra={"endpoint_id": endpoint_id},
            )

    def is_open(self, endpoint_id: str) -> bool:
        """Return ``True`` if *endpoint_id* crossed the failure threshold."""
        return endpoint_id in self._open_endpoints

    def failure_count(self, endpoint_id: str) -> int:
        return self._failure_counts.get(endpoint_id, 0)

    def reset(self, endpoint_id: str) -> None:
        """Clear the failure counter and open flag of *endpoint_id*."""
        self._open_endpoints.discard(endpoint_id)
        self._failure_counts[endpoint_id] = 0
        logger.info("Failure tracking reset for endpoint %s", endpoint_id)

    def reset_all(self) -> None:
        self._failure_counts.clear()
        self._open_endpoints.clear()

    def get_error_stats(self) -> dict[str, Any]:
        """Return ``{total_errors, errors_by_endpoint, open_endpoints}``."""
        return {
            "total_errors": sum(self._failure_counts.values()),
            "errors_by_endpoint": dict(self._failure_counts),
            "open_endpoints": sorted(self._open_endpoints),
        }
