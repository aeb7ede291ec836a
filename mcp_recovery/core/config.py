"""Settings and component configuration for the recovery engine.

``Settings`` is loaded from environment variables with the
``MCP_RECOVERY_`` prefix.  ``build_recovery_config()`` turns it into the
``RecoveryConfig`` tree consumed by ``RecoveryOrchestrator``, merging the
optional YAML degradation policy named by ``POLICY_PATH``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings

from mcp_recovery.core.errors import ConfigurationError

# Error class names that are never retried, whatever their retryable flag says.
DEFAULT_NON_RETRYABLE_ERRORS: tuple[str, ...] = (
    "AuthenticationFailedError",
    "ConfigurationError",
    "ValidationFailedError",
)


class Settings(BaseSettings):
    """Recovery engine configuration.

    All fields can be overridden by environment variables prefixed with
    ``MCP_RECOVERY_``.  For example, ``MCP_RECOVERY_RETRY_MAX_ATTEMPTS=5``
    overrides the retry budget.
    """

    # ── Service identity ────────────────────────────────────────────
    SERVICE_NAME: str = "mcp-recovery"
    SERVICE_VERSION: str = "0.1.0"
    HOST: str = "0.0.0.0"
    PORT: int = 8090

    # ── Logging ─────────────────────────────────────────────────────
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False  # One JSON object per line when true
    ERROR_LOGGING_ENABLED: bool = True  # Classifier logs every classified failure

    # ── Retry ───────────────────────────────────────────────────────
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_BASE_DELAY: float = 1.0  # Seconds before the second attempt
    RETRY_MAX_DELAY: float = 30.0  # Upper bound for any single backoff
    RETRY_BACKOFF_MULTIPLIER: float = 2.0
    RETRY_JITTER: bool = True
    RETRY_JITTER_FACTOR: float = 0.1

    # ── Circuit breakers ────────────────────────────────────────────
    CIRCUIT_BREAKER_ENABLED: bool = True
    CIRCUIT_BREAKER_THRESHOLD: int = 5  # Consecutive failures before OPEN
    CIRCUIT_BREAKER_RECOVERY_SECONDS: float = 60.0  # Seconds before HALF_OPEN probe

    # ── Degradation ─────────────────────────────────────────────────
    CACHE_ENABLED: bool = True
    CACHE_TIMEOUT_SECONDS: float = 300.0
    MAX_DEGRADATION_SECONDS: float = 3600.0
    POLICY_PATH: str = ""  # YAML degradation policy (fallbacks, simplified responses)

    # ── Metrics / history ───────────────────────────────────────────
    METRICS_ENABLED: bool = True
    METRICS_RETENTION_SECONDS: float = 86400.0
    HISTORY_MAX_ENTRIES: int = 1000

    model_config = {
        "env_prefix": "MCP_RECOVERY_",
    }


# ── Component configuration models ──────────────────────────────────────


class ClassifierConfig(BaseModel):
    """Configuration for ``ErrorClassifier``."""

    enable_logging: bool = True
    enable_circuit_breaker: bool = True
    circuit_breaker_threshold: int = Field(default=5, ge=1)


class RetryConfig(BaseModel):
    """Configuration for ``RetryExecutor``.  Delays are in seconds."""

    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=1.0, ge=0.0)
    max_delay: float = Field(default=30.0, ge=0.0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    jitter: bool = True
    jitter_factor: float = Field(default=0.1, ge=0.0, le=1.0)
    non_retryable_errors: list[str] = Field(default_factory=lambda: list(DEFAULT_NON_RETRYABLE_ERRORS))
    enable_circuit_breaker: bool = True
    circuit_breaker_threshold: int = Field(default=5, ge=1)
    circuit_breaker_timeout: float = Field(default=60.0, ge=0.0)


class DegradationConfig(BaseModel):
    """Configuration for ``DegradationManager``.

    ``fallback_endpoints`` maps a primary endpoint id to the ordered list of
    endpoints that can serve the same operations.  ``simplified_responses``
    maps an operation name to a reduced-quality stand-in value.
    """

    enable_caching: bool = True
    cache_timeout: float = Field(default=300.0, ge=0.0)
    fallback_endpoints: dict[str, list[str]] = Field(default_factory=dict)
    simplified_responses: dict[str, Any] = Field(default_factory=dict)
    critical_operations: list[str] = Field(
        default_factory=lambda: ["authentication", "authorization", "security"]
    )
    non_critical_operations: list[str] = Field(
        default_factory=lambda: ["logging", "analytics", "monitoring"]
    )
    max_degradation_time: float = Field(default=3600.0, ge=0.0)


class RecoveryConfig(BaseModel):
    """Top-level configuration for ``RecoveryOrchestrator``."""

    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    degradation: DegradationConfig = Field(default_factory=DegradationConfig)
    enable_metrics: bool = True
    metrics_retention: float = Field(default=86400.0, gt=0.0)
    history_max_entries: int = Field(default=1000, ge=1)


# ── Policy file ─────────────────────────────────────────────────────────

_POLICY_KEYS = frozenset(
    {
        "fallback_endpoints",
        "simplified_responses",
        "critical_operations",
        "non_critical_operations",
    }
)


def load_degradation_policy(path: str | Path) -> dict[str, Any]:
    """Load a YAML degradation policy.

    The file may define ``fallback_endpoints``, ``simplified_responses``,
    ``critical_operations`` and ``non_critical_operations``.  Unknown keys
    are rejected so that typos do not silently disable a fallback.

    Raises:
        ConfigurationError: If the file is missing, is not valid YAML, is
            not a mapping, or contains unknown keys.
    """
    policy_path = Path(path)
    if not policy_path.exists():
        raise ConfigurationError(
            f"Degradation policy not found: {policy_path}",
            context={"path": str(policy_path)},
        )

    try:
        raw = yaml.safe_load(policy_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(
            f"Invalid YAML in {policy_path}: {exc}",
            context={"path": str(policy_path)},
            cause=exc,
        ) from exc

    if not isinstance(raw, dict):
        raise ConfigurationError(
            f"Degradation policy must be a mapping: {policy_path}",
            context={"path": str(policy_path)},
        )

    unknown = sorted(set(raw) - _POLICY_KEYS)
    if unknown:
        raise ConfigurationError(
            f"Unknown degradation policy keys: {', '.join(unknown)}",
            context={"path": str(policy_path), "keys": unknown},
        )
    return raw


def build_recovery_config(settings: Settings | None = None) -> RecoveryConfig:
    """Build a ``RecoveryConfig`` from *settings* (and its policy file).

    Raises:
        ConfigurationError: If the policy file is invalid.
    """
    settings = settings or Settings()

    degradation: dict[str, Any] = {
        "enable_caching": settings.CACHE_ENABLED,
        "cache_timeout": settings.CACHE_TIMEOUT_SECONDS,
        "max_degradation_time": settings.MAX_DEGRADATION_SECONDS,
    }
    if settings.POLICY_PATH:
        degradation.update(load_degradation_policy(settings.POLICY_PATH))

    try:
        return RecoveryConfig(
            classifier=ClassifierConfig(
                enable_logging=settings.ERROR_LOGGING_ENABLED,
                enable_circuit_breaker=settings.CIRCUIT_BREAKER_ENABLED,
                circuit_breaker_threshold=settings.CIRCUIT_BREAKER_THRESHOLD,
            ),
            retry=RetryConfig(
                max_attempts=settings.RETRY_MAX_ATTEMPTS,
                base_delay=settings.RETRY_BASE_DELAY,
                max_delay=settings.RETRY_MAX_DELAY,
                backoff_multiplier=settings.RETRY_BACKOFF_MULTIPLIER,
                jitter=settings.RETRY_JITTER,
                jitter_factor=settings.RETRY_JITTER_FACTOR,
                enable_circuit_breaker=settings.CIRCUIT_BREAKER_ENABLED,
                circuit_breaker_threshold=settings.CIRCUIT_BREAKER_THRESHOLD,
                circuit_breaker_timeout=settings.CIRCUIT_BREAKER_RECOVERY_SECONDS,
            ),
            degradation=DegradationConfig(**degradation),
            enable_metrics=settings.METRICS_ENABLED,
            metrics_retention=settings.METRICS_RETENTION_SECONDS,
            history_max_entries=settings.HISTORY_MAX_ENTRIES,
        )
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid recovery configuration: {exc}", cause=exc) from exc
