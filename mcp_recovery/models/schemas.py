"""Pydantic snapshot models for metrics, history and health.

These are the JSON-serializable views the orchestrator hands out; the
FastAPI status app returns them unchanged.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from mcp_recovery.core.errors import RecoveryStrategy


class OverallHealth(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"


class HealthResponse(BaseModel):
    """Response model for GET /health."""

    service: str
    version: str
    status: str
    uptime_seconds: float


class RecoveryMetrics(BaseModel):
    """Process-wide recovery counters owned by one orchestrator."""

    total_operations: int = 0
    successful_operations: int = 0
    failed_operations: int = 0
    retried_operations: int = 0
    degraded_operations: int = 0
    average_retry_attempts: float = 0.0
    circuit_breaker_activations: int = 0
    cache_hits: int = 0
    fallback_usage: int = 0
    errors_by_category: dict[str, int] = Field(default_factory=dict)
    errors_by_severity: dict[str, int] = Field(default_factory=dict)
    recovery_strategies_used: dict[str, int] = Field(default_factory=dict)


class OperationRecord(BaseModel):
    """One entry of the orchestrator's operation history."""

    timestamp: datetime
    operation_name: str
    success: bool
    strategy: RecoveryStrategy
    duration: float  # seconds


class DegradationStatus(BaseModel):
    """Snapshot of degraded endpoints and the result cache."""

    degraded_endpoints: list[str] = Field(default_factory=list)
    cache_size: int = 0
    endpoint_availability: dict[str, bool] = Field(default_factory=dict)
    degradation_durations: dict[str, float] = Field(default_factory=dict)
    exceeded_max_degradation: list[str] = Field(default_factory=list)


class HealthStatus(BaseModel):
    """Overall health derived from metrics and recent history."""

    overall_health: OverallHealth
    success_rate: float
    error_rate: float
    average_response_time: float
    circuit_breakers: dict[str, dict[str, Any]] = Field(default_factory=dict)
    degradation_status: DegradationStatus = Field(default_factory=DegradationStatus)
