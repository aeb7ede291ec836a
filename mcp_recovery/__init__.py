"""mcp-recovery: error classification, retry, circuit breaking and graceful
degradation for calls to MCP tool servers and LLM providers."""

from mcp_recovery.classifier import (
    ErrorClassifier,
    get_error_severity,
    get_recovery_strategy,
    is_retryable_error,
)
from mcp_recovery.core.config import RecoveryConfig, Settings, build_recovery_config
from mcp_recovery.core.errors import (
    EndpointError,
    ErrorCategory,
    ErrorSeverity,
    RecoveryStrategy,
)
from mcp_recovery.models.context import OperationContext
from mcp_recovery.recovery import (
    RecoveryOrchestrator,
    RecoveryResult,
    create_orchestrator,
    with_recovery,
    with_retry,
)

__all__ = [
    "EndpointError",
    "ErrorCategory",
    "ErrorClassifier",
    "ErrorSeverity",
    "OperationContext",
    "RecoveryConfig",
    "RecoveryOrchestrator",
    "RecoveryResult",
    "RecoveryStrategy",
    "Settings",
    "build_recovery_config",
    "create_orchestrator",
    "get_error_severity",
    "get_recovery_strategy",
    "is_retryable_error",
    "with_recovery",
    "with_retry",
]
