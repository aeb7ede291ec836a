"""RecoveryOrchestrator tests.

Covers:
- End-to-end retry success and authentication fail-fast scenarios
- Degradation after exhausted retries and after a rejected call
- Metrics, history, health status and reset
- Engine failures are reported, never raised
- The classifier's advisory flag and the retry breaker are separate
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest

from mcp_recovery.core.config import DegradationConfig, RecoveryConfig, RetryConfig
from mcp_recovery.core.errors import (
    AuthenticationFailedError,
    CircuitOpenError,
    ConnectionFailedError,
    ErrorCategory,
    RecoveryStrategy,
)
from mcp_recovery.models.context import OperationContext
from mcp_recovery.models.schemas import OperationRecord, OverallHealth
from mcp_recovery.recovery import (
    RecoveryOrchestrator,
    create_orchestrator,
    with_recovery,
    with_retry,
)
from mcp_recovery.resilience.circuit_breaker import CircuitState
from mcp_recovery.resilience.degradation import DegradationLevel, DegradationStrategy


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_config(**retry) -> RecoveryConfig:
    retry_settings = {"max_attempts": 3, "base_delay": 0.1, "backoff_multiplier": 2.0, "jitter": False}
    retry_settings.update(retry)
    return RecoveryConfig(retry=RetryConfig(**retry_settings))


@pytest.fixture
def sleep() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def orchestrator(sleep) -> RecoveryOrchestrator:
    return RecoveryOrchestrator(make_config(), sleep=sleep)


@pytest.fixture
def context() -> OperationContext:
    return OperationContext(operation_name="fetch-tool-list", endpoint_id="docs-server")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# End-to-end scenarios
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestEndToEnd:
    async def test_connection_failures_then_success(self, orchestrator, context, sleep):
        tools = {"tools": ["search", "graph_query"]}
        operation = AsyncMock(
            side_effect=[RuntimeError("Connection failed"), RuntimeError("Connection failed"), tools]
        )

        result = await orchestrator.execute_with_recovery(operation, context)

        assert result.success
        assert result.strategy == RecoveryStrategy.RETRY
        assert result.result == tools
        assert result.error is None
        attempts = result.retry_result.attempts
        assert [a.attempt for a in attempts] == [1, 2, 3]
        assert [a.delay for a in attempts] == pytest.approx([0.1, 0.2, 0.0])
        assert sleep.delays == pytest.approx([0.1, 0.2])
        assert result.metrics.retry_attempts == 3
        assert result.degradation_result is None

    async def test_authentication_failure_fails_fast(self, orchestrator, context, sleep):
        operation = AsyncMock(side_effect=RuntimeError("Invalid API key"))

        result = await orchestrator.execute_with_recovery(operation, context)

        assert not result.success
        assert result.strategy == RecoveryStrategy.MANUAL_INTERVENTION
        assert isinstance(result.error, AuthenticationFailedError)
        assert [a.attempt for a in result.retry_result.attempts] == [1]
        # No degradation: the primary was called exactly once
        assert result.degradation_result is None
        assert operation.await_count == 1
        assert sleep.delays == []


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Degradation
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestDegradationPath:
    async def test_exhausted_retries_degrade_to_simplified(self, orchestrator, sleep):
        context = OperationContext(
            operation_name="fetch-tool-list",
            endpoint_id="docs-server",
            simplified_fallback_value={"tools": []},
        )
        operation = AsyncMock(side_effect=RuntimeError("Internal server error"))

        result = await orchestrator.execute_with_recovery(operation, context)

        assert result.success
        assert result.strategy == RecoveryStrategy.GRACEFUL_DEGRADATION
        assert result.result == {"tools": []}
        assert result.degradation_result.strategy == DegradationStrategy.SIMPLIFIED_RESPONSE
        assert result.metrics.degradation_level == DegradationLevel.FULL
        assert result.metrics.fallback_used
        assert result.metrics.retry_attempts == 3

    async def test_retry_success_feeds_cache_for_later_outage(self, orchestrator):
        context = OperationContext(operation_name="fetch-tool-list", endpoint_id="docs-server", cache_key="tools")
        await orchestrator.execute_with_recovery(AsyncMock(return_value={"tools": ["search"]}), context)

        result = await orchestrator.execute_with_recovery(
            AsyncMock(side_effect=RuntimeError("Connection failed")), context
        )

        assert result.success
        assert result.degradation_result.strategy == DegradationStrategy.CACHED_RESPONSE
        assert result.result == {"tools": ["search"]}
        assert result.metrics.cache_used
        assert orchestrator.get_metrics().cache_hits == 1

    async def test_no_fallback_fails_with_strategy_none(self, orchestrator, context):
        result = await orchestrator.execute_with_recovery(
            AsyncMock(side_effect=RuntimeError("Connection failed")), context
        )
        assert not result.success
        assert result.strategy == RecoveryStrategy.NONE
        assert isinstance(result.error, ConnectionFailedError)
        assert result.degradation_result.strategy == DegradationStrategy.ERROR_RESPONSE
        assert result.metrics.degradation_level == DegradationLevel.FULL

    async def test_critical_operation_needs_manual_intervention(self, orchestrator):
        context = OperationContext(operation_name="authorization", endpoint_id="auth-server")
        result = await orchestrator.execute_with_recovery(
            AsyncMock(side_effect=RuntimeError("Connection failed")), context
        )
        assert not result.success
        assert result.degradation_result.strategy == DegradationStrategy.MANUAL_INTERVENTION

    async def test_degradation_reruns_primary_when_circuit_closed(self, orchestrator, context):
        operation = AsyncMock(
            side_effect=[RuntimeError("Connection failed")] * 3 + [{"tools": []}],
        )
        result = await orchestrator.execute_with_recovery(operation, context)
        assert result.success
        assert result.strategy == RecoveryStrategy.GRACEFUL_DEGRADATION
        assert result.degradation_result.strategy == DegradationStrategy.NONE
        assert operation.await_count == 4
        assert orchestrator.get_metrics().degraded_operations == 0

    async def test_open_circuit_skips_primary_and_uses_fallback(self, sleep):
        orchestrator = RecoveryOrchestrator(make_config(circuit_breaker_threshold=3), sleep=sleep)
        fallback = AsyncMock(return_value="from mirror")
        context = OperationContext(
            operation_name="fetch-tool-list",
            endpoint_id="docs-server",
            fallback_endpoints=["docs-mirror"],
            fallback_operation=fallback,
        )
        operation = AsyncMock(side_effect=RuntimeError("Connection failed"))

        first = await orchestrator.execute_with_recovery(operation, context)
        assert first.degradation_result.fallback_endpoint == "docs-mirror"
        assert operation.await_count == 3  # circuit opened on the last attempt

        second = await orchestrator.execute_with_recovery(operation, context)

        assert second.success
        assert second.retry_result.rejected
        assert isinstance(second.retry_result.error, CircuitOpenError)
        assert second.result == "from mirror"
        assert operation.await_count == 3
        assert orchestrator.get_metrics().circuit_breaker_activations == 1

    async def test_half_open_rejected_call_does_not_run_primary(self, sleep):
        orchestrator = RecoveryOrchestrator(
            make_config(max_attempts=1, circuit_breaker_threshold=1, circuit_breaker_timeout=0.01),
            sleep=sleep,
        )
        context = OperationContext(operation_name="fetch", endpoint_id="docs")
        await orchestrator.execute_with_recovery(AsyncMock(side_effect=RuntimeError("Connection failed")), context)
        await asyncio.sleep(0.02)

        gate = asyncio.Event()
        calls = 0

        async def slow_ok() -> str:
            nonlocal calls
            calls += 1
            await gate.wait()
            return "recovered"

        first = asyncio.create_task(orchestrator.execute_with_recovery(slow_ok, context))
        await asyncio.sleep(0)
        second = asyncio.create_task(orchestrator.execute_with_recovery(slow_ok, context))
        await asyncio.sleep(0)
        gate.set()
        first_result, second_result = await asyncio.gather(first, second)

        assert calls == 1
        assert first_result.success
        assert first_result.result == "recovered"
        assert second_result.retry_result.rejected
        assert second_result.degradation_result.strategy != DegradationStrategy.NONE
        assert orchestrator.retry_executor.circuit_breakers.get("docs").state == CircuitState.CLOSED


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Engine failures
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestEngineFailure:
    async def test_engine_exception_is_reported_not_raised(self, orchestrator, context, caplog):
        with patch.object(
            orchestrator.degradation_manager,
            "execute_with_degradation",
            AsyncMock(side_effect=RuntimeError("cache backend exploded")),
        ):
            with caplog.at_level(logging.ERROR, logger="mcp_recovery.recovery"):
                result = await orchestrator.execute_with_recovery(
                    AsyncMock(side_effect=RuntimeError("Connection failed")), context
                )

        assert not result.success
        assert result.strategy == RecoveryStrategy.NONE
        assert result.error.message == "cache backend exploded"
        assert result.error.category == ErrorCategory.UNKNOWN
        assert result.metrics.degradation_level == DegradationLevel.FULL
        assert result.retry_result is not None
        assert "Recovery engine failed" in caplog.text
        assert orchestrator.get_metrics().failed_operations == 1


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Metrics / history / health
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestMetrics:
    async def test_counters(self, orchestrator, context):
        await orchestrator.execute_with_recovery(AsyncMock(return_value=1), context)
        await orchestrator.execute_with_recovery(
            AsyncMock(side_effect=[RuntimeError("Connection failed"), 2]), context
        )
        await orchestrator.execute_with_recovery(AsyncMock(side_effect=RuntimeError("Unauthorized")), context)

        metrics = orchestrator.get_metrics()
        assert metrics.total_operations == 3
        assert metrics.successful_operations == 2
        assert metrics.failed_operations == 1
        assert metrics.retried_operations == 1
        assert metrics.average_retry_attempts == 2.0
        assert metrics.errors_by_category == {"authentication": 1}
        assert metrics.errors_by_severity == {"high": 1}
        assert metrics.recovery_strategies_used == {"retry": 2, "manual_intervention": 1}

    async def test_average_retry_attempts_is_running_mean(self, orchestrator, context):
        await orchestrator.execute_with_recovery(
            AsyncMock(side_effect=[RuntimeError("Connection failed"), 1]), context
        )
        await orchestrator.execute_with_recovery(
            AsyncMock(side_effect=[RuntimeError("Connection failed")] * 2 + [1]), context
        )
        assert orchestrator.get_metrics().average_retry_attempts == pytest.approx(2.5)

    async def test_degraded_counters(self, orchestrator):
        context = OperationContext(operation_name="analytics", endpoint_id="stats")
        await orchestrator.execute_with_recovery(AsyncMock(side_effect=RuntimeError("Connection failed")), context)
        metrics = orchestrator.get_metrics()
        assert metrics.degraded_operations == 1
        assert metrics.fallback_usage == 1
        assert metrics.recovery_strategies_used == {"skip_operation": 1}

    async def test_get_metrics_returns_copy(self, orchestrator, context):
        snapshot = orchestrator.get_metrics()
        snapshot.errors_by_category["connection"] = 99
        await orchestrator.execute_with_recovery(AsyncMock(return_value=1), context)
        assert orchestrator.get_metrics().errors_by_category == {}


class TestHistory:
    async def test_newest_first_with_limit(self, orchestrator):
        for name in ("first", "second", "third"):
            ctx = OperationContext(operation_name=name, endpoint_id="docs-server")
            await orchestrator.execute_with_recovery(AsyncMock(return_value=name), ctx)

        history = orchestrator.get_operation_history(limit=2)
        assert [r.operation_name for r in history] == ["third", "second"]
        assert all(r.success for r in history)
        assert history[0].strategy == RecoveryStrategy.RETRY

    async def test_zero_limit_returns_nothing(self, orchestrator, context):
        await orchestrator.execute_with_recovery(AsyncMock(return_value=1), context)
        assert orchestrator.get_operation_history(limit=0) == []

    async def test_bounded_by_max_entries(self, sleep):
        orchestrator = RecoveryOrchestrator(RecoveryConfig(history_max_entries=2), sleep=sleep)
        for i in range(5):
            ctx = OperationContext(operation_name=f"op-{i}", endpoint_id="docs-server")
            await orchestrator.execute_with_recovery(AsyncMock(return_value=i), ctx)
        assert [r.operation_name for r in orchestrator.get_operation_history()] == ["op-4", "op-3"]

    async def test_retention_prunes_old_entries(self, orchestrator, context):
        old = datetime.now(UTC) - timedelta(days=2)
        orchestrator._history.append(
            OperationRecord(timestamp=old, operation_name="ancient", success=True, strategy="retry", duration=0.1)
        )
        await orchestrator.execute_with_recovery(AsyncMock(return_value=1), context)
        names = [r.operation_name for r in orchestrator.get_operation_history()]
        assert names == ["fetch-tool-list"]


class TestHealthStatus:
    def test_healthy_when_idle(self, orchestrator):
        health = orchestrator.get_health_status()
        assert health.overall_health == OverallHealth.HEALTHY
        assert health.success_rate == 1.0
        assert health.error_rate == 0.0
        assert health.average_response_time == 0.0

    async def test_critical_when_most_operations_fail(self, orchestrator, context):
        await orchestrator.execute_with_recovery(AsyncMock(side_effect=RuntimeError("Unauthorized")), context)
        health = orchestrator.get_health_status()
        assert health.overall_health == OverallHealth.CRITICAL
        assert health.error_rate == 1.0

    async def test_degraded_when_many_operations_degrade(self, orchestrator):
        context = OperationContext(operation_name="logging", endpoint_id="log-sink")
        await orchestrator.execute_with_recovery(AsyncMock(side_effect=RuntimeError("Connection failed")), context)
        health = orchestrator.get_health_status()
        assert health.overall_health == OverallHealth.DEGRADED
        assert health.degradation_status.degraded_endpoints == ["log-sink"]

    async def test_reports_circuit_breakers(self, orchestrator, context):
        await orchestrator.execute_with_recovery(AsyncMock(return_value=1), context)
        health = orchestrator.get_health_status()
        assert health.circuit_breakers["docs-server"]["state"] == "closed"
        assert health.average_response_time >= 0.0


class TestReset:
    async def test_reset_clears_everything(self, sleep):
        orchestrator = RecoveryOrchestrator(make_config(max_attempts=1, circuit_breaker_threshold=1), sleep=sleep)
        context = OperationContext(operation_name="fetch-tool-list", endpoint_id="docs-server", cache_key="k")
        await orchestrator.execute_with_recovery(AsyncMock(return_value="cached"), context)
        await orchestrator.execute_with_recovery(AsyncMock(side_effect=RuntimeError("Connection failed")), context)
        assert orchestrator.retry_executor.is_circuit_open("docs-server")

        await orchestrator.reset()

        assert orchestrator.get_metrics().total_operations == 0
        assert orchestrator.get_operation_history() == []
        assert orchestrator.get_health_status().circuit_breakers == {}
        assert orchestrator.classifier.get_error_stats()["total_errors"] == 0
        assert not orchestrator.degradation_manager.has_valid_cache("k")
        assert orchestrator.degradation_manager.is_endpoint_available("docs-server")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Two failure trackers
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestTwoFailureTrackers:
    """The classifier's threshold flag is advisory; only the retry breaker gates calls."""

    async def test_classifier_flag_does_not_block_calls(self, sleep):
        config = make_config(max_attempts=1, circuit_breaker_threshold=10)
        config.classifier.circuit_breaker_threshold = 1
        orchestrator = RecoveryOrchestrator(config, sleep=sleep)
        context = OperationContext(operation_name="fetch-tool-list", endpoint_id="docs-server")

        await orchestrator.execute_with_recovery(AsyncMock(side_effect=RuntimeError("Connection failed")), context)
        assert orchestrator.classifier.is_open("docs-server")
        assert not orchestrator.retry_executor.is_circuit_open("docs-server")

        operation = AsyncMock(return_value="ok")
        result = await orchestrator.execute_with_recovery(operation, context)
        assert result.success
        operation.assert_awaited_once()

    async def test_classifier_counts_degradation_failures_too(self, orchestrator, context):
        await orchestrator.execute_with_recovery(AsyncMock(side_effect=RuntimeError("Connection failed")), context)
        # Three retry attempts plus the primary call made during degradation
        assert orchestrator.classifier.failure_count("docs-server") == 4
        assert orchestrator.retry_executor.circuit_breakers.get("docs-server").failure_count == 3


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Convenience helpers
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestHelpers:
    def test_create_orchestrator_defaults(self):
        orchestrator = create_orchestrator()
        assert orchestrator.config.retry.max_attempts == 3

    def test_independent_orchestrators_share_nothing(self):
        a, b = create_orchestrator(), create_orchestrator()
        assert a.retry_executor.circuit_breakers is not b.retry_executor.circuit_breakers
        assert a.degradation_manager is not b.degradation_manager

    async def test_with_recovery(self, context):
        result = await with_recovery(AsyncMock(return_value="ok"), context)
        assert result.success
        assert result.result == "ok"

    async def test_with_retry(self, context):
        config = RetryConfig(max_attempts=1)
        result = await with_retry(AsyncMock(side_effect=RuntimeError("Connection failed")), context, config)
        assert not result.success
        assert result.final_attempt == 1

    async def test_result_to_dict(self, orchestrator, context):
        result = await orchestrator.execute_with_recovery(
            AsyncMock(side_effect=RuntimeError("Unauthorized")), context
        )
        data = result.to_dict()
        assert data["success"] is False
        assert data["strategy"] == "manual_intervention"
        assert data["error"]["category"] == "authentication"
        assert data["degradation_strategy"] is None
        assert data["metrics"]["retry_attempts"] == 1


class TestSimplifiedFromPolicy:
    async def test_config_simplified_response(self, sleep):
        config = make_config(max_attempts=1)
        config.degradation = DegradationConfig(simplified_responses={"fetch-tool-list": {"tools": []}})
        orchestrator = RecoveryOrchestrator(config, sleep=sleep)
        context = OperationContext(operation_name="fetch-tool-list", endpoint_id="docs-server")
        result = await orchestrator.execute_with_recovery(
            AsyncMock(side_effect=RuntimeError("Connection failed")), context
        )
        assert result.result == {"tools": []}
