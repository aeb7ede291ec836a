"""FastAPI status application for a ``RecoveryOrchestrator``.

Exposes the orchestrator's health, metrics, history and circuit breaker
state over HTTP, plus a reset hook.  Every response carries an
``X-Request-ID`` header (client-supplied or generated).
"""

import logging
import time
import uuid

from fastapi import FastAPI, Query, Request, Response

from mcp_recovery.core.config import Settings, build_recovery_config
from mcp_recovery.core.logging import configure_logging
from mcp_recovery.models.schemas import HealthResponse, HealthStatus, OperationRecord, RecoveryMetrics
from mcp_recovery.recovery import RecoveryOrchestrator

logger = logging.getLogger(__name__)


def create_app(
    orchestrator: RecoveryOrchestrator | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    """Build the status app around *orchestrator*.

    When no orchestrator is given one is built from *settings*.
    """
    settings = settings or Settings()
    if orchestrator is None:
        orchestrator = RecoveryOrchestrator(build_recovery_config(settings))

    start_time = time.monotonic()
    app = FastAPI(title=settings.SERVICE_NAME, version=settings.SERVICE_VERSION)
    app.state.orchestrator = orchestrator

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next) -> Response:
        """Assign or preserve a unique request ID on every request."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        """Return service identity, overall recovery health and uptime."""
        status = orchestrator.get_health_status()
        return HealthResponse(
            service=settings.SERVICE_NAME,
            version=settings.SERVICE_VERSION,
            status=status.overall_health.value,
            uptime_seconds=round(time.monotonic() - start_time, 2),
        )

    @app.get("/recovery/health", response_model=HealthStatus)
    async def recovery_health() -> HealthStatus:
        return orchestrator.get_health_status()

    @app.get("/recovery/metrics", response_model=RecoveryMetrics)
    async def recovery_metrics() -> RecoveryMetrics:
        return orchestrator.get_metrics()

    @app.get("/recovery/history", response_model=list[OperationRecord])
    async def recovery_history(limit: int | None = Query(default=None, ge=1)) -> list[OperationRecord]:
        return orchestrator.get_operation_history(limit)

    @app.get("/recovery/circuit-breakers")
    async def circuit_breakers() -> dict:
        return {
            "circuit_breakers": orchestrator.retry_executor.get_circuit_breaker_status(),
            "failure_tracking": orchestrator.classifier.get_error_stats(),
        }

    @app.post("/recovery/reset", status_code=204)
    async def reset() -> Response:
        await orchestrator.reset()
        logger.info("Recovery state reset via API")
        return Response(status_code=204)

    return app


def build_app() -> FastAPI:
    """Entry point for ``uvicorn --factory mcp_recovery.main:build_app``."""
    settings = Settings()
    configure_logging(settings)
    return create_app(settings=settings)
