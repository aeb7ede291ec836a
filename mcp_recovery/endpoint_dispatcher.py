"""EndpointDispatcher: HTTP calls to endpoints, run through the engine.

Maps endpoint ids to ``EndpointRoute``s (base URL + timeout) and turns a
request into the zero-argument operation the ``RecoveryOrchestrator``
expects.  Responses are checked with ``raise_for_status`` so that the
classifier sees real ``httpx`` exceptions and status codes instead of
having to pattern-match messages.  ``fallback_operation`` replays the same
request against an alternate endpoint.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace

import httpx

from mcp_recovery.core.errors import ConfigurationError
from mcp_recovery.models.context import OperationContext
from mcp_recovery.recovery import RecoveryOrchestrator, RecoveryResult

logger = logging.getLogger(__name__)


@dataclass
class EndpointRoute:
    """Where an endpoint lives.

    Attributes:
        base_url: Endpoint origin (e.g. ``http://localhost:8081``).
        timeout:  Per-request timeout in seconds.
    """

    base_url: str
    timeout: float = 30.0


@dataclass
class DispatchResult:
    """Structured response from an endpoint.

    Attributes:
        endpoint_id: Endpoint that actually answered.
        status_code: HTTP status code.
        body:        Parsed JSON body (empty dict if no body).
        headers:     Response headers as a plain dict.
        elapsed_ms:  Round-trip time in milliseconds.
    """

    endpoint_id: str
    status_code: int
    body: dict
    headers: dict
    elapsed_ms: float


class EndpointDispatcher:
    """Sends requests to registered endpoints.

    Uses one ``httpx.AsyncClient`` per base URL for connection pooling.

    Args:
        routes: ``endpoint_id → EndpointRoute`` (or a bare base URL string).
    """

    def __init__(self, routes: dict[str, EndpointRoute | str] | None = None) -> None:
        self.routes: dict[str, EndpointRoute] = {}
        for endpoint_id, route in (routes or {}).items():
            self.register(endpoint_id, route)
        self._clients: dict[str, httpx.AsyncClient] = {}
        # Single-client override; tests inject a mock transport here
        self._client: httpx.AsyncClient | None = None

    def register(self, endpoint_id: str, route: EndpointRoute | str) -> None:
        if isinstance(route, str):
            route = EndpointRoute(base_url=route)
        self.routes[endpoint_id] = route

    def get_route(self, endpoint_id: str) -> EndpointRoute | None:
        """Return the ``EndpointRoute`` for *endpoint_id*, or ``None``."""
        return self.routes.get(endpoint_id)

    def _get_client(self, base_url: str) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        if base_url not in self._clients:
            self._clients[base_url] = httpx.AsyncClient(base_url=base_url)
        return self._clients[base_url]

    @staticmethod
    def _parse_body(response: httpx.Response) -> dict:
        """Safely parse a JSON response body."""
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {"data": body}

    async def send(
        self,
        endpoint_id: str,
        path: str,
        payload: dict | None = None,
        *,
        method: str = "POST",
    ) -> DispatchResult:
        """Send one request to *endpoint_id*.

        Raises:
            ConfigurationError: If *endpoint_id* is not registered.
            httpx.HTTPStatusError: For 4xx/5xx responses.
            httpx.TransportError: For connection failures and timeouts.
        """
        route = self.get_route(endpoint_id)
        if route is None:
            raise ConfigurationError(f"Unknown endpoint: {endpoint_id}", endpoint_id=endpoint_id)

        url = f"{route.base_url}{path}"
        client = self._get_client(route.base_url)
        start = time.monotonic()
        if method.upper() == "GET":
            response = await client.get(url, params=payload or None, timeout=route.timeout)
        else:
            response = await client.request(method.upper(), url, json=payload or {}, timeout=route.timeout)
        elapsed_ms = (time.monotonic() - start) * 1000
        response.raise_for_status()

        return DispatchResult(
            endpoint_id=endpoint_id,
            status_code=response.status_code,
            body=self._parse_body(response),
            headers=dict(response.headers),
            elapsed_ms=round(elapsed_ms, 2),
        )

    def operation_for(
        self,
        endpoint_id: str,
        path: str,
        payload: dict | None = None,
        *,
        method: str = "POST",
    ) -> Callable[[], Awaitable[DispatchResult]]:
        """Return a zero-argument operation that sends the request."""

        async def operation() -> DispatchResult:
            return await self.send(endpoint_id, path, payload, method=method)

        return operation

    async def call(
        self,
        orchestrator: RecoveryOrchestrator,
        context: OperationContext,
        path: str,
        payload: dict | None = None,
        *,
        method: str = "POST",
    ) -> RecoveryResult[DispatchResult]:
        """Send a request through *orchestrator*, with fallbacks wired in.

        ``context.endpoint_id`` is the primary endpoint; any fallback
        endpoints are reached with the same path, payload and method.
        """

        async def fallback_operation(fallback_endpoint_id: str) -> DispatchResult:
            return await self.send(fallback_endpoint_id, path, payload, method=method)

        if context.fallback_operation is None:
            context = replace(context, fallback_operation=fallback_operation)

        operation = self.operation_for(context.endpoint_id, path, payload, method=method)
        result = await orchestrator.execute_with_recovery(operation, context)
        logger.debug(
            "Dispatch of %s to %s finished: success=%s strategy=%s",
            context.operation_name,
            context.endpoint_id,
            result.success,
            result.strategy.value,
        )
        return result

    async def close(self) -> None:
        """Close all pooled httpx clients."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()
