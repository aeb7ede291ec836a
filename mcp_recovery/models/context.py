"""OperationContext: describes one logical operation handed to the engine."""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any


@dataclass
class OperationContext:
    """Context for a single call to ``execute_with_recovery``.

    Attributes:
        operation_name:            Logical operation (e.g. ``fetch-tool-list``).
        endpoint_id:               Primary endpoint the operation targets.
        tool_name:                 Tool being invoked, if any.
        correlation_id:            Links log lines, retries and fallbacks of
                                   this operation.  Generated when omitted.
        is_critical:               Critical operations never degrade silently.
        fallback_endpoints:        Ordered alternates for ``endpoint_id``.
        cache_key:                 Key under which successful results are cached.
        simplified_fallback_value: Reduced-quality stand-in result.
        fallback_operation:        Runs the same operation against another
                                   endpoint id; required to use fallbacks.
        metadata:                  Open-ended context (ports, paths...).
    """

    operation_name: str
    endpoint_id: str
    tool_name: str | None = None
    correlation_id: str | None = None
    is_critical: bool = False
    fallback_endpoints: list[str] = field(default_factory=list)
    cache_key: str | None = None
    simplified_fallback_value: Any = None
    fallback_operation: Callable[[str], Awaitable[Any]] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.correlation_id is None:
            self.correlation_id = str(uuid.uuid4())
