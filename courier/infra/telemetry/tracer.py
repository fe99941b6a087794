"""
Tracing — OpenTelemetry Integration
====================================

Span-based tracing over the OpenTelemetry API. Without an SDK
configured by the host application, the API hands out non-recording
spans, so instrumentation costs nothing until someone installs a
TracerProvider.

Usage:
    from courier.infra.telemetry.tracer import get_tracer

    tracer = get_tracer(__name__)

    async def dispatch(request):
        with tracer.span("courier.dispatch", attributes={"method": "GET"}) as span:
            response = await send(request)
            span.set_attribute("status", response.status)
            return response
"""

from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace as otel_trace
from opentelemetry.trace import Status, StatusCode

_KINDS = {
    "internal": otel_trace.SpanKind.INTERNAL,
    "client": otel_trace.SpanKind.CLIENT,
    "producer": otel_trace.SpanKind.PRODUCER,
}

class Tracer:
    """Thin wrapper giving every module the same span API."""

    def __init__(self, name: str):
        self._name = name
        self._tracer = otel_trace.get_tracer(name)

    @contextmanager
    def span(
        self,
        name: str,
        *,
        attributes: dict[str, Any] | None = None,
        kind: str = "internal",
    ) -> Generator[Any, None, None]:
        """
        Create a traced span.

        Args:
            name: Span name (e.g., "courier.dispatch", "courier.transport")
            attributes: Initial span attributes; ``None`` values are dropped
            kind: Span kind: "internal", "client", "producer"
        """
        attrs = {k: v for k, v in (attributes or {}).items() if v is not None}
        with self._tracer.start_as_current_span(
            name, kind=_KINDS.get(kind, otel_trace.SpanKind.INTERNAL), attributes=attrs
        ) as span:
            try:
                yield span
            except Exception as exc:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                raise

# ── Registry ───────────────────────────────────────────────────────

_tracers: dict[str, Tracer] = {}

def get_tracer(name: str) -> Tracer:
    """Get or create a tracer for the given module."""
    if name not in _tracers:
        _tracers[name] = Tracer(name)
    return _tracers[name]
