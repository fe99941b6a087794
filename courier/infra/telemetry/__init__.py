"""
Telemetry Layer — Unified Observability
========================================

All other layers depend on this one.

Provides:
  - Structured logging with request correlation
  - Tracing (OpenTelemetry API)
  - Metrics collection (Prometheus)

Usage:
    from courier.infra.telemetry import get_logger, get_metrics, get_tracer

    logger = get_logger(__name__)
    logger.info("batch_flushed", group_key="users", size=3)
"""

from courier.infra.telemetry.logger import (
    BoundLogger,
    StructuredLogger,
    clear_request_context,
    get_logger,
    set_request_context,
    setup_logging,
)
from courier.infra.telemetry.metrics import MetricsCollector, get_metrics
from courier.infra.telemetry.tracer import Tracer, get_tracer

__all__ = [
    "BoundLogger",
    "MetricsCollector",
    "StructuredLogger",
    "Tracer",
    "clear_request_context",
    "get_logger",
    "get_metrics",
    "get_tracer",
    "set_request_context",
    "setup_logging",
]
