"""
Metrics Collector — Prometheus + Internal Metrics
===================================================

Centralized metrics registry for the orchestrator.
Provides typed metric primitives (counters, gauges, histograms)
plus internal latency percentiles for the status snapshot.

Metric Naming Convention:
  - courier_{component}_{metric}_{unit}
  - e.g., courier_transport_latency_seconds
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from prometheus_client import REGISTRY, Counter, Gauge, Histogram, generate_latest

from courier.infra.telemetry.logger import get_logger

logger = get_logger(__name__)

# ── Percentile Tracker ─────────────────────────────────────────────

class PercentileTracker:
    """Thread-safe rolling window percentile calculator with cached sorting."""

    __slots__ = ("_lock", "_sorted_cache", "_sorted_dirty", "_values")

    def __init__(self, window_size: int = 1000):
        self._values: deque[float] = deque(maxlen=window_size)
        self._lock = threading.Lock()
        self._sorted_dirty = True
        self._sorted_cache: list[float] = []

    def record(self, value: float) -> None:
        with self._lock:
            self._values.append(value)
            self._sorted_dirty = True

    def percentile(self, p: float) -> float:
        """Get percentile value (0-100). Only re-sorts when data changes."""
        with self._lock:
            if not self._values:
                return 0.0
            if self._sorted_dirty:
                self._sorted_cache = sorted(self._values)
                self._sorted_dirty = False
            idx = int(len(self._sorted_cache) * p / 100)
            return self._sorted_cache[min(idx, len(self._sorted_cache) - 1)]

    @property
    def count(self) -> int:
        return len(self._values)

    def mean(self) -> float:
        with self._lock:
            if not self._values:
                return 0.0
            return sum(self._values) / len(self._values)

# ── Metrics Collector ──────────────────────────────────────────────

class MetricsCollector:
    """
    Centralized metrics collection.

    Pre-defines all orchestrator metrics with proper labels and keeps
    in-process counters so ``get_summary`` works without a scrape.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._latency = PercentileTracker()
        self._counters: dict[str, int] = {
            "total": 0,
            "success": 0,
            "failed": 0,
            "cached": 0,
            "retries": 0,
        }

        # ── Request Metrics ──
        self.requests = Counter(
            "courier_requests_total",
            "Completed dispatches",
            labelnames=["method", "outcome"],
        )

        self.transport_latency = Histogram(
            "courier_transport_latency_seconds",
            "Transport call latency",
            labelnames=["method"],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.retries = Counter(
            "courier_retry_attempts_total",
            "Retries scheduled",
            labelnames=["kind"],
        )

        # ── Queue Metrics ──
        self.queue_depth = Gauge(
            "courier_queue_depth",
            "Tasks waiting in the admission queue",
            labelnames=["queue"],  # live / offline
        )

        self.inflight = Gauge(
            "courier_queue_inflight",
            "Tasks currently processing",
        )

        self.queue_wait_time = Histogram(
            "courier_queue_wait_seconds",
            "Time spent waiting for an admission slot",
            buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0),
        )

        # ── Cache Metrics ──
        self.cache_hits = Counter(
            "courier_cache_hits_total",
            "Cache hits",
            labelnames=["store"],  # response / preload
        )

        self.cache_misses = Counter(
            "courier_cache_misses_total",
            "Cache misses",
            labelnames=["store"],
        )

        self.cache_evictions = Counter(
            "courier_cache_evictions_total",
            "Cache evictions",
            labelnames=["store", "reason"],  # reason: lru / expired
        )

        # ── Batch Metrics ──
        self.batch_size = Histogram(
            "courier_batch_size",
            "Members per flushed batch group",
            buckets=(1, 2, 3, 4, 5, 8, 16, 32),
        )

    # ── Recording Methods ──────────────────────────────────────────

    def _bump(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[name] += amount

    def record_request(self, *, method: str, outcome: str, from_cache: bool = False) -> None:
        """Record a finished dispatch. ``outcome`` is success or error."""
        self._bump("total")
        self._bump("success" if outcome == "success" else "failed")
        if from_cache:
            self._bump("cached")
        self.requests.labels(method=method, outcome=outcome).inc()

    @contextmanager
    def track_transport(self, *, method: str) -> Generator[None, None, None]:
        """Time one transport call."""
        start = time.monotonic()
        try:
            yield
        finally:
            latency = time.monotonic() - start
            self._latency.record(latency)
            self.transport_latency.labels(method=method).observe(latency)

    def record_retry(self, kind: str) -> None:
        self._bump("retries")
        self.retries.labels(kind=kind).inc()

    def record_queue_depth(self, queue: str, depth: int) -> None:
        self.queue_depth.labels(queue=queue).set(depth)

    def record_inflight(self, count: int) -> None:
        self.inflight.set(count)

    def record_queue_wait(self, wait_s: float) -> None:
        self.queue_wait_time.observe(wait_s)

    def record_cache_access(self, *, store: str, hit: bool) -> None:
        if hit:
            self.cache_hits.labels(store=store).inc()
        else:
            self.cache_misses.labels(store=store).inc()

    def record_cache_eviction(self, *, store: str, reason: str) -> None:
        self.cache_evictions.labels(store=store, reason=reason).inc()

    def record_batch(self, size: int) -> None:
        self.batch_size.observe(size)

    # ── Summary ────────────────────────────────────────────────────

    def get_summary(self) -> dict[str, Any]:
        """Counters and transport latency percentiles."""
        with self._lock:
            counters = dict(self._counters)
        total = counters["total"]
        return {
            **counters,
            "error_rate": round(counters["failed"] / total, 4) if total else 0.0,
            "transport_latency_s": {
                "p50": self._latency.percentile(50),
                "p95": self._latency.percentile(95),
                "p99": self._latency.percentile(99),
                "mean": self._latency.mean(),
                "count": self._latency.count,
            },
        }

    def export_prometheus(self) -> bytes:
        """Export metrics in Prometheus text format."""
        return generate_latest(REGISTRY)

# ── Singleton ──────────────────────────────────────────────────────

_metrics: MetricsCollector | None = None

def get_metrics() -> MetricsCollector:
    # Lock-free benign-race singleton; Prometheus rejects duplicate
    # registration, so only one collector may ever exist per process.
    global _metrics
    if _metrics is not None:
        return _metrics
    _metrics = MetricsCollector()
    return _metrics
