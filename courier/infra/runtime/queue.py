"""
Admission Controller — Priority Queue with Offline Buffering
==============================================================

Bounds how many requests are in flight and decides which runs next.

  - Priority ordering: higher ``priority`` first, FIFO among equals
  - Concurrency ceiling (``max_concurrent``); completions pull the next
    task immediately, so throughput sustains itself without polling
  - Offline buffer: while the network is down, tasks wait in a separate
    buffer and move to the live queue on reconnect
  - ``ignore_queue`` tasks bypass both buffers and the ceiling
  - Predicate-based cancel for tasks that have not started

Design:
  - Plain list kept sorted by (-priority, enqueued_at, sequence); the
    sequence number breaks exact timestamp ties
  - All state changes happen between awaits, so the event loop never
    observes a half-updated queue
"""

from __future__ import annotations

import asyncio
import itertools
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from courier.core.exceptions import OfflineError, RequestCancelledError
from courier.core.types import TaskStatus
from courier.infra.runtime.network import ManualNetworkStatus, NetworkStatusProvider
from courier.infra.telemetry import get_logger, get_metrics
from courier.models.request import RequestDescriptor

logger = get_logger(__name__)
metrics = get_metrics()

Thunk = Callable[[], Awaitable[Any]]

@dataclass(eq=False)
class QueueTask:
    """Admission queue entry. Identity-hashed so it can live in sets."""

    request: RequestDescriptor
    execute: Thunk
    future: asyncio.Future[Any]
    priority: int
    sequence: int
    enqueued_at: float = field(default_factory=time.monotonic)
    status: TaskStatus = TaskStatus.PENDING
    started_at: float | None = None

    @property
    def sort_key(self) -> tuple[int, float, int]:
        return (-self.priority, self.enqueued_at, self.sequence)

    @property
    def wait_ms(self) -> float:
        end = self.started_at if self.started_at is not None else time.monotonic()
        return (end - self.enqueued_at) * 1000

@dataclass
class QueueConfig:
    """Admission configuration."""

    max_concurrent: int = 10
    enable_offline_queue: bool = True

class AdmissionController:
    """
    Concurrency-limited priority queue.

    Usage:
        controller = AdmissionController(QueueConfig(max_concurrent=4), network=provider)
        response = await controller.submit(descriptor, lambda: transport(descriptor))
    """

    def __init__(
        self,
        config: QueueConfig | None = None,
        *,
        network: NetworkStatusProvider | None = None,
    ) -> None:
        self._config = config or QueueConfig()
        if self._config.max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self._network = network or ManualNetworkStatus()
        self._unsubscribe = self._network.subscribe(self._on_network_change)

        self._queue: list[QueueTask] = []
        self._offline: list[QueueTask] = []
        self._processing: set[QueueTask] = set()
        self._runners: set[asyncio.Task] = set()  # prevent GC of running thunks
        self._sequence = itertools.count()

        # Stats
        self._total_enqueued = 0
        self._total_completed = 0
        self._total_failed = 0
        self._total_cancelled = 0

    # ── Submission ─────────────────────────────────────────────────

    async def submit(self, request: RequestDescriptor, execute: Thunk) -> Any:
        """Queue ``execute`` under ``request``'s policy and await its result."""
        loop = asyncio.get_running_loop()
        task = QueueTask(
            request=request,
            execute=execute,
            future=loop.create_future(),
            priority=request.priority,
            sequence=next(self._sequence),
        )
        self.enqueue(task)
        return await task.future

    def enqueue(self, task: QueueTask) -> None:
        """Place a task: run now, buffer offline, reject, or queue."""
        self._total_enqueued += 1

        if task.request.ignore_queue:
            self._start(task)
            return

        if not self._network.is_connected:
            if self._config.enable_offline_queue:
                self._offline.append(task)
                metrics.record_queue_depth("offline", len(self._offline))
                logger.info(
                    "offline_buffered",
                    request_id=task.request.request_id,
                    offline_depth=len(self._offline),
                )
            else:
                task.status = TaskStatus.FAILED
                self._total_failed += 1
                task.future.set_exception(
                    OfflineError("Network unavailable", request=task.request)
                )
            return

        self._queue.append(task)
        self._sort()
        self._pump()

    # ── Scheduling ─────────────────────────────────────────────────

    def _sort(self) -> None:
        self._queue.sort(key=lambda t: t.sort_key)

    def _pump(self) -> None:
        """Start queued tasks while slots are free."""
        while self._queue and len(self._processing) < self._config.max_concurrent:
            task = self._queue.pop(0)
            if task.future.done():
                # Caller stopped waiting before the task started
                task.status = TaskStatus.CANCELLED
                self._total_cancelled += 1
                continue
            self._start(task)
        metrics.record_queue_depth("live", len(self._queue))
        metrics.record_inflight(len(self._processing))

    def _start(self, task: QueueTask) -> None:
        task.status = TaskStatus.PROCESSING
        task.started_at = time.monotonic()
        self._processing.add(task)
        metrics.record_queue_wait(task.wait_ms / 1000)
        runner = asyncio.get_running_loop().create_task(self._run(task))
        self._runners.add(runner)
        runner.add_done_callback(self._runners.discard)

    async def _run(self, task: QueueTask) -> None:
        try:
            result = await task.execute()
        except asyncio.CancelledError:
            task.status = TaskStatus.CANCELLED
            self._total_cancelled += 1
            if not task.future.done():
                task.future.cancel()
            raise
        except Exception as exc:
            task.status = TaskStatus.FAILED
            self._total_failed += 1
            if not task.future.done():
                task.future.set_exception(exc)
        else:
            task.status = TaskStatus.COMPLETED
            self._total_completed += 1
            if not task.future.done():
                task.future.set_result(result)
        finally:
            self._processing.discard(task)
            self._pump()

    # ── Network ────────────────────────────────────────────────────

    def _on_network_change(self, connected: bool) -> None:
        if not connected or not self._offline:
            return
        restored = self._offline
        self._offline = []
        self._queue.extend(restored)
        self._sort()
        metrics.record_queue_depth("offline", 0)
        logger.info("offline_queue_restored", count=len(restored))
        self._pump()

    @property
    def is_network_available(self) -> bool:
        return self._network.is_connected

    # ── Cancellation ───────────────────────────────────────────────

    def cancel(self, predicate: Callable[[RequestDescriptor], bool]) -> int:
        """
        Drop pending tasks whose descriptor matches ``predicate``.

        Tasks already processing are not touched; stopping in-flight work
        is the transport's job (see ``CancellationToken``). Returns the
        number of tasks cancelled.
        """
        cancelled: list[QueueTask] = []
        self._queue, dropped = _partition(self._queue, predicate)
        cancelled.extend(dropped)
        self._offline, dropped = _partition(self._offline, predicate)
        cancelled.extend(dropped)

        for task in cancelled:
            self._reject_cancelled(task)
        if cancelled:
            logger.info("queue_tasks_cancelled", count=len(cancelled))
            metrics.record_queue_depth("live", len(self._queue))
            metrics.record_queue_depth("offline", len(self._offline))
        return len(cancelled)

    def clear(self) -> int:
        """Cancel every pending task in both buffers."""
        return self.cancel(lambda _request: True)

    def _reject_cancelled(self, task: QueueTask) -> None:
        task.status = TaskStatus.CANCELLED
        self._total_cancelled += 1
        if not task.future.done():
            task.future.set_exception(
                RequestCancelledError("Request cancelled before it started", request=task.request)
            )

    async def close(self) -> None:
        """Cancel pending work, detach from the network provider, await running tasks."""
        self.clear()
        self._unsubscribe()
        if self._runners:
            await asyncio.gather(*list(self._runners), return_exceptions=True)

    # ── Introspection ──────────────────────────────────────────────

    @property
    def depth(self) -> int:
        return len(self._queue)

    @property
    def processing_count(self) -> int:
        return len(self._processing)

    @property
    def offline_depth(self) -> int:
        return len(self._offline)

    def get_status(self) -> dict[str, Any]:
        return {
            "queue_size": len(self._queue),
            "processing_size": len(self._processing),
            "offline_queue_size": len(self._offline),
            "is_network_available": self._network.is_connected,
        }

    def get_stats(self) -> dict[str, Any]:
        return {
            **self.get_status(),
            "max_concurrent": self._config.max_concurrent,
            "total_enqueued": self._total_enqueued,
            "total_completed": self._total_completed,
            "total_failed": self._total_failed,
            "total_cancelled": self._total_cancelled,
        }

def _partition(
    tasks: list[QueueTask], predicate: Callable[[RequestDescriptor], bool]
) -> tuple[list[QueueTask], list[QueueTask]]:
    keep: list[QueueTask] = []
    drop: list[QueueTask] = []
    for task in tasks:
        (drop if predicate(task.request) else keep).append(task)
    return keep, drop
