"""
Preload Store — One-Shot Prefetched Responses
===============================================

Holds responses fetched ahead of time under caller-chosen keys.

Entries are read-once: consuming an entry removes it, modeling
"this preloaded value was used". Preloads that are never claimed are
removed by a periodic sweep. Prefetch failures are logged and swallowed;
they never surface to unrelated callers.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from courier.core.exceptions import RequestError
from courier.infra.telemetry import get_logger, get_metrics
from courier.models.request import RequestDescriptor
from courier.models.response import Response

logger = get_logger(__name__)
metrics = get_metrics()

Invoker = Callable[[RequestDescriptor], Awaitable[Response]]

@dataclass(frozen=True, slots=True)
class PreloadEntry:
    response: Response
    expires_at: float

class PreloadStore:
    """
    Keyed, TTL-aware, read-once response holder.

    Usage:
        store = PreloadStore()
        await store.preload(descriptor, invoker)
        response = store.consume("product:42")  # None on second call
    """

    def __init__(
        self,
        *,
        default_ttl_s: float = 30.0,
        sweep_interval_s: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._default_ttl_s = default_ttl_s
        self._sweep_interval_s = sweep_interval_s
        self._clock = clock
        self._entries: dict[str, PreloadEntry] = {}
        self._sweep_task: asyncio.Task | None = None
        self._background_tasks: set[asyncio.Task] = set()  # prevent GC of fire-and-forget tasks
        self._total_preloaded = 0
        self._total_failed = 0

    # ── Lifecycle ──────────────────────────────────────────────────

    def start(self) -> None:
        """Start the background sweep (requires a running loop)."""
        if self._sweep_task is not None and not self._sweep_task.done():
            return
        self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def stop(self) -> None:
        """Stop the sweep and any preloads still in flight."""
        tasks = [t for t in (self._sweep_task, *self._background_tasks) if t is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._sweep_task = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval_s)
            removed = self.sweep()
            if removed:
                logger.debug("preload_sweep", removed=removed, remaining=len(self._entries))

    def sweep(self) -> int:
        """Remove expired, unconsumed entries. Returns how many were removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            del self._entries[key]
            metrics.record_cache_eviction(store="preload", reason="expired")
        return len(expired)

    # ── Preload ────────────────────────────────────────────────────

    def preload(
        self,
        request: RequestDescriptor,
        invoker: Invoker,
        *,
        ttl_s: float | None = None,
    ) -> asyncio.Task[None]:
        """
        Fire ``request`` in the background and store the response.

        Returns the background task so callers may await completion;
        awaiting it never raises for transport failures.
        """
        if not request.preload_key:
            raise ValueError("preload requires a preload_key")

        self.start()
        ttl = ttl_s if ttl_s is not None else (request.preload_ttl_s or self._default_ttl_s)
        task = asyncio.get_running_loop().create_task(
            self._run_preload(request.preload_key, request, invoker, ttl)
        )
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def _run_preload(
        self, key: str, request: RequestDescriptor, invoker: Invoker, ttl_s: float
    ) -> None:
        try:
            response = await invoker(request.evolve(preload_key=None))
        except RequestError as exc:
            self._total_failed += 1
            logger.warning("preload_failed", preload_key=key, kind=exc.kind.value, error=str(exc))
            return
        self._entries[key] = PreloadEntry(response=response, expires_at=self._clock() + ttl_s)
        self._total_preloaded += 1
        logger.debug("preload_stored", preload_key=key, ttl_s=ttl_s)

    # ── Lookup ─────────────────────────────────────────────────────

    def has_entry(self, key: str) -> bool:
        entry = self._entries.get(key)
        if entry is None:
            return False
        if entry.expires_at <= self._clock():
            del self._entries[key]
            return False
        return True

    def consume(self, key: str) -> Response | None:
        """Take the entry for ``key``. The entry is gone afterwards."""
        entry = self._entries.pop(key, None)
        if entry is None or entry.expires_at <= self._clock():
            metrics.record_cache_access(store="preload", hit=False)
            return None
        metrics.record_cache_access(store="preload", hit=True)
        return entry.response

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def get_status(self) -> dict[str, Any]:
        return {
            "count": len(self._entries),
            "keys": list(self._entries),
            "pending": len(self._background_tasks),
            "total_preloaded": self._total_preloaded,
            "total_failed": self._total_failed,
        }
