"""
Request Dispatcher — Central Request Lifecycle Coordinator
=============================================================

The dispatcher is the single entry point for every request. It
coordinates:
  - Interceptor chain (request side, response side)
  - Preload store (read-once prefetched responses)
  - Response cache with stale-while-revalidate refresh
  - In-flight deduplication of identical cacheable GETs
  - Admission control or batch coalescing
  - Retry with constant or linear backoff
  - Metrics and tracing

All requests go through:
  interceptors → preload → cache → (batcher | admission | direct) → transport
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from courier.core.config import Settings, get_settings
from courier.core.exceptions import (
    ClientError,
    NotCachedError,
    RequestCancelledError,
    RequestError,
    classify_exception,
    error_from_status,
)
from courier.core.types import CacheMode
from courier.infra.cache import CacheBackend, PreloadStore, ResponseCache
from courier.infra.runtime.backends import Transport
from courier.infra.runtime.batcher import BatchCoalescer, BatchConfig
from courier.infra.runtime.interceptor import Interceptors
from courier.infra.runtime.network import NetworkStatusProvider
from courier.infra.runtime.queue import AdmissionController, QueueConfig
from courier.infra.runtime.retry import RetryContext, RetryController, RetryPolicy
from courier.infra.telemetry import (
    clear_request_context,
    get_logger,
    get_metrics,
    get_tracer,
    set_request_context,
)
from courier.models.request import RequestDescriptor
from courier.models.response import Response
from courier.utils.keys import generate_cache_key

logger = get_logger(__name__)
tracer = get_tracer(__name__)
metrics = get_metrics()

Sleep = Callable[[float], Awaitable[Any]]


class RequestDispatcher:
    """
    Central request coordinator.

    Usage:
        dispatcher = RequestDispatcher(transport, settings=Settings(MAX_CONCURRENT=4))
        response = await dispatcher.dispatch(RequestDescriptor(url="/users"))

        # Prefetch, then read once
        await dispatcher.preload(RequestDescriptor(url="/users/42", preload_key="user:42"))
        response = await dispatcher.dispatch(RequestDescriptor(url="/users/42", preload_key="user:42"))
    """

    def __init__(
        self,
        transport: Transport,
        *,
        settings: Settings | None = None,
        cache: CacheBackend | None = None,
        network: NetworkStatusProvider | None = None,
        preload_store: PreloadStore | None = None,
        batch_config: BatchConfig | None = None,
        retry_controller: RetryController | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._settings = settings or get_settings()
        s = self._settings
        self._transport = transport
        self.interceptors = Interceptors()

        self._cache: CacheBackend = cache or ResponseCache(
            max_size=s.MAX_CACHE_SIZE, default_ttl_s=s.CACHE_TTL_S
        )
        self._preloads = preload_store or PreloadStore(
            default_ttl_s=s.PRELOAD_TTL_S, sweep_interval_s=s.PRELOAD_SWEEP_INTERVAL_S
        )
        self._admission: AdmissionController | None = None
        if s.ENABLE_QUEUE:
            self._admission = AdmissionController(
                QueueConfig(
                    max_concurrent=s.MAX_CONCURRENT,
                    enable_offline_queue=s.ENABLE_OFFLINE_QUEUE,
                ),
                network=network,
            )
        self._batcher = BatchCoalescer(
            batch_config
            or BatchConfig(
                max_batch_size=s.BATCH_MAX_SIZE,
                interval_s=s.BATCH_INTERVAL_S,
                batch_url=s.BATCH_URL,
                requests_field_name=s.BATCH_REQUESTS_FIELD,
                response_path=s.BATCH_RESPONSE_PATH,
            )
        )
        self._retry = retry_controller or RetryController()
        self._sleep = sleep

        self._inflight: dict[str, asyncio.Task[Response]] = {}
        self._refreshing: set[str] = set()
        self._background_tasks: set[asyncio.Task] = set()  # prevent GC of fire-and-forget tasks
        self._closed = False

    @property
    def settings(self) -> Settings:
        return self._settings

    # ── Dispatch ───────────────────────────────────────────────────

    async def dispatch(self, request: RequestDescriptor) -> Response:
        """
        Run ``request`` through the full lifecycle.

        Returns a Response or raises a RequestError; nothing else escapes
        except task cancellation.
        """
        if self._closed:
            raise ClientError("Dispatcher is closed", request=request)

        set_request_context(request_id=request.request_id, group_key=request.group_key)
        try:
            with tracer.span("courier.dispatch", attributes=request.to_telemetry(), kind="client"):
                try:
                    response = await self.interceptors.run(request, self._send)
                except RequestError as exc:
                    metrics.record_request(method=request.method.value, outcome=exc.kind.value)
                    logger.info(
                        "request_failed",
                        request_id=request.request_id,
                        kind=exc.kind.value,
                        status=exc.status,
                        retry_count=exc.retry_count,
                    )
                    raise
                except Exception as exc:
                    # Interceptors may raise anything; callers only ever see RequestErrors
                    error = classify_exception(exc, request)
                    metrics.record_request(method=request.method.value, outcome=error.kind.value)
                    raise error from exc

            from_cache = bool(getattr(response, "from_cache", False))
            metrics.record_request(
                method=request.method.value, outcome="success", from_cache=from_cache
            )
            return response
        finally:
            clear_request_context()

    async def _send(self, request: Any) -> Response:
        """Send step of the interceptor chain."""
        if not isinstance(request, RequestDescriptor):
            raise ClientError(
                f"Request interceptors must return a RequestDescriptor, got {type(request).__name__}"
            )

        if request.preload_key:
            preloaded = self._preloads.consume(request.preload_key)
            if preloaded is not None:
                logger.debug("preload_hit", preload_key=request.preload_key)
                return preloaded

        if not request.is_cacheable:
            return await self._perform(request)

        key = generate_cache_key(request)
        cached = await self._read_cache(key)
        if cached is not None:
            if request.cache == CacheMode.DEFAULT:
                self._schedule_refresh(request, key)
            logger.debug("cache_hit", cache_key=key, mode=request.cache.value)
            return cached.evolve(from_cache=True, request=request)

        if request.cache == CacheMode.ONLY_IF_CACHED:
            raise NotCachedError(request)

        if self._settings.DEDUPE_INFLIGHT:
            return await self._join_or_fetch(request, key)
        return await self._fetch_and_store(request, key)

    # ── Cache ──────────────────────────────────────────────────────

    async def _read_cache(self, key: str) -> Response | None:
        try:
            return await self._cache.get(key)
        except Exception as exc:
            logger.warning("cache_read_failed", cache_key=key, error=str(exc))
            return None

    async def _write_cache(self, key: str, response: Response, ttl_s: float | None) -> None:
        try:
            await self._cache.set(key, response, ttl_s)
        except Exception as exc:
            logger.warning("cache_write_failed", cache_key=key, error=str(exc))

    async def _fetch_and_store(self, request: RequestDescriptor, key: str) -> Response:
        response = await self._perform(request)
        await self._write_cache(key, response, request.cache_ttl_s)
        return response

    async def _join_or_fetch(self, request: RequestDescriptor, key: str) -> Response:
        """Share one transport call among identical cacheable GETs in flight."""
        shared = self._inflight.get(key)
        owner = shared is None
        if owner:
            # The fetch runs detached, so a cancelled caller never takes it down
            shared = self._spawn(self._fetch_and_store(request, key))
            self._inflight[key] = shared
            shared.add_done_callback(lambda task: self._release_inflight(key, task))
        else:
            logger.debug("inflight_joined", cache_key=key)

        try:
            response = await asyncio.shield(shared)
        except asyncio.CancelledError:
            if shared.cancelled():
                raise RequestCancelledError("Shared request cancelled", request=request) from None
            raise
        except RequestError as exc:
            if owner:
                raise
            raise exc.for_request(request) from exc
        if owner:
            return response
        return response.evolve(from_cache=True, request=request)

    def _release_inflight(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # Mark the outcome as retrieved even when every caller went away
        if not task.cancelled():
            task.exception()

    def _schedule_refresh(self, request: RequestDescriptor, key: str) -> None:
        """Revalidate a cache hit in the background."""
        if key in self._refreshing:
            return
        refresh = request.evolve(
            cache=CacheMode.DISABLED,
            ignore_queue=True,
            priority=self._settings.REFRESH_PRIORITY,
            preload_key=None,
            group_key=None,
        )
        self._refreshing.add(key)
        self._spawn(self._refresh(refresh, key))

    async def _refresh(self, request: RequestDescriptor, key: str) -> None:
        try:
            response = await self._perform(request)
        except RequestError as exc:
            # A failed refresh leaves the cached entry as it was
            logger.info("cache_refresh_failed", cache_key=key, kind=exc.kind.value)
            return
        finally:
            self._refreshing.discard(key)
        await self._write_cache(key, response, request.cache_ttl_s)
        logger.debug("cache_refreshed", cache_key=key)

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    # ── Execution ──────────────────────────────────────────────────

    async def _perform(self, request: RequestDescriptor) -> Response:
        """Execute with retries. Terminal errors carry the final retry count."""
        policy = RetryPolicy.resolve(request, self._settings)
        context = RetryContext()
        while True:
            try:
                response = await self._execute_once(request)
            except RequestError as exc:
                if not self._retry.should_retry(exc, context.retries, policy):
                    exc.retry_count = context.retries
                    raise
                context = context.next(exc)
                delay = self._retry.compute_delay(context.retries, policy)
                metrics.record_retry(exc.kind.value)
                logger.info(
                    "retry_scheduled",
                    request_id=request.request_id,
                    attempt=context.retries,
                    max_retries=policy.max_retries,
                    delay_s=delay,
                    kind=exc.kind.value,
                )
                await self._sleep(delay)
                continue
            if context.retries:
                response = response.evolve(retry_count=context.retries)
            return response

    async def _execute_once(self, request: RequestDescriptor) -> Response:
        try:
            if request.cancel_token is not None and request.cancel_token.cancelled:
                raise RequestCancelledError(
                    request.cancel_token.reason or "Request cancelled", request=request
                )
            if request.group_key:
                return await self._batcher.add(request, self._invoke_transport)
            if self._admission is not None:
                return await self._admission.submit(request, lambda: self._invoke_transport(request))
            return await self._invoke_transport(request)
        except Exception as exc:
            raise classify_exception(exc, request)

    async def _invoke_transport(self, request: RequestDescriptor) -> Response:
        attributes = {"method": request.method.value, "url": request.url, "base_url": request.base_url}
        with tracer.span("courier.transport", attributes=attributes, kind="client"):
            with metrics.track_transport(method=request.method.value):
                response = await self._transport(request)
        if not response.ok:
            raise error_from_status(
                response.status,
                request=request,
                status_text=response.status_text,
                headers=response.headers,
                data=response.data,
            )
        if response.request is None:
            response = response.evolve(request=request)
        return response

    # ── Operations ─────────────────────────────────────────────────

    def preload(self, request: RequestDescriptor) -> asyncio.Task[None]:
        """
        Prefetch ``request`` under its ``preload_key``; failures are swallowed.

        The stored Response is the raw transport result. Interceptors run
        once, on the dispatch that later consumes it.
        """
        return self._preloads.preload(request, self._send_raw, ttl_s=request.preload_ttl_s)

    async def _send_raw(self, request: RequestDescriptor) -> Response:
        """The send step alone, without the interceptor chain."""
        try:
            return await self._send(request)
        except RequestError:
            raise
        except Exception as exc:
            raise classify_exception(exc, request) from exc

    async def batch(self, requests: list[RequestDescriptor]) -> list[Response]:
        """Dispatch ``requests`` concurrently; fails with the first error."""
        return await self._batcher.execute_batch(requests, self.dispatch)

    def cancel(self, predicate: Callable[[RequestDescriptor], bool]) -> int:
        """Cancel queued requests matching ``predicate``. Returns how many."""
        if self._admission is None:
            return 0
        return self._admission.cancel(predicate)

    async def clear_cache(self) -> None:
        await self._cache.clear()

    def get_status(self) -> dict[str, Any]:
        """Snapshot of queue depths, in-flight work and store occupancy."""
        if self._admission is not None:
            status = self._admission.get_status()
        else:
            status = {
                "queue_size": 0,
                "processing_size": 0,
                "offline_queue_size": 0,
                "is_network_available": True,
            }
        cache_stats = getattr(self._cache, "get_stats", None)
        return {
            **status,
            "preload": self._preloads.get_status(),
            "cache": cache_stats() if callable(cache_stats) else None,
            "batch": self._batcher.get_stats(),
            "inflight_shared": len(self._inflight),
            "background_refreshes": len(self._refreshing),
            "metrics": metrics.get_summary(),
        }

    async def close(self) -> None:
        """Flush batches, stop preloads and refreshes, drain admission."""
        if self._closed:
            return
        self._closed = True
        await self._batcher.stop()
        await self._preloads.stop()
        for task in list(self._background_tasks):
            task.cancel()
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)
        if self._admission is not None:
            await self._admission.close()
        logger.info("dispatcher_closed")
