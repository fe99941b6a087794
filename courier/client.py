"""Courier client.

The public facade over ``RequestDispatcher``: normalizes per-call
arguments against instance defaults and exposes one coroutine per HTTP
verb.

Usage:
    from courier import Client

    async with Client(base_url="https://api.example.com") as client:
        client.interceptors.request.use(add_auth_header)
        users = await client.get("/users", params={"page": 1}, cache="force")
        await client.post("/events", data={"type": "click"}, retry=True)

        # Coalesce into one POST /batch
        a, b = await asyncio.gather(
            client.get("/items/1", group_key="items"),
            client.get("/items/2", group_key="items"),
        )
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from courier.core.config import Settings, get_settings
from courier.core.exceptions import ConfigurationError
from courier.core.normalize import defaults_from_settings, normalize_request
from courier.core.types import Method
from courier.infra.cache import CacheBackend
from courier.infra.runtime.backends import HttpxTransport, Transport
from courier.infra.runtime.batcher import BatchConfig
from courier.infra.runtime.dispatcher import RequestDispatcher
from courier.infra.runtime.interceptor import Interceptors
from courier.infra.runtime.network import NetworkStatusProvider
from courier.infra.telemetry import get_logger, setup_logging
from courier.models.request import RequestDescriptor
from courier.models.response import Response

logger = get_logger(__name__)


class Client:
    """Async request client.

    Attributes:
        interceptors: request/response interceptor managers
        settings: resolved instance settings
    """

    def __init__(
        self,
        *,
        transport: Transport | None = None,
        settings: Settings | None = None,
        network: NetworkStatusProvider | None = None,
        cache: CacheBackend | None = None,
        batch_config: BatchConfig | None = None,
        defaults: Mapping[str, Any] | None = None,
        **overrides: Any,
    ):
        """Initialize the client.

        Args:
            transport: Transport to send through (defaults to HttpxTransport)
            settings: Base settings (defaults to the environment-loaded ones)
            network: Connectivity provider for offline buffering
            cache: Cache backend (defaults to an in-memory LRU store)
            batch_config: Batch coalescer configuration override
            defaults: Extra descriptor defaults applied to every request
            **overrides: Settings fields by name, e.g. ``base_url="..."``
                or ``MAX_CONCURRENT=4``
        """
        base = settings or get_settings()
        unknown = sorted(k for k in overrides if k.upper() not in Settings.model_fields)
        if unknown:
            raise ConfigurationError(f"Unknown client settings: {', '.join(unknown)}")
        if overrides:
            base = base.model_copy(update={k.upper(): v for k, v in overrides.items()})
        self.settings = base
        if base.CONFIGURE_LOGGING:
            setup_logging(level=base.LOG_LEVEL, json_output=base.LOG_JSON)

        self._owns_transport = transport is None
        self._transport = transport or HttpxTransport(timeout_s=base.TIMEOUT_S)
        self._defaults = {**defaults_from_settings(base), **(defaults or {})}
        self._dispatcher = RequestDispatcher(
            self._transport,
            settings=base,
            cache=cache,
            network=network,
            batch_config=batch_config,
        )

    @property
    def interceptors(self) -> Interceptors:
        return self._dispatcher.interceptors

    @property
    def dispatcher(self) -> RequestDispatcher:
        return self._dispatcher

    async def __aenter__(self) -> Client:
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    async def close(self) -> None:
        """Drain the dispatcher and close the transport if we created it."""
        await self._dispatcher.close()
        if self._owns_transport and isinstance(self._transport, HttpxTransport):
            await self._transport.aclose()

    # ── Requests ───────────────────────────────────────────────────

    def build(self, url: str | None = None, **options: Any) -> RequestDescriptor:
        """Normalize ``url`` and ``options`` against the client defaults."""
        return normalize_request(self._defaults, url=url, **options)

    async def request(self, url: str | None = None, **options: Any) -> Response:
        return await self.dispatch(self.build(url, **options))

    async def dispatch(self, request: RequestDescriptor) -> Response:
        return await self._dispatcher.dispatch(request)

    async def get(self, url: str, **options: Any) -> Response:
        return await self.request(url, method=Method.GET, **options)

    async def post(self, url: str, data: Any = None, **options: Any) -> Response:
        return await self.request(url, method=Method.POST, data=data, **options)

    async def put(self, url: str, data: Any = None, **options: Any) -> Response:
        return await self.request(url, method=Method.PUT, data=data, **options)

    async def patch(self, url: str, data: Any = None, **options: Any) -> Response:
        return await self.request(url, method=Method.PATCH, data=data, **options)

    async def delete(self, url: str, **options: Any) -> Response:
        return await self.request(url, method=Method.DELETE, **options)

    async def head(self, url: str, **options: Any) -> Response:
        return await self.request(url, method=Method.HEAD, **options)

    async def options(self, url: str, **options: Any) -> Response:
        return await self.request(url, method=Method.OPTIONS, **options)

    # ── Preload / batch ────────────────────────────────────────────

    def preload(self, url: str, *, preload_key: str, **options: Any) -> asyncio.Task[None]:
        """Prefetch in the background; a later call with the same key reads it once."""
        return self._dispatcher.preload(self.build(url, preload_key=preload_key, **options))

    async def batch(self, requests: Iterable[RequestDescriptor | Mapping[str, Any]]) -> list[Response]:
        """Send several requests concurrently and return responses in order."""
        descriptors = [
            r if isinstance(r, RequestDescriptor) else self.build(**dict(r)) for r in requests
        ]
        return await self._dispatcher.batch(descriptors)

    # ── Control ────────────────────────────────────────────────────

    def cancel(self, predicate: Callable[[RequestDescriptor], bool]) -> int:
        """Cancel queued requests matching ``predicate``."""
        count = self._dispatcher.cancel(predicate)
        logger.debug("client_cancel", cancelled=count)
        return count

    async def clear_cache(self) -> None:
        await self._dispatcher.clear_cache()

    def get_status(self) -> dict[str, Any]:
        return self._dispatcher.get_status()
