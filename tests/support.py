"""Test support: scriptable in-memory transports and a settings factory."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable
from typing import Any

from courier.core.config import Settings
from courier.models.request import RequestDescriptor
from courier.models.response import Response


class FakeTransport:
    """Records every call; ``handler`` returns a Response, raises, or returns an exception."""

    def __init__(self, handler: Callable[[RequestDescriptor], Any] | None = None):
        self.calls: list[RequestDescriptor] = []
        self._handler = handler or (lambda req: Response(status=200, data={"url": req.url}))

    async def __call__(self, request: RequestDescriptor) -> Response:
        self.calls.append(request)
        result = self._handler(request)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, BaseException):
            raise result
        return result


class GatedTransport:
    """Holds each call until the test releases it by URL."""

    def __init__(self) -> None:
        self.started: list[str] = []
        self._gates: dict[str, asyncio.Event] = {}

    def release(self, url: str) -> None:
        self._gates.setdefault(url, asyncio.Event()).set()

    async def __call__(self, request: RequestDescriptor) -> Response:
        self.started.append(request.url)
        await self._gates.setdefault(request.url, asyncio.Event()).wait()
        return Response(status=200, data=request.url, request=request)


async def settle(rounds: int = 5) -> None:
    """Let pending callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def make_settings(**overrides: Any) -> Settings:
    """Settings with zero retry delay so retry tests run instantly."""
    values: dict[str, Any] = {"RETRY_DELAY_S": 0.0, "BATCH_INTERVAL_S": 0.01}
    values.update(overrides)
    return Settings(**values)


