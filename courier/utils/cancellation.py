"""
Request Cancellation Utility
============================

Cooperative cancellation for in-flight transport calls.

The admission queue can only drop tasks that have not started. Work that
is already running is stopped by the transport itself, which receives
the token on ``RequestDescriptor.cancel_token`` and checks or awaits it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import TypeVar

from courier.core.exceptions import RequestCancelledError

logger = logging.getLogger(__name__)

T = TypeVar("T")

class CancellationToken:
    """
    Token for cooperative cancellation of a single request.

    Usage:
        token = CancellationToken()
        task = asyncio.create_task(client.get("/slow", cancel_token=token))
        ...
        token.cancel("user navigated away")
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "Request cancelled") -> None:
        """Mark as cancelled. Repeated calls keep the first reason."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        logger.debug("Cancellation requested: %s", reason)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RequestCancelledError(self._reason or "Request cancelled")

    async def wait(self) -> str:
        """Block until cancelled; returns the reason."""
        await self._event.wait()
        return self._reason or "Request cancelled"

async def run_cancellable(token: CancellationToken | None, awaitable: Awaitable[T]) -> T:
    """
    Await ``awaitable`` unless ``token`` fires first.

    When the token wins, the pending work is cancelled and a
    RequestCancelledError is raised.
    """
    if token is None:
        return await awaitable
    token.raise_if_cancelled()

    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        raise
    finally:
        waiter.cancel()
    if work in done:
        return work.result()

    work.cancel()
    try:
        await work
    except asyncio.CancelledError:
        pass
    raise RequestCancelledError(token.reason or "Request cancelled")

__all__ = [
    "CancellationToken",
    "run_cancellable",
]
