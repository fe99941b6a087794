"""
Interceptor Chain — Request/Response Transform Pipeline
=========================================================

Ordered (on_success, on_failure) handler pairs applied around the send step:

  request handlers (registration order) → SEND → response handlers (registration order)

Semantics are a sequential pipeline, not a graph:
  - While the chain carries a value, each live slot's ``on_success`` runs
  - Once a step raises, remaining ``on_success`` handlers are skipped and the
    error travels to the next ``on_failure`` found downstream
  - An ``on_failure`` that returns a value recovers the chain; one that
    raises replaces the error
  - Send-step failures enter the response side's failure handlers

Ejected handlers are tombstoned in place so handle numbers stay stable.
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from courier.infra.telemetry import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

OnSuccess = Callable[[T], Any]  # may return T or Awaitable[T]
OnFailure = Callable[[BaseException], Any]

@dataclass(frozen=True, slots=True)
class InterceptorHandler(Generic[T]):
    """One registered slot."""

    on_success: OnSuccess[T] | None
    on_failure: OnFailure | None = None

async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value

class InterceptorManager(Generic[T]):
    """
    Ordered, mutable list of handler pairs for one side of the chain.

    Usage:
        manager = InterceptorManager[RequestDescriptor]()
        handle = manager.use(add_auth_header)
        manager.eject(handle)
    """

    def __init__(self) -> None:
        self._handlers: list[InterceptorHandler[T] | None] = []

    def use(self, on_success: OnSuccess[T] | None, on_failure: OnFailure | None = None) -> int:
        """Append a handler pair. Returns its handle for ``eject``."""
        self._handlers.append(InterceptorHandler(on_success=on_success, on_failure=on_failure))
        return len(self._handlers) - 1

    def eject(self, handle: int) -> None:
        """Tombstone a slot. Unknown or already-ejected handles are ignored."""
        if 0 <= handle < len(self._handlers):
            self._handlers[handle] = None

    def clear(self) -> None:
        self._handlers.clear()

    def __iter__(self) -> Iterator[InterceptorHandler[T]]:
        return (h for h in self._handlers if h is not None)

    def for_each(self, fn: Callable[[InterceptorHandler[T]], None]) -> None:
        for handler in self:
            fn(handler)

    def __len__(self) -> int:
        return sum(1 for _ in self)

    async def apply(self, value: Any, error: BaseException | None = None) -> tuple[Any, BaseException | None]:
        """
        Run the live handlers over ``(value, error)``.

        Returns the resulting ``(value, error)`` pair; exactly one side is
        meaningful. The caller decides whether to raise.
        """
        for handler in list(self):
            if error is None:
                if handler.on_success is None:
                    continue
                try:
                    value = await _resolve(handler.on_success(value))
                except Exception as exc:
                    logger.debug("interceptor_failed", error=type(exc).__name__)
                    error = exc
            elif handler.on_failure is not None:
                try:
                    value = await _resolve(handler.on_failure(error))
                    error = None
                except Exception as exc:
                    error = exc
        return value, error

class Interceptors:
    """Request-side and response-side managers of one client."""

    __slots__ = ("request", "response")

    def __init__(self) -> None:
        self.request: InterceptorManager[Any] = InterceptorManager()
        self.response: InterceptorManager[Any] = InterceptorManager()

    async def run(
        self,
        value: Any,
        send: Callable[[Any], Awaitable[Any]],
    ) -> Any:
        """Full chain: request side → send → response side."""
        value, error = await self.request.apply(value)
        if error is None:
            try:
                value = await send(value)
            except Exception as exc:
                error = exc
        value, error = await self.response.apply(value, error)
        if error is not None:
            raise error
        return value
