"""
Transport Protocol — The One Primitive Below the Orchestrator
==============================================================

Defines the contract every transport must implement: send one request,
return one response. Everything above it (caching, admission, retry,
batching) is the dispatcher's job.

A transport:
  - receives a fully normalized ``RequestDescriptor``
  - returns a ``Response`` for a successful call
  - raises a ``RequestError`` with a classified ``kind`` on failure;
    anything else it raises is classified by the dispatcher
  - may honour ``descriptor.cancel_token`` for in-flight cancellation

Any new wire protocol is added by implementing this protocol.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from courier.infra.runtime.backends.httpx_transport import HttpxTransport
from courier.models.request import RequestDescriptor
from courier.models.response import Response


@runtime_checkable
class Transport(Protocol):
    """Async callable ``(descriptor) -> Response``."""

    async def __call__(self, request: RequestDescriptor) -> Response: ...

__all__ = [
    "HttpxTransport",
    "Transport",
]
