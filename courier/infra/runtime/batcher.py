"""
Batch Coalescer — Compound Requests per Group
===============================================

Accumulates requests sharing a ``group_key`` and sends them as one
compound call.

Design:
  - A group flushes when it reaches ``max_batch_size`` or when the window
    since its first member joined elapses, whichever comes first
  - A group of one is sent as an ordinary request
  - Larger groups POST their members to the batch endpoint; sub-responses
    are routed back to each caller by position
  - A length mismatch, or a failed compound call, fails every member of
    that group; each member gets its own error instance
  - Group state (buffer + timer) is removed before the compound call
    starts, so late arrivals open a fresh group
"""

from __future__ import annotations

import asyncio
import contextlib
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from courier.core.exceptions import (
    BatchMismatchError,
    RequestCancelledError,
    RequestError,
    classify_exception,
    error_from_status,
)
from courier.core.types import CacheMode, Method
from courier.infra.telemetry import BoundLogger, get_logger, get_metrics
from courier.models.request import RequestDescriptor
from courier.models.response import Response
from courier.utils.keys import get_value_by_path

logger = get_logger(__name__)
metrics = get_metrics()

Invoker = Callable[[RequestDescriptor], Awaitable[Response]]
BatchExtractor = Callable[[Response, list[RequestDescriptor]], list[Any]]

@dataclass
class BatchConfig:
    """Batching configuration."""

    max_batch_size: int = 5
    interval_s: float = 0.05
    batch_url: str = "/batch"
    requests_field_name: str = "requests"
    response_path: str | None = None
    extractor: BatchExtractor | None = None
    headers: dict[str, str] = field(
        default_factory=lambda: {"Content-Type": "application/json", "X-Batch-Request": "true"}
    )

@dataclass
class PendingRequest:
    """Request waiting in a batch group."""

    request: RequestDescriptor
    future: asyncio.Future[Response]
    enqueued_at: float = field(default_factory=time.monotonic)

@dataclass
class BatchGroup:
    key: str
    invoker: Invoker
    members: list[PendingRequest] = field(default_factory=list)
    timer: asyncio.TimerHandle | None = None

class BatchCoalescer:
    """
    Groups concurrent requests into compound transport calls.

    Usage:
        coalescer = BatchCoalescer(BatchConfig(max_batch_size=10))
        response = await coalescer.add(descriptor, transport)
    """

    def __init__(self, config: BatchConfig | None = None) -> None:
        self._config = config or BatchConfig()
        self._groups: dict[str, BatchGroup] = {}
        self._background_tasks: set[asyncio.Task] = set()  # prevent GC of fire-and-forget tasks

        # Stats
        self._total_submitted = 0
        self._total_batches = 0
        self._total_items = 0

    # ── Submission ─────────────────────────────────────────────────

    async def add(self, request: RequestDescriptor, invoker: Invoker) -> Response:
        """Join ``request``'s group and wait for its slot of the result."""
        loop = asyncio.get_running_loop()
        future: asyncio.Future[Response] = loop.create_future()
        key = request.group_key or uuid.uuid4().hex

        group = self._groups.get(key)
        if group is None:
            group = BatchGroup(key=key, invoker=invoker)
            self._groups[key] = group
            group.timer = loop.call_later(self._config.interval_s, self._flush_group, key)

        group.members.append(PendingRequest(request=request, future=future))
        self._total_submitted += 1

        if len(group.members) >= self._config.max_batch_size:
            self._flush_group(key)

        return await future

    # ── Flushing ───────────────────────────────────────────────────

    def _flush_group(self, key: str) -> None:
        group = self._groups.pop(key, None)
        if group is None:
            return
        if group.timer is not None:
            group.timer.cancel()
        members = [m for m in group.members if not m.future.done()]
        if not members:
            return
        self._spawn_batch_task(group, members)

    def _spawn_batch_task(self, group: BatchGroup, members: list[PendingRequest]) -> None:
        """Spawn a tracked batch execution task with error logging."""
        task = asyncio.get_running_loop().create_task(self._execute(group, members))
        self._background_tasks.add(task)
        task.add_done_callback(self._on_batch_task_done)

    def _on_batch_task_done(self, task: asyncio.Task) -> None:
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error("batch_task_unhandled_error", error=str(exc), exc_type=type(exc).__name__)

    async def flush_all(self) -> None:
        """Flush every open group and wait for the compound calls to finish."""
        for key in list(self._groups):
            self._flush_group(key)
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def _execute(self, group: BatchGroup, members: list[PendingRequest]) -> None:
        self._total_batches += 1
        self._total_items += len(members)
        metrics.record_batch(len(members))

        try:
            await self._send_group(group, members)
        except asyncio.CancelledError:
            for member in members:
                _reject(member, RequestCancelledError("Batch cancelled", request=member.request))
            raise
        finally:
            # Every member settles, whatever happened above
            for member in members:
                _reject(member, RequestError("Batch ended without a result", request=member.request))

    async def _send_group(self, group: BatchGroup, members: list[PendingRequest]) -> None:
        if len(members) == 1:
            await self._execute_single(group.invoker, members[0])
            return

        compound = self.build_compound_request([m.request for m in members])
        log = logger.bind(group_key=group.key, size=len(members))
        log.info("batch_flushed", url=compound.url)
        try:
            response = await group.invoker(compound)
        except Exception as exc:
            error = classify_exception(exc, compound)
            log.warning("batch_execution_failed", kind=error.kind.value)
            for member in members:
                _reject(member, error.for_request(member.request))
            return

        self._route(response, members, log)

    async def _execute_single(self, invoker: Invoker, member: PendingRequest) -> None:
        try:
            response = await invoker(member.request)
        except Exception as exc:
            _reject(member, classify_exception(exc, member.request))
            return
        if not member.future.done():
            member.future.set_result(response)

    # ── Compound request / response ────────────────────────────────

    def build_compound_request(self, requests: list[RequestDescriptor]) -> RequestDescriptor:
        """One POST carrying every member's (method, url, data, params, headers)."""
        first = requests[0]
        items = [
            {
                "method": r.method.value,
                "url": r.url,
                "data": r.data,
                "params": r.params or None,
                "headers": r.headers or None,
            }
            for r in requests
        ]
        return RequestDescriptor(
            url=self._config.batch_url,
            method=Method.POST,
            base_url=first.base_url,
            headers=dict(self._config.headers),
            data={self._config.requests_field_name: items},
            timeout_s=first.timeout_s,
            cache=CacheMode.DISABLED,
            ignore_queue=True,
            response_path=first.response_path,
            extensions={"batch_size": len(requests)},
        )

    def extract_sub_responses(self, response: Response, requests: list[RequestDescriptor]) -> list[Any] | None:
        """Pull the per-member list out of a compound response."""
        if self._config.extractor is not None:
            return list(self._config.extractor(response, requests))
        if isinstance(response.data, list):
            return response.data
        path = requests[0].response_path or self._config.response_path
        found = get_value_by_path(response.data, path)
        return found if isinstance(found, list) else None

    def _route(self, response: Response, members: list[PendingRequest], log: BoundLogger) -> None:
        requests = [m.request for m in members]
        try:
            items = self.extract_sub_responses(response, requests)
        except Exception as exc:
            log.error("batch_extract_failed", exc=exc)
            items = None

        if items is None or len(items) != len(members):
            received = 0 if items is None else len(items)
            log.warning("batch_response_mismatch", expected=len(members), received=received)
            for member in members:
                _reject(member, BatchMismatchError(member.request, len(members), received))
            return

        for member, item in zip(members, items, strict=True):
            try:
                result = self._to_response(item, response, member.request)
            except Exception as exc:
                log.warning(
                    "batch_slot_invalid", request_id=member.request.request_id, error=str(exc)
                )
                result = classify_exception(exc, member.request)
            if isinstance(result, RequestError):
                _reject(member, result)
            elif not member.future.done():
                member.future.set_result(result)

    @staticmethod
    def _to_response(item: Any, batch_response: Response, request: RequestDescriptor) -> Response | RequestError:
        if isinstance(item, dict) and ("data" in item or "status" in item):
            status = int(item.get("status") or batch_response.status)
            status_text = item.get("statusText") or item.get("status_text") or batch_response.status_text
            headers = item.get("headers") or {}
            data = item.get("data")
        else:
            status, status_text, headers, data = batch_response.status, batch_response.status_text, {}, item

        if not 200 <= status < 300:
            return error_from_status(
                status, request=request, status_text=status_text, headers=headers, data=data
            )
        return Response(
            status=status,
            status_text=status_text,
            headers=headers,
            data=data,
            request=request,
        )

    # ── Manual batch ───────────────────────────────────────────────

    @staticmethod
    async def execute_batch(requests: list[RequestDescriptor], invoker: Invoker) -> list[Response]:
        """Send ``requests`` concurrently; fails with the first error."""
        return list(await asyncio.gather(*(invoker(r) for r in requests)))

    # ── Lifecycle / stats ──────────────────────────────────────────

    async def stop(self) -> None:
        """Flush remaining groups, then cancel anything still running."""
        with contextlib.suppress(asyncio.CancelledError):
            await self.flush_all()

    def get_stats(self) -> dict[str, Any]:
        return {
            "pending": {k: len(g.members) for k, g in self._groups.items()},
            "total_submitted": self._total_submitted,
            "total_batches": self._total_batches,
            "total_items": self._total_items,
            "avg_batch_size": round(self._total_items / max(self._total_batches, 1), 1),
            "config": {
                "max_batch_size": self._config.max_batch_size,
                "interval_s": self._config.interval_s,
                "batch_url": self._config.batch_url,
            },
        }

def _reject(member: PendingRequest, error: RequestError) -> None:
    if not member.future.done():
        member.future.set_exception(error)
