"""
Admission Controller — Unit Tests
==================================

Covers FIFO admission under a concurrency ceiling, priority overtaking,
offline buffering and restore order, predicate cancel, and ignore_queue.
"""

import asyncio

import pytest

from courier.core.exceptions import OfflineError, RequestCancelledError
from courier.infra.runtime.network import ManualNetworkStatus
from courier.infra.runtime.queue import AdmissionController, QueueConfig
from courier.models.request import RequestDescriptor

from support import settle


class Gate:
    """Thunk factory whose calls block until released by name."""

    def __init__(self):
        self.started: list[str] = []
        self.events: dict[str, asyncio.Event] = {}

    def thunk(self, name: str):
        event = self.events.setdefault(name, asyncio.Event())

        async def run():
            self.started.append(name)
            await event.wait()
            return name

        return run

    def release(self, name: str) -> None:
        self.events[name].set()


class TestAdmissionOrdering:
    def setup_method(self):
        self.gate = Gate()

    def _submit(self, controller, name, priority=5, **fields):
        request = RequestDescriptor(url=f"/{name}", priority=priority, **fields)
        return asyncio.ensure_future(controller.submit(request, self.gate.thunk(name)))

    @pytest.mark.asyncio
    async def test_max_concurrent_and_fifo_start_order(self):
        controller = AdmissionController(QueueConfig(max_concurrent=2))
        futures = [self._submit(controller, f"T{i}") for i in range(1, 6)]
        await settle()

        assert self.gate.started == ["T1", "T2"]
        assert controller.processing_count == 2
        assert controller.depth == 3

        self.gate.release("T1")
        await settle()
        assert self.gate.started == ["T1", "T2", "T3"]

        for name in ("T2", "T3", "T4", "T5"):
            self.gate.release(name)
            await settle()

        assert self.gate.started == ["T1", "T2", "T3", "T4", "T5"]
        assert [f.result() for f in futures] == ["T1", "T2", "T3", "T4", "T5"]
        assert controller.get_stats()["total_completed"] == 5

    @pytest.mark.asyncio
    async def test_high_priority_overtakes_waiting_low_priority(self):
        controller = AdmissionController(QueueConfig(max_concurrent=1))
        self._submit(controller, "busy")
        await settle()
        self._submit(controller, "low", priority=1)
        self._submit(controller, "high", priority=9)
        await settle()

        self.gate.release("busy")
        await settle()
        assert self.gate.started == ["busy", "high"]

        self.gate.release("high")
        await settle()
        assert self.gate.started == ["busy", "high", "low"]
        self.gate.release("low")
        await settle()

    @pytest.mark.asyncio
    async def test_ignore_queue_bypasses_ceiling(self):
        controller = AdmissionController(QueueConfig(max_concurrent=1))
        self._submit(controller, "busy")
        self._submit(controller, "urgent", ignore_queue=True)
        await settle()

        assert set(self.gate.started) == {"busy", "urgent"}
        for name in ("busy", "urgent"):
            self.gate.release(name)
        await settle()

    @pytest.mark.asyncio
    async def test_thunk_failure_propagates_and_frees_slot(self):
        controller = AdmissionController(QueueConfig(max_concurrent=1))

        async def boom():
            raise ValueError("broken")

        failing = asyncio.ensure_future(controller.submit(RequestDescriptor(url="/x"), boom))
        nxt = self._submit(controller, "next")
        await settle()

        with pytest.raises(ValueError):
            await failing
        assert self.gate.started == ["next"]
        self.gate.release("next")
        assert await nxt == "next"


class TestOfflineBuffering:
    def setup_method(self):
        self.gate = Gate()
        self.network = ManualNetworkStatus(connected=False)

    @pytest.mark.asyncio
    async def test_offline_tasks_wait_then_restore_in_order(self):
        controller = AdmissionController(QueueConfig(max_concurrent=1), network=self.network)
        futures = [
            asyncio.ensure_future(
                controller.submit(RequestDescriptor(url=f"/{n}"), self.gate.thunk(n))
            )
            for n in ("A", "B", "C")
        ]
        await settle()

        assert self.gate.started == []
        assert controller.offline_depth == 3
        assert controller.get_status()["is_network_available"] is False

        self.network.set_connected(True)
        await settle()
        assert self.gate.started == ["A"]
        assert controller.offline_depth == 0

        for name in ("A", "B", "C"):
            self.gate.release(name)
            await settle()
        assert self.gate.started == ["A", "B", "C"]
        assert [f.result() for f in futures] == ["A", "B", "C"]

    @pytest.mark.asyncio
    async def test_offline_rejects_when_buffering_disabled(self):
        controller = AdmissionController(
            QueueConfig(enable_offline_queue=False), network=self.network
        )
        with pytest.raises(OfflineError):
            await controller.submit(RequestDescriptor(url="/x"), self.gate.thunk("x"))
        assert self.gate.started == []


class TestCancellation:
    def setup_method(self):
        self.gate = Gate()

    @pytest.mark.asyncio
    async def test_cancel_rejects_pending_and_leaves_running(self):
        controller = AdmissionController(QueueConfig(max_concurrent=1))
        running = asyncio.ensure_future(
            controller.submit(RequestDescriptor(url="/run"), self.gate.thunk("run"))
        )
        doomed = asyncio.ensure_future(
            controller.submit(RequestDescriptor(url="/doomed"), self.gate.thunk("doomed"))
        )
        kept = asyncio.ensure_future(
            controller.submit(RequestDescriptor(url="/kept"), self.gate.thunk("kept"))
        )
        await settle()

        assert controller.cancel(lambda r: r.url in ("/doomed", "/run")) == 1
        with pytest.raises(RequestCancelledError):
            await doomed

        self.gate.release("run")
        await settle()
        self.gate.release("kept")
        assert await running == "run"
        assert await kept == "kept"
        assert "doomed" not in self.gate.started

    @pytest.mark.asyncio
    async def test_cancel_reaches_offline_buffer(self):
        network = ManualNetworkStatus(connected=False)
        controller = AdmissionController(network=network)
        pending = asyncio.ensure_future(
            controller.submit(RequestDescriptor(url="/x"), self.gate.thunk("x"))
        )
        await settle()

        assert controller.clear() == 1
        with pytest.raises(RequestCancelledError):
            await pending
        assert controller.offline_depth == 0

    @pytest.mark.asyncio
    async def test_close_cancels_pending_and_detaches(self):
        network = ManualNetworkStatus(connected=False)
        controller = AdmissionController(network=network)
        pending = asyncio.ensure_future(
            controller.submit(RequestDescriptor(url="/x"), self.gate.thunk("x"))
        )
        await settle()
        await controller.close()

        with pytest.raises(RequestCancelledError):
            await pending
        network.set_connected(True)
        assert self.gate.started == []

    def test_rejects_zero_concurrency(self):
        with pytest.raises(ValueError):
            AdmissionController(QueueConfig(max_concurrent=0))
