"""
Request Dispatcher — Unit Tests
================================

Covers the request lifecycle: retry accounting, cache modes and
background refresh, preload read-once, in-flight sharing, batching,
cancellation, interceptor integration and status reporting.
"""

import asyncio

import pytest

from courier.core.exceptions import (
    ClientError,
    NetworkError,
    NotCachedError,
    RequestCancelledError,
    RequestError,
    ServerError,
)
from courier.core.types import CacheMode, ErrorKind, Method
from courier.infra.cache import ResponseCache
from courier.infra.runtime.dispatcher import RequestDispatcher
from courier.infra.runtime.network import ManualNetworkStatus
from courier.models.request import RequestDescriptor
from courier.models.response import Response
from courier.utils.cancellation import CancellationToken

from support import FakeTransport, GatedTransport, make_settings, settle


def counting_handler():
    """Each call returns the running call count as its body."""
    state = {"n": 0}

    def handler(request):
        state["n"] += 1
        return Response(status=200, data=state["n"])

    return handler


def failing_then_ok(failures, error_factory):
    state = {"n": 0}

    def handler(request):
        state["n"] += 1
        if state["n"] <= failures:
            return error_factory(request)
        return Response(status=200, data="ok")

    return handler


class TestRetry:
    @pytest.mark.asyncio
    async def test_two_network_failures_then_success(self):
        transport = FakeTransport(failing_then_ok(2, lambda r: NetworkError("down", request=r)))
        dispatcher = RequestDispatcher(transport, settings=make_settings())

        response = await dispatcher.dispatch(
            RequestDescriptor(url="/flaky", method=Method.POST, retry=3)
        )

        assert response.data == "ok"
        assert response.retry_count == 2
        assert len(transport.calls) == 3
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_client_error_is_never_retried(self):
        transport = FakeTransport(lambda r: Response(status=404, data={"error": "missing"}))
        dispatcher = RequestDispatcher(transport, settings=make_settings())

        with pytest.raises(ClientError) as info:
            await dispatcher.dispatch(RequestDescriptor(url="/missing", retry=3, cache=False))

        assert info.value.status == 404
        assert info.value.retry_count == 0
        assert len(transport.calls) == 1
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_exhausted_retries_carry_final_count(self):
        transport = FakeTransport(lambda r: Response(status=503))
        dispatcher = RequestDispatcher(transport, settings=make_settings())

        with pytest.raises(ServerError) as info:
            await dispatcher.dispatch(
                RequestDescriptor(url="/down", method=Method.POST, retry=2)
            )

        assert info.value.retry_count == 2
        assert len(transport.calls) == 3
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_retry_true_uses_settings_and_incremental_delay(self):
        delays = []

        async def record_sleep(seconds):
            delays.append(seconds)

        transport = FakeTransport(lambda r: NetworkError("down", request=r))
        dispatcher = RequestDispatcher(
            transport,
            settings=make_settings(RETRY_TIMES=3, RETRY_DELAY_S=0.5),
            sleep=record_sleep,
        )

        with pytest.raises(NetworkError):
            await dispatcher.dispatch(
                RequestDescriptor(
                    url="/x", method=Method.POST, retry=True, retry_incremental=True
                )
            )
        assert delays == [0.5, 1.0, 1.5]
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_plain_exceptions_are_classified(self):
        def handler(request):
            raise ConnectionResetError("reset")

        transport = FakeTransport(handler)
        dispatcher = RequestDispatcher(transport, settings=make_settings())

        with pytest.raises(RequestError) as info:
            await dispatcher.dispatch(RequestDescriptor(url="/x", method=Method.POST, retry=1))

        assert info.value.kind == ErrorKind.NETWORK
        assert info.value.retry_count == 1
        assert isinstance(info.value.__cause__, ConnectionResetError)
        await dispatcher.close()


class TestCacheModes:
    def setup_method(self):
        self.transport = FakeTransport(counting_handler())
        self.dispatcher = RequestDispatcher(self.transport, settings=make_settings())

    @pytest.mark.asyncio
    async def test_force_cache_dispatch_twice_sends_once(self):
        request = RequestDescriptor(url="/items", cache=CacheMode.FORCE)
        first = await self.dispatcher.dispatch(request)
        second = await self.dispatcher.dispatch(request)
        await settle()

        assert len(self.transport.calls) == 1
        assert first.from_cache is False
        assert second.from_cache is True
        assert second.data == first.data
        await self.dispatcher.close()

    @pytest.mark.asyncio
    async def test_default_mode_refreshes_in_background(self):
        request = RequestDescriptor(url="/items")
        await self.dispatcher.dispatch(request)
        stale = await self.dispatcher.dispatch(request)
        assert stale.from_cache is True
        assert stale.data == 1

        await settle(20)
        assert len(self.transport.calls) == 2
        refresh = self.transport.calls[1]
        assert refresh.cache == CacheMode.DISABLED
        assert refresh.ignore_queue is True
        assert refresh.priority == 1

        fresh = await self.dispatcher.dispatch(RequestDescriptor(url="/items", cache=CacheMode.FORCE))
        assert fresh.data == 2
        await self.dispatcher.close()

    @pytest.mark.asyncio
    async def test_refresh_failure_leaves_cache_intact(self):
        state = {"n": 0}

        def handler(request):
            state["n"] += 1
            if state["n"] == 1:
                return Response(status=200, data="original")
            return Response(status=500)

        transport = FakeTransport(handler)
        dispatcher = RequestDispatcher(transport, settings=make_settings())
        await dispatcher.dispatch(RequestDescriptor(url="/items"))
        await dispatcher.dispatch(RequestDescriptor(url="/items"))
        await settle(20)

        cached = await dispatcher.dispatch(RequestDescriptor(url="/items", cache="force"))
        assert len(transport.calls) == 2
        assert cached.data == "original"
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_only_if_cached_miss_raises_without_sending(self):
        with pytest.raises(NotCachedError) as info:
            await self.dispatcher.dispatch(
                RequestDescriptor(url="/items", cache=CacheMode.ONLY_IF_CACHED)
            )
        assert info.value.kind == ErrorKind.CLIENT
        assert self.transport.calls == []
        await self.dispatcher.close()

    @pytest.mark.asyncio
    async def test_only_if_cached_hit_does_not_refresh(self):
        await self.dispatcher.dispatch(RequestDescriptor(url="/items"))
        hit = await self.dispatcher.dispatch(
            RequestDescriptor(url="/items", cache=CacheMode.ONLY_IF_CACHED)
        )
        await settle(20)
        assert hit.from_cache is True
        assert len(self.transport.calls) == 1
        await self.dispatcher.close()

    @pytest.mark.asyncio
    async def test_disabled_and_non_get_are_not_cached(self):
        await self.dispatcher.dispatch(RequestDescriptor(url="/a", cache=False))
        await self.dispatcher.dispatch(RequestDescriptor(url="/a", cache=False))
        await self.dispatcher.dispatch(RequestDescriptor(url="/b", method=Method.POST))
        await self.dispatcher.dispatch(RequestDescriptor(url="/b", method=Method.POST))
        assert len(self.transport.calls) == 4
        await self.dispatcher.close()

    @pytest.mark.asyncio
    async def test_clear_cache(self):
        request = RequestDescriptor(url="/items", cache=CacheMode.FORCE)
        await self.dispatcher.dispatch(request)
        await self.dispatcher.clear_cache()
        await self.dispatcher.dispatch(request)
        assert len(self.transport.calls) == 2
        await self.dispatcher.close()

    @pytest.mark.asyncio
    async def test_cache_read_failure_is_a_miss(self):
        class BrokenCache(ResponseCache):
            async def get(self, key):
                raise RuntimeError("corrupt")

        dispatcher = RequestDispatcher(
            self.transport, settings=make_settings(), cache=BrokenCache()
        )
        response = await dispatcher.dispatch(RequestDescriptor(url="/items"))
        assert response.data == 1
        assert len(self.transport.calls) == 1
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_identical_gets_in_flight_share_one_call(self):
        transport = GatedTransport()
        dispatcher = RequestDispatcher(transport, settings=make_settings())
        request = RequestDescriptor(url="/slow", cache=CacheMode.FORCE)

        first = asyncio.ensure_future(dispatcher.dispatch(request))
        second = asyncio.ensure_future(dispatcher.dispatch(request))
        await settle()
        transport.release("/slow")
        a, b = await asyncio.gather(first, second)

        assert transport.started == ["/slow"]
        assert a.from_cache is False
        assert b.from_cache is True
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_cancelling_first_caller_leaves_joiners_served(self):
        transport = GatedTransport()
        dispatcher = RequestDispatcher(transport, settings=make_settings())
        request = RequestDescriptor(url="/same", cache=CacheMode.FORCE)

        first = asyncio.ensure_future(dispatcher.dispatch(request))
        second = asyncio.ensure_future(dispatcher.dispatch(request))
        await settle()
        first.cancel()
        await settle()
        transport.release("/same")
        joined = await asyncio.wait_for(second, timeout=1)

        assert first.cancelled()
        assert joined.data == "/same"
        assert joined.from_cache is True
        assert transport.started == ["/same"]

        # The detached fetch still filled the cache
        again = await dispatcher.dispatch(request)
        assert again.from_cache is True
        assert transport.started == ["/same"]
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_shared_failure_gives_each_caller_its_own_error(self):
        gate = asyncio.Event()

        async def handler(request):
            await gate.wait()
            return Response(status=404)

        transport = FakeTransport(handler)
        dispatcher = RequestDispatcher(transport, settings=make_settings())
        request = RequestDescriptor(url="/gone")

        first = asyncio.ensure_future(dispatcher.dispatch(request))
        second = asyncio.ensure_future(dispatcher.dispatch(request))
        await settle()
        gate.set()
        results = await asyncio.gather(first, second, return_exceptions=True)

        assert len(transport.calls) == 1
        assert all(isinstance(r, RequestError) and r.status == 404 for r in results)
        assert results[0] is not results[1]
        await dispatcher.close()


class TestPreload:
    @pytest.mark.asyncio
    async def test_preload_is_consumed_once(self):
        transport = FakeTransport(counting_handler())
        dispatcher = RequestDispatcher(transport, settings=make_settings())
        request = RequestDescriptor(url="/product/1", preload_key="product:1", cache=False)

        await dispatcher.preload(request)
        assert dispatcher.get_status()["preload"]["count"] == 1

        first = await dispatcher.dispatch(request)
        assert first.data == 1
        assert len(transport.calls) == 1

        second = await dispatcher.dispatch(request)
        assert second.data == 2
        assert len(transport.calls) == 2
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_preloaded_response_runs_response_interceptors_once(self):
        transport = FakeTransport(lambda r: Response(status=200, data={"n": 1}))
        dispatcher = RequestDispatcher(transport, settings=make_settings())
        seen = []

        def unwrap(response):
            seen.append(response)
            return response.data

        dispatcher.interceptors.response.use(unwrap)
        request = RequestDescriptor(url="/p", preload_key="p", cache=False)

        await dispatcher.preload(request)
        assert seen == []

        result = await dispatcher.dispatch(request)
        assert result == {"n": 1}
        assert len(seen) == 1
        assert len(transport.calls) == 1
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_preload_failure_is_silent(self):
        transport = FakeTransport(lambda r: Response(status=500))
        dispatcher = RequestDispatcher(transport, settings=make_settings())

        await dispatcher.preload(RequestDescriptor(url="/p", preload_key="p", cache=False))
        assert dispatcher.get_status()["preload"]["count"] == 0
        await dispatcher.close()


class TestExecutionPaths:
    @pytest.mark.asyncio
    async def test_grouped_requests_are_batched(self):
        def handler(request):
            if request.url == "/batch":
                return Response(
                    status=200,
                    data=[{"status": 200, "data": i["url"]} for i in request.data["requests"]],
                )
            return Response(status=200, data="single")

        transport = FakeTransport(handler)
        dispatcher = RequestDispatcher(transport, settings=make_settings())
        requests = [
            RequestDescriptor(url=f"/u/{i}", group_key="users", cache=False) for i in range(3)
        ]
        responses = await asyncio.gather(*(dispatcher.dispatch(r) for r in requests))

        assert len(transport.calls) == 1
        assert [r.data for r in responses] == ["/u/0", "/u/1", "/u/2"]
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_cancel_rejects_queued_request(self):
        transport = GatedTransport()
        dispatcher = RequestDispatcher(transport, settings=make_settings(MAX_CONCURRENT=1))

        running = asyncio.ensure_future(
            dispatcher.dispatch(RequestDescriptor(url="/first", method=Method.POST))
        )
        queued = asyncio.ensure_future(
            dispatcher.dispatch(RequestDescriptor(url="/second", method=Method.POST))
        )
        await settle()

        assert dispatcher.get_status()["queue_size"] == 1
        assert dispatcher.cancel(lambda r: r.url == "/second") == 1
        with pytest.raises(RequestCancelledError):
            await queued

        transport.release("/first")
        assert (await running).data == "/first"
        assert transport.started == ["/first"]
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_cancel_stops_queued_retry_resubmission(self):
        gate = asyncio.Event()

        async def handler(request):
            if request.url == "/flaky":
                return NetworkError("connection reset", request=request)
            await gate.wait()
            return Response(status=200, data="blocker")

        sleeping = asyncio.Event()
        wake = asyncio.Event()

        async def sleep(delay):
            sleeping.set()
            await wake.wait()

        transport = FakeTransport(handler)
        dispatcher = RequestDispatcher(
            transport, settings=make_settings(MAX_CONCURRENT=1), sleep=sleep
        )
        flaky = asyncio.ensure_future(
            dispatcher.dispatch(RequestDescriptor(url="/flaky", method=Method.POST, retry=1))
        )
        await sleeping.wait()
        blocker = asyncio.ensure_future(
            dispatcher.dispatch(RequestDescriptor(url="/blocker", method=Method.POST))
        )
        await settle()
        wake.set()
        await settle()

        assert dispatcher.get_status()["queue_size"] == 1
        assert dispatcher.cancel(lambda r: r.url == "/flaky") == 1
        with pytest.raises(RequestCancelledError) as info:
            await flaky
        assert info.value.retry_count == 1
        assert [r.url for r in transport.calls] == ["/flaky", "/blocker"]

        gate.set()
        assert (await blocker).data == "blocker"
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_cancel_token_stops_before_sending(self):
        transport = FakeTransport()
        dispatcher = RequestDispatcher(transport, settings=make_settings())
        token = CancellationToken()
        token.cancel("navigated away")

        with pytest.raises(RequestCancelledError, match="navigated away"):
            await dispatcher.dispatch(RequestDescriptor(url="/x", cancel_token=token))
        assert transport.calls == []
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_queue_disabled_calls_transport_directly(self, fake_transport):
        dispatcher = RequestDispatcher(fake_transport, settings=make_settings(ENABLE_QUEUE=False))
        response = await dispatcher.dispatch(RequestDescriptor(url="/direct"))

        assert response.data == {"url": "/direct"}
        assert dispatcher.get_status()["queue_size"] == 0
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_offline_requests_resume_on_reconnect(self, fake_transport):
        network = ManualNetworkStatus(connected=False)
        dispatcher = RequestDispatcher(fake_transport, settings=make_settings(), network=network)

        pending = asyncio.ensure_future(dispatcher.dispatch(RequestDescriptor(url="/later")))
        await settle()
        assert dispatcher.get_status()["offline_queue_size"] == 1
        assert fake_transport.calls == []

        network.set_connected(True)
        response = await pending
        assert response.data == {"url": "/later"}
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_closed_dispatcher_rejects(self, fake_transport):
        dispatcher = RequestDispatcher(fake_transport, settings=make_settings())
        await dispatcher.close()
        with pytest.raises(ClientError):
            await dispatcher.dispatch(RequestDescriptor(url="/x"))


class TestInterceptorIntegration:
    def setup_method(self):
        self.transport = FakeTransport(
            lambda r: Response(status=200, data={"auth": r.headers.get("Authorization")})
        )
        self.dispatcher = RequestDispatcher(self.transport, settings=make_settings())

    @pytest.mark.asyncio
    async def test_request_and_response_interceptors(self):
        self.dispatcher.interceptors.request.use(
            lambda r: r.evolve(headers={**r.headers, "Authorization": "Bearer t"})
        )
        self.dispatcher.interceptors.response.use(lambda resp: resp.evolve(data=resp.data["auth"]))

        response = await self.dispatcher.dispatch(RequestDescriptor(url="/me", cache=False))
        assert response.data == "Bearer t"
        await self.dispatcher.close()

    @pytest.mark.asyncio
    async def test_interceptor_exception_becomes_request_error(self):
        def reject(request):
            raise ValueError("no session")

        self.dispatcher.interceptors.request.use(reject)
        with pytest.raises(RequestError) as info:
            await self.dispatcher.dispatch(RequestDescriptor(url="/me"))

        assert info.value.kind == ErrorKind.UNKNOWN
        assert isinstance(info.value.__cause__, ValueError)
        assert self.transport.calls == []
        await self.dispatcher.close()

    @pytest.mark.asyncio
    async def test_response_failure_handler_recovers(self):
        transport = FakeTransport(lambda r: Response(status=500))
        dispatcher = RequestDispatcher(transport, settings=make_settings())
        dispatcher.interceptors.response.use(
            None, lambda exc: Response(status=200, data={"fallback": exc.kind.value})
        )

        response = await dispatcher.dispatch(RequestDescriptor(url="/x", cache=False))
        assert response.data == {"fallback": "server"}
        await dispatcher.close()


class TestStatus:
    @pytest.mark.asyncio
    async def test_status_snapshot_shape(self, fake_transport):
        dispatcher = RequestDispatcher(fake_transport, settings=make_settings())
        await dispatcher.dispatch(RequestDescriptor(url="/x", cache=CacheMode.FORCE))
        status = dispatcher.get_status()

        for key in (
            "queue_size",
            "processing_size",
            "offline_queue_size",
            "is_network_available",
            "preload",
            "cache",
            "batch",
            "metrics",
        ):
            assert key in status
        assert status["cache"]["size"] == 1
        assert status["preload"]["count"] == 0
        await dispatcher.close()
