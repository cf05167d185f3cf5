"""Unit tests for the real-time stream engine."""

import asyncio

import pytest
import pytest_asyncio

from exprsn_core.core.errors import NotFound, ProviderUnavailable, ValidationError
from exprsn_core.streaming import StreamEngine, StreamStatus, page_cache_key


class PagedProvider:
    """Data provider over a fixed number of pages that can fail on demand."""

    def __init__(self, total_pages=5, failures=0):
        self.total_pages = total_pages
        self.failures = failures
        self.pages = []

    def __call__(self, request):
        if self.failures:
            self.failures -= 1
            raise ConnectionError("provider offline")
        self.pages.append(request["page"])
        return {"data": [f"row-{request['page']}"], "total_pages": self.total_pages}


class YieldingSleep:
    """Recording sleep that hands control back to the event loop."""

    def __init__(self):
        self.calls = []

    async def __call__(self, delay):
        self.calls.append(delay)
        await asyncio.sleep(0)


@pytest.fixture
def sleeper():
    return YieldingSleep()


@pytest_asyncio.fixture
async def streams(cache, sleeper):
    engine = StreamEngine(cache=cache, sleep=sleeper)
    yield engine
    await engine.shutdown()


async def settle():
    for _ in range(5):
        await asyncio.sleep(0)


class TestFetching:
    """Tests for provider calls, caching and retries."""

    @pytest.mark.asyncio
    async def test_create_fetches_first_page(self, streams):
        provider = PagedProvider()

        info = await streams.create_stream("calls", provider, refresh_interval_ms=0, prefetch_enabled=False)

        assert provider.pages == [1]
        assert info["current_page"] == 1
        assert info["total_pages"] == 5
        assert info["status"] == "active"

    @pytest.mark.asyncio
    async def test_cache_hit(self, streams):
        provider = PagedProvider()
        await streams.create_stream("calls", provider, refresh_interval_ms=0, prefetch_enabled=False)

        data = await streams.fetch_data("calls", 1)

        assert data["data"] == ["row-1"]
        assert provider.pages == [1]
        assert streams.get_metrics()["cache_hits"] == 1

    @pytest.mark.asyncio
    async def test_cache_expiry(self, streams, monotonic):
        provider = PagedProvider()
        await streams.create_stream("calls", provider, refresh_interval_ms=0, cache_ttl_s=60, prefetch_enabled=False)

        monotonic.advance(61)
        await streams.fetch_data("calls", 1)

        assert provider.pages == [1, 1]

    @pytest.mark.asyncio
    async def test_retries_with_linear_backoff(self, streams, sleeper):
        """Test that a flaky provider is retried with growing delays."""
        provider = PagedProvider(failures=2)

        await streams.create_stream(
            "calls", provider, refresh_interval_ms=0, max_retries=3, retry_delay_ms=100, prefetch_enabled=False
        )

        assert provider.pages == [1]
        assert sleeper.calls == [0.1, 0.2]
        assert streams.get_metrics()["fetch_retries"] == 2

    @pytest.mark.asyncio
    async def test_provider_unavailable(self, streams, sleeper):
        provider = PagedProvider(failures=100)
        info = await streams.create_stream(
            "calls", provider, refresh_interval_ms=0, max_retries=2, retry_delay_ms=10, prefetch_enabled=False
        )

        assert info["last_error"] == "provider offline"

        with pytest.raises(ProviderUnavailable):
            await streams.fetch_data("calls", 1)
        assert len(sleeper.calls) == 4
        assert streams.get_metrics()["fetch_failures"] == 2

    @pytest.mark.asyncio
    async def test_attempt_timeout(self, streams):
        async def slow(request):
            await asyncio.sleep(1)
            return {"data": []}

        await streams.create_stream(
            "slow", slow, refresh_interval_ms=0, fetch_timeout_ms=10, max_retries=0, prefetch_enabled=False
        )

        with pytest.raises(ProviderUnavailable):
            await streams.fetch_data("slow", 1)

    @pytest.mark.asyncio
    async def test_async_provider(self, streams):
        async def provider(request):
            return {"data": [request["page_size"]], "total_pages": 1}

        await streams.create_stream("async", provider, refresh_interval_ms=0, page_size=25)

        assert (await streams.fetch_data("async", 1))["data"] == [25]

    @pytest.mark.asyncio
    async def test_invalid_streams(self, streams):
        with pytest.raises(ValidationError):
            await streams.create_stream("bad", "not callable")

        await streams.create_stream("calls", PagedProvider(), refresh_interval_ms=0)
        with pytest.raises(ValidationError):
            await streams.create_stream("calls", PagedProvider(), refresh_interval_ms=0)


class TestPrefetch:
    """Tests for prefetching pages ahead."""

    @pytest.mark.asyncio
    async def test_prefetch_is_bounded(self, streams):
        provider = PagedProvider()
        await streams.create_stream("calls", provider, refresh_interval_ms=0, prefetch_ahead=2)

        assert await streams.prefetch("calls") == [2, 3]
        await settle()

        assert sorted(provider.pages) == [1, 2, 3]
        assert await streams.prefetch("calls") == []

    @pytest.mark.asyncio
    async def test_prefetch_stops_at_last_page(self, streams):
        provider = PagedProvider(total_pages=2)
        await streams.create_stream("calls", provider, refresh_interval_ms=0, prefetch_ahead=5)

        assert await streams.prefetch("calls") == [2]

    @pytest.mark.asyncio
    async def test_prefetch_disabled(self, streams):
        await streams.create_stream("calls", PagedProvider(), refresh_interval_ms=0, prefetch_enabled=False)

        assert await streams.prefetch("calls") == []


class TestNavigation:
    """Tests for page navigation and subscribers."""

    @pytest.mark.asyncio
    async def test_page_change_notifies(self, streams):
        received = []
        await streams.create_stream("calls", PagedProvider(), refresh_interval_ms=0, prefetch_enabled=False)
        streams.subscribe("calls", lambda event: received.append((event.type, event.payload["page"])))

        await streams.next_page("calls")
        await streams.previous_page("calls")

        assert received == [("page_change", 2), ("page_change", 1)]

    @pytest.mark.asyncio
    async def test_bounds(self, streams):
        await streams.create_stream("calls", PagedProvider(total_pages=2), refresh_interval_ms=0)

        with pytest.raises(ValidationError):
            await streams.previous_page("calls")
        with pytest.raises(ValidationError):
            await streams.go_to_page("calls", 0)
        with pytest.raises(ValidationError):
            await streams.go_to_page("calls", 3)

        await streams.go_to_page("calls", 2)
        with pytest.raises(ValidationError, match="last page"):
            await streams.next_page("calls")

    @pytest.mark.asyncio
    async def test_refresh_and_unsubscribe(self, streams):
        received = []
        await streams.create_stream("calls", PagedProvider(), refresh_interval_ms=0, prefetch_enabled=False)
        unsubscribe = streams.subscribe("calls", lambda event: received.append(event.type))

        await streams.refresh_stream("calls")
        assert streams.get_stream_info("calls")["subscriber_count"] == 1
        assert unsubscribe() is True
        await streams.refresh_stream("calls")

        assert received == ["data_update"]
        assert streams.get_stream_info("calls")["subscriber_count"] == 0

    @pytest.mark.asyncio
    async def test_failing_subscriber_is_isolated(self, streams):
        received = []

        def broken(event):
            raise RuntimeError("subscriber bug")

        await streams.create_stream("calls", PagedProvider(), refresh_interval_ms=0, prefetch_enabled=False)
        streams.subscribe("calls", broken)
        streams.subscribe("calls", lambda event: received.append(event.type))

        await streams.refresh_stream("calls")

        assert received == ["data_update"]


class TestLifecycle:
    """Tests for pause, resume and stop."""

    @pytest.mark.asyncio
    async def test_timer_refreshes(self, streams, sleeper):
        received = []
        provider = PagedProvider()
        await streams.create_stream("calls", provider, refresh_interval_ms=10, prefetch_enabled=False, cache_enabled=False)
        streams.subscribe("calls", lambda event: received.append(event.type))

        await settle()

        assert sleeper.calls[0] == 0.01
        assert "data_update" in received
        assert len(provider.pages) > 1

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, streams):
        await streams.create_stream("calls", PagedProvider(), refresh_interval_ms=1000)

        with pytest.raises(ValidationError):
            await streams.resume("calls")

        await streams.pause("calls")
        assert streams.get_stream_info("calls")["status"] == StreamStatus.PAUSED.value

        await streams.resume("calls")
        assert streams.get_stream_info("calls")["status"] == "active"

    @pytest.mark.asyncio
    async def test_status_changes_are_published(self, streams, sleeper):
        statuses = []
        await streams.create_stream("calls", PagedProvider(), refresh_interval_ms=1000, prefetch_enabled=False)
        streams.subscribe(
            "calls",
            lambda event: statuses.append(event.payload["data"]["status"]) if event.type == "status_change" else None,
        )

        await streams.pause("calls")
        await streams.resume("calls")
        await streams.stop("calls")

        assert statuses == ["paused", "active", "stopped"]
        assert all(delay == 1.0 for delay in sleeper.calls)

    @pytest.mark.asyncio
    async def test_stop_clears_cache(self, streams, cache):
        received = []
        await streams.create_stream("calls", PagedProvider(), refresh_interval_ms=0, prefetch_enabled=False)
        streams.subscribe("calls", lambda event: received.append((event.type, event.payload["data"])))
        assert await cache.contains(page_cache_key("calls", 1))

        await streams.stop("calls")

        assert received == [("status_change", {"status": StreamStatus.STOPPED.value})]
        assert await cache.keys("stream:calls:") == []
        with pytest.raises(NotFound):
            streams.get_stream_info("calls")

    @pytest.mark.asyncio
    async def test_update_config(self, streams):
        await streams.create_stream("calls", PagedProvider(), refresh_interval_ms=0)

        config = await streams.update_stream_config("calls", page_size=10)

        assert config.page_size == 10
        assert streams.get_stream_info("calls")["config"]["page_size"] == 10
