"""
Real-Time Stream Engine
=======================

Paged, periodically refreshed data views backed by a data provider.

Features:
- Refresh timer per stream (first fetch immediately)
- Page cache with TTL through the shared cache backend
- Provider retries with linear backoff and a per-attempt timeout
- Non-blocking prefetch of the pages ahead of the current one
- Page navigation with bounds checks
- Subscriber fan-out (data_update, page_change) with isolated failures

Data provider contract:
    provider({"page": int, "page_size": int, "stream_id": str})
        -> {"data": [...], "total_pages": int (optional)}

Author: Builder Engine Team
Version: 2.0.0
"""

from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

import structlog
from pydantic import BaseModel, Field

from exprsn_core.core.cache import MISSING, CacheBackend, InMemoryCacheBackend
from exprsn_core.core.config import StreamingConfig
from exprsn_core.core.errors import NotFound, ProviderUnavailable, ValidationError
from exprsn_core.core.events import EventHandler, EventRegistry

logger = structlog.get_logger(__name__)

DataProvider = Callable[[Dict[str, Any]], Union[Dict[str, Any], Awaitable[Dict[str, Any]]]]

DEFAULT_FETCH_TIMEOUT_MS = 30000


class StreamStatus(str, Enum):
    """Stream states"""

    ACTIVE = "active"
    PAUSED = "paused"
    STOPPED = "stopped"


class StreamConfig(BaseModel):
    """Per-stream configuration"""

    refresh_interval_ms: int = Field(default=5000, ge=0)
    prefetch_enabled: bool = True
    prefetch_ahead: int = Field(default=2, ge=0)
    cache_enabled: bool = True
    cache_ttl_s: int = Field(default=60, gt=0)
    page_size: int = Field(default=50, ge=1)
    max_retries: int = Field(default=3, ge=0)
    retry_delay_ms: int = Field(default=1000, ge=0)
    fetch_timeout_ms: Optional[int] = Field(default=None, gt=0)

    @classmethod
    def from_settings(cls, settings: StreamingConfig, **overrides: Any) -> "StreamConfig":
        return cls(**{**settings.model_dump(), **overrides})

    @property
    def attempt_timeout_s(self) -> float:
        """Per-attempt provider timeout; the refresh interval unless set"""
        if self.fetch_timeout_ms:
            return self.fetch_timeout_ms / 1000
        if self.refresh_interval_ms:
            return self.refresh_interval_ms / 1000
        return DEFAULT_FETCH_TIMEOUT_MS / 1000


@dataclass
class Stream:
    """Runtime state of one stream"""

    id: str
    provider: DataProvider
    config: StreamConfig
    status: StreamStatus = StreamStatus.ACTIVE
    current_page: int = 1
    total_pages: Optional[int] = None
    last_update: Optional[datetime] = None
    last_fetch: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    timer: Optional[asyncio.Task] = None
    prefetches: Set[asyncio.Task] = field(default_factory=set)
    subscriptions: Set[str] = field(default_factory=set)


def page_cache_key(stream_id: str, page: int) -> str:
    return f"stream:{stream_id}:page:{page}"


class StreamEngine:
    """
    Real-time data streams.

    Usage:
        engine = StreamEngine(cache=cache_backend)

        async def provider(request):
            rows = await db.fetch_page(request["page"], request["page_size"])
            return {"data": rows, "total_pages": 12}

        await engine.create_stream("calls", provider, refresh_interval_ms=5000)
        unsubscribe = engine.subscribe("calls", on_event)
        await engine.next_page("calls")
        await engine.stop("calls")
    """

    def __init__(
        self,
        cache: Optional[CacheBackend] = None,
        events: Optional[EventRegistry] = None,
        defaults: Optional[StreamingConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._cache = cache or InMemoryCacheBackend()
        self.events = events or EventRegistry("streams")
        self._defaults = defaults or StreamingConfig()
        self._sleep = sleep

        self._streams: Dict[str, Stream] = {}
        self._logger = structlog.get_logger("stream_engine")
        self._metrics = {
            "fetches": 0,
            "cache_hits": 0,
            "fetch_retries": 0,
            "fetch_failures": 0,
            "prefetches": 0,
        }

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def create_stream(
        self,
        stream_id: str,
        provider: DataProvider,
        config: Optional[StreamConfig] = None,
        **overrides: Any,
    ) -> Dict[str, Any]:
        """Register a stream, fetch its first page and start its refresh timer"""
        if stream_id in self._streams:
            raise ValidationError(f"Stream {stream_id} already exists")
        if not callable(provider):
            raise ValidationError("Stream requires a callable data provider")

        if config is None:
            config = StreamConfig.from_settings(self._defaults, **overrides)
        elif overrides:
            config = config.model_copy(update=overrides)

        stream = Stream(id=stream_id, provider=provider, config=config)
        self._streams[stream_id] = stream
        self._logger.info(
            "stream_created",
            stream_id=stream_id,
            refresh_interval_ms=config.refresh_interval_ms,
            prefetch_enabled=config.prefetch_enabled,
        )

        await self._initial_fetch(stream)
        self._start_timer(stream)
        return self.get_stream_info(stream_id)

    async def pause(self, stream_id: str) -> None:
        stream = self._get(stream_id)
        self._stop_timer(stream)
        stream.status = StreamStatus.PAUSED
        await self._notify(stream, "status_change", {"status": stream.status.value})
        self._logger.info("stream_paused", stream_id=stream_id)

    async def resume(self, stream_id: str) -> None:
        stream = self._get(stream_id)
        if stream.status != StreamStatus.PAUSED:
            raise ValidationError(f"Stream {stream_id} is not paused")
        stream.status = StreamStatus.ACTIVE
        await self._initial_fetch(stream)
        self._start_timer(stream)
        await self._notify(stream, "status_change", {"status": stream.status.value})
        self._logger.info("stream_resumed", stream_id=stream_id)

    async def stop(self, stream_id: str) -> None:
        """Stop the timer, clear cached pages and destroy the stream"""
        stream = self._get(stream_id)
        self._stop_timer(stream)
        for task in list(stream.prefetches):
            task.cancel()
        stream.status = StreamStatus.STOPPED
        await self._notify(stream, "status_change", {"status": stream.status.value})

        removed = await self._cache.delete_prefix(f"stream:{stream_id}:")
        self.events.clear_topic(self._topic(stream_id))
        del self._streams[stream_id]
        self._logger.info("stream_stopped", stream_id=stream_id, cache_entries_cleared=removed)

    async def shutdown(self) -> None:
        for stream_id in list(self._streams):
            await self.stop(stream_id)

    async def update_stream_config(self, stream_id: str, **updates: Any) -> StreamConfig:
        """Change the config; the timer restarts when the refresh interval changes"""
        stream = self._get(stream_id)
        stream.config = StreamConfig(**{**stream.config.model_dump(), **updates})
        if "refresh_interval_ms" in updates and stream.status == StreamStatus.ACTIVE:
            self._stop_timer(stream)
            self._start_timer(stream)
        self._logger.info("stream_config_updated", stream_id=stream_id, fields=sorted(updates))
        return stream.config

    # -------------------------------------------------------------------------
    # Fetching
    # -------------------------------------------------------------------------

    async def fetch_data(self, stream_id: str, page: int) -> Dict[str, Any]:
        """
        Page data from cache or provider.

        Raises:
            ProviderUnavailable: every attempt failed or timed out
        """
        stream = self._get(stream_id)
        config = stream.config
        key = page_cache_key(stream_id, page)

        if config.cache_enabled:
            cached = await self._cache.get(key, MISSING)
            if cached is not MISSING:
                self._metrics["cache_hits"] += 1
                self._logger.debug("stream_cache_hit", stream_id=stream_id, page=page)
                return cached

        request = {"page": page, "page_size": config.page_size, "stream_id": stream_id}
        last_error: Optional[BaseException] = None

        for attempt in range(config.max_retries + 1):
            started = time.monotonic()
            try:
                result = await asyncio.wait_for(self._call(stream.provider, request), config.attempt_timeout_s)
            except asyncio.TimeoutError as e:
                last_error = e
                self._logger.warning("stream_fetch_timeout", stream_id=stream_id, page=page, attempt=attempt)
            except Exception as e:
                last_error = e
                self._logger.warning(
                    "stream_fetch_failed",
                    stream_id=stream_id,
                    page=page,
                    attempt=attempt,
                    error=str(e),
                )
            else:
                self._metrics["fetches"] += 1
                self._logger.debug(
                    "stream_fetched",
                    stream_id=stream_id,
                    page=page,
                    rows=len(result.get("data") or []),
                    fetch_ms=round((time.monotonic() - started) * 1000, 2),
                )
                return await self._store(stream, page, result)

            if attempt < config.max_retries:
                self._metrics["fetch_retries"] += 1
                await self._sleep(config.retry_delay_ms * (attempt + 1) / 1000)

        self._metrics["fetch_failures"] += 1
        stream.last_error = str(last_error) or type(last_error).__name__
        raise ProviderUnavailable(
            f"Data provider for stream {stream_id} failed after {config.max_retries + 1} attempts: {stream.last_error}"
        ) from last_error

    async def _call(self, provider: DataProvider, request: Dict[str, Any]) -> Dict[str, Any]:
        result = provider(dict(request))
        if inspect.isawaitable(result):
            result = await result
        if not isinstance(result, dict):
            raise TypeError(f"Data provider returned {type(result).__name__}, expected a mapping")
        return result

    async def _store(self, stream: Stream, page: int, result: Dict[str, Any]) -> Dict[str, Any]:
        total_pages = result.get("total_pages", result.get("totalPages"))
        if total_pages:
            stream.total_pages = int(total_pages)
        stream.last_fetch = datetime.utcnow()
        stream.last_error = None

        if stream.config.cache_enabled:
            await self._cache.set(page_cache_key(stream.id, page), result, ttl_s=stream.config.cache_ttl_s)
        return result

    async def refresh_stream(self, stream_id: str) -> Dict[str, Any]:
        """Fetch the current page, notify subscribers and prefetch ahead"""
        stream = self._get(stream_id)
        data = await self.fetch_data(stream_id, stream.current_page)
        stream.last_update = datetime.utcnow()

        await self._notify(stream, "data_update", data)
        await self.prefetch(stream_id)
        return data

    async def prefetch(self, stream_id: str) -> List[int]:
        """Spawn background fetches for uncached pages ahead; returns the pages"""
        stream = self._get(stream_id)
        config = stream.config
        if not config.prefetch_enabled or stream.total_pages is None:
            return []

        pages = []
        last = min(stream.current_page + config.prefetch_ahead, stream.total_pages)
        for page in range(stream.current_page + 1, last + 1):
            if config.cache_enabled and await self._cache.contains(page_cache_key(stream_id, page)):
                continue
            task = asyncio.create_task(self._prefetch_page(stream_id, page))
            stream.prefetches.add(task)
            task.add_done_callback(stream.prefetches.discard)
            pages.append(page)

        self._metrics["prefetches"] += len(pages)
        if pages:
            self._logger.debug("stream_prefetching", stream_id=stream_id, pages=pages)
        return pages

    async def _prefetch_page(self, stream_id: str, page: int) -> None:
        if stream_id not in self._streams:
            return
        try:
            await self.fetch_data(stream_id, page)
        except ProviderUnavailable as e:
            self._logger.warning("stream_prefetch_failed", stream_id=stream_id, page=page, error=e.message)

    # -------------------------------------------------------------------------
    # Navigation
    # -------------------------------------------------------------------------

    async def go_to_page(self, stream_id: str, page: int) -> Dict[str, Any]:
        stream = self._get(stream_id)
        if page < 1:
            raise ValidationError("Page must be >= 1")
        if stream.total_pages is not None and page > stream.total_pages:
            raise ValidationError(f"Page {page} exceeds total pages {stream.total_pages}")

        self._logger.info("stream_page_change", stream_id=stream_id, from_page=stream.current_page, to_page=page)
        stream.current_page = page
        data = await self.fetch_data(stream_id, page)

        await self._notify(stream, "page_change", data)
        await self.prefetch(stream_id)
        return data

    async def next_page(self, stream_id: str) -> Dict[str, Any]:
        stream = self._get(stream_id)
        page = stream.current_page + 1
        if stream.total_pages is not None and page > stream.total_pages:
            raise ValidationError("Already at last page")
        return await self.go_to_page(stream_id, page)

    async def previous_page(self, stream_id: str) -> Dict[str, Any]:
        stream = self._get(stream_id)
        if stream.current_page <= 1:
            raise ValidationError("Already at first page")
        return await self.go_to_page(stream_id, stream.current_page - 1)

    # -------------------------------------------------------------------------
    # Subscribers
    # -------------------------------------------------------------------------

    def subscribe(self, stream_id: str, callback: EventHandler) -> Callable[[], bool]:
        """Register a callback; returns a function that unsubscribes it"""
        stream = self._get(stream_id)
        sub_id = self.events.subscribe(self._topic(stream_id), callback)
        stream.subscriptions.add(sub_id)

        def unsubscribe() -> bool:
            stream.subscriptions.discard(sub_id)
            return self.events.unsubscribe(sub_id)

        return unsubscribe

    async def _notify(self, stream: Stream, event_type: str, data: Dict[str, Any]) -> None:
        await self.events.publish(
            self._topic(stream.id),
            event_type,
            {
                "stream_id": stream.id,
                "page": stream.current_page,
                "data": data,
                "timestamp": datetime.utcnow().isoformat(),
            },
        )

    @staticmethod
    def _topic(stream_id: str) -> str:
        return f"stream:{stream_id}"

    # -------------------------------------------------------------------------
    # Timers
    # -------------------------------------------------------------------------

    async def _initial_fetch(self, stream: Stream) -> None:
        try:
            await self.fetch_data(stream.id, stream.current_page)
        except ProviderUnavailable as e:
            self._logger.warning("stream_initial_fetch_failed", stream_id=stream.id, error=e.message)

    def _start_timer(self, stream: Stream) -> None:
        if stream.config.refresh_interval_ms <= 0:
            return
        stream.timer = asyncio.create_task(self._refresh_loop(stream.id))

    @staticmethod
    def _stop_timer(stream: Stream) -> None:
        if stream.timer is not None:
            stream.timer.cancel()
            stream.timer = None

    async def _refresh_loop(self, stream_id: str) -> None:
        while True:
            stream = self._streams.get(stream_id)
            if stream is None or stream.status != StreamStatus.ACTIVE:
                return
            await self._sleep(stream.config.refresh_interval_ms / 1000)
            try:
                await self.refresh_stream(stream_id)
            except ProviderUnavailable as e:
                self._logger.error("stream_refresh_failed", stream_id=stream_id, error=e.message)
            except NotFound:
                return

    # -------------------------------------------------------------------------
    # Status & Metrics
    # -------------------------------------------------------------------------

    def get_stream_info(self, stream_id: str) -> Dict[str, Any]:
        stream = self._get(stream_id)
        return {
            "id": stream.id,
            "status": stream.status.value,
            "current_page": stream.current_page,
            "total_pages": stream.total_pages,
            "subscriber_count": len(stream.subscriptions),
            "last_update": stream.last_update.isoformat() if stream.last_update else None,
            "last_fetch": stream.last_fetch.isoformat() if stream.last_fetch else None,
            "last_error": stream.last_error,
            "config": {
                "refresh_interval_ms": stream.config.refresh_interval_ms,
                "prefetch_enabled": stream.config.prefetch_enabled,
                "cache_enabled": stream.config.cache_enabled,
                "page_size": stream.config.page_size,
            },
            "created_at": stream.created_at.isoformat(),
        }

    def list_streams(self) -> List[Dict[str, Any]]:
        return [self.get_stream_info(stream_id) for stream_id in self._streams]

    async def get_stream_stats(self, stream_id: str) -> Dict[str, Any]:
        stream = self._get(stream_id)
        cached_pages = await self._cache.keys(f"stream:{stream_id}:")
        return {
            "stream_id": stream_id,
            "status": stream.status.value,
            "uptime_s": int((datetime.utcnow() - stream.created_at).total_seconds()),
            "subscriber_count": len(stream.subscriptions),
            "current_page": stream.current_page,
            "total_pages": stream.total_pages,
            "cached_pages": len(cached_pages),
            "pending_prefetches": len(stream.prefetches),
        }

    def get_metrics(self) -> Dict[str, Any]:
        return {**self._metrics, "streams": len(self._streams)}

    def _get(self, stream_id: str) -> Stream:
        stream = self._streams.get(stream_id)
        if stream is None:
            raise NotFound(f"Stream {stream_id} not found")
        return stream
