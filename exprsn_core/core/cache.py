"""
Cache Backends
==============

TTL caches used by the parameter store and the stream engine.

- InMemoryCacheBackend: process-local, injectable clock
- RedisCacheBackend: shared across processes, last-write-wins per key

Author: Builder Engine Team
Version: 2.0.0
"""

from __future__ import annotations

import copy
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import structlog

from exprsn_core.core.config import CacheBackendType, CacheConfig

logger = structlog.get_logger(__name__)

MISSING = object()


class CacheBackend(ABC):
    """Abstract async cache"""

    @abstractmethod
    async def get(self, key: str, default: Any = None) -> Any:
        """Return the cached value or default when missing/expired"""
        pass

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_s: Optional[float] = None) -> None:
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        pass

    @abstractmethod
    async def delete_prefix(self, prefix: str) -> int:
        pass

    @abstractmethod
    async def keys(self, prefix: str = "") -> List[str]:
        """Live (non-expired) keys under a prefix"""
        pass

    async def contains(self, key: str) -> bool:
        return (await self.get(key, MISSING)) is not MISSING

    async def close(self) -> None:
        pass


@dataclass
class _Entry:
    value: Any
    expires_at: Optional[float]


class InMemoryCacheBackend(CacheBackend):
    """Process-local TTL cache. Entries are never served past expiry."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._entries: Dict[str, _Entry] = {}
        self._clock = clock
        self._metrics = {"hits": 0, "misses": 0, "evictions": 0}

    def _expired(self, entry: _Entry) -> bool:
        return entry.expires_at is not None and self._clock() >= entry.expires_at

    def _purge(self) -> None:
        expired = [k for k, e in self._entries.items() if self._expired(e)]
        for key in expired:
            del self._entries[key]
        self._metrics["evictions"] += len(expired)

    async def get(self, key: str, default: Any = None) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            self._metrics["misses"] += 1
            return default
        if self._expired(entry):
            del self._entries[key]
            self._metrics["evictions"] += 1
            self._metrics["misses"] += 1
            return default
        self._metrics["hits"] += 1
        return copy.deepcopy(entry.value)

    async def set(self, key: str, value: Any, ttl_s: Optional[float] = None) -> None:
        expires_at = self._clock() + ttl_s if ttl_s is not None else None
        self._entries[key] = _Entry(value=copy.deepcopy(value), expires_at=expires_at)

    async def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    async def delete_prefix(self, prefix: str) -> int:
        doomed = [k for k in self._entries if k.startswith(prefix)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    async def keys(self, prefix: str = "") -> List[str]:
        self._purge()
        return sorted(k for k in self._entries if k.startswith(prefix))

    def get_metrics(self) -> Dict[str, Any]:
        return {**self._metrics, "entries": len(self._entries)}


class RedisCacheBackend(CacheBackend):
    """Redis-backed cache; values are JSON-encoded"""

    def __init__(self, url: str = "redis://localhost:6379/0", prefix: str = "exprsn"):
        self._url = url
        self._prefix = prefix
        self._redis: Optional[Any] = None
        self._logger = structlog.get_logger("cache.redis")

    async def _client(self) -> Any:
        if self._redis is None:
            import redis.asyncio as aioredis

            self._redis = aioredis.from_url(
                self._url,
                encoding="utf-8",
                decode_responses=True,
            )
            self._logger.info("redis_cache_connected", url=self._url)
        return self._redis

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    async def get(self, key: str, default: Any = None) -> Any:
        client = await self._client()
        raw = await client.get(self._key(key))
        if raw is None:
            return default
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl_s: Optional[float] = None) -> None:
        client = await self._client()
        data = json.dumps(value, default=str)
        if ttl_s is not None:
            await client.set(self._key(key), data, px=max(1, int(ttl_s * 1000)))
        else:
            await client.set(self._key(key), data)

    async def delete(self, key: str) -> bool:
        client = await self._client()
        return bool(await client.delete(self._key(key)))

    async def delete_prefix(self, prefix: str) -> int:
        client = await self._client()
        removed = 0
        async for key in client.scan_iter(match=f"{self._key(prefix)}*"):
            removed += await client.delete(key)
        return removed

    async def keys(self, prefix: str = "") -> List[str]:
        client = await self._client()
        strip = len(self._prefix) + 1
        found = [key[strip:] async for key in client.scan_iter(match=f"{self._key(prefix)}*")]
        return sorted(found)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.close()
            self._redis = None
            self._logger.info("redis_cache_disconnected")


def create_cache_backend(
    config: CacheConfig,
    clock: Callable[[], float] = time.monotonic,
) -> CacheBackend:
    """Build the configured cache backend"""
    if config.backend == CacheBackendType.REDIS:
        return RedisCacheBackend(config.redis_url, config.key_prefix)
    return InMemoryCacheBackend(clock=clock)
