"""
Response Cache

Content-addressed, TTL-bound cache of successful dispatch results. Keys
hash the canonicalized message list, the effective task category and the
sorted image identifiers. Entries are derived data: writes are
last-write-wins and failures are never cached.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from redis.asyncio import Redis

from aidispatch.core.logging import get_logger
from aidispatch.models.request import ChatMessage

logger = get_logger(__name__)

_CACHE_NS = "aid:resp"


class CacheBackend(ABC):
    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None when missing or expired."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: int) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    async def aclose(self) -> None:
        pass


class _CacheEntry:
    __slots__ = ("value", "created_at", "expires_at")

    def __init__(self, value: Any, now: float, ttl: int) -> None:
        self.value = value
        self.created_at = now
        self.expires_at = now + max(ttl, 0)


class InMemoryCacheBackend(CacheBackend):
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._store: Dict[str, _CacheEntry] = {}
        self._clock = clock
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            if self._clock() >= entry.expires_at:
                del self._store[key]
                return None
            return entry.value

    async def set(self, key: str, value: Any, ttl: int) -> None:
        async with self._lock:
            now = self._clock()
            # Sweep expired entries on write.
            for stale in [k for k, e in self._store.items() if now >= e.expires_at]:
                del self._store[stale]
            self._store[key] = _CacheEntry(value, now, ttl)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._store.pop(key, None)

    def __len__(self) -> int:
        return len(self._store)


class RedisCacheBackend(CacheBackend):
    """JSON values under SETEX; any Redis failure reads as a miss."""

    def __init__(self, redis: Redis):
        self._redis = redis

    @classmethod
    def from_url(cls, redis_url: str) -> "RedisCacheBackend":
        return cls(Redis.from_url(redis_url, decode_responses=True))

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self._redis.get(key)
        except Exception as e:
            logger.warning("cache_redis_get_failed", key=key, error=str(e))
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("cache_redis_corrupt_entry", key=key)
            return None

    async def set(self, key: str, value: Any, ttl: int) -> None:
        try:
            await self._redis.setex(key, max(ttl, 1), json.dumps(value, default=str))
        except Exception as e:
            logger.warning("cache_redis_set_failed", key=key, error=str(e))

    async def delete(self, key: str) -> None:
        try:
            await self._redis.delete(key)
        except Exception as e:
            logger.warning("cache_redis_delete_failed", key=key, error=str(e))

    async def aclose(self) -> None:
        await self._redis.aclose()


class ResponseCache:
    def __init__(
        self,
        backend: CacheBackend,
        ttl_seconds: int = 3600,
        vision_ttl_seconds: int = 600,
    ):
        self._backend = backend
        self.ttl_seconds = ttl_seconds
        self.vision_ttl_seconds = vision_ttl_seconds

    @staticmethod
    def key(messages: Sequence[ChatMessage], task_category: str, images: Sequence[str]) -> str:
        canonical = json.dumps(
            {
                "messages": [m.to_wire() for m in messages],
                "task_category": task_category,
                "images": sorted(images),
            },
            sort_keys=True,
            ensure_ascii=False,
            separators=(",", ":"),
        )
        digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
        return f"{_CACHE_NS}:{digest}"

    def ttl_for(self, images: Sequence[str]) -> int:
        return self.vision_ttl_seconds if images else self.ttl_seconds

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        entry = await self._backend.get(key)
        if entry is None:
            return None
        return entry.get("value") if isinstance(entry, dict) else None

    async def put(self, key: str, value: Dict[str, Any], ttl: int) -> None:
        now = datetime.now(timezone.utc)
        entry = {
            "key": key,
            "value": value,
            "created_at": now.isoformat(),
            "expires_at": (now + timedelta(seconds=ttl)).isoformat(),
        }
        await self._backend.set(key, entry, ttl)
        logger.debug("cache_put", key=key, ttl=ttl)

    async def invalidate(self, keys: List[str]) -> None:
        for key in keys:
            await self._backend.delete(key)

    async def aclose(self) -> None:
        await self._backend.aclose()
