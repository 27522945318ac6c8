"""
Key-value store used by the idempotency cache and notification dedup.

Two implementations share one protocol:
1. RedisKeyValueStore for production (redis.asyncio)
2. InMemoryKeyValueStore for tests and single-process deployments

Callers must treat the store as lossy: any value may disappear at any time.
"""
import asyncio
import time
from typing import Dict, Optional, Protocol, Tuple

import redis.asyncio as aioredis
import structlog

logger = structlog.get_logger(__name__)


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None: ...

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool: ...

    async def incr(self, key: str) -> int: ...

    async def expire(self, key: str, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


class InMemoryKeyValueStore:
    """Process-local store with monotonic-clock expiry."""

    def __init__(self) -> None:
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= time.monotonic():
            del self._data[key]
            return None
        return value

    @staticmethod
    def _deadline(ttl_seconds: Optional[int]) -> Optional[float]:
        return time.monotonic() + ttl_seconds if ttl_seconds else None

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            return self._live(key)

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        async with self._lock:
            self._data[key] = (value, self._deadline(ttl_seconds))

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        async with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (value, self._deadline(ttl_seconds))
            return True

    async def incr(self, key: str) -> int:
        async with self._lock:
            current = self._live(key)
            expires_at = self._data[key][1] if current is not None else None
            new_value = int(current or 0) + 1
            self._data[key] = (str(new_value), expires_at)
            return new_value

    async def expire(self, key: str, ttl_seconds: int) -> None:
        async with self._lock:
            value = self._live(key)
            if value is not None:
                self._data[key] = (value, self._deadline(ttl_seconds))

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        self._data.clear()


class RedisKeyValueStore:
    """
    Redis-backed store.

    The client is created lazily so that constructing the store never
    touches the network.
    """

    def __init__(self, redis_url: str, client: Optional[aioredis.Redis] = None):
        """
        Initialize the store.

        Args:
            redis_url: Redis connection URL
            client: Optional pre-built Redis client
        """
        self.redis_url = redis_url
        self._client = client

    async def _ensure_client(self) -> aioredis.Redis:
        if self._client is None:
            self._client = aioredis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._client

    async def get(self, key: str) -> Optional[str]:
        client = await self._ensure_client()
        return await client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        client = await self._ensure_client()
        if ttl_seconds:
            await client.setex(key, ttl_seconds, value)
        else:
            await client.set(key, value)

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        client = await self._ensure_client()
        return bool(await client.set(key, value, ex=ttl_seconds, nx=True))

    async def incr(self, key: str) -> int:
        client = await self._ensure_client()
        return int(await client.incr(key))

    async def expire(self, key: str, ttl_seconds: int) -> None:
        client = await self._ensure_client()
        await client.expire(key, ttl_seconds)

    async def delete(self, key: str) -> None:
        client = await self._ensure_client()
        await client.delete(key)

    async def ping(self) -> bool:
        client = await self._ensure_client()
        return bool(await client.ping())

    async def close(self) -> None:
        """Close Redis connection."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def create_kv_store(redis_url: Optional[str]) -> KeyValueStore:
    """
    Build the key-value store for the configured backend.

    Args:
        redis_url: Redis URL, or None for the in-memory store

    Returns:
        KeyValueStore: Store instance
    """
    if redis_url:
        logger.info("kv_store_selected", backend="redis")
        return RedisKeyValueStore(redis_url)
    logger.info("kv_store_selected", backend="memory")
    return InMemoryKeyValueStore()
