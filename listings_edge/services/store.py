"""Key/value store with Redis backend and in-memory fallback.

Contract (what the caches are written against):
  - get(key, fmt)            → value or None
  - get_with_metadata(key)   → StoredValue(value, expiration) or None
  - put(key, value, ttl)     → per-key atomic write, TTL in seconds
  - delete(key)

No cross-key transactions. Graceful degradation: if Redis is unavailable,
reads and writes go to a cachetools.TLRUCache with per-entry expiry. Writes
land in memory too, so a failed Redis write is still readable from this
process, but the failure is raised as StoreError so callers can log the
degraded write.

The memory copy is bounded by total bytes (`memory_budget_bytes`), not entry
count. Least recently used entries are evicted to stay under the budget. A
value larger than the whole budget skips memory while Redis is up and is
rejected with StoreError otherwise.
"""

import json
import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Literal

from cachetools import TLRUCache

from listings_edge.errors import StoreError

logger = logging.getLogger(__name__)

ValueFormat = Literal["json", "text", "bytes"]


@dataclass(frozen=True)
class _Entry:
    data: bytes
    expires_at: float


@dataclass(frozen=True)
class StoredValue:
    """A value plus its absolute expiration (epoch seconds, None = never)."""
    value: Any
    expiration: float | None


def _encode(value: Any) -> bytes:
    if isinstance(value, bytes):
        return value
    if isinstance(value, bytearray):
        return bytes(value)
    if isinstance(value, str):
        return value.encode("utf-8")
    return json.dumps(value, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


def _decode(data: bytes, fmt: ValueFormat) -> Any:
    if fmt == "bytes":
        return data
    if fmt == "text":
        return data.decode("utf-8")
    return json.loads(data)


class KeyValueStore:
    """Async TTL-aware store with Redis primary and in-memory fallback."""

    def __init__(
        self,
        redis_url: str | None = None,
        memory_budget_bytes: int = 256 * 1024 * 1024,
        max_value_bytes: int | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._redis_url = redis_url
        self._redis = None
        self._available = False
        self._clock = clock
        self._max_value_bytes = max_value_bytes
        self._fallback: TLRUCache = TLRUCache(
            maxsize=memory_budget_bytes,
            ttu=lambda _key, entry, _now: entry.expires_at,
            timer=clock,
            getsizeof=lambda entry: len(entry.data),
        )

    @property
    def backend(self) -> str:
        return "redis" if self._available else "memory"

    @property
    def memory_bytes(self) -> int:
        """Bytes currently held by the in-memory copy."""
        return self._fallback.currsize

    async def connect(self) -> bool:
        """Connect to Redis. Returns True on success."""
        if not self._redis_url:
            return False
        try:
            import redis.asyncio as aioredis

            self._redis = aioredis.from_url(
                self._redis_url,
                decode_responses=False,
                socket_connect_timeout=3,
            )
            await self._redis.ping()
            self._available = True
            return True
        except Exception as e:
            logger.warning("Redis connection failed — using in-memory fallback: %s", str(e)[:100])
            self._redis = None
            self._available = False
            return False

    async def disconnect(self):
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            self._available = False

    async def get(self, key: str, fmt: ValueFormat = "json") -> Any | None:
        """Read a value. Returns None on miss."""
        data = await self._read(key)
        if data is None:
            return None
        try:
            return _decode(data, fmt)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning("Store decode error | key=%s | fmt=%s | %s", key[:60], fmt, str(e)[:100])
            return None

    async def get_with_metadata(self, key: str, fmt: ValueFormat = "json") -> StoredValue | None:
        """Read a value together with its absolute expiration time."""
        if self._available and self._redis:
            try:
                async with self._redis.pipeline(transaction=False) as pipe:
                    pipe.get(key)
                    pipe.ttl(key)
                    data, ttl = await pipe.execute()
                if data is not None:
                    expiration = self._clock() + ttl if ttl and ttl > 0 else None
                    return StoredValue(_decode(data, fmt), expiration)
            except Exception as e:
                logger.debug("Redis GET+TTL error: %s", str(e)[:100])

        entry = self._fallback.get(key)
        if entry is None:
            return None
        expiration = None if math.isinf(entry.expires_at) else entry.expires_at
        return StoredValue(_decode(entry.data, fmt), expiration)

    async def put(self, key: str, value: Any, ttl: int | None = None):
        """Write a value with an optional TTL in seconds."""
        data = _encode(value)
        if self._max_value_bytes is not None and len(data) > self._max_value_bytes:
            raise StoreError(
                f"value for {key[:60]} is {len(data)} bytes (limit {self._max_value_bytes})"
            )

        expires_at = self._clock() + ttl if ttl else math.inf
        if len(data) <= self._fallback.maxsize:
            self._fallback[key] = _Entry(data, expires_at)
        else:
            # Too big for memory; an older copy must not shadow the new value
            self._fallback.pop(key, None)
            if not (self._available and self._redis):
                raise StoreError(
                    f"value for {key[:60]} is {len(data)} bytes (memory budget {self._fallback.maxsize})"
                )

        if self._available and self._redis:
            try:
                if ttl:
                    await self._redis.setex(key, ttl, data)
                else:
                    await self._redis.set(key, data)
                logger.debug("Store SET (Redis) | key=%s | ttl=%s", key[:60], ttl)
            except Exception as e:
                logger.debug("Redis SET error: %s", str(e)[:100])
                raise StoreError(f"Redis write failed for {key[:60]}") from e

    async def delete(self, key: str):
        """Delete a key from every backend."""
        self._fallback.pop(key, None)
        if self._available and self._redis:
            try:
                await self._redis.delete(key)
            except Exception as e:
                logger.debug("Redis DELETE error: %s", str(e)[:100])
                raise StoreError(f"Redis delete failed for {key[:60]}") from e

    async def _read(self, key: str) -> bytes | None:
        if self._available and self._redis:
            try:
                data = await self._redis.get(key)
                if data is not None:
                    return data
            except Exception as e:
                logger.debug("Redis GET error: %s", str(e)[:100])

        entry = self._fallback.get(key)
        return entry.data if entry is not None else None
