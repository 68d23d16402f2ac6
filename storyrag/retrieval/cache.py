"""Two-tier caching for provider results.

L1 is an in-process LRU with per-entry TTL. L2 is a shared Redis cache with
TTL only. Lookups go L1 then L2, and an L2 hit is copied back into L1. L2 is
best effort: any Redis error is logged and treated as a miss.
"""

import hashlib
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Generic, TypeVar

import numpy as np
import redis.asyncio as aioredis

from ..config import CacheConfig
from ..logging_config import get_logger

logger = get_logger(__name__)

V = TypeVar("V")


def content_hash(*parts: str) -> str:
    """SHA-256 over the given strings, separated so ("ab", "c") != ("a", "bc")."""
    digest = hashlib.sha256()
    for part in parts:
        digest.update(part.encode("utf-8"))
        digest.update(b"\x1f")
    return digest.hexdigest()


class LocalTTLCache(Generic[V]):
    """Bounded LRU cache with per-entry expiry, safe across threads."""

    def __init__(
        self,
        max_size: int = 10_000,
        ttl: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_size = max_size
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: OrderedDict[str, tuple[V, float]] = OrderedDict()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def get(self, key: str) -> V | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            value, expires_at = entry
            if expires_at <= self._clock():
                del self._entries[key]
                self.misses += 1
                return None
            self._entries.move_to_end(key)
            self.hits += 1
            return value

    def set(self, key: str, value: V, ttl: float | None = None) -> None:
        expires_at = self._clock() + (self.ttl if ttl is None else ttl)
        with self._lock:
            self._entries[key] = (value, expires_at)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)
                self.evictions += 1

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> dict:
        total = self.hits + self.misses
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "hit_rate": self.hits / total if total else 0.0,
        }


class NullDistributedCache:
    """L2 stand-in when no shared cache is configured."""

    enabled = False

    async def get(self, key: str) -> bytes | None:
        return None

    async def set(self, key: str, value: bytes, ttl: int) -> None:
        return None

    async def clear(self) -> None:
        return None

    async def close(self) -> None:
        return None


class RedisCache:
    """Shared L2 cache in Redis, namespaced by a key prefix."""

    enabled = True

    def __init__(self, url: str, key_prefix: str = "embedding:"):
        self.url = url
        self.key_prefix = key_prefix
        # Binary payloads, so no decode_responses
        self._client = aioredis.from_url(
            url,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            decode_responses=False,
        )

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    async def get(self, key: str) -> bytes | None:
        return await self._client.get(self._key(key))

    async def set(self, key: str, value: bytes, ttl: int) -> None:
        await self._client.set(self._key(key), value, ex=ttl)

    async def clear(self) -> None:
        """Delete every key under this cache's prefix."""
        batch = []
        async for key in self._client.scan_iter(match=f"{self.key_prefix}*", count=500):
            batch.append(key)
            if len(batch) >= 500:
                await self._client.delete(*batch)
                batch = []
        if batch:
            await self._client.delete(*batch)

    async def close(self) -> None:
        await self._client.aclose()


class TwoTierCache(Generic[V]):
    """L1 + L2 cache keyed by content hash.

    ``encode``/``decode`` convert values to and from the bytes stored in L2.
    """

    def __init__(
        self,
        local: LocalTTLCache[V],
        distributed: Any = None,
        encode: Callable[[V], bytes] | None = None,
        decode: Callable[[bytes], V] | None = None,
        distributed_ttl: int = 86_400,
    ):
        self.local = local
        self.distributed = distributed or NullDistributedCache()
        self._encode = encode
        self._decode = decode
        self.distributed_ttl = distributed_ttl
        self.distributed_hits = 0
        self.distributed_errors = 0

    async def get(self, key: str) -> V | None:
        value = self.local.get(key)
        if value is not None:
            return value
        if not self.distributed.enabled or self._decode is None:
            return None
        try:
            raw = await self.distributed.get(key)
        except Exception as e:
            self.distributed_errors += 1
            logger.warning("L2 cache read failed, treating as miss: %s", e)
            return None
        if raw is None:
            return None
        try:
            value = self._decode(raw)
        except (ValueError, TypeError) as e:
            logger.warning("Discarding undecodable L2 cache entry %s: %s", key[:12], e)
            return None
        self.distributed_hits += 1
        self.local.set(key, value)
        return value

    async def set(self, key: str, value: V) -> None:
        self.local.set(key, value)
        if not self.distributed.enabled or self._encode is None:
            return
        try:
            await self.distributed.set(key, self._encode(value), self.distributed_ttl)
        except Exception as e:
            self.distributed_errors += 1
            logger.warning("L2 cache write failed: %s", e)

    async def clear(self) -> None:
        self.local.clear()
        try:
            await self.distributed.clear()
        except Exception as e:
            self.distributed_errors += 1
            logger.warning("L2 cache clear failed: %s", e)

    async def close(self) -> None:
        await self.distributed.close()

    def stats(self) -> dict:
        return {
            "local": self.local.stats(),
            "distributed_enabled": self.distributed.enabled,
            "distributed_hits": self.distributed_hits,
            "distributed_errors": self.distributed_errors,
        }


def encode_vector(vector: np.ndarray) -> bytes:
    return np.asarray(vector, dtype=np.float32).tobytes()


def decode_vector(raw: bytes) -> np.ndarray:
    if len(raw) % 4:
        raise ValueError("vector payload is not a float32 array")
    return np.frombuffer(raw, dtype=np.float32).copy()


def create_embedding_cache(config: CacheConfig) -> TwoTierCache[np.ndarray]:
    """Build the embedding cache, with Redis as L2 when a URL is configured."""
    distributed = (
        RedisCache(config.redis_url, key_prefix=config.key_prefix)
        if config.redis_url
        else NullDistributedCache()
    )
    return TwoTierCache(
        LocalTTLCache(max_size=config.local_max_size, ttl=config.local_ttl),
        distributed,
        encode=encode_vector,
        decode=decode_vector,
        distributed_ttl=config.redis_ttl,
    )
