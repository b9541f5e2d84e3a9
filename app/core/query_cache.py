"""
Query result cache
- key: md5 fingerprint of the exact query text (no normalisation)
- value: JSON-serialised result set (rows plus rowCount/truncated/maxRowsCap)
- fixed TTL (settings.cache_ttl_seconds)
- backed by Redis (redis://) or an in-process LRU store (memory://)

Cache failures never reach the caller: the gateway logs them and reports a miss.
"""
import asyncio
import hashlib
import json
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from app.config import settings
from app.smart_logger import SmartLogger
from app.utils.log_sanitize import sanitize_for_log


class CacheUnavailableError(Exception):
    """Raised by a cache store when the backend cannot be reached"""
    pass


def fingerprint(query: str) -> str:
    """Deterministic cache key over the exact bytes of the query text."""
    return hashlib.md5(query.encode("utf-8")).hexdigest()


@dataclass
class _MemoryEntry:
    value: bytes
    expires_at: float
    hit_count: int = 0


class InMemoryCacheStore:
    """LRU + TTL store living in the current process"""

    def __init__(self, max_size: int = 500, clock: Callable[[], float] = time.monotonic):
        self._entries: "OrderedDict[str, _MemoryEntry]" = OrderedDict()
        self._max_size = max(1, max_size)
        self._clock = clock
        self._total_hits = 0
        self._total_misses = 0

    async def get(self, key: str) -> Optional[bytes]:
        entry = self._entries.get(key)
        if entry is None:
            self._total_misses += 1
            return None
        if self._clock() >= entry.expires_at:
            del self._entries[key]
            self._total_misses += 1
            return None
        # most recently used goes last
        self._entries.move_to_end(key)
        entry.hit_count += 1
        self._total_hits += 1
        return entry.value

    async def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        if key in self._entries:
            del self._entries[key]
        while len(self._entries) >= self._max_size:
            self._entries.popitem(last=False)
        self._entries[key] = _MemoryEntry(value=value, expires_at=self._clock() + ttl_seconds)

    async def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        self._entries.clear()

    def get_stats(self) -> Dict[str, Any]:
        lookups = self._total_hits + self._total_misses
        return {
            "backend": "memory",
            "size": len(self._entries),
            "max_size": self._max_size,
            "total_hits": self._total_hits,
            "total_misses": self._total_misses,
            "hit_rate": round(self._total_hits / lookups, 4) if lookups else 0,
        }


class RedisCacheStore:
    """Redis-backed store; every backend error becomes CacheUnavailableError"""

    def __init__(self, url: str, *, connect_timeout: float = 2.0):
        self._url = url
        self._client = aioredis.from_url(
            url,
            socket_connect_timeout=connect_timeout,
            socket_timeout=connect_timeout,
        )

    async def get(self, key: str) -> Optional[bytes]:
        try:
            return await self._client.get(key)
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            raise CacheUnavailableError(str(exc)) from exc

    async def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        try:
            await self._client.set(key, value, ex=ttl_seconds)
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            raise CacheUnavailableError(str(exc)) from exc

    async def delete(self, key: str) -> bool:
        try:
            return bool(await self._client.delete(key))
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            raise CacheUnavailableError(str(exc)) from exc

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            raise CacheUnavailableError(str(exc)) from exc

    async def close(self) -> None:
        await self._client.aclose()

    def get_stats(self) -> Dict[str, Any]:
        return {"backend": "redis", "url": sanitize_for_log(self._url)}


def create_cache_store(url: Optional[str] = None):
    """Pick a store from the cache URL scheme."""
    url = (url or settings.redis_url or "memory://").strip()
    if url.startswith("memory://"):
        return InMemoryCacheStore(max_size=settings.cache_max_entries)
    if url.startswith(("redis://", "rediss://", "unix://")):
        return RedisCacheStore(url, connect_timeout=settings.cache_connect_timeout_seconds)
    raise ValueError(f"Unsupported cache URL scheme: {sanitize_for_log(url)}")


@dataclass
class CacheLookup:
    hit: bool
    rows: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None
    row_count: int = 0
    truncated: bool = False
    max_rows_cap: Optional[int] = None


class CacheGateway:
    """Best-effort get/set of serialised result sets"""

    def __init__(self, store, ttl_seconds: Optional[int] = None):
        self.store = store
        self.ttl_seconds = int(ttl_seconds if ttl_seconds is not None else settings.cache_ttl_seconds)

    @staticmethod
    def serialize(
        rows: List[Dict[str, Any]],
        row_count: Optional[int] = None,
        truncated: bool = False,
        max_rows_cap: Optional[int] = None,
    ) -> bytes:
        payload = {
            "rows": rows,
            "rowCount": len(rows) if row_count is None else int(row_count),
            "truncated": bool(truncated),
            "maxRowsCap": max_rows_cap,
        }
        return json.dumps(payload, ensure_ascii=False, default=str).encode("utf-8")

    @staticmethod
    def deserialize(payload: bytes) -> Dict[str, Any]:
        """Decode a cached entry; a bare row list reads as an untruncated result."""
        if isinstance(payload, (bytes, bytearray)):
            payload = payload.decode("utf-8")
        data = json.loads(payload)
        if isinstance(data, list):
            data = {"rows": data}
        if not isinstance(data, dict) or not isinstance(data.get("rows"), list):
            raise ValueError("Cached payload is not a result set")
        rows = data["rows"]
        row_count = data.get("rowCount")
        max_rows_cap = data.get("maxRowsCap")
        return {
            "rows": rows,
            "rowCount": len(rows) if row_count is None else int(row_count),
            "truncated": bool(data.get("truncated", False)),
            "maxRowsCap": None if max_rows_cap is None else int(max_rows_cap),
        }

    async def get(self, key: str) -> Optional[bytes]:
        """Raw lookup; a store outage is reported as a miss."""
        try:
            return await self.store.get(key)
        except CacheUnavailableError as exc:
            self._log_unavailable("get", key, exc)
            return None

    async def set(self, key: str, value: bytes, ttl_seconds: Optional[int] = None) -> bool:
        try:
            await self.store.set(key, value, int(ttl_seconds or self.ttl_seconds))
            return True
        except CacheUnavailableError as exc:
            self._log_unavailable("set", key, exc)
            return False

    async def lookup_rows(self, key: str) -> CacheLookup:
        try:
            payload = await self.store.get(key)
        except CacheUnavailableError as exc:
            self._log_unavailable("get", key, exc)
            return CacheLookup(hit=False, error=str(exc))

        if payload is None:
            return CacheLookup(hit=False)

        try:
            data = self.deserialize(payload)
        except (ValueError, TypeError, UnicodeDecodeError) as exc:
            SmartLogger.log(
                "WARNING",
                "query_cache.payload.corrupt",
                category="query_cache",
                params={"key": key, "error": str(exc)},
            )
            return CacheLookup(hit=False, error=str(exc))
        return CacheLookup(
            hit=True,
            rows=data["rows"],
            row_count=data["rowCount"],
            truncated=data["truncated"],
            max_rows_cap=data["maxRowsCap"],
        )

    async def store_rows(
        self,
        key: str,
        rows: List[Dict[str, Any]],
        *,
        row_count: Optional[int] = None,
        truncated: bool = False,
        max_rows_cap: Optional[int] = None,
    ) -> bool:
        """Store a result set; `row_count` is the full count when `rows` is a capped preview."""
        return await self.set(key, self.serialize(rows, row_count, truncated, max_rows_cap))

    async def ping(self) -> Tuple[bool, Optional[str]]:
        try:
            return bool(await self.store.ping()), None
        except CacheUnavailableError as exc:
            return False, str(exc)

    async def close(self) -> None:
        await self.store.close()

    def get_stats(self) -> Dict[str, Any]:
        return {**self.store.get_stats(), "ttl_seconds": self.ttl_seconds}

    @staticmethod
    def _log_unavailable(operation: str, key: str, exc: Exception) -> None:
        SmartLogger.log(
            "WARNING",
            f"query_cache.{operation}.unavailable",
            category="query_cache",
            params=sanitize_for_log({"key": key, "error": str(exc)}),
        )
