from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Protocol

LOG = logging.getLogger("s3_imgproxy.cache")


@dataclass(frozen=True)
class CachedResponse:
    status_code: int
    headers: dict[str, str]
    body: bytes
    stored_at: float = field(default_factory=time.monotonic)


class CacheStore(Protocol):
    async def match(self, key: str) -> CachedResponse | None: ...

    async def put(self, key: str, response: CachedResponse) -> None: ...


class NullCacheStore:
    """Store used when caching is disabled: never hits, drops writes."""

    async def match(self, key: str) -> CachedResponse | None:
        return None

    async def put(self, key: str, response: CachedResponse) -> None:
        return None


class MemoryCacheStore:
    """In-process LRU cache with a per-entry TTL."""

    def __init__(
        self,
        max_entries: int = 512,
        ttl: float = 2592000.0,
        max_object_size: int = 10 * 1024 * 1024,
    ):
        self._entries: OrderedDict[str, CachedResponse] = OrderedDict()
        self._lock = asyncio.Lock()
        self._max_entries = max_entries
        self._ttl = ttl
        self._max_object_size = max_object_size

    def __len__(self) -> int:
        return len(self._entries)

    async def match(self, key: str) -> CachedResponse | None:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if time.monotonic() - entry.stored_at >= self._ttl:
                LOG.debug("cache entry expired key=%s", key)
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return entry

    async def put(self, key: str, response: CachedResponse) -> None:
        if len(response.body) > self._max_object_size:
            LOG.debug(
                "not caching key=%s (%d bytes > %d)",
                key,
                len(response.body),
                self._max_object_size,
            )
            return
        async with self._lock:
            self._entries[key] = response
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_entries:
                evicted, _ = self._entries.popitem(last=False)
                LOG.debug("evicted cache entry key=%s", evicted)
        LOG.debug("cached key=%s (%d bytes)", key, len(response.body))
