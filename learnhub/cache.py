"""
In-memory cache with per-entry TTL and pattern invalidation.

The cache is advisory: every value in it can be rebuilt from the database,
so losing entries only costs a re-read. Backed by a bounded
``cachetools.TLRUCache``; entries closest to expiry are evicted first once
the cache is full.
"""

import hashlib
import json
import re
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from cachetools import TLRUCache

from .logging_config import logger

T = TypeVar("T")

DEFAULT_MAX_ENTRIES = 1024


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    ttl_seconds: float


def _expires_at(key: str, entry: CacheEntry, now: float) -> float:
    return now + entry.ttl_seconds


class CacheService:
    """Process-local key/value store. Construct one per application."""

    def __init__(self, maxsize: int = DEFAULT_MAX_ENTRIES, clock: Callable[[], float] = time.monotonic):
        self._entries: TLRUCache = TLRUCache(maxsize=maxsize, ttu=_expires_at, timer=clock)

    def __len__(self) -> int:
        self._entries.expire()
        return len(self._entries)

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        self._entries[key] = CacheEntry(value=value, ttl_seconds=ttl_seconds)

    def get(self, key: str) -> Any | None:
        """Return the cached value, or None if missing or expired."""
        entry = self._entries.get(key)
        return entry.value if entry is not None else None

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching the regular expression. Returns the count."""
        regex = re.compile(pattern)
        self._entries.expire()
        deleted = 0
        for key in list(self._entries.keys()):
            if regex.search(key) and self._entries.pop(key, None) is not None:
                deleted += 1
        return deleted

    def clear(self) -> None:
        self._entries.clear()

    async def get_or_set(
        self,
        key: str,
        ttl_seconds: float,
        fetch: Callable[[], Awaitable[T]],
    ) -> T:
        """Return the cached value for ``key`` or fetch, store and return it."""
        cached = self.get(key)
        if cached is not None:
            logger.debug(f"[Cache] Hit: {key}")
            return cached

        logger.debug(f"[Cache] Miss: {key}")
        value = await fetch()
        if value is not None:
            self.set(key, value, ttl_seconds)
        return value


def filter_hash(filters: dict | None) -> str:
    """Stable short hash of a filter mapping, for list cache keys."""
    payload = json.dumps(filters or {}, sort_keys=True, default=str)
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()[:12]


class CacheKeys:
    """Namespaced cache key builders."""

    @staticmethod
    def material(material_id: str) -> str:
        return f"material:{material_id}"

    @staticmethod
    def material_status(material_id: str) -> str:
        return f"material:status:{material_id}"

    @staticmethod
    def material_list(filters: dict | None = None) -> str:
        return f"materials:list:{filter_hash(filters)}"

    @staticmethod
    def course(course_id: str) -> str:
        return f"course:{course_id}"

    @staticmethod
    def course_list(filters: dict | None = None) -> str:
        return f"courses:list:{filter_hash(filters)}"

    @staticmethod
    def analytics(kind: str) -> str:
        return f"analytics:{kind}"

    @staticmethod
    def rag_stats(scope: str | None = None) -> str:
        return f"rag:stats:{scope or 'all'}"


class CacheTTL:
    """TTLs in seconds per entity class."""

    COURSE = 3600
    COURSE_LIST = 1800
    MATERIAL = 1800
    MATERIAL_STATUS = 300
    MATERIAL_LIST = 600
    ANALYTICS = 1800
    RAG_STATS = 300


class CacheInvalidation:
    """Invalidation rules applied after mutations."""

    def __init__(self, cache: CacheService):
        self.cache = cache

    def material(self, material_id: str | None = None) -> None:
        if material_id:
            self.cache.delete(CacheKeys.material(material_id))
            self.cache.delete(CacheKeys.material_status(material_id))
        self.cache.delete_pattern(r"^materials:list:")
        self.cache.delete_pattern(r"^analytics:")
        self.cache.delete_pattern(r"^rag:stats:")

    def course(self, course_id: str | None = None) -> None:
        if course_id:
            self.cache.delete(CacheKeys.course(course_id))
        self.cache.delete_pattern(r"^courses:list:")
        self.cache.delete_pattern(r"^analytics:")

    def analytics(self) -> None:
        self.cache.delete_pattern(r"^analytics:")
