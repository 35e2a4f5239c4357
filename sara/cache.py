"""
Bounded, expiring cache for expensive remote results.

Transcripts, generated articles and summaries are cached under
caller-chosen keys (see ``transcript_key`` and friends). Read-through is the
caller's job: check the cache, on a miss call the collaborator, then store.

Expiry is lazy: every ``get`` and ``set`` first sweeps entries whose
``expires_at`` has passed, so correctness never depends on a timer firing.
The size bound evicts by insertion time, not by access: the entry stored
longest ago goes first. ``cachetools.FIFOCache`` gives exactly that order,
and overwriting a key re-inserts it as the newest entry.

State is persisted as one JSON record::

    {"transcript_abc": {"value": ..., "storedAt": ..., "expiresAt": ...,
                        "lastAccessedAt": ...}, ...}
"""

import asyncio
import copy
import json
import logging
from typing import Any, Callable

from cachetools import FIFOCache
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from sara.errors import StorageError
from sara.storage import DurableStore
from sara.utils import MS_PER_DAY, Clock, ms_to_datetime, now_ms

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 50
DEFAULT_TTL_MS = 7 * MS_PER_DAY


def transcript_key(video_id: str) -> str:
    return f"transcript_{video_id}"


def article_key(video_id: str) -> str:
    return f"enhanced_{video_id}"


def summary_key(video_id: str) -> str:
    return f"tldr_{video_id}"


class CacheEntry(BaseModel):
    """A cached payload with its timestamps (epoch milliseconds)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    value: Any
    stored_at: int
    expires_at: int
    last_accessed_at: int

    def is_expired(self, now: int) -> bool:
        return now >= self.expires_at


class _EntryStore(FIFOCache):
    """FIFOCache that reports evictions so they can be logged."""

    def __init__(self, maxsize: int, on_evict: Callable[[str, CacheEntry], None]):
        super().__init__(maxsize=maxsize)
        self._on_evict = on_evict

    def popitem(self):
        key, entry = super().popitem()
        self._on_evict(key, entry)
        return key, entry


class ResultCache:
    """
    Persistent result cache with per-entry expiry and a global size bound.

    Reads fail open: an unreadable record loads as an empty cache, and a
    failed flush after updating access time is only logged. Writes fail
    closed: ``set``, ``remove`` and ``clear`` raise ``StorageError`` when the
    record can't be flushed.
    """

    RECORD_KEY = "sara_cache"

    def __init__(
        self,
        store: DurableStore,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        default_ttl: int = DEFAULT_TTL_MS,
        clock: Clock = now_ms,
    ):
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        if default_ttl <= 0:
            raise ValueError("default_ttl must be positive")
        self._store = store
        self._max_entries = max_entries
        self._default_ttl = default_ttl
        self._clock = clock
        self._entries = _EntryStore(max_entries, self._log_eviction)
        self._loaded = False
        self._lock = asyncio.Lock()
        self._hits = 0
        self._misses = 0

    @property
    def max_entries(self) -> int:
        return self._max_entries

    @property
    def default_ttl(self) -> int:
        return self._default_ttl

    async def get(self, key: str) -> Any | None:
        """
        Return the cached value for ``key``, or None if absent or expired.

        Args:
            key: Cache key, e.g. ``transcript_key(video_id)``

        Returns:
            The stored value, structurally equal to what was passed to ``set``
        """
        async with self._lock:
            await self._ensure_loaded()
            now = self._clock()
            swept = self._sweep_expired(now)

            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                if swept:
                    await self._save_quietly()
                return None

            entry.last_accessed_at = now
            self._hits += 1
            logger.debug(f"Cache hit for key: {key}")
            await self._save_quietly()
            return copy.deepcopy(entry.value)

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        """
        Store ``value`` under ``key``, replacing any previous entry.

        Args:
            key: Cache key
            value: JSON-serialisable payload
            ttl: Lifetime in milliseconds (default: the cache's default TTL)
        """
        ttl = self._default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        try:
            # Stored as a JSON copy so it reads back the same before and after a reload
            value = json.loads(json.dumps(value))
        except (TypeError, ValueError) as e:
            raise StorageError(f"Cache value for {key} is not JSON serialisable: {e}", key=key) from e

        async with self._lock:
            await self._ensure_loaded()
            now = self._clock()
            self._sweep_expired(now)

            # Re-insert so an overwritten key becomes the newest entry
            self._entries.pop(key, None)
            self._entries[key] = CacheEntry(
                value=value,
                stored_at=now,
                expires_at=now + ttl,
                last_accessed_at=now,
            )
            logger.debug(f"Cache set for key: {key}")
            await self._save()

    async def remove(self, key: str) -> None:
        async with self._lock:
            await self._ensure_loaded()
            self._entries.pop(key, None)
            await self._save()

    async def clear(self) -> None:
        """Remove every entry. Hit/miss counters are kept."""
        async with self._lock:
            await self._ensure_loaded()
            size = len(self._entries)
            self._entries.clear()
            await self._save()
            logger.info(f"Cache cleared: {size} entries removed")

    async def get_stats(self) -> dict[str, Any]:
        """
        Get cache statistics over live (non-expired) entries.

        Returns:
            Dictionary with total_entries, oldest_entry, newest_entry,
            total_size_bytes, hits, misses, hit_rate and miss_rate
        """
        async with self._lock:
            await self._ensure_loaded()
            now = self._clock()
            live = [entry for entry in self._entries.values() if not entry.is_expired(now)]

            total = self._hits + self._misses
            return {
                "total_entries": len(live),
                "oldest_entry": ms_to_datetime(min(e.stored_at for e in live)) if live else None,
                "newest_entry": ms_to_datetime(max(e.stored_at for e in live)) if live else None,
                "total_size_bytes": sum(
                    len(json.dumps(e.value).encode("utf-8")) for e in live
                ),
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": self._hits / total if total > 0 else 0.0,
                "miss_rate": self._misses / total if total > 0 else 0.0,
            }

    def _sweep_expired(self, now: int) -> int:
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug(f"Swept {len(expired)} expired cache entries")
        return len(expired)

    def _log_eviction(self, key: str, entry: CacheEntry) -> None:
        logger.info(f"Cache full ({self._max_entries} entries), evicted oldest key: {key}")

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        self._loaded = True
        try:
            raw = await self._store.read(self.RECORD_KEY)
            if raw is None:
                return
            parsed = json.loads(raw)
            entries = [(key, CacheEntry.model_validate(item)) for key, item in parsed.items()]
        except (StorageError, ValueError, AttributeError) as e:
            logger.error(f"Failed to load cache: {e}")
            return

        # Oldest first so the FIFO order matches stored_at; sort is stable for ties
        entries.sort(key=lambda item: item[1].stored_at)
        for key, entry in entries:
            self._entries[key] = entry
        logger.info(f"Loaded {len(self._entries)} cache entries")

    async def _save(self) -> None:
        payload = {
            key: entry.model_dump(by_alias=True) for key, entry in self._entries.items()
        }
        try:
            data = json.dumps(payload).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise StorageError(f"Failed to serialise cache: {e}", key=self.RECORD_KEY) from e
        await self._store.write(self.RECORD_KEY, data)

    async def _save_quietly(self) -> None:
        try:
            await self._save()
        except StorageError as e:
            logger.warning(f"Failed to persist cache after read: {e}")
