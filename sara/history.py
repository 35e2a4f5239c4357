"""
Reading history: recently viewed videos, most recent first.

At most one entry per video; adding a video again replaces its entry and
moves it to the front. The list is bounded, dropping the least recently
viewed entries.
"""

import asyncio
import json
import logging

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from sara.errors import StorageError
from sara.storage import DurableStore
from sara.utils import Clock, now_ms

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 50


class HistoryEntry(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    video_id: str
    title: str
    viewed_at: int
    reading_progress: int = Field(default=0, ge=0, le=100)
    favorite: bool = False


class HistoryRecord(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    entries: list[HistoryEntry] = Field(default_factory=list)
    last_updated: int = 0


class HistoryStore:
    """Bounded, deduplicated reading history persisted as one record."""

    RECORD_KEY = "sara_reading_history"

    def __init__(self, store: DurableStore, max_entries: int = DEFAULT_MAX_ENTRIES, clock: Clock = now_ms):
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._store = store
        self._max_entries = max_entries
        self._clock = clock
        self._record: HistoryRecord | None = None
        self._lock = asyncio.Lock()

    async def add_entry(self, video_id: str, title: str) -> HistoryEntry:
        async with self._lock:
            record = await self._load()
            now = self._clock()
            entry = HistoryEntry(video_id=video_id, title=title, viewed_at=now)
            others = [e for e in record.entries if e.video_id != video_id]
            record.entries = [entry, *others][: self._max_entries]
            record.last_updated = now
            await self._save()
            return entry

    async def update_progress(self, video_id: str, progress: int) -> HistoryEntry | None:
        """Set reading progress, clamped to 0..100. Returns None if the video isn't in history."""
        async with self._lock:
            record = await self._load()
            entry = self._find(record, video_id)
            if entry is None:
                return None
            entry.reading_progress = min(max(int(progress), 0), 100)
            record.last_updated = self._clock()
            await self._save()
            return entry

    async def toggle_favorite(self, video_id: str) -> bool:
        """Flip the favorite flag and return the new state (False if the video isn't in history)."""
        entry = await self.toggle_favorite_entry(video_id)
        return False if entry is None else entry.favorite

    async def toggle_favorite_entry(self, video_id: str) -> HistoryEntry | None:
        """Flip the favorite flag and return the updated entry, or None if the video isn't in history."""
        async with self._lock:
            record = await self._load()
            entry = self._find(record, video_id)
            if entry is None:
                return None
            entry.favorite = not entry.favorite
            record.last_updated = self._clock()
            await self._save()
            return entry

    async def get_entries(self) -> list[HistoryEntry]:
        async with self._lock:
            record = await self._load()
            return [entry.model_copy() for entry in record.entries]

    async def get_favorites(self) -> list[HistoryEntry]:
        async with self._lock:
            record = await self._load()
            return [entry.model_copy() for entry in record.entries if entry.favorite]

    async def clear_history(self) -> None:
        async with self._lock:
            record = await self._load()
            record.entries = []
            record.last_updated = self._clock()
            await self._save()

    async def export_history(self) -> str:
        """Serialise the whole history record as indented JSON."""
        async with self._lock:
            record = await self._load()
            return json.dumps(record.model_dump(by_alias=True), indent=2)

    @staticmethod
    def _find(record: HistoryRecord, video_id: str) -> HistoryEntry | None:
        return next((e for e in record.entries if e.video_id == video_id), None)

    async def _load(self) -> HistoryRecord:
        if self._record is not None:
            return self._record
        try:
            raw = await self._store.read(self.RECORD_KEY)
            record = HistoryRecord.model_validate_json(raw) if raw is not None else None
        except (StorageError, ValueError) as e:
            logger.error(f"Error reading history store: {e}")
            record = None

        if record is None:
            record = HistoryRecord(last_updated=self._clock())
        else:
            record.entries = record.entries[: self._max_entries]
        self._record = record
        return record

    async def _save(self) -> None:
        data = self._record.model_dump_json(by_alias=True).encode("utf-8")
        await self._store.write(self.RECORD_KEY, data)
