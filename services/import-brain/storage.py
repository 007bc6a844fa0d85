"""Persistence surfaces consumed by the pipeline, with in-process implementations.

Each store is passed explicitly to the component that uses it so that tests
and deployments can substitute isolated or externalized instances. The
in-memory stores guard their state with an asyncio lock and hand out copies,
so callers never mutate stored records in place.
"""

import asyncio
from datetime import datetime
from typing import Protocol

from models import (
    CacheEntry,
    CommittedRecord,
    RateWindow,
    ReviewItem,
    Task,
)


class TaskStore(Protocol):
    async def insert(self, task: Task) -> None: ...

    async def get(self, task_id: str) -> Task | None: ...

    async def save(self, task: Task) -> None: ...

    async def all(self) -> list[Task]: ...


class CacheStore(Protocol):
    async def get(self, key: str) -> CacheEntry | None: ...

    async def upsert(self, entry: CacheEntry) -> None: ...

    async def record_hit(self, key: str, accessed_at: datetime) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def delete_expired(self, now: datetime) -> int: ...

    async def live_entries(self, now: datetime) -> list[CacheEntry]: ...


class RateLimitStore(Protocol):
    async def consume(self, actor_id: str, window_start: float, ceiling: int) -> RateWindow | None:
        """Atomically count one request in the actor's window.

        Returns the updated window, or None when the window is already at the ceiling.
        """
        ...


class ReviewStore(Protocol):
    async def insert(self, item: ReviewItem) -> None: ...

    async def get(self, item_id: str) -> ReviewItem | None: ...

    async def save(self, item: ReviewItem) -> None: ...

    async def all(self) -> list[ReviewItem]: ...


class RecordSink(Protocol):
    """Downstream storage that accepted records are handed to."""

    async def commit(self, record: CommittedRecord) -> None: ...

    async def commit_many(self, records: list[CommittedRecord]) -> None:
        """Commit every record or none of them."""
        ...


class InMemoryTaskStore:
    def __init__(self):
        self._tasks: dict[str, Task] = {}
        self._lock = asyncio.Lock()

    async def insert(self, task: Task) -> None:
        async with self._lock:
            self._tasks[task.id] = task.model_copy(deep=True)

    async def get(self, task_id: str) -> Task | None:
        async with self._lock:
            task = self._tasks.get(task_id)
            return task.model_copy(deep=True) if task else None

    async def save(self, task: Task) -> None:
        async with self._lock:
            self._tasks[task.id] = task.model_copy(deep=True)

    async def all(self) -> list[Task]:
        async with self._lock:
            return [t.model_copy(deep=True) for t in self._tasks.values()]


class InMemoryCacheStore:
    def __init__(self):
        self._entries: dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> CacheEntry | None:
        async with self._lock:
            entry = self._entries.get(key)
            return entry.model_copy() if entry else None

    async def upsert(self, entry: CacheEntry) -> None:
        # Last write wins: payloads under one key are equivalent.
        async with self._lock:
            self._entries[entry.key] = entry.model_copy()

    async def record_hit(self, key: str, accessed_at: datetime) -> None:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                entry.hit_count += 1
                entry.last_accessed_at = accessed_at

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)

    async def delete_expired(self, now: datetime) -> int:
        async with self._lock:
            expired = [k for k, e in self._entries.items() if e.expires_at <= now]
            for key in expired:
                del self._entries[key]
            return len(expired)

    async def live_entries(self, now: datetime) -> list[CacheEntry]:
        async with self._lock:
            return [e.model_copy() for e in self._entries.values() if e.expires_at > now]


class InMemoryRateLimitStore:
    def __init__(self):
        self._windows: dict[str, RateWindow] = {}
        self._lock = asyncio.Lock()

    async def consume(self, actor_id: str, window_start: float, ceiling: int) -> RateWindow | None:
        async with self._lock:
            window = self._windows.get(actor_id)
            if window is None or window.window_start < window_start:
                window = RateWindow(actor_id=actor_id, window_start=window_start, count=0)
                self._windows[actor_id] = window
            if window.count >= ceiling:
                return None
            window.count += 1
            return window.model_copy()

    async def window(self, actor_id: str) -> RateWindow | None:
        async with self._lock:
            window = self._windows.get(actor_id)
            return window.model_copy() if window else None


class InMemoryReviewStore:
    def __init__(self):
        self._items: dict[str, ReviewItem] = {}
        self._lock = asyncio.Lock()

    async def insert(self, item: ReviewItem) -> None:
        async with self._lock:
            self._items[item.id] = item.model_copy(deep=True)

    async def get(self, item_id: str) -> ReviewItem | None:
        async with self._lock:
            item = self._items.get(item_id)
            return item.model_copy(deep=True) if item else None

    async def save(self, item: ReviewItem) -> None:
        async with self._lock:
            self._items[item.id] = item.model_copy(deep=True)

    async def all(self) -> list[ReviewItem]:
        async with self._lock:
            return [i.model_copy(deep=True) for i in self._items.values()]


class InMemoryRecordSink:
    def __init__(self):
        self.records: list[CommittedRecord] = []
        self._lock = asyncio.Lock()

    async def commit(self, record: CommittedRecord) -> None:
        async with self._lock:
            self.records.append(record.model_copy(deep=True))

    async def commit_many(self, records: list[CommittedRecord]) -> None:
        async with self._lock:
            self.records.extend(r.model_copy(deep=True) for r in records)
