"""Inference response cache keyed by a normalized semantic key.

Keys hash the lower-cased, trimmed request text together with a fingerprint
built from an allow-list of context fields, so requests that differ only in
case, surrounding whitespace or sub-bucket numeric detail share one entry.
Read and write failures are logged and treated as misses; the cache never
fails the primary path.
"""

import hashlib
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from config import settings
from models import CacheEntry
from storage import CacheStore

logger = logging.getLogger(__name__)

# Context fields that participate in the key; anything else is ignored.
CONTEXT_FIELDS = (
    "document_type",
    "schema_id",
    "model",
    "works_with_children",
    "works_with_vulnerable_adults",
    "has_overseas_activities",
    "income_band",
    "annual_income",
)

# Numeric context fields rounded down to a bucket size before hashing.
NUMERIC_BUCKETS = {
    "annual_income": 10_000,
}


def context_fingerprint(context: dict[str, Any] | None) -> str:
    """Serialize the allow-listed context fields into a stable string."""
    context = context or {}
    normalized: dict[str, Any] = {}
    for field in CONTEXT_FIELDS:
        value = context.get(field)
        if value is None:
            continue
        bucket = NUMERIC_BUCKETS.get(field)
        if bucket and isinstance(value, (int, float)) and not isinstance(value, bool):
            value = int(value // bucket) * bucket
        normalized[field] = value
    return json.dumps(normalized, sort_keys=True, separators=(",", ":"), default=str)


def make_cache_key(text: str, context: dict[str, Any] | None = None) -> str:
    normalized_text = text.lower().strip()
    return hashlib.sha256((normalized_text + context_fingerprint(context)).encode("utf-8")).hexdigest()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ResponseCache:
    """TTL cache over a CacheStore."""

    def __init__(
        self,
        store: CacheStore,
        ttl_hours: int | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self._ttl = timedelta(hours=ttl_hours if ttl_hours is not None else settings.CACHE_TTL_HOURS)
        self._clock = clock

    async def lookup(self, key: str) -> str | None:
        """Return the cached payload for key, or None on miss/expiry/error."""
        try:
            entry = await self._store.get(key)
            now = self._clock()
            if entry is None:
                return None
            if entry.expires_at <= now:
                await self._store.delete(key)
                return None
            await self._store.record_hit(key, now)
            return entry.payload
        except Exception:
            logger.exception("Cache read error for key %s", key[:12])
            return None

    async def store(self, key: str, payload: str) -> None:
        try:
            now = self._clock()
            await self._store.upsert(CacheEntry(
                key=key,
                payload=payload,
                expires_at=now + self._ttl,
                created_at=now,
            ))
        except Exception:
            logger.exception("Cache write error for key %s", key[:12])

    async def cleanup_expired(self) -> int:
        try:
            deleted = await self._store.delete_expired(self._clock())
        except Exception:
            logger.exception("Cache cleanup error")
            return 0
        if deleted:
            logger.info("Removed %d expired cache entries", deleted)
        return deleted

    async def stats(self) -> dict[str, float]:
        """Entry count, total hits, payload size and average hits per entry."""
        empty = {"total_entries": 0, "total_hits": 0, "cache_size_mb": 0.0, "hit_rate": 0.0}
        try:
            entries = await self._store.live_entries(self._clock())
        except Exception:
            logger.exception("Cache stats error")
            return empty
        if not entries:
            return empty

        total_hits = sum(e.hit_count for e in entries)
        size_mb = sum(len(e.payload) for e in entries) / (1024 * 1024)
        return {
            "total_entries": len(entries),
            "total_hits": total_hits,
            "cache_size_mb": round(size_mb, 2),
            "hit_rate": round(total_hits / len(entries) * 100, 2),
        }
