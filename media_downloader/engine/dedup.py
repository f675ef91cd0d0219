"""Content-dedup cache mapping fingerprints to delivered artifacts (Redis)."""

from __future__ import annotations

from typing import AsyncIterator

import structlog
from redis.asyncio import Redis
from redis.exceptions import WatchError

from .jobs import CacheEntry, utcnow


class DedupCache:
    """Fingerprint → artifact reference store.

    Entries carry no Redis TTL: they are removed together with their artifact
    by the retention engine, or explicitly by stale-entry repair / ``flush``.
    """

    def __init__(
        self,
        redis: Redis,
        prefix: str = "media:cache:",
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self.redis = redis
        self.prefix = prefix
        self.logger = logger or structlog.get_logger("media_downloader.dedup")

    def _key(self, fingerprint: str) -> str:
        return f"{self.prefix}{fingerprint}"

    async def lookup(self, fingerprint: str) -> CacheEntry | None:
        raw = await self.redis.get(self._key(fingerprint))
        if raw is None:
            return None
        return CacheEntry.from_json(raw)

    async def insert_if_absent(self, fingerprint: str, artifact_reference: str) -> bool:
        """Store the entry unless one exists; ``True`` only for the single winner."""

        now = utcnow()
        entry = CacheEntry(
            fingerprint=fingerprint,
            artifact_reference=artifact_reference,
            first_seen_at=now,
            last_served_at=now,
        )
        inserted = await self.redis.set(self._key(fingerprint), entry.to_json(), nx=True)
        if not inserted:
            self.logger.info("cache_race_lost", fingerprint=fingerprint)
            return False
        self.logger.info("cache_entry_inserted", fingerprint=fingerprint, artifact=artifact_reference)
        return True

    async def touch(self, fingerprint: str) -> CacheEntry | None:
        """Refresh ``last_served_at``; returns ``None`` if the entry vanished."""

        key = self._key(fingerprint)
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None:
                        await pipe.unwatch()
                        return None
                    entry = CacheEntry.from_json(raw)
                    entry.last_served_at = utcnow()
                    pipe.multi()
                    pipe.set(key, entry.to_json(), xx=True)
                    await pipe.execute()
                    return entry
                except WatchError:
                    continue

    async def remove(
        self,
        fingerprint: str,
        expected_reference: str | None = None,
        reason: str = "evicted",
    ) -> bool:
        """Delete an entry, optionally only while it still points at ``expected_reference``."""

        key = self._key(fingerprint)
        if expected_reference is None:
            removed = bool(await self.redis.delete(key))
        else:
            removed = await self._remove_if_matches(key, expected_reference)
        if removed:
            self.logger.info("cache_entry_evicted", fingerprint=fingerprint, reason=reason)
        return removed

    async def _remove_if_matches(self, key: str, expected_reference: str) -> bool:
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None or CacheEntry.from_json(raw).artifact_reference != expected_reference:
                        await pipe.unwatch()
                        return False
                    pipe.multi()
                    pipe.delete(key)
                    await pipe.execute()
                    return True
                except WatchError:
                    continue

    async def entries(self) -> AsyncIterator[CacheEntry]:
        async for key in self.redis.scan_iter(match=f"{self.prefix}*"):
            raw = await self.redis.get(key)
            if raw is None:
                continue
            yield CacheEntry.from_json(raw)

    async def flush(self) -> int:
        """Drop every entry. Artifacts stay on disk until retention reclaims them."""

        keys = [key async for key in self.redis.scan_iter(match=f"{self.prefix}*")]
        removed = await self.redis.delete(*keys) if keys else 0
        self.logger.warning("cache_flushed", removed=removed, bypasses_retention=True)
        return int(removed)


__all__ = ["DedupCache"]
