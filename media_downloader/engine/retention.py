"""Retention engine: evict expired artifacts together with their cache entries."""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError, WatchError

from ..errors import MediaDownloaderError, StorageError
from ..infra.storage import ArtifactStore
from ..telemetry import span
from .dedup import DedupCache
from .fetcher import Fetcher
from .jobs import Artifact, utcnow
from .retry import RetryPolicy


@dataclass(slots=True)
class RetentionReport:
    started_at: datetime
    scanned: int = 0
    removed: list[str] = field(default_factory=list)
    dangling: list[str] = field(default_factory=list)
    failures: list[tuple[str, str]] = field(default_factory=list)
    heartbeat: str | None = None
    skipped: bool = False

    def as_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "scanned": self.scanned,
            "removed": len(self.removed),
            "dangling": len(self.dangling),
            "failures": len(self.failures),
            "heartbeat": self.heartbeat,
            "skipped": self.skipped,
        }


class RetentionEngine:
    """Single-pass cleaner; at most one pass runs at a time across processes."""

    def __init__(
        self,
        store: ArtifactStore,
        cache: DedupCache,
        redis: Redis,
        horizon: timedelta,
        lock_key: str = "media:retention:lock",
        lock_ttl: int = 600,
        healthcheck_url: str | None = None,
        fetcher: Fetcher | None = None,
        heartbeat_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = utcnow,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.redis = redis
        self.horizon = horizon
        self.lock_key = lock_key
        self.lock_ttl = lock_ttl
        self.healthcheck_url = healthcheck_url
        self.fetcher = fetcher
        self.heartbeat_policy = heartbeat_policy or RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=5.0)
        self.clock = clock
        self.logger = logger or structlog.get_logger("media_downloader.retention")
        self._local_lock = asyncio.Lock()

    def is_expired(self, artifact: Artifact, pass_started_at: datetime) -> bool:
        if artifact.created_at >= pass_started_at:
            return False
        return pass_started_at - artifact.created_at > self.horizon

    async def run_pass(self) -> RetentionReport:
        if self._local_lock.locked():
            return self._skipped("in_process")
        async with self._local_lock:
            token = uuid.uuid4().hex
            acquired = await self.redis.set(self.lock_key, token, nx=True, ex=self.lock_ttl)
            if not acquired:
                return self._skipped("lock_held")
            try:
                async with span("retention_pass", self.logger):
                    return await self._pass()
            finally:
                await self._release(token)

    def _skipped(self, reason: str) -> RetentionReport:
        self.logger.info("retention_pass_skipped", reason=reason)
        return RetentionReport(started_at=self.clock(), skipped=True)

    async def _release(self, token: str) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(self.lock_key)
                    if await pipe.get(self.lock_key) != token:
                        await pipe.unwatch()
                        return
                    pipe.multi()
                    pipe.delete(self.lock_key)
                    await pipe.execute()
                    return
                except WatchError:
                    continue

    async def _pass(self) -> RetentionReport:
        started = self.clock()
        report = RetentionReport(started_at=started)
        artifacts = await asyncio.to_thread(self.store.scan)
        report.scanned = len(artifacts)

        for artifact in artifacts:
            if not self.is_expired(artifact, started):
                continue
            try:
                await asyncio.to_thread(self.store.delete, artifact.reference)
            except StorageError as exc:
                # entry kept: it still points at a live artifact
                self.logger.error("artifact_delete_failed", path=artifact.reference, error=exc.message)
                report.failures.append((artifact.reference, exc.message))
                continue
            try:
                await self.cache.remove(artifact.fingerprint, expected_reference=artifact.reference, reason="retention")
            except RedisError as exc:
                # left dangling for the sweep below
                self.logger.error("cache_evict_failed", fingerprint=artifact.fingerprint, error=str(exc))
                report.failures.append((artifact.reference, str(exc)))
                continue
            report.removed.append(artifact.fingerprint)

        try:
            await self._sweep_dangling(started, report)
        except RedisError as exc:
            self.logger.error("dangling_sweep_failed", error=str(exc))
            report.failures.append((self.cache.prefix, str(exc)))

        self.logger.info(
            "retention_pass_finished",
            scanned=report.scanned,
            removed=len(report.removed),
            dangling=len(report.dangling),
            failures=len(report.failures),
        )
        if self.healthcheck_url:
            report.heartbeat = await self._heartbeat()
        return report

    async def _sweep_dangling(self, started: datetime, report: RetentionReport) -> None:
        async for entry in self.cache.entries():
            if entry.first_seen_at >= started:
                continue
            if await asyncio.to_thread(self.store.exists, entry.artifact_reference):
                continue
            try:
                removed = await self.cache.remove(
                    entry.fingerprint, expected_reference=entry.artifact_reference, reason="dangling"
                )
            except RedisError as exc:
                self.logger.error("cache_evict_failed", fingerprint=entry.fingerprint, error=str(exc))
                report.failures.append((entry.artifact_reference, str(exc)))
                continue
            if removed:
                report.dangling.append(entry.fingerprint)

    async def _heartbeat(self) -> str:
        if self.fetcher is None:
            return "skipped"
        try:
            await self.heartbeat_policy.run(self.fetcher.ping, self.healthcheck_url)
        except MediaDownloaderError as exc:
            self.logger.warning("heartbeat_failed", url=self.healthcheck_url, error=exc.message)
            return "failed"
        self.logger.info("heartbeat_sent", url=self.healthcheck_url)
        return "sent"


__all__ = ["RetentionEngine", "RetentionReport"]
