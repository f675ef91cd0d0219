"""Worker pool: consume jobs, consult the dedup cache, extract, publish results."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, AsyncIterator, Protocol

import structlog

from ..errors import ErrorKind, FileSizeExceeded, MediaDownloaderError, UnsupportedSource
from ..infra.storage import ArtifactStore
from ..telemetry import bind, span
from .dedup import DedupCache
from .jobs import Artifact, Job, Result
from .processors import ProcessorRegistry
from .retry import RetryPolicy


class JobBroker(Protocol):
    def jobs(self, ready: asyncio.Event | None = None) -> AsyncIterator[Job]: ...

    async def publish_result(self, result: Result) -> Any: ...


@dataclass(slots=True)
class _JobState:
    fingerprint: str | None = None


def oversized(artifact: Artifact, max_bytes: int) -> bool:
    if artifact.is_collection:
        return any(item.stat().st_size > max_bytes for item in artifact.path.rglob("*") if item.is_file())
    return artifact.size > max_bytes


class WorkerPool:
    """N asyncio tasks draining one queue fed by a single job subscription."""

    def __init__(
        self,
        broker: JobBroker,
        cache: DedupCache,
        registry: ProcessorRegistry,
        store: ArtifactStore,
        policy: RetryPolicy,
        concurrency: int = 4,
        max_file_size: int | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self.broker = broker
        self.cache = cache
        self.registry = registry
        self.store = store
        self.policy = policy
        self.concurrency = concurrency
        self.max_file_size = max_file_size
        self.logger = logger or structlog.get_logger("media_downloader.worker")
        self._tasks: list[asyncio.Task] = []

    async def run(self, ready: asyncio.Event | None = None) -> None:
        """Consume jobs until cancelled."""

        queue: asyncio.Queue[Job] = asyncio.Queue(maxsize=self.concurrency * 4)
        self._tasks = [
            asyncio.create_task(self._drain(queue), name=f"worker-{index}") for index in range(self.concurrency)
        ]
        self.logger.info("worker_pool_started", concurrency=self.concurrency)
        try:
            async for job in self.broker.jobs(ready):
                await queue.put(job)
        finally:
            await self.stop()

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            self.logger.info("worker_pool_stopped", cancelled=len(tasks))

    async def _drain(self, queue: asyncio.Queue[Job]) -> None:
        while True:
            job = await queue.get()
            try:
                await self.handle_job(job)
            finally:
                queue.task_done()

    async def handle_job(self, job: Job) -> Result:
        """Run the full pipeline for one job and publish its result."""

        state = _JobState()
        async with span(
            "job",
            self.logger,
            job_id=job.job_id,
            site=job.resolved_site,
            requester_id=job.requester_id,
            fingerprint=None,
        ):
            self.logger.info("job_received", url=job.source_url)
            try:
                result = await self._pipeline(job, state)
            except MediaDownloaderError as exc:
                self.logger.warning("failed", error_kind=exc.kind.value, error=exc.message)
                result = Result.failed(job, exc.kind, exc.message, fingerprint=state.fingerprint)
            except Exception as exc:  # noqa: BLE001
                self.logger.exception("job_crashed", error=str(exc))
                result = Result.failed(job, ErrorKind.RETRY_EXHAUSTED, str(exc), fingerprint=state.fingerprint)
            await self._publish(result)
        return result

    async def _publish(self, result: Result) -> None:
        try:
            await self.broker.publish_result(result)
        except MediaDownloaderError as exc:
            # the dispatcher's timeout tells the requester
            self.logger.error("result_publish_failed", job_id=result.job_id, error=exc.message)

    async def _pipeline(self, job: Job, state: _JobState) -> Result:
        fingerprint = self.registry.fingerprint_from_url(job.source_url, job.resolved_site)
        if fingerprint is not None:
            self._set_fingerprint(state, fingerprint)
            cached = await self._cached(job, fingerprint)
            if cached is not None:
                return cached

        processor = self.registry.resolve(job.resolved_site)
        if processor is None:
            raise UnsupportedSource(f"No processor for {job.resolved_site}")

        resolution = None
        if fingerprint is None:
            resolution = await self.policy.run(processor.resolve, job.source_url)
            fingerprint = resolution.fingerprint
            self._set_fingerprint(state, fingerprint)
            cached = await self._cached(job, fingerprint)
            if cached is not None:
                return cached

        self.logger.info("extracting", processor=processor.name)
        with self.store.staging(job.job_id) as staging_dir:
            artifact = await self.policy.run(processor.extract, job.source_url, staging_dir, resolution)
            if self.max_file_size is not None and oversized(artifact, self.max_file_size):
                raise FileSizeExceeded(f"{artifact.size} bytes exceeds {self.max_file_size}")
            committed = await asyncio.to_thread(self.store.commit, fingerprint, artifact.path)

        reference = await self._claim(fingerprint, committed.reference)
        self.logger.info("delivered", artifact=reference, size=committed.size)
        return Result.delivered(job, reference, fingerprint)

    def _set_fingerprint(self, state: _JobState, fingerprint: str) -> None:
        state.fingerprint = fingerprint
        bind(fingerprint=fingerprint)

    async def _cached(self, job: Job, fingerprint: str) -> Result | None:
        entry = await self.cache.lookup(fingerprint)
        if entry is None:
            return None
        live = await asyncio.to_thread(self.store.exists, entry.artifact_reference)
        if not live:
            self.logger.warning("stale_cache_entry", artifact=entry.artifact_reference)
            await self.cache.remove(fingerprint, expected_reference=entry.artifact_reference, reason="stale")
            return None
        if await self.cache.touch(fingerprint) is None:
            return None
        self.logger.info("cache_hit", artifact=entry.artifact_reference)
        return Result.delivered(job, entry.artifact_reference, fingerprint)

    async def _claim(self, fingerprint: str, reference: str) -> str:
        """Insert our artifact or adopt the concurrent winner's."""

        while True:
            if await self.cache.insert_if_absent(fingerprint, reference):
                return reference
            winner = await self.cache.lookup(fingerprint)
            if winner is not None:
                await asyncio.to_thread(self.store.discard, reference)
                return winner.artifact_reference


__all__ = ["WorkerPool", "oversized"]
