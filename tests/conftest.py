"""Shared fixtures: in-memory Redis, artifact store, stub broker and processor."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, AsyncIterator, Iterable

import fakeredis
import fakeredis.aioredis
import pytest

from media_downloader.config import AppConfig, ConfigLocator, ConfigRepository, RetryConfig
from media_downloader.engine.dedup import DedupCache
from media_downloader.engine.jobs import Artifact, Job, Result
from media_downloader.engine.processors.base import BaseProcessor, Resolution
from media_downloader.engine.retry import RetryPolicy
from media_downloader.errors import BrokerUnavailable
from media_downloader.infra.storage import ArtifactStore


class RecordingSleep:
    """Async sleep replacement remembering requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeBroker:
    """In-memory stand-in for RedisBroker."""

    def __init__(self) -> None:
        self.published_jobs: list[Job] = []
        self.published_results: list[Result] = []
        self.fail_publish = False
        self._jobs: asyncio.Queue[Job] = asyncio.Queue()
        self._results: asyncio.Queue[Result] = asyncio.Queue()

    async def publish_job(self, job: Job) -> int:
        if self.fail_publish:
            raise BrokerUnavailable("broker down")
        self.published_jobs.append(job)
        await self._jobs.put(job)
        return 1

    async def publish_result(self, result: Result) -> int:
        if self.fail_publish:
            raise BrokerUnavailable("broker down")
        self.published_results.append(result)
        await self._results.put(result)
        return 1

    async def jobs(self, ready: asyncio.Event | None = None) -> AsyncIterator[Job]:
        if ready is not None:
            ready.set()
        while True:
            yield await self._jobs.get()

    async def results(self, ready: asyncio.Event | None = None) -> AsyncIterator[Result]:
        if ready is not None:
            ready.set()
        while True:
            yield await self._results.get()


class StubProcessor(BaseProcessor):
    """Processor writing a small file; can be told to fail a number of times."""

    name = "stub"
    domains = ("example.com",)

    def __init__(
        self,
        fast_path: bool = True,
        errors: Iterable[Exception] = (),
        payload: bytes = b"media-bytes",
        fingerprint: str = "stub:42",
    ) -> None:
        self.fast_path = fast_path
        self.errors = list(errors)
        self.payload = payload
        self.fingerprint = fingerprint
        self.resolve_calls = 0
        self.extract_calls = 0

    def fingerprint_from_url(self, url: str) -> str | None:
        return self.fingerprint if self.fast_path else None

    async def resolve(self, url: str) -> Resolution:
        self.resolve_calls += 1
        return Resolution(fingerprint=self.fingerprint, canonical_url=url)

    async def extract(self, url: str, staging_dir: Path, resolution: Resolution | None = None) -> Artifact:
        self.extract_calls += 1
        if self.errors:
            raise self.errors.pop(0)
        target = staging_dir / "media.mp4"
        target.write_bytes(self.payload)
        return self._staged(target, self.fingerprint)


@pytest.fixture
def fake_redis() -> Any:
    return fakeredis.aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def cache(fake_redis) -> DedupCache:
    return DedupCache(fake_redis, prefix="test:cache:")


@pytest.fixture
def store(tmp_path: Path) -> ArtifactStore:
    artifact_store = ArtifactStore(tmp_path / "media")
    artifact_store.ensure()
    return artifact_store


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def policy(recording_sleep: RecordingSleep) -> RetryPolicy:
    return RetryPolicy(max_attempts=3, base_delay=1.0, multiplier=2.0, max_delay=10.0, jitter=0.0, sleep=recording_sleep)


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    return AppConfig(
        storage_dir=tmp_path / "media",
        supported_sites=["example.com", "tiktok.com", "youtube.com", "youtu.be"],
        retry=RetryConfig(base_delay=0.0, max_delay=0.0, jitter=0.0),
    )


@pytest.fixture
def temp_config_repository(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterable[ConfigRepository]:
    monkeypatch.setenv("MEDIA_DOWNLOADER_HOME", str(tmp_path))
    monkeypatch.delenv("MEDIA_DOWNLOADER_CONFIG", raising=False)
    locator = ConfigLocator(project_root=tmp_path)
    repository = ConfigRepository(locator)
    yield repository
