from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from media_downloader.engine.dedup import DedupCache
from media_downloader.engine.jobs import Job, Outcome
from media_downloader.engine.processors import ProcessorRegistry
from media_downloader.engine.retry import RetryPolicy
from media_downloader.engine.worker_pool import WorkerPool
from media_downloader.errors import ContentNotFound, ErrorKind, NetworkError, StorageError
from media_downloader.infra.storage import ArtifactStore

from conftest import FakeBroker, StubProcessor


def make_pool(
    cache: DedupCache,
    store: ArtifactStore,
    policy: RetryPolicy,
    processor: StubProcessor,
    max_file_size: int | None = None,
) -> tuple[WorkerPool, FakeBroker]:
    broker = FakeBroker()
    registry = ProcessorRegistry([processor])
    pool = WorkerPool(broker, cache, registry, store, policy, concurrency=2, max_file_size=max_file_size)
    return pool, broker


def job(requester: str = "alice", site: str = "example.com") -> Job:
    return Job(source_url=f"https://{site}/watch/42", resolved_site=site, requester_id=requester)


def staged_leftovers(store: ArtifactStore) -> list[Path]:
    return list(store.staging_root.iterdir()) if store.staging_root.exists() else []


@pytest.mark.asyncio
async def test_cache_miss_extracts_and_records_entry(cache, store, policy) -> None:
    processor = StubProcessor()
    pool, broker = make_pool(cache, store, policy, processor)

    result = await pool.handle_job(job())

    assert result.outcome is Outcome.DELIVERED
    assert result.fingerprint == "stub:42"
    assert Path(result.artifact_reference).read_bytes() == b"media-bytes"
    entry = await cache.lookup("stub:42")
    assert entry is not None and entry.artifact_reference == result.artifact_reference
    assert broker.published_results == [result]
    assert staged_leftovers(store) == []


@pytest.mark.asyncio
async def test_cache_hit_skips_processor(cache, store, policy) -> None:
    processor = StubProcessor()
    pool, _ = make_pool(cache, store, policy, processor)

    first = await pool.handle_job(job("alice"))
    second = await pool.handle_job(job("bob"))

    assert processor.extract_calls == 1
    assert second.outcome is Outcome.DELIVERED
    assert second.requester_id == "bob"
    assert second.artifact_reference == first.artifact_reference


@pytest.mark.asyncio
async def test_resolve_used_when_url_has_no_fingerprint(cache, store, policy) -> None:
    processor = StubProcessor(fast_path=False)
    pool, _ = make_pool(cache, store, policy, processor)

    await pool.handle_job(job("alice"))
    result = await pool.handle_job(job("bob"))

    assert processor.resolve_calls == 2
    assert processor.extract_calls == 1
    assert result.fingerprint == "stub:42"


@pytest.mark.asyncio
async def test_concurrent_duplicates_share_one_artifact(cache, store, policy) -> None:
    processor = StubProcessor()
    pool, _ = make_pool(cache, store, policy, processor)

    results = await asyncio.gather(*(pool.handle_job(job(f"user-{i}")) for i in range(3)))

    references = {result.artifact_reference for result in results}
    assert len(references) == 1
    assert all(result.outcome is Outcome.DELIVERED for result in results)
    assert [artifact.path for artifact in store.scan()] == [Path(references.pop())]


@pytest.mark.asyncio
async def test_lost_insert_race_discards_own_artifact(cache, store, policy) -> None:
    processor = StubProcessor()
    pool, _ = make_pool(cache, store, policy, processor)
    winner = store.root / "winner.mp4"
    winner.write_bytes(b"winner")
    original_lookup = cache.lookup
    calls = {"n": 0}

    async def racing_lookup(fingerprint: str):
        calls["n"] += 1
        if calls["n"] == 1:
            # the other worker inserts right after our miss
            await cache.insert_if_absent(fingerprint, str(winner))
            return None
        return await original_lookup(fingerprint)

    cache.lookup = racing_lookup  # type: ignore[method-assign]
    result = await pool.handle_job(job())

    assert result.artifact_reference == str(winner)
    assert [artifact.path for artifact in store.scan()] == [winner]


@pytest.mark.asyncio
async def test_unsupported_site_fails_without_extraction(cache, store, policy) -> None:
    processor = StubProcessor()
    pool, broker = make_pool(cache, store, policy, processor)

    result = await pool.handle_job(job(site="vimeo.com"))

    assert result.outcome is Outcome.FAILED
    assert result.error_kind is ErrorKind.UNSUPPORTED_SOURCE
    assert processor.extract_calls == 0
    assert broker.published_results == [result]


@pytest.mark.asyncio
async def test_terminal_failure_is_not_retried(cache, store, policy, recording_sleep) -> None:
    processor = StubProcessor(errors=[ContentNotFound("gone")])
    pool, _ = make_pool(cache, store, policy, processor)

    result = await pool.handle_job(job())

    assert result.error_kind is ErrorKind.CONTENT_NOT_FOUND
    assert processor.extract_calls == 1
    assert recording_sleep.delays == []
    assert await cache.lookup("stub:42") is None


@pytest.mark.asyncio
async def test_transient_failures_exhaust_retries(cache, store, policy) -> None:
    processor = StubProcessor(errors=[NetworkError("reset")] * 3)
    pool, _ = make_pool(cache, store, policy, processor)

    result = await pool.handle_job(job())

    assert result.outcome is Outcome.FAILED
    assert result.error_kind is ErrorKind.RETRY_EXHAUSTED
    assert processor.extract_calls == 3
    assert staged_leftovers(store) == []


@pytest.mark.asyncio
async def test_transient_failure_then_success(cache, store, policy) -> None:
    processor = StubProcessor(errors=[NetworkError("reset")])
    pool, _ = make_pool(cache, store, policy, processor)

    result = await pool.handle_job(job())

    assert result.outcome is Outcome.DELIVERED
    assert processor.extract_calls == 2


@pytest.mark.asyncio
async def test_storage_failure_records_no_entry(cache, store, policy, monkeypatch: pytest.MonkeyPatch) -> None:
    processor = StubProcessor()
    pool, _ = make_pool(cache, store, policy, processor)

    def broken_commit(fingerprint, staged):
        raise StorageError("disk full")

    monkeypatch.setattr(store, "commit", broken_commit)
    result = await pool.handle_job(job())

    assert result.error_kind is ErrorKind.STORAGE_ERROR
    assert await cache.lookup("stub:42") is None
    assert staged_leftovers(store) == []


@pytest.mark.asyncio
async def test_stale_entry_is_repaired(cache, store, policy) -> None:
    processor = StubProcessor()
    pool, _ = make_pool(cache, store, policy, processor)
    await cache.insert_if_absent("stub:42", str(store.root / "vanished.mp4"))

    result = await pool.handle_job(job())

    assert result.outcome is Outcome.DELIVERED
    assert processor.extract_calls == 1
    entry = await cache.lookup("stub:42")
    assert entry is not None and entry.artifact_reference == result.artifact_reference
    assert Path(result.artifact_reference).exists()


@pytest.mark.asyncio
async def test_oversized_artifact_fails(cache, store, policy) -> None:
    processor = StubProcessor(payload=b"x" * 100)
    pool, _ = make_pool(cache, store, policy, processor, max_file_size=10)

    result = await pool.handle_job(job())

    assert result.error_kind is ErrorKind.FILE_SIZE_EXCEEDED
    assert store.scan() == []
    assert await cache.lookup("stub:42") is None


@pytest.mark.asyncio
async def test_unexpected_exception_becomes_failed_result(cache, store, policy) -> None:
    processor = StubProcessor(errors=[RuntimeError("boom")])
    pool, broker = make_pool(cache, store, policy, processor)

    result = await pool.handle_job(job())

    assert result.outcome is Outcome.FAILED
    assert broker.published_results == [result]


@pytest.mark.asyncio
async def test_run_consumes_broker_jobs(cache, store, policy) -> None:
    processor = StubProcessor()
    pool, broker = make_pool(cache, store, policy, processor)
    ready = asyncio.Event()
    runner = asyncio.create_task(pool.run(ready))
    await ready.wait()

    await broker.publish_job(job("alice"))
    await broker.publish_job(job("bob"))
    for _ in range(100):
        if len(broker.published_results) == 2:
            break
        await asyncio.sleep(0.01)
    runner.cancel()
    with pytest.raises(asyncio.CancelledError):
        await runner

    assert {result.requester_id for result in broker.published_results} == {"alice", "bob"}


@pytest.mark.asyncio
async def test_unusable_staging_dir_reports_storage_error(cache, store, policy) -> None:
    processor = StubProcessor()
    pool, broker = make_pool(cache, store, policy, processor)
    blocked = job()
    (store.staging_root / blocked.job_id).write_bytes(b"in the way")

    result = await pool.handle_job(blocked)

    assert result.error_kind is ErrorKind.STORAGE_ERROR
    assert processor.extract_calls == 0
    assert broker.published_results == [result]
