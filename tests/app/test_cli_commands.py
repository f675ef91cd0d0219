from __future__ import annotations

import asyncio
import json
import os
import time
from pathlib import Path
from types import SimpleNamespace

import fakeredis
import fakeredis.aioredis
import pytest
from typer.testing import CliRunner

from media_downloader.app import AppState, app, print_schedule
from media_downloader.engine.dedup import DedupCache
from media_downloader.engine.jobs import FailedJob, Job
from media_downloader.errors import BrokerUnavailable, ErrorKind
from media_downloader.scheduler import RetentionScheduler


def make_state(config, server: fakeredis.FakeServer, logs_dir: Path | None = None) -> AppState:
    async def connect(redis_config):
        return fakeredis.aioredis.FakeRedis(server=server, decode_responses=True)

    repository = SimpleNamespace(locator=SimpleNamespace(logs_dir=logs_dir or Path(".")))
    return AppState(repository=repository, config=config, connect=connect)  # type: ignore[arg-type]


def seed_cache(server: fakeredis.FakeServer, prefix: str, entries: dict[str, str]) -> None:
    async def _seed() -> None:
        redis = fakeredis.aioredis.FakeRedis(server=server, decode_responses=True)
        cache = DedupCache(redis, prefix=prefix)
        for fingerprint, reference in entries.items():
            await cache.insert_if_absent(fingerprint, reference)
        await redis.aclose()

    asyncio.run(_seed())


def count_keys(server: fakeredis.FakeServer, pattern: str) -> int:
    async def _count() -> int:
        redis = fakeredis.aioredis.FakeRedis(server=server, decode_responses=True)
        keys = [key async for key in redis.scan_iter(match=pattern)]
        await redis.aclose()
        return len(keys)

    return asyncio.run(_count())


@pytest.fixture
def server() -> fakeredis.FakeServer:
    return fakeredis.FakeServer()


def test_cache_show_lists_entries(monkeypatch, app_config, server) -> None:
    app_config.storage_dir.mkdir(parents=True, exist_ok=True)
    (app_config.storage_dir / "tiktok%3A1.abc123.mp4").write_bytes(b"data")
    seed_cache(server, app_config.redis.cache_prefix, {"tiktok:1": "/media/a.mp4"})
    state = make_state(app_config, server)
    monkeypatch.setattr("media_downloader.app.build_state", lambda verbose: state)

    result = CliRunner().invoke(app, ["cache", "show"])

    assert result.exit_code == 0, result.stdout
    assert "tiktok:1" in result.stdout
    assert "/media/a.mp4" in result.stdout
    assert "Storage usage: 4 bytes" in result.stdout


def test_cache_flush_removes_entries(monkeypatch, app_config, server) -> None:
    seed_cache(server, app_config.redis.cache_prefix, {"tiktok:1": "/media/a.mp4", "youtube:2": "/media/b.mp4"})
    state = make_state(app_config, server)
    monkeypatch.setattr("media_downloader.app.build_state", lambda verbose: state)

    result = CliRunner().invoke(app, ["cache", "flush", "--yes"])

    assert result.exit_code == 0, result.stdout
    assert "Removed 2 cache entries" in result.stdout
    assert count_keys(server, f"{app_config.redis.cache_prefix}*") == 0


def test_cleaner_run_removes_expired_artifacts(monkeypatch, app_config, server) -> None:
    app_config.storage_dir.mkdir(parents=True, exist_ok=True)
    old = app_config.storage_dir / "tiktok%3A1.abc123.mp4"
    old.write_bytes(b"data")
    stamp = time.time() - 10 * 24 * 60 * 60
    os.utime(old, (stamp, stamp))
    seed_cache(server, app_config.redis.cache_prefix, {"tiktok:1": str(old)})
    state = make_state(app_config, server)
    monkeypatch.setattr("media_downloader.app.build_state", lambda verbose: state)

    result = CliRunner().invoke(app, ["cleaner", "run"])

    assert result.exit_code == 0, result.stdout
    assert "Retention pass" in result.stdout
    assert not old.exists()
    assert count_keys(server, f"{app_config.redis.cache_prefix}*") == 0


def test_dispatch_unsupported_url_exits_with_error(monkeypatch, app_config, server) -> None:
    state = make_state(app_config, server)
    monkeypatch.setattr("media_downloader.app.build_state", lambda verbose: state)

    result = CliRunner().invoke(app, ["dispatch", "https://vimeo.com/123"])

    assert result.exit_code == 1
    assert "[cli]" in result.stdout


def test_retry_failed_requeues_records(monkeypatch, app_config, server, tmp_path) -> None:
    records = [
        FailedJob(job=Job(f"https://example.com/{i}", "example.com", f"user-{i}"), error_kind=ErrorKind.TIMEOUT)
        for i in range(3)
    ]
    path = tmp_path / "failed.jsonl"
    path.write_text("\n".join(json.dumps(record.to_message()) for record in records) + "\nnot json\n")
    state = make_state(app_config, server)
    monkeypatch.setattr("media_downloader.app.build_state", lambda verbose: state)

    result = CliRunner().invoke(app, ["retry-failed", str(path), "--max-bulk", "2"])

    assert result.exit_code == 0, result.stdout
    assert "Line 4 skipped" in result.stdout
    assert "requeued=2 deferred=1 failed=0" in result.stdout


def test_broker_down_exits_with_error(monkeypatch, app_config) -> None:
    async def refuse(redis_config):
        raise BrokerUnavailable("Redis at localhost:6379 unreachable")

    state = AppState(repository=SimpleNamespace(), config=app_config, connect=refuse)  # type: ignore[arg-type]
    monkeypatch.setattr("media_downloader.app.build_state", lambda verbose: state)

    result = CliRunner().invoke(app, ["cache", "show"])

    assert result.exit_code == 1
    assert "Startup failed" in result.stdout


def test_log_show_tails_file(monkeypatch, app_config, server, tmp_path) -> None:
    logs_dir = tmp_path / "logs"
    logs_dir.mkdir()
    (logs_dir / "media_downloader.log").write_text("first\nsecond\nthird\n", encoding="utf-8")
    state = make_state(app_config, server, logs_dir=logs_dir)
    monkeypatch.setattr("media_downloader.app.build_state", lambda verbose: state)

    result = CliRunner().invoke(app, ["log", "show", "--tail", "2"])

    assert result.exit_code == 0, result.stdout
    assert "second" in result.stdout and "third" in result.stdout
    assert "first" not in result.stdout


def test_print_schedule_lists_retention_job(capsys) -> None:
    scheduler = RetentionScheduler()

    async def noop() -> None:
        return None

    scheduler.schedule_retention("0 3 * * *", noop)
    print_schedule(scheduler)

    out = capsys.readouterr().out
    assert "retention::pass" in out
    assert "cron[" in out
