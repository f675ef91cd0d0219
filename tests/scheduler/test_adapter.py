from __future__ import annotations

import pytest
from apscheduler.triggers.cron import CronTrigger

from media_downloader.scheduler import RetentionScheduler
from media_downloader.scheduler.apsched_adapter import RETENTION_JOB_ID


class StubScheduler:
    def __init__(self) -> None:
        self.calls: list[dict] = []

    def add_job(self, callback, trigger, id, replace_existing, max_instances, coalesce):  # noqa: ANN001
        self.calls.append(
            {
                "id": id,
                "trigger": trigger,
                "callback": callback,
                "replace_existing": replace_existing,
                "max_instances": max_instances,
                "coalesce": coalesce,
            }
        )

    def get_jobs(self):
        return []

    def start(self):
        self.calls.append({"event": "started"})

    def shutdown(self, wait=False):  # noqa: ARG002
        self.calls.append({"event": "shutdown"})


async def _pass() -> None:
    return None


def test_schedule_retention_never_overlaps() -> None:
    stub = StubScheduler()
    adapter = RetentionScheduler(scheduler=stub)  # type: ignore[arg-type]

    adapter.schedule_retention("0 * * * *", _pass)

    call = stub.calls[0]
    assert call["id"] == RETENTION_JOB_ID
    assert isinstance(call["trigger"], CronTrigger)
    assert call["max_instances"] == 1
    assert call["coalesce"] is True
    assert call["callback"] is _pass


def test_start_and_shutdown_are_idempotent() -> None:
    stub = StubScheduler()
    adapter = RetentionScheduler(scheduler=stub)  # type: ignore[arg-type]
    adapter.start()
    adapter.start()
    adapter.shutdown()
    adapter.shutdown()
    assert stub.calls == [{"event": "started"}, {"event": "shutdown"}]


def test_invalid_cron_expression_rejected() -> None:
    adapter = RetentionScheduler(scheduler=StubScheduler())  # type: ignore[arg-type]
    with pytest.raises(ValueError):
        adapter.schedule_retention("every hour", _pass)


@pytest.mark.asyncio
async def test_real_scheduler_lists_retention_job() -> None:
    adapter = RetentionScheduler()
    adapter.schedule_retention("*/5 * * * *", _pass)
    adapter.start()
    try:
        jobs = adapter.list_jobs()
    finally:
        adapter.shutdown()
    assert [job["id"] for job in jobs] == [RETENTION_JOB_ID]
    assert jobs[0]["next_run_time"] is not None
