"""APScheduler wrapper running retention passes on a cron expression."""

from __future__ import annotations

from typing import Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from ..logging_conf import component_logger

RETENTION_JOB_ID = "retention::pass"


class RetentionScheduler:
    """Schedule retention passes in-process; overlapping runs are never started."""

    def __init__(self, scheduler: AsyncIOScheduler | None = None) -> None:
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self.logger = component_logger("scheduler")
        self.started = False

    def start(self) -> None:
        if not self.started:
            self.scheduler.start()
            self.started = True
            self.logger.info("apscheduler_started")

    def shutdown(self) -> None:
        if self.started:
            self.scheduler.shutdown(wait=False)
            self.started = False
            self.logger.info("apscheduler_stopped")

    def schedule_retention(self, cron: str, callback: Callable[[], Awaitable[object]]) -> None:
        trigger = CronTrigger.from_crontab(cron, timezone="UTC")
        self.scheduler.add_job(
            callback,
            trigger=trigger,
            id=RETENTION_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.logger.info("job_scheduled", job=RETENTION_JOB_ID, cron=cron)

    def list_jobs(self) -> list[dict]:
        jobs = []
        for job in self.scheduler.get_jobs():
            jobs.append(
                {
                    "id": job.id,
                    "next_run_time": getattr(job, "next_run_time", None),
                    "trigger": str(job.trigger),
                }
            )
        return jobs


__all__ = ["RETENTION_JOB_ID", "RetentionScheduler"]
