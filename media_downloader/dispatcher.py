"""Dispatcher: validate requests, publish jobs and route results to requesters."""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, AsyncIterator, Iterable, Protocol

import structlog

from .engine.jobs import FailedJob, Job, Result
from .engine.retry import BulkRetryReport, bulk_retry
from .engine.site_validator import SiteValidator
from .errors import (
    BrokerUnavailable,
    ErrorKind,
    InvalidUrl,
    UnsupportedSource,
    user_message,
)

FINISHED_CACHE_SIZE = 1024
FAILED_JOBS_LIMIT = 1024


class DeliveryClient(Protocol):
    """Chat front-end boundary."""

    async def deliver(self, requester_id: str, artifact_reference: str) -> None: ...

    async def notify(self, requester_id: str, message: str) -> None: ...


class ResultBroker(Protocol):
    async def publish_job(self, job: Job) -> Any: ...

    def results(self, ready: asyncio.Event | None = None) -> AsyncIterator[Result]: ...


@dataclass(slots=True)
class _Pending:
    job: Job
    future: asyncio.Future
    watcher: asyncio.Task | None = None


class Dispatcher:
    """Correlate results back to requesters by ``job_id``.

    Each published job gets a pending correlation with its own timeout. Results
    for job ids this process does not know are ignored.
    """

    def __init__(
        self,
        broker: ResultBroker,
        validator: SiteValidator,
        delivery: DeliveryClient,
        timeout: float = 300.0,
        max_bulk: int = 20,
        max_failed: int = FAILED_JOBS_LIMIT,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self.broker = broker
        self.validator = validator
        self.delivery = delivery
        self.timeout = timeout
        self.max_bulk = max_bulk
        self.max_failed = max_failed
        self.logger = logger or structlog.get_logger("media_downloader.dispatcher")
        self.failed: list[FailedJob] = []
        self._pending: dict[str, _Pending] = {}
        self._finished: OrderedDict[str, Result] = OrderedDict()

    @property
    def pending(self) -> list[str]:
        return list(self._pending)

    async def submit(self, source_url: str, requester_id: str) -> str:
        """Validate and publish; raises InvalidUrl, UnsupportedSource or BrokerUnavailable."""

        parsed, site = self.validator.resolve(source_url)
        job = Job(source_url=parsed.url, resolved_site=site, requester_id=requester_id)
        await self._enqueue(job)
        return job.job_id

    async def handle_request(self, source_url: str, requester_id: str) -> str | None:
        try:
            return await self.submit(source_url, requester_id)
        except (InvalidUrl, UnsupportedSource, BrokerUnavailable) as exc:
            self.logger.info("request_rejected", requester_id=requester_id, error_kind=exc.kind.value, error=exc.message)
            await self.delivery.notify(requester_id, exc.user_message)
            return None

    async def _enqueue(self, job: Job) -> None:
        pending = self._register(job)
        try:
            await self.broker.publish_job(job)
        except BrokerUnavailable:
            self._drop(job.job_id)
            raise
        pending.watcher = asyncio.create_task(self._watch(pending))
        self.logger.info("job_dispatched", job_id=job.job_id, site=job.resolved_site, requester_id=job.requester_id)

    def _register(self, job: Job) -> _Pending:
        pending = _Pending(job=job, future=asyncio.get_running_loop().create_future())
        self._pending[job.job_id] = pending
        return pending

    def _drop(self, job_id: str) -> _Pending | None:
        pending = self._pending.pop(job_id, None)
        if pending is not None and pending.watcher is not None and pending.watcher is not asyncio.current_task():
            pending.watcher.cancel()
        return pending

    def _finish(self, pending: _Pending, result: Result) -> None:
        if not pending.future.done():
            pending.future.set_result(result)
        self._finished[result.job_id] = result
        while len(self._finished) > FINISHED_CACHE_SIZE:
            self._finished.popitem(last=False)

    def _record_failed(self, records: list[FailedJob]) -> None:
        self.failed.extend(records)
        overflow = len(self.failed) - self.max_failed
        if overflow > 0:
            # oldest records go first
            del self.failed[:overflow]
            self.logger.warning("failed_jobs_trimmed", dropped=overflow, kept=len(self.failed))

    async def _watch(self, pending: _Pending) -> None:
        try:
            await asyncio.wait_for(asyncio.shield(pending.future), self.timeout)
        except asyncio.TimeoutError:
            if self._drop(pending.job.job_id) is None:
                return
            job = pending.job
            self.logger.warning("job_timed_out", job_id=job.job_id, timeout=self.timeout)
            result = Result.failed(job, ErrorKind.TIMEOUT, f"No result within {self.timeout}s")
            self._record_failed([FailedJob(job=job, error_kind=ErrorKind.TIMEOUT, message=result.message or "")])
            self._finish(pending, result)
            await self.delivery.notify(job.requester_id, user_message(ErrorKind.TIMEOUT))

    async def on_result(self, result: Result) -> None:
        pending = self._drop(result.job_id)
        if pending is None:
            self.logger.debug("unknown_result_ignored", job_id=result.job_id)
            return
        job = pending.job
        if result.is_delivered and result.artifact_reference:
            self.logger.info("delivered", job_id=job.job_id, artifact=result.artifact_reference)
            await self.delivery.deliver(job.requester_id, result.artifact_reference)
        else:
            kind = result.error_kind or ErrorKind.RETRY_EXHAUSTED
            self.logger.info("failed", job_id=job.job_id, error_kind=kind.value, error=result.message)
            self._record_failed([FailedJob(job=job, error_kind=kind, message=result.message or "")])
            await self.delivery.notify(job.requester_id, user_message(kind))
        self._finish(pending, result)

    async def listen(self, ready: asyncio.Event | None = None) -> None:
        """Feed results from the broker into :meth:`on_result` until cancelled."""

        async for result in self.broker.results(ready):
            try:
                await self.on_result(result)
            except Exception as exc:  # noqa: BLE001
                self.logger.exception("result_handling_failed", job_id=result.job_id, error=str(exc))

    async def wait(self, job_id: str) -> Result:
        if job_id in self._finished:
            return self._finished[job_id]
        pending = self._pending.get(job_id)
        if pending is None:
            raise KeyError(job_id)
        return await asyncio.shield(pending.future)

    async def retry_failed(
        self, records: Iterable[FailedJob] | None = None, max_bulk: int | None = None
    ) -> BulkRetryReport:
        """Re-enqueue failed jobs; records left over are kept for a later call."""

        if records is None:
            records, self.failed = self.failed, []
        report = await bulk_retry(records, self._enqueue, max_bulk or self.max_bulk, logger=self.logger)
        self._record_failed([*report.deferred, *report.failed])
        return report

    async def close(self) -> None:
        watchers = [pending.watcher for pending in self._pending.values() if pending.watcher is not None]
        for watcher in watchers:
            watcher.cancel()
        if watchers:
            await asyncio.gather(*watchers, return_exceptions=True)
        for pending in self._pending.values():
            if not pending.future.done():
                pending.future.cancel()
        self._pending.clear()


__all__ = ["DeliveryClient", "Dispatcher"]
