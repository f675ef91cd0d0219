"""Retry policy shared by extraction, publishing, heartbeat and bulk retry."""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Sequence, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    stop_after_delay,
)

from ..config import RetryConfig
from ..errors import MediaDownloaderError, RetryExhausted
from .jobs import FailedJob, Job

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


def is_retryable(exc: BaseException) -> bool:
    """Default predicate: transient processor errors carry ``retryable=True``."""

    return bool(getattr(exc, "retryable", False))


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded exponential backoff with jitter.

    ``max_attempts`` counts every call, the first one included. Errors the
    ``retryable`` predicate rejects propagate unchanged on first occurrence;
    running out of attempts (or of ``total_timeout``) raises
    :class:`RetryExhausted` wrapping the last error.
    """

    max_attempts: int = 3
    base_delay: float = 3.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.5
    total_timeout: float | None = None
    retryable: Callable[[BaseException], bool] = is_retryable
    sleep: Sleep = asyncio.sleep
    logger: Any = field(default=None, compare=False)

    @classmethod
    def from_config(cls, config: RetryConfig, **overrides: Any) -> "RetryPolicy":
        values: dict[str, Any] = {
            "max_attempts": config.max_attempts,
            "base_delay": config.base_delay,
            "multiplier": config.multiplier,
            "max_delay": config.max_delay,
            "jitter": config.jitter,
            "total_timeout": config.total_timeout,
        }
        values.update(overrides)
        return cls(**values)

    def backoff(self, attempt: int, error: BaseException | None = None, previous: float = 0.0) -> float:
        """Delay before the attempt following ``attempt`` (1-based).

        Never shorter than ``previous``, the delay used before the current
        attempt, so jitter or an earlier ``retry_after`` hint cannot make the
        sequence decrease.
        """

        exponent = max(attempt - 1, 0)
        delay = self.base_delay * (self.multiplier**exponent)
        if self.jitter:
            delay += random.uniform(0, self.jitter * self.base_delay)
        retry_after = getattr(error, "retry_after", None)
        if retry_after:
            delay = max(delay, float(retry_after))
        return min(self.max_delay, max(delay, previous))

    def _waiter(self) -> Callable[[RetryCallState], float]:
        previous = 0.0

        def wait(state: RetryCallState) -> float:
            nonlocal previous
            error = state.outcome.exception() if state.outcome else None
            previous = self.backoff(state.attempt_number, error, previous)
            return previous

        return wait

    def _before_sleep(self, state: RetryCallState) -> None:
        error = state.outcome.exception() if state.outcome else None
        delay = state.next_action.sleep if state.next_action else 0.0
        log = self.logger or structlog.get_logger("media_downloader.retry")
        log.info(
            "retrying",
            attempt=state.attempt_number,
            max_attempts=self.max_attempts,
            delay=round(delay, 3),
            error_kind=getattr(getattr(error, "kind", None), "value", type(error).__name__),
            error=str(error),
        )

    def _stop(self):
        stop = stop_after_attempt(self.max_attempts)
        if self.total_timeout is not None:
            stop = stop | stop_after_delay(self.total_timeout)
        return stop

    async def run(self, operation: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        retrying = AsyncRetrying(
            stop=self._stop(),
            wait=self._waiter(),
            retry=retry_if_exception(self.retryable),
            sleep=self.sleep,
            before_sleep=self._before_sleep,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await operation(*args, **kwargs)
        except RetryError as exc:
            last = exc.last_attempt
            raise RetryExhausted(last.exception(), last.attempt_number) from last.exception()
        raise RetryExhausted(None, 0)  # pragma: no cover - AsyncRetrying always yields


@dataclass(slots=True)
class BulkRetryReport:
    requeued: list[Job] = field(default_factory=list)
    deferred: list[FailedJob] = field(default_factory=list)
    failed: list[FailedJob] = field(default_factory=list)


async def bulk_retry(
    records: Iterable[FailedJob],
    publish: Callable[[Job], Awaitable[Any]],
    max_bulk: int,
    logger: Any = None,
) -> BulkRetryReport:
    """Re-enqueue failed jobs as fresh jobs for the same requesters.

    At most ``max_bulk`` records are published; the rest come back as
    ``deferred``. A record whose publish fails is returned in ``failed``.
    """

    log = logger or structlog.get_logger("media_downloader.retry")
    pending: Sequence[FailedJob] = list(records)
    report = BulkRetryReport(deferred=list(pending[max_bulk:]))
    for record in pending[:max_bulk]:
        renewed = record.job.renew()
        try:
            await publish(renewed)
        except MediaDownloaderError as exc:
            log.warning("bulk_retry_publish_failed", job_id=record.job.job_id, error=str(exc))
            report.failed.append(record)
            continue
        report.requeued.append(renewed)
    log.info(
        "bulk_retry_finished",
        requeued=len(report.requeued),
        deferred=len(report.deferred),
        failed=len(report.failed),
    )
    return report


__all__ = ["BulkRetryReport", "RetryPolicy", "bulk_retry", "is_retryable"]
