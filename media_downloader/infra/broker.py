"""Redis pub/sub transport for jobs and results."""

from __future__ import annotations

import asyncio
import contextlib
import json
from typing import Any, AsyncIterator

import structlog
from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..config import RedisConfig
from ..engine.jobs import Job, Result
from ..engine.retry import RetryPolicy
from ..errors import BrokerUnavailable, RetryExhausted


def is_transient_redis_error(exc: BaseException) -> bool:
    return isinstance(exc, (RedisConnectionError, RedisTimeoutError))


class RedisBroker:
    """Best-effort delivery: subscribers offline at publish time miss the message."""

    def __init__(
        self,
        redis: Redis,
        config: RedisConfig,
        publish_policy: RetryPolicy | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self.redis = redis
        self.config = config
        self.logger = logger or structlog.get_logger("media_downloader.broker")
        self.publish_policy = publish_policy or RetryPolicy(
            max_attempts=3, base_delay=0.5, max_delay=2.0, retryable=is_transient_redis_error
        )

    async def publish(self, channel: str, payload: dict[str, Any]) -> int:
        message = json.dumps(payload, ensure_ascii=False)
        try:
            receivers = await self.publish_policy.run(self.redis.publish, channel, message)
        except RetryExhausted as exc:
            raise BrokerUnavailable(f"Publishing to {channel} failed: {exc.last_error}") from exc
        except RedisError as exc:
            raise BrokerUnavailable(f"Publishing to {channel} failed: {exc}") from exc
        self.logger.debug("published", channel=channel, receivers=receivers)
        return int(receivers)

    async def publish_job(self, job: Job) -> int:
        return await self.publish(self.config.job_channel, job.to_message())

    async def publish_result(self, result: Result) -> int:
        return await self.publish(self.config.result_channel, result.to_message())

    async def subscribe(
        self, channel: str, ready: asyncio.Event | None = None
    ) -> AsyncIterator[dict[str, Any]]:
        """Yield decoded messages from ``channel``; malformed payloads are skipped.

        A dropped connection is resubscribed with the publish policy's backoff;
        ``max_attempts`` consecutive failures raise :class:`BrokerUnavailable`.
        Messages published while reconnecting are lost.
        """

        failures = 0
        delay = 0.0
        while True:
            pubsub = self.redis.pubsub(ignore_subscribe_messages=True)
            try:
                await pubsub.subscribe(channel)
                self.logger.info("subscribed", channel=channel)
                if ready is not None:
                    ready.set()
                async for message in pubsub.listen():
                    failures, delay = 0, 0.0
                    payload = self._decode(channel, message)
                    if payload is not None:
                        yield payload
                return
            except RedisError as exc:
                failures += 1
                if failures >= self.publish_policy.max_attempts:
                    raise BrokerUnavailable(f"Subscription to {channel} failed: {exc}") from exc
                delay = self.publish_policy.backoff(failures, exc, delay)
                self.logger.warning(
                    "subscription_lost", channel=channel, attempt=failures, delay=round(delay, 3), error=str(exc)
                )
            finally:
                with contextlib.suppress(RedisError):
                    await pubsub.unsubscribe(channel)
                with contextlib.suppress(RedisError):
                    await pubsub.aclose()
            await self.publish_policy.sleep(delay)

    def _decode(self, channel: str, message: dict[str, Any]) -> dict[str, Any] | None:
        if message.get("type") != "message":
            return None
        try:
            payload = json.loads(message["data"])
        except (TypeError, ValueError):
            self.logger.warning("malformed_message", channel=channel)
            return None
        if not isinstance(payload, dict):
            self.logger.warning("malformed_message", channel=channel)
            return None
        return payload

    async def jobs(self, ready: asyncio.Event | None = None) -> AsyncIterator[Job]:
        async for payload in self.subscribe(self.config.job_channel, ready):
            try:
                yield Job.from_message(payload)
            except ValueError as exc:
                self.logger.warning("malformed_job", error=str(exc))

    async def results(self, ready: asyncio.Event | None = None) -> AsyncIterator[Result]:
        async for payload in self.subscribe(self.config.result_channel, ready):
            try:
                yield Result.from_message(payload)
            except ValueError as exc:
                self.logger.warning("malformed_result", error=str(exc))


__all__ = ["RedisBroker", "is_transient_redis_error"]
