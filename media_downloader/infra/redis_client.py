"""Redis connection factory shared by the broker and the dedup cache."""

from __future__ import annotations

from redis.asyncio import Redis
from redis.exceptions import RedisError

from ..config import RedisConfig
from ..errors import BrokerUnavailable


def create_redis(config: RedisConfig) -> Redis:
    return Redis(
        host=config.host,
        port=config.port,
        username=config.username,
        password=config.password,
        db=config.db,
        socket_timeout=config.socket_timeout,
        socket_connect_timeout=config.socket_timeout,
        decode_responses=True,
    )


async def connect(config: RedisConfig) -> Redis:
    """Create a client and check the server answers; one per process."""

    client = create_redis(config)
    try:
        await client.ping()
    except RedisError as exc:
        await client.aclose()
        raise BrokerUnavailable(f"Redis at {config.host}:{config.port} unreachable: {exc}") from exc
    return client


__all__ = ["connect", "create_redis"]
