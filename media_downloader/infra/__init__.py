"""Infra layer: Redis connection, pub/sub broker and artifact storage."""

from .broker import RedisBroker
from .redis_client import connect, create_redis
from .storage import ArtifactStore

__all__ = ["ArtifactStore", "RedisBroker", "connect", "create_redis"]
