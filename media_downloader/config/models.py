"""Pydantic models describing the media-downloader configuration file."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


class TelegramConfig(BaseModel):
    """Chat front-end credential; only passed through to the delivery client."""

    token: str = ""


class RedisConfig(BaseModel):
    """Broker and dedup cache connection parameters."""

    host: str = "localhost"
    port: int = 6379
    username: str | None = None
    password: str | None = Field(default=None, repr=False)
    db: int = 0
    job_channel: str = "media:jobs"
    result_channel: str = "media:results"
    cache_prefix: str = "media:cache:"
    lock_key: str = "media:retention:lock"
    socket_timeout: float = 5.0


class RetryConfig(BaseModel):
    """Retry/backoff parameters applied to every extraction attempt."""

    max_attempts: int = 3
    base_delay: float = 3.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.5
    total_timeout: float | None = None
    max_bulk: int = 20
    publish_attempts: int = 3

    @model_validator(mode="after")
    def _validate_bounds(self) -> "RetryConfig":
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        if not 0 <= self.jitter <= 1:
            raise ValueError("jitter must be within [0, 1]")
        if self.max_bulk < 1:
            raise ValueError("max_bulk must be >= 1")
        if self.publish_attempts < 1:
            raise ValueError("publish_attempts must be >= 1")
        return self


class RetentionConfig(BaseModel):
    """Cleaner settings: horizon, heartbeat and optional in-process schedule."""

    horizon_hours: float = 24.0
    healthcheck_url: str | None = None
    cron: str | None = None
    lock_ttl_seconds: int = 600

    @field_validator("horizon_hours")
    @classmethod
    def _positive_horizon(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("horizon_hours must be > 0")
        return value

    @property
    def horizon(self) -> timedelta:
        return timedelta(hours=self.horizon_hours)


class WorkerConfig(BaseModel):
    concurrency: int = 4
    max_file_size_mb: float = 50.0

    @field_validator("concurrency")
    @classmethod
    def _positive_concurrency(cls, value: int) -> int:
        if value < 1:
            raise ValueError("concurrency must be >= 1")
        return value

    @property
    def max_file_size(self) -> int:
        return int(self.max_file_size_mb * 1024 * 1024)


class DispatcherConfig(BaseModel):
    delivery_timeout: float = 300.0


class AwemeConfig(BaseModel):
    """Mobile item-detail API used by the TikTok processor as a fallback."""

    url: str
    app_name: str = "musical_ly"
    ua: str = "okhttp/3.10.0.1"
    headers: dict[str, str] = Field(default_factory=dict)
    params: dict[str, Any] = Field(default_factory=dict)
    iid: list[str] = Field(default_factory=list)
    device_id_range: tuple[int, int] = (7250000000000000000, 7351147085025500000)

    @model_validator(mode="after")
    def _validate_range(self) -> "AwemeConfig":
        low, high = self.device_id_range
        if high < low:
            raise ValueError("device_id_range upper bound must be >= lower bound")
        return self


class TelemetryConfig(BaseModel):
    endpoint: str | None = None
    api_key: str | None = None

    @property
    def enabled(self) -> bool:
        return bool(self.endpoint) and bool(self.api_key)


class SupportedSites(BaseModel):
    """Ordered whitelist of source domains."""

    sites: list[str] = Field(
        default_factory=lambda: [
            "tiktok.com",
            "instagram.com",
            "youtube.com",
            "youtu.be",
            "twitter.com",
            "x.com",
        ]
    )

    @field_validator("sites", mode="before")
    @classmethod
    def _normalise(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        seen: list[str] = []
        for item in value:
            domain = str(item).strip().lower().lstrip(".")
            if domain and domain not in seen:
                seen.append(domain)
        return seen


class AppConfig(BaseModel):
    """Root configuration shared by the dispatcher, worker and cleaner."""

    telegram: TelegramConfig = Field(default_factory=TelegramConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    supported_sites: SupportedSites = Field(default_factory=SupportedSites)
    storage_dir: Path = Field(default=Path("/tmp/media_downloaded"))
    retry: RetryConfig = Field(default_factory=RetryConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    dispatcher: DispatcherConfig = Field(default_factory=DispatcherConfig)
    aweme_api: AwemeConfig | None = None
    telemetry: TelemetryConfig | None = None

    @field_validator("storage_dir", mode="before")
    @classmethod
    def _coerce_dir(cls, value: Any) -> Path:
        return Path(value).expanduser()

    @field_validator("supported_sites", mode="before")
    @classmethod
    def _coerce_sites(cls, value: Any) -> Any:
        # Accept a bare list as well as the ``{sites: [...]}`` mapping.
        if isinstance(value, (list, tuple)):
            return {"sites": list(value)}
        return value


__all__ = [
    "AppConfig",
    "AwemeConfig",
    "DispatcherConfig",
    "RedisConfig",
    "RetentionConfig",
    "RetryConfig",
    "SupportedSites",
    "TelegramConfig",
    "TelemetryConfig",
    "WorkerConfig",
]
