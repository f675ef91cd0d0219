"""Configuration package exports."""

from .loader import ConfigLocator, ConfigRepository
from .models import (
    AppConfig,
    AwemeConfig,
    DispatcherConfig,
    RedisConfig,
    RetentionConfig,
    RetryConfig,
    SupportedSites,
    TelegramConfig,
    TelemetryConfig,
    WorkerConfig,
)

__all__ = [
    "AppConfig",
    "AwemeConfig",
    "ConfigLocator",
    "ConfigRepository",
    "DispatcherConfig",
    "RedisConfig",
    "RetentionConfig",
    "RetryConfig",
    "SupportedSites",
    "TelegramConfig",
    "TelemetryConfig",
    "WorkerConfig",
]
