from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from media_downloader.config.loader import ConfigLocator, ConfigRepository
from media_downloader.config.models import AppConfig, RetryConfig


def test_config_locator_uses_env_and_creates_directories(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MEDIA_DOWNLOADER_HOME", str(tmp_path))
    monkeypatch.delenv("MEDIA_DOWNLOADER_CONFIG", raising=False)
    locator = ConfigLocator()
    locator.ensure_directories()
    assert locator.project_root == tmp_path.resolve()
    assert locator.config_path == tmp_path.resolve() / "config.yaml"
    assert locator.logs_dir.exists()


def test_config_locator_honours_explicit_config_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    custom = tmp_path / "elsewhere" / "bot.yml"
    monkeypatch.setenv("MEDIA_DOWNLOADER_HOME", str(tmp_path))
    monkeypatch.setenv("MEDIA_DOWNLOADER_CONFIG", str(custom))
    assert ConfigLocator().config_path == custom


def test_repository_creates_default_file(temp_config_repository: ConfigRepository) -> None:
    config = temp_config_repository.load()
    assert temp_config_repository.locator.config_path.exists()
    assert config.redis.port == 6379
    assert "tiktok.com" in config.supported_sites.sites


def test_repository_roundtrip_and_cache(temp_config_repository: ConfigRepository, tmp_path: Path) -> None:
    config = AppConfig(storage_dir=tmp_path / "store", retry=RetryConfig(max_attempts=5))
    temp_config_repository.save(config)
    loaded = temp_config_repository.reload()
    assert loaded.retry.max_attempts == 5
    assert loaded.storage_dir == tmp_path / "store"
    assert temp_config_repository.load() is loaded


def test_repository_reads_yaml_sections(temp_config_repository: ConfigRepository) -> None:
    path = temp_config_repository.locator.config_path
    path.write_text(
        yaml.safe_dump(
            {
                "telegram": {"token": "abc"},
                "redis": {"host": "redis", "password": "secret"},
                "supported_sites": ["WWW.Example.com", "example.com", "tiktok.com"],
                "retention": {"horizon_hours": 12, "healthcheck_url": "https://hc-ping.com/x"},
                "aweme_api": {"url": "https://api.example/aweme", "iid": ["1", "2"]},
            }
        ),
        encoding="utf-8",
    )
    config = temp_config_repository.reload()
    assert config.telegram.token == "abc"
    assert config.redis.host == "redis"
    assert config.supported_sites.sites == ["www.example.com", "example.com", "tiktok.com"]
    assert config.retention.horizon.total_seconds() == 12 * 3600
    assert config.aweme_api is not None and config.aweme_api.iid == ["1", "2"]


def test_repository_rejects_non_mapping(temp_config_repository: ConfigRepository) -> None:
    temp_config_repository.locator.config_path.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ValueError):
        temp_config_repository.reload()
