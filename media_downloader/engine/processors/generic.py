"""Fallback processor backed by the yt-dlp library."""

from __future__ import annotations

import asyncio
import re
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, urlsplit

import structlog
import yt_dlp
from yt_dlp.utils import DownloadError, ExtractorError

from ...errors import (
    ContentNotFound,
    ExtractionError,
    FileSizeExceeded,
    NetworkError,
    RateLimited,
    UnsupportedContentShape,
)
from ..jobs import Artifact
from .base import BaseProcessor, Resolution

FORMAT_SPEC = "bestvideo[ext=mp4]+bestaudio[ext=m4a]/best[ext=mp4]/best"
MEDIA_SUFFIXES = (".mp4", ".mkv", ".webm", ".mov", ".m4a", ".mp3", ".jpg", ".jpeg", ".png")
YOUTUBE_ID_RE = re.compile(r"^[A-Za-z0-9_-]{11}$")

_NOT_FOUND_MARKERS = ("404", "not found", "unavailable", "private", "removed", "does not exist")
_RATE_MARKERS = ("429", "too many requests", "rate limit", "rate-limit")
_NETWORK_MARKERS = ("timed out", "timeout", "connection", "temporary failure", "network", "503", "502")


def youtube_id(url: str) -> str | None:
    parts = urlsplit(url)
    host = (parts.hostname or "").lower()
    candidate: str | None = None
    if host == "youtu.be":
        candidate = parts.path.strip("/").split("/")[0]
    elif host == "youtube.com" or host.endswith(".youtube.com"):
        if parts.path == "/watch":
            candidate = (parse_qs(parts.query).get("v") or [None])[0]
        elif parts.path.startswith("/shorts/"):
            candidate = parts.path.split("/")[2] if len(parts.path.split("/")) > 2 else None
    if candidate and YOUTUBE_ID_RE.match(candidate):
        return candidate
    return None


def classify_ytdlp_error(exc: Exception) -> ExtractionError:
    """yt-dlp reports every failure as text; map it onto the error taxonomy."""

    text = str(exc).lower()
    if any(marker in text for marker in _RATE_MARKERS):
        return RateLimited(str(exc))
    if "unsupported url" in text:
        return UnsupportedContentShape(str(exc))
    if any(marker in text for marker in _NOT_FOUND_MARKERS):
        return ContentNotFound(str(exc))
    if any(marker in text for marker in _NETWORK_MARKERS):
        return NetworkError(str(exc))
    return UnsupportedContentShape(str(exc))


class GenericProcessor(BaseProcessor):
    """Serve every whitelisted site without a dedicated processor."""

    name = "generic"
    domains = ()

    def __init__(
        self,
        max_bytes: int | None = None,
        ydl_options: dict[str, Any] | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self.max_bytes = max_bytes
        self.ydl_options = ydl_options or {}
        self.logger = logger or structlog.get_logger("media_downloader.processors.generic")

    def fingerprint_from_url(self, url: str) -> str | None:
        video_id = youtube_id(url)
        return f"youtube:{video_id}" if video_id else None

    def _options(self, **extra: Any) -> dict[str, Any]:
        options: dict[str, Any] = {"quiet": True, "no_warnings": True, "noplaylist": True}
        options.update(self.ydl_options)
        options.update(extra)
        return options

    def _probe(self, url: str) -> dict[str, Any]:
        with yt_dlp.YoutubeDL(self._options()) as ydl:
            info = ydl.extract_info(url, download=False)
        if not info:
            raise ContentNotFound(f"No media information for {url}")
        return info

    async def resolve(self, url: str) -> Resolution:
        try:
            info = await asyncio.to_thread(self._probe, url)
        except (DownloadError, ExtractorError) as exc:
            raise classify_ytdlp_error(exc) from exc
        if info.get("_type") == "playlist" or "entries" in info:
            raise UnsupportedContentShape(f"{url} is a playlist")
        extractor = str(info.get("extractor_key") or info.get("extractor") or "generic").lower()
        media_id = info.get("id")
        if not media_id:
            raise UnsupportedContentShape(f"No media id for {url}")
        canonical = str(info.get("webpage_url") or url)
        return Resolution(fingerprint=f"{extractor}:{media_id}", canonical_url=canonical, payload=info)

    def _download(self, url: str, staging_dir: Path) -> Path:
        options = self._options(
            format=FORMAT_SPEC,
            outtmpl=str(staging_dir / "media.%(ext)s"),
            updatetime=False,
        )
        if self.max_bytes:
            options["max_filesize"] = self.max_bytes
        with yt_dlp.YoutubeDL(options) as ydl:
            ydl.download([url])
        files = [
            path for path in staging_dir.iterdir() if path.is_file() and path.suffix.lower() in MEDIA_SUFFIXES
        ]
        if not files:
            if self.max_bytes:
                raise FileSizeExceeded(f"{url} produced no file within {self.max_bytes} bytes")
            raise UnsupportedContentShape(f"No media file found after downloading {url}")
        return max(files, key=lambda path: path.stat().st_size)

    async def extract(self, url: str, staging_dir: Path, resolution: Resolution | None = None) -> Artifact:
        target_url = resolution.canonical_url if resolution else url
        try:
            path = await asyncio.to_thread(self._download, target_url, staging_dir)
        except (DownloadError, ExtractorError) as exc:
            raise classify_ytdlp_error(exc) from exc
        fingerprint = resolution.fingerprint if resolution else self.fingerprint_from_url(url)
        if fingerprint is None:
            raise UnsupportedContentShape(f"Cannot fingerprint {url}")
        self.logger.debug("ytdlp_downloaded", path=str(path))
        return self._staged(path, fingerprint)


__all__ = ["GenericProcessor", "classify_ytdlp_error", "youtube_id"]
