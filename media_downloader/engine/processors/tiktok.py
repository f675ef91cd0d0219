"""Dedicated TikTok processor: page state JSON first, mobile API as fallback."""

from __future__ import annotations

import asyncio
import json
import random
import re
import string
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit, urlunsplit

import structlog
from selectolax.parser import HTMLParser

from ...config import AwemeConfig
from ...errors import ContentNotFound, UnsupportedContentShape
from ..fetcher import DEFAULT_HEADERS, DEFAULT_USER_AGENT, FetchRequest, Fetcher
from ..jobs import Artifact
from .base import BaseProcessor, Resolution

SCRIPT_IDS = ("SIGI_STATE", "__UNIVERSAL_DATA_FOR_REHYDRATION__")
VIDEO_ID_RE = re.compile(r"/video/(\d+)")
PHOTO_ID_RE = re.compile(r"/photo/(\d+)")
SHORT_LINK_HOSTS = ("vm.tiktok.com", "vt.tiktok.com")
VIDEO_CDN_MARKER = "byteicdn.com"
IMAGE_MARKER = ".jpeg"
IMAGE_BATCH_SIZE = 10


def extract_id(path: str) -> str | None:
    for pattern in (VIDEO_ID_RE, PHOTO_ID_RE):
        match = pattern.search(path)
        if match:
            return match.group(1)
    return None


def retrieve_script(html: str) -> dict[str, Any] | None:
    """Return the embedded page-state JSON, trying each known script id."""

    if not html:
        return None
    parser = HTMLParser(html)
    for script_id in SCRIPT_IDS:
        node = parser.css_first(f'script[id="{script_id}"]')
        if node is None:
            continue
        try:
            data = json.loads(node.text())
        except ValueError:
            continue
        if isinstance(data, dict):
            return data
    return None


def parse_video_state(state: dict[str, Any]) -> str | None:
    try:
        urls = state["__DEFAULT_SCOPE__"]["webapp.video-detail"]["itemInfo"]["itemStruct"]["video"][
            "bitrateInfo"
        ][0]["PlayAddr"]["UrlList"]
    except (KeyError, IndexError, TypeError):
        return None
    candidates = [str(url).replace("amp;", "") for url in urls if url]
    if not candidates:
        return None
    return random.choice(candidates[:2])


def parse_aweme_video(data: dict[str, Any]) -> str:
    try:
        urls = data["aweme_list"][0]["video"]["bit_rate"][0]["play_addr"]["url_list"]
    except (KeyError, IndexError, TypeError) as exc:
        raise ContentNotFound("Mobile API returned no video") from exc
    for url in urls:
        if VIDEO_CDN_MARKER in str(url):
            return str(url)
    raise UnsupportedContentShape("Mobile API returned no downloadable video address")


def parse_aweme_slideshow(data: dict[str, Any]) -> list[str]:
    try:
        images = data["aweme_list"][0]["image_post_info"]["images"]
    except (KeyError, IndexError, TypeError) as exc:
        raise ContentNotFound("Mobile API returned no slideshow") from exc
    found: list[str] = []
    for image in images or []:
        urls = (image.get("display_image") or {}).get("url_list") or []
        match = next((str(url) for url in urls if IMAGE_MARKER in str(url)), None)
        if match:
            found.append(match)
    if not found:
        raise UnsupportedContentShape("Slideshow has no JPEG images")
    return found


def expand_app_version(version: str) -> str:
    return "".join(f"{int(part):02d}" for part in version.split("."))


@dataclass(slots=True)
class TikTokPage:
    url: str
    item_id: str
    kind: str
    cookies: dict[str, str] = field(default_factory=dict)
    state: dict[str, Any] | None = None

    @property
    def fingerprint(self) -> str:
        return f"tiktok:{self.item_id}"


class TikTokProcessor(BaseProcessor):
    name = "tiktok"
    domains = ("tiktok.com",)

    def __init__(
        self,
        fetcher: Fetcher,
        aweme: AwemeConfig | None = None,
        max_bytes: int | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self.fetcher = fetcher
        self.aweme = aweme
        self.max_bytes = max_bytes
        self.logger = logger or structlog.get_logger("media_downloader.processors.tiktok")

    def fingerprint_from_url(self, url: str) -> str | None:
        item_id = extract_id(urlsplit(url).path)
        return f"tiktok:{item_id}" if item_id else None

    async def resolve(self, url: str) -> Resolution:
        page = await self._load_page(url)
        return Resolution(fingerprint=page.fingerprint, canonical_url=page.url, payload=page)

    async def extract(self, url: str, staging_dir: Path, resolution: Resolution | None = None) -> Artifact:
        page = resolution.payload if resolution and isinstance(resolution.payload, TikTokPage) else None
        if page is None:
            page = await self._load_page(url)

        if page.kind == "video" and page.state is not None:
            play_url = parse_video_state(page.state)
            if play_url:
                target = staging_dir / f"{page.item_id}.mp4"
                await self._download(play_url, target, page)
                return self._staged(target, page.fingerprint)
            self.logger.debug("page_state_unusable", item_id=page.item_id)

        if self.aweme is None:
            raise UnsupportedContentShape(f"Cannot fetch TikTok {page.kind} {page.item_id} without mobile API")
        data = await self._call_aweme(self.aweme, page.item_id)
        if page.kind == "video":
            target = staging_dir / f"{page.item_id}.mp4"
            await self._download(parse_aweme_video(data), target, page)
            return self._staged(target, page.fingerprint)

        images = parse_aweme_slideshow(data)
        album = staging_dir / page.item_id
        album.mkdir(parents=True, exist_ok=True)
        for start in range(0, len(images), IMAGE_BATCH_SIZE):
            batch = images[start : start + IMAGE_BATCH_SIZE]
            await asyncio.gather(
                *(
                    self._download(image_url, album / f"{start + offset:02d}.jpeg", page)
                    for offset, image_url in enumerate(batch)
                )
            )
        self.logger.info("slideshow_downloaded", item_id=page.item_id, images=len(images))
        return self._staged(album, page.fingerprint)

    # ------------------------------------------------------------------
    async def _load_page(self, url: str) -> TikTokPage:
        response = await self.fetcher.fetch(
            FetchRequest(url=url, headers={**DEFAULT_HEADERS, "User-Agent": "Mozilla/5.0"})
        )
        parts = urlsplit(response.url)
        source_host = (urlsplit(url).hostname or "").lower()
        final_url = response.url
        if source_host in SHORT_LINK_HOSTS:
            final_url = urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))
        item_id = extract_id(parts.path) or extract_id(urlsplit(url).path)
        if item_id is None:
            raise ContentNotFound(f"No TikTok item id in {response.url}")
        kind = "video" if "video" in parts.path else "slideshow"
        page = TikTokPage(
            url=final_url,
            item_id=item_id,
            kind=kind,
            cookies=response.cookies,
            state=retrieve_script(response.text),
        )
        self.logger.debug("page_loaded", item_id=item_id, kind=kind, has_state=page.state is not None)
        return page

    async def _download(self, url: str, target: Path, page: TikTokPage) -> int:
        headers = {
            **DEFAULT_HEADERS,
            "Accept-Encoding": "identity",
            "Referer": page.url,
            "User-Agent": DEFAULT_USER_AGENT,
        }
        return await self.fetcher.download(
            url, target, headers=headers, cookies=page.cookies, max_bytes=self.max_bytes
        )

    @staticmethod
    def _user_agent(aweme: AwemeConfig) -> str:
        version_code = str(aweme.params.get("version_code", ""))
        if aweme.app_name == "musical_ly":
            package = "com.zhiliaoapp.musically"
        else:
            package = f"com.ss.android.ugc.{aweme.app_name}"
        return f"{package}/{version_code} {aweme.ua}"

    @staticmethod
    def _query_params(aweme: AwemeConfig, item_id: str) -> dict[str, Any]:
        params: dict[str, Any] = {str(key): value for key, value in aweme.params.items()}
        now = time.time()
        low, high = aweme.device_id_range
        params.update(
            {
                "aweme_id": item_id,
                "_rticket": str(int(now * 1000)),
                "ts": str(int(now)),
                "device_id": str(random.randint(low, high)),
                "cdid": str(uuid.uuid4()),
                "last_install_time": str(int(now) - random.randint(86400, 1123200)),
            }
        )
        app_version = params.get("app_version")
        if app_version:
            params.setdefault("version_name", app_version)
            params["version_code"] = expand_app_version(str(app_version))
        if aweme.iid:
            params["iid"] = random.choice(aweme.iid)
        return params

    async def _call_aweme(self, aweme: AwemeConfig, item_id: str) -> dict[str, Any]:
        odin = "".join(random.choices(string.ascii_letters + string.digits, k=160))
        response = await self.fetcher.fetch(
            FetchRequest(
                url=aweme.url,
                params=self._query_params(aweme, item_id),
                headers={**aweme.headers, "User-Agent": self._user_agent(aweme)},
                cookies={"odin_tt": odin},
            )
        )
        data = response.json()
        if not isinstance(data, dict):
            raise UnsupportedContentShape("Mobile API returned an unexpected body")
        return data


__all__ = [
    "TikTokPage",
    "TikTokProcessor",
    "extract_id",
    "parse_aweme_slideshow",
    "parse_aweme_video",
    "parse_video_state",
    "retrieve_script",
]
