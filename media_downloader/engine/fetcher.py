"""Async HTTP fetching with failure classification at origin."""

from __future__ import annotations

from dataclasses import dataclass, field
from email.utils import parsedate_to_datetime
from pathlib import Path
from typing import Any, Dict

import httpx
import structlog

from ..errors import (
    ContentNotFound,
    ExtractionError,
    FileSizeExceeded,
    NetworkError,
    RateLimited,
    UnsupportedContentShape,
)
from .jobs import utcnow

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)
DEFAULT_HEADERS = {
    "Accept-Language": "en-US,en;q=0.5",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
}
CHUNK_SIZE = 64 * 1024


@dataclass(slots=True)
class FetchRequest:
    """Input for the fetcher."""

    url: str
    method: str = "GET"
    params: dict[str, Any] | None = None
    headers: dict[str, str] | None = None
    cookies: dict[str, str] | None = None
    timeout: float | None = None


@dataclass(slots=True)
class FetchResponse:
    """Standardised response wrapper."""

    url: str
    status_code: int
    text: str
    headers: Dict[str, str]
    cookies: Dict[str, str] = field(default_factory=dict)
    raw: httpx.Response | None = field(repr=False, default=None)

    def json(self) -> Any:
        if self.raw is None:
            raise UnsupportedContentShape(f"No body to decode for {self.url}")
        try:
            return self.raw.json()
        except ValueError as exc:
            raise UnsupportedContentShape(f"Response from {self.url} is not JSON") from exc


def _retry_after(headers: httpx.Headers | dict[str, str]) -> float | None:
    value = headers.get("retry-after") or headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return max((when - utcnow()).total_seconds(), 0.0)


def classify_status(
    status_code: int, url: str, headers: httpx.Headers | dict[str, str] | None = None
) -> ExtractionError | None:
    """Map an HTTP status to the error it represents, ``None`` for success."""

    if status_code < 400:
        return None
    if status_code in {404, 410}:
        return ContentNotFound(f"{url} returned {status_code}")
    if status_code in {403, 429}:
        return RateLimited(f"{url} returned {status_code}", retry_after=_retry_after(headers or {}))
    if status_code >= 500:
        return NetworkError(f"{url} returned {status_code}")
    return UnsupportedContentShape(f"{url} returned {status_code}")


def cookie_header(cookies: dict[str, str] | None) -> str | None:
    if not cookies:
        return None
    return "; ".join(f"{name}={value}" for name, value in cookies.items())


class Fetcher:
    """Shared async HTTP client used by processors and the heartbeat."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        timeout: float = 20.0,
        user_agent: str = DEFAULT_USER_AGENT,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self.logger = logger or structlog.get_logger("media_downloader.fetcher")
        self._client = client or httpx.AsyncClient(
            follow_redirects=True,
            timeout=timeout,
            headers={"User-Agent": user_agent},
        )

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self, request_headers: dict[str, str] | None, cookies: dict[str, str] | None) -> dict[str, str]:
        headers = dict(request_headers or {})
        cookie = cookie_header(cookies)
        if cookie:
            headers["Cookie"] = cookie
        return headers

    async def fetch(self, request: FetchRequest) -> FetchResponse:
        try:
            response = await self._client.request(
                request.method,
                request.url,
                params=request.params,
                headers=self._headers(request.headers, request.cookies),
                timeout=request.timeout or httpx.USE_CLIENT_DEFAULT,
            )
        except httpx.TransportError as exc:
            self.logger.warning("fetch_error", url=request.url, error=str(exc))
            raise NetworkError(f"{request.url}: {exc}") from exc

        error = classify_status(response.status_code, request.url, response.headers)
        if error is not None:
            self.logger.warning("fetch_failed", url=request.url, status=response.status_code)
            raise error

        # Cookies set along a redirect chain (short links) are kept as well.
        cookies: dict[str, str] = {}
        for hop in [*response.history, response]:
            cookies.update({name: value for name, value in hop.cookies.items()})
        return FetchResponse(
            url=str(response.url),
            status_code=response.status_code,
            text=response.text,
            headers=dict(response.headers),
            cookies=cookies,
            raw=response,
        )

    async def download(
        self,
        url: str,
        destination: Path,
        headers: dict[str, str] | None = None,
        cookies: dict[str, str] | None = None,
        max_bytes: int | None = None,
    ) -> int:
        """Stream ``url`` into ``destination``; returns the number of bytes written."""

        written = 0
        try:
            async with self._client.stream(
                "GET", url, headers=self._headers(headers, cookies)
            ) as response:
                error = classify_status(response.status_code, url, response.headers)
                if error is not None:
                    raise error
                destination.parent.mkdir(parents=True, exist_ok=True)
                with destination.open("wb") as stream:
                    async for chunk in response.aiter_bytes(CHUNK_SIZE):
                        written += len(chunk)
                        if max_bytes is not None and written > max_bytes:
                            raise FileSizeExceeded(f"{url} is larger than {max_bytes} bytes")
                        stream.write(chunk)
        except httpx.TransportError as exc:
            self.logger.warning("download_error", url=url, error=str(exc))
            raise NetworkError(f"{url}: {exc}") from exc
        self.logger.debug("downloaded", url=url, size=written)
        return written

    async def ping(self, url: str) -> int:
        response = await self.fetch(FetchRequest(url=url, timeout=10.0))
        return response.status_code


__all__ = [
    "DEFAULT_HEADERS",
    "DEFAULT_USER_AGENT",
    "FetchRequest",
    "FetchResponse",
    "Fetcher",
    "classify_status",
]
