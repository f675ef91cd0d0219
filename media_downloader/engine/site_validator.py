"""URL parsing and whitelist resolution for incoming requests."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable
from urllib.parse import urlsplit

from ..errors import InvalidUrl, UnsupportedSource

TIKTOK_SHORT_DOMAIN = "vm.tiktok.com"
YOUTUBE_SHORT_DOMAIN = "youtu.be"


@dataclass(frozen=True, slots=True)
class ParsedUrl:
    url: str
    domain: str


def extract_domain(host: str) -> str:
    """Normalise a host name to the domain used in the whitelist.

    ``www.`` prefixes are dropped and TikTok short links map onto
    ``tiktok.com``; ``youtu.be`` is kept as is.
    """

    host = host.lower().rstrip(".")
    if host == TIKTOK_SHORT_DOMAIN:
        return "tiktok.com"
    if host.startswith("www.") and host != YOUTUBE_SHORT_DOMAIN:
        return host[4:]
    return host


def parse_url(url: str) -> ParsedUrl:
    text = (url or "").strip()
    if not text:
        raise InvalidUrl("URL is empty")
    try:
        parts = urlsplit(text)
        host = parts.hostname
    except ValueError as exc:
        raise InvalidUrl(f"URL {text!r} is not valid") from exc
    if parts.scheme not in ("http", "https") or not host:
        raise InvalidUrl(f"URL {text!r} is not valid")
    return ParsedUrl(url=text, domain=extract_domain(host))


class SiteValidator:
    """Ordered whitelist of supported domains."""

    def __init__(self, sites: Iterable[str]) -> None:
        self.sites = [site.lower() for site in sites]

    def is_supported(self, domain: str) -> bool:
        return self.match(domain) is not None

    def match(self, domain: str) -> str | None:
        domain = domain.lower()
        if domain in self.sites:
            return domain
        for site in self.sites:
            if domain.endswith(f".{site}"):
                return site
        return None

    def resolve(self, url: str) -> tuple[ParsedUrl, str]:
        """Return the parsed URL and the whitelisted site it belongs to."""

        parsed = parse_url(url)
        site = self.match(parsed.domain)
        if site is None:
            raise UnsupportedSource(f"Domain {parsed.domain!r} is not supported")
        return parsed, site


__all__ = ["ParsedUrl", "SiteValidator", "extract_domain", "parse_url"]
