"""Processor registry: closed set of extraction strategies."""

from __future__ import annotations

from typing import Iterable

import structlog

from ...config import AppConfig
from ..fetcher import Fetcher
from ..site_validator import SiteValidator, parse_url
from .base import BaseProcessor, Resolution
from .generic import GenericProcessor
from .tiktok import TikTokProcessor


class ProcessorRegistry:
    """Map a resolved site onto the processor responsible for it."""

    def __init__(
        self,
        processors: Iterable[BaseProcessor] = (),
        fallback: BaseProcessor | None = None,
        whitelist: SiteValidator | None = None,
    ) -> None:
        self._processors: list[BaseProcessor] = []
        self.fallback = fallback
        self.whitelist = whitelist
        self.logger = structlog.get_logger("media_downloader.processors")
        for processor in processors:
            self.register(processor)

    def register(self, processor: BaseProcessor) -> None:
        self._processors.append(processor)

    @property
    def processors(self) -> list[BaseProcessor]:
        return list(self._processors)

    def resolve(self, site: str) -> BaseProcessor | None:
        site = site.lower()
        for processor in self._processors:
            if processor.serves_exactly(site):
                return processor
        for processor in self._processors:
            if processor.serves(site):
                return processor
        if self.fallback is not None and (self.whitelist is None or self.whitelist.is_supported(site)):
            return self.fallback
        return None

    def fingerprint_from_url(self, url: str, site: str | None = None) -> str | None:
        if site is None:
            site = parse_url(url).domain
        processor = self.resolve(site)
        if processor is None:
            return None
        return processor.fingerprint_from_url(url)


def build_registry(config: AppConfig, fetcher: Fetcher) -> ProcessorRegistry:
    max_bytes = config.worker.max_file_size
    return ProcessorRegistry(
        processors=[TikTokProcessor(fetcher, aweme=config.aweme_api, max_bytes=max_bytes)],
        fallback=GenericProcessor(max_bytes=max_bytes),
        whitelist=SiteValidator(config.supported_sites.sites),
    )


__all__ = [
    "BaseProcessor",
    "GenericProcessor",
    "ProcessorRegistry",
    "Resolution",
    "TikTokProcessor",
    "build_registry",
]
