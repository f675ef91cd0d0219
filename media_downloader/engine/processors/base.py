"""Processor interface: one extraction strategy per supported source."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ...infra.storage import artifact_size
from ..jobs import Artifact, utcnow


@dataclass(frozen=True, slots=True)
class Resolution:
    """Metadata-only outcome of :meth:`BaseProcessor.resolve`.

    ``payload`` lets a processor hand whatever it already fetched over to
    ``extract`` so the page is not requested twice.
    """

    fingerprint: str
    canonical_url: str
    payload: Any = None


class BaseProcessor(ABC):
    """Uniform processor contract; failures are raised as ExtractionError subclasses."""

    name: str = ""
    domains: tuple[str, ...] = ()

    def serves(self, site: str) -> bool:
        site = site.lower()
        return any(site == domain or site.endswith(f".{domain}") for domain in self.domains)

    def serves_exactly(self, site: str) -> bool:
        return site.lower() in self.domains

    @abstractmethod
    def fingerprint_from_url(self, url: str) -> str | None:
        """Fingerprint derivable from the URL alone, without network access."""

    @abstractmethod
    async def resolve(self, url: str) -> Resolution:
        """Cheap metadata lookup returning the fingerprint."""

    @abstractmethod
    async def extract(self, url: str, staging_dir: Path, resolution: Resolution | None = None) -> Artifact:
        """Download the media into ``staging_dir``."""

    def _staged(self, path: Path, fingerprint: str) -> Artifact:
        return Artifact(path=path, size=artifact_size(path), created_at=utcnow(), fingerprint=fingerprint)


__all__ = ["BaseProcessor", "Resolution"]
