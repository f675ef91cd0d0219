"""Filesystem artifact store: staging, commit, scan and verified deletion."""

from __future__ import annotations

import os
import shutil
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator
from urllib.parse import quote, unquote

import structlog

from ..engine.jobs import Artifact
from ..errors import StorageError

STAGING_DIRNAME = ".staging"


def encode_fingerprint(fingerprint: str) -> str:
    # "." separates the encoded fingerprint from the token and extension
    return quote(fingerprint, safe="").replace(".", "%2E")


def decode_fingerprint(name: str) -> str:
    return unquote(name.split(".", 1)[0])


def artifact_size(path: Path) -> int:
    if path.is_dir():
        return sum(item.stat().st_size for item in path.rglob("*") if item.is_file())
    return path.stat().st_size


class ArtifactStore:
    """Own the storage directory shared by workers and the retention engine."""

    def __init__(self, root: Path, logger: structlog.stdlib.BoundLogger | None = None) -> None:
        self.root = root
        self.staging_root = root / STAGING_DIRNAME
        self.logger = logger or structlog.get_logger("media_downloader.storage")

    def ensure(self) -> None:
        try:
            self.staging_root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"Cannot create storage directory {self.root}: {exc}") from exc

    @contextmanager
    def staging(self, job_id: str) -> Iterator[Path]:
        """Scratch directory for one job, removed on exit whatever happens."""

        self.ensure()
        path = self.staging_root / job_id
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"Cannot create staging directory {path}: {exc}") from exc
        try:
            yield path
        finally:
            shutil.rmtree(path, ignore_errors=True)

    def commit(self, fingerprint: str, staged: Path) -> Artifact:
        """Move a staged file or directory to its final, collision-free name."""

        suffix = "" if staged.is_dir() else staged.suffix
        name = f"{encode_fingerprint(fingerprint)}.{uuid.uuid4().hex[:12]}{suffix}"
        target = self.root / name
        try:
            os.replace(staged, target)
            now = time.time()
            os.utime(target, (now, now))
            size = artifact_size(target)
        except OSError as exc:
            raise StorageError(f"Cannot commit {staged} for {fingerprint}: {exc}") from exc
        artifact = Artifact(
            path=target,
            size=size,
            created_at=datetime.fromtimestamp(now, tz=timezone.utc),
            fingerprint=fingerprint,
        )
        self.logger.info("artifact_committed", fingerprint=fingerprint, path=str(target), size=size)
        return artifact

    def exists(self, reference: str) -> bool:
        return Path(reference).exists()

    def artifact(self, path: Path) -> Artifact:
        stat = path.stat()
        return Artifact(
            path=path,
            size=artifact_size(path),
            created_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            fingerprint=decode_fingerprint(path.name),
        )

    def scan(self) -> list[Artifact]:
        """Snapshot of every committed artifact (staging area excluded)."""

        if not self.root.exists():
            return []
        artifacts: list[Artifact] = []
        for path in sorted(self.root.iterdir()):
            if path.name.startswith("."):
                continue
            try:
                artifacts.append(self.artifact(path))
            except FileNotFoundError:
                # removed between listing and stat
                continue
        return artifacts

    def delete(self, reference: str) -> None:
        """Remove an artifact and verify it is gone; raises StorageError otherwise."""

        path = Path(reference)
        try:
            if path.is_dir():
                shutil.rmtree(path)
            elif path.exists():
                path.unlink()
        except OSError as exc:
            raise StorageError(f"Cannot delete {reference}: {exc}") from exc
        if path.exists():
            raise StorageError(f"{reference} still present after deletion")

    def discard(self, reference: str) -> None:
        """Best-effort removal of an artifact nothing references."""

        try:
            self.delete(reference)
        except StorageError as exc:
            self.logger.warning("artifact_discard_failed", path=reference, error=exc.message)
            return
        self.logger.info("artifact_discarded", path=reference)

    def usage(self) -> int:
        return sum(artifact.size for artifact in self.scan())


__all__ = ["ArtifactStore", "artifact_size", "decode_fingerprint", "encode_fingerprint"]
