"""Job, result and artifact records exchanged across the pipeline."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from ..errors import ErrorKind


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def new_job_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True, slots=True)
class Job:
    """One request to acquire media from a URL; immutable once published."""

    source_url: str
    resolved_site: str
    requester_id: str
    job_id: str = field(default_factory=new_job_id)
    submitted_at: datetime = field(default_factory=utcnow)

    def renew(self) -> "Job":
        """Copy for re-enqueueing: fresh id and timestamp, same requester."""

        return replace(self, job_id=new_job_id(), submitted_at=utcnow())

    def to_message(self) -> dict[str, str]:
        return {
            "job_id": self.job_id,
            "source_url": self.source_url,
            "resolved_site": self.resolved_site,
            "requester_id": self.requester_id,
            "submitted_at": self.submitted_at.isoformat(),
        }

    @classmethod
    def from_message(cls, payload: dict[str, Any]) -> "Job":
        try:
            return cls(
                job_id=str(payload["job_id"]),
                source_url=str(payload["source_url"]),
                resolved_site=str(payload["resolved_site"]),
                requester_id=str(payload["requester_id"]),
                submitted_at=_parse_timestamp(payload["submitted_at"]),
            )
        except KeyError as exc:
            raise ValueError(f"Job message missing field: {exc.args[0]}") from exc


class Outcome(str, Enum):
    DELIVERED = "delivered"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class Result:
    """Outcome of one job, correlated back to the dispatcher by ``job_id``."""

    job_id: str
    outcome: Outcome
    artifact_reference: str | None = None
    error_kind: ErrorKind | None = None
    message: str | None = None
    requester_id: str | None = None
    fingerprint: str | None = None

    @classmethod
    def delivered(cls, job: Job, artifact_reference: str, fingerprint: str | None = None) -> "Result":
        return cls(
            job_id=job.job_id,
            outcome=Outcome.DELIVERED,
            artifact_reference=artifact_reference,
            requester_id=job.requester_id,
            fingerprint=fingerprint,
        )

    @classmethod
    def failed(
        cls,
        job: Job,
        error_kind: ErrorKind,
        message: str,
        fingerprint: str | None = None,
    ) -> "Result":
        return cls(
            job_id=job.job_id,
            outcome=Outcome.FAILED,
            error_kind=error_kind,
            message=message,
            requester_id=job.requester_id,
            fingerprint=fingerprint,
        )

    @property
    def is_delivered(self) -> bool:
        return self.outcome is Outcome.DELIVERED

    def to_message(self) -> dict[str, str]:
        payload: dict[str, str] = {"job_id": self.job_id, "outcome": self.outcome.value}
        if self.artifact_reference is not None:
            payload["artifact_reference"] = self.artifact_reference
        if self.error_kind is not None:
            payload["error_kind"] = self.error_kind.value
        if self.message is not None:
            payload["message"] = self.message
        if self.requester_id is not None:
            payload["requester_id"] = self.requester_id
        if self.fingerprint is not None:
            payload["fingerprint"] = self.fingerprint
        return payload

    @classmethod
    def from_message(cls, payload: dict[str, Any]) -> "Result":
        try:
            outcome = Outcome(payload["outcome"])
            job_id = str(payload["job_id"])
        except KeyError as exc:
            raise ValueError(f"Result message missing field: {exc.args[0]}") from exc
        error_kind = payload.get("error_kind")
        if outcome is Outcome.DELIVERED and not payload.get("artifact_reference"):
            raise ValueError("Delivered result requires artifact_reference")
        return cls(
            job_id=job_id,
            outcome=outcome,
            artifact_reference=payload.get("artifact_reference"),
            error_kind=ErrorKind(error_kind) if error_kind else None,
            message=payload.get("message"),
            requester_id=payload.get("requester_id"),
            fingerprint=payload.get("fingerprint"),
        )


@dataclass(slots=True)
class Artifact:
    """Downloaded media on disk: a single file or a directory of images."""

    path: Path
    size: int
    created_at: datetime
    fingerprint: str

    @property
    def reference(self) -> str:
        return str(self.path)

    @property
    def is_collection(self) -> bool:
        return self.path.is_dir()


@dataclass(slots=True)
class CacheEntry:
    fingerprint: str
    artifact_reference: str
    first_seen_at: datetime
    last_served_at: datetime

    def to_json(self) -> str:
        return json.dumps(
            {
                "fingerprint": self.fingerprint,
                "artifact_reference": self.artifact_reference,
                "first_seen_at": self.first_seen_at.isoformat(),
                "last_served_at": self.last_served_at.isoformat(),
            }
        )

    @classmethod
    def from_json(cls, raw: str | bytes) -> "CacheEntry":
        data = json.loads(raw)
        return cls(
            fingerprint=data["fingerprint"],
            artifact_reference=data["artifact_reference"],
            first_seen_at=_parse_timestamp(data["first_seen_at"]),
            last_served_at=_parse_timestamp(data["last_served_at"]),
        )


@dataclass(slots=True)
class FailedJob:
    """A job whose result was a failure or never arrived."""

    job: Job
    error_kind: ErrorKind
    message: str = ""
    failed_at: datetime = field(default_factory=utcnow)

    def to_message(self) -> dict[str, str]:
        payload = self.job.to_message()
        payload.update(
            {
                "error_kind": self.error_kind.value,
                "message": self.message,
                "failed_at": self.failed_at.isoformat(),
            }
        )
        return payload

    @classmethod
    def from_message(cls, payload: dict[str, Any]) -> "FailedJob":
        failed_at = payload.get("failed_at")
        return cls(
            job=Job.from_message(payload),
            error_kind=ErrorKind(payload.get("error_kind", ErrorKind.RETRY_EXHAUSTED.value)),
            message=str(payload.get("message", "")),
            failed_at=_parse_timestamp(failed_at) if failed_at else utcnow(),
        )


__all__ = [
    "Artifact",
    "CacheEntry",
    "FailedJob",
    "Job",
    "Outcome",
    "Result",
    "new_job_id",
    "utcnow",
]
