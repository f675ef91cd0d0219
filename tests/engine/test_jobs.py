from __future__ import annotations

from datetime import timezone

import pytest

from media_downloader.engine.jobs import FailedJob, Job, Outcome, Result
from media_downloader.errors import ErrorKind


def test_job_message_survives_the_wire() -> None:
    job = Job("https://www.tiktok.com/@u/video/1", "tiktok.com", "alice")
    restored = Job.from_message(job.to_message())
    assert restored == job
    assert restored.submitted_at.tzinfo is not None


def test_job_from_message_accepts_naive_and_zulu_timestamps() -> None:
    payload = Job("https://example.com/a", "example.com", "bob").to_message()
    payload["submitted_at"] = "2024-05-01T10:00:00Z"
    assert Job.from_message(payload).submitted_at.tzinfo == timezone.utc
    payload["submitted_at"] = "2024-05-01T10:00:00"
    assert Job.from_message(payload).submitted_at.hour == 10


def test_job_from_message_rejects_missing_fields() -> None:
    with pytest.raises(ValueError):
        Job.from_message({"job_id": "x"})


def test_renew_keeps_requester_and_url() -> None:
    job = Job("https://example.com/a", "example.com", "carol")
    renewed = job.renew()
    assert renewed.job_id != job.job_id
    assert (renewed.source_url, renewed.resolved_site, renewed.requester_id) == (
        job.source_url,
        job.resolved_site,
        job.requester_id,
    )


def test_delivered_result_requires_reference() -> None:
    with pytest.raises(ValueError):
        Result.from_message({"job_id": "x", "outcome": "delivered"})


def test_failed_result_carries_kind() -> None:
    job = Job("https://example.com/a", "example.com", "dave")
    result = Result.from_message(Result.failed(job, ErrorKind.RATE_LIMITED, "429").to_message())
    assert result.outcome is Outcome.FAILED
    assert result.error_kind is ErrorKind.RATE_LIMITED
    assert result.requester_id == "dave"
    assert not result.is_delivered


def test_failed_job_record_defaults() -> None:
    job = Job("https://example.com/a", "example.com", "erin")
    record = FailedJob.from_message(job.to_message())
    assert record.error_kind is ErrorKind.RETRY_EXHAUSTED
    assert record.job == job
