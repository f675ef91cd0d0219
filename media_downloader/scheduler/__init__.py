"""Scheduling helpers."""

from .apsched_adapter import RETENTION_JOB_ID, RetentionScheduler

__all__ = ["RETENTION_JOB_ID", "RetentionScheduler"]
