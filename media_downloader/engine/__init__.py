"""Engine components: jobs, retry policy, dedup cache, processors, workers, retention."""

from .dedup import DedupCache
from .jobs import Artifact, CacheEntry, FailedJob, Job, Outcome, Result
from .retry import BulkRetryReport, RetryPolicy, bulk_retry

__all__ = [
    "Artifact",
    "BulkRetryReport",
    "CacheEntry",
    "DedupCache",
    "FailedJob",
    "Job",
    "Outcome",
    "Result",
    "RetryPolicy",
    "bulk_retry",
]
