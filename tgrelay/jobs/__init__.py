"""Background job engine: store, retry policy, manager and per-kind runners."""

from tgrelay.jobs.manager import JobManager
from tgrelay.jobs.models import Job, JobCounters, JobStatus, TargetResult
from tgrelay.jobs.retry import RetryBudgetExceededError, RetryPolicy
from tgrelay.jobs.store import JobStore, JobStoreError

__all__ = [
    "Job",
    "JobCounters",
    "JobManager",
    "JobStatus",
    "JobStore",
    "JobStoreError",
    "RetryBudgetExceededError",
    "RetryPolicy",
    "TargetResult",
]
