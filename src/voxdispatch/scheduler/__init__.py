"""Job lifecycle, queueing and usage accounting."""

from .job import PROGRESS, Job, JobTable
from .queue_store import FileQueueStore, MemoryQueueStore, QueueEntry, QueueStore
from .scheduler import AUTO_PROVIDER, JobScheduler
from .usage import ProviderUsage, UsageStats

__all__ = [
    "AUTO_PROVIDER",
    "FileQueueStore",
    "Job",
    "JobScheduler",
    "JobTable",
    "MemoryQueueStore",
    "PROGRESS",
    "ProviderUsage",
    "QueueEntry",
    "QueueStore",
    "UsageStats",
]
