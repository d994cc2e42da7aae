"""
Persistent Work Queue

A durable, concurrency-safe job queue: jobs are stored in a SQL table,
claimed exclusively through leases, retried with bounded attempts, and
re-delivered after a worker crash once its lease expires.
"""

__version__ = "1.0.0"

from leasequeue.constants import JobStatus, QueueOperation  # noqa: E402
from leasequeue.exceptions import InvalidJobError, QueueError, StorageError  # noqa: E402
from leasequeue.queue import JobQueue  # noqa: E402
from leasequeue.types.job import FailureOutcome, JobRef  # noqa: E402
from leasequeue.worker.pool import WorkerPool  # noqa: E402

__all__ = [
    "__version__",
    "FailureOutcome",
    "InvalidJobError",
    "JobQueue",
    "JobRef",
    "JobStatus",
    "QueueError",
    "QueueOperation",
    "StorageError",
    "WorkerPool",
]
