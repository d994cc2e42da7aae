"""
Application constants.
Centralized location for all constant values used across the queue.
"""

from enum import StrEnum


class JobStatus(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - PENDING -> PROCESSING (claimed, lease granted)
    - PROCESSING -> COMPLETED (handler succeeded)
    - PROCESSING -> PENDING (handler failed, attempts remaining)
    - PROCESSING -> FAILED (handler failed, attempts exhausted)
    - PROCESSING -> PROCESSING (lease expired, re-claimed by another worker)
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED}
)


class QueueOperation(StrEnum):
    """Operations a front end may route to the queue by name."""

    ENQUEUE = "enqueue"
    DEQUEUE = "dequeue"
    COMPLETE = "complete"
    FAIL = "fail"
    STATS = "stats"


# Default values
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_LEASE_DURATION_SECONDS = 30.0
DEFAULT_CLAIM_RETRIES = 3
DEFAULT_REAPER_INTERVAL_SECONDS = 10.0

# Alert severity passed to alert sinks
SEVERITY_ERROR = "error"

# Metrics names
METRIC_QUEUE_DEPTH = "queue_depth"
METRIC_JOBS_ENQUEUED = "jobs_enqueued_total"
METRIC_JOBS_FINISHED = "jobs_finished_total"
METRIC_JOB_DURATION = "job_duration_seconds"
METRIC_LEASES_CLAIMED = "leases_claimed_total"
METRIC_LEASE_CONFLICTS = "lease_conflicts_total"
METRIC_LEASES_EXPIRED = "leases_expired_total"
METRIC_STORAGE_ERRORS = "storage_errors_total"

# Trace span names
SPAN_ENQUEUE_JOB = "enqueue_job"
SPAN_CLAIM_JOB = "claim_job"
SPAN_EXECUTE_JOB = "execute_job"
SPAN_COMPLETE_JOB = "complete_job"
SPAN_FAIL_JOB = "fail_job"
