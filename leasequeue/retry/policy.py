"""
Retry policy: decides what happens to a job after its attempt ends.

Lifecycle on failure:
    PROCESSING -> PENDING  (attempts < max_attempts)
    PROCESSING -> FAILED   (attempts exhausted, terminal)

Both transitions, like success, are conditional updates guarded by
PROCESSING and the attempt counter the worker saw when it claimed. A worker
whose lease was re-claimed by someone else therefore cannot finalize the job;
its late result is dropped.
"""

import logging
from datetime import datetime, timedelta

from leasequeue.constants import JobStatus
from leasequeue.db.repository import JobRepository
from leasequeue.types.job import Expectation, FailureOutcome

logger = logging.getLogger(__name__)


class RetryPolicy:
    """
    Requeue-or-fail decisions with optional exponential backoff.

    With ``backoff_base_seconds == 0`` a failed job is claimable again
    immediately. Otherwise attempt ``n`` waits
    ``min(base * 2 ** (n - 1), backoff_max_seconds)`` before it is eligible.
    """

    def __init__(
        self,
        repository: JobRepository,
        backoff_base_seconds: float = 0.0,
        backoff_max_seconds: float = 300.0,
    ):
        self._repo = repository
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds

    def backoff_delay(self, attempts: int) -> timedelta:
        """Delay before a job that failed its ``attempts``-th claim may run again."""
        if self.backoff_base_seconds <= 0:
            return timedelta(0)
        exponent = max(0, attempts - 1)
        delay = min(self.backoff_base_seconds * 2**exponent, self.backoff_max_seconds)
        return timedelta(seconds=delay)

    async def on_failure(
        self,
        job_id: int,
        error: str,
        now: datetime,
        attempt: int | None = None,
    ) -> FailureOutcome:
        """
        Record a failed attempt and requeue or terminally fail the job.

        Args:
            job_id: The job id.
            error: Error message stored as ``last_error``.
            now: Current time.
            attempt: The attempt counter from the caller's claim. When omitted
                the attempt currently recorded on the row is used.

        Returns:
            REQUEUED, FAILED, or CONFLICT if the caller no longer holds the job.
        """
        job = await self._repo.get(job_id)
        if job is None or job.status != JobStatus.PROCESSING:
            return FailureOutcome.CONFLICT
        if attempt is not None and job.attempts != attempt:
            return FailureOutcome.CONFLICT

        values: dict = {
            "lease_expires_at": None,
            "last_error": error,
            "updated_at": now,
        }
        if job.attempts < job.max_attempts:
            outcome = FailureOutcome.REQUEUED
            delay = self.backoff_delay(job.attempts)
            values["status"] = JobStatus.PENDING
            values["not_before"] = now + delay if delay else None
        else:
            outcome = FailureOutcome.FAILED
            values["status"] = JobStatus.FAILED
            values["completed_at"] = now

        applied = await self._repo.conditional_update(
            job_id,
            Expectation.of(JobStatus.PROCESSING, attempts=job.attempts),
            values,
        )
        if not applied:
            return FailureOutcome.CONFLICT

        if outcome is FailureOutcome.FAILED:
            logger.warning(
                f"Job failed after {job.attempts} attempts",
                extra={"job_id": job_id, "error": error},
            )
        else:
            logger.info(
                "Job queued for retry",
                extra={
                    "job_id": job_id,
                    "attempts": job.attempts,
                    "not_before": values["not_before"],
                },
            )
        return outcome

    async def on_success(
        self,
        job_id: int,
        now: datetime,
        attempt: int | None = None,
    ) -> bool:
        """
        Mark a job as completed.

        Args:
            job_id: The job id.
            now: Completion time.
            attempt: The attempt counter from the caller's claim, if known.

        Returns:
            True if the job was completed, False if it was not held.
        """
        completed = await self._repo.conditional_update(
            job_id,
            Expectation.of(JobStatus.PROCESSING, attempts=attempt),
            {
                "status": JobStatus.COMPLETED,
                "completed_at": now,
                "lease_expires_at": None,
                "updated_at": now,
            },
        )
        if completed:
            logger.info("Job completed", extra={"job_id": job_id})
        return completed
