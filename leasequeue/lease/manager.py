"""
Lease manager implementing the claim protocol.

A claim is a lookup of the oldest eligible job followed by a conditional
update that moves it to PROCESSING, bumps its attempt counter and grants a
lease. The conditional update is the only mutual-exclusion mechanism: two
workers racing for the same row cannot both succeed, and the loser simply
looks again.
"""

import inspect
import logging
from datetime import datetime, timedelta

from leasequeue.constants import DEFAULT_CLAIM_RETRIES, JobStatus
from leasequeue.db.models import Job
from leasequeue.db.repository import LEASE_EXPIRED_ERROR, JobRepository
from leasequeue.observability.metrics import MetricsCollector, get_metrics
from leasequeue.types.job import ExhaustedJob, ExhaustedListener, Expectation, JobRef

logger = logging.getLogger(__name__)


class LeaseManager:
    """
    Grants mutually exclusive, time-limited ownership of jobs.

    A crashed worker never releases its lease; the lease just expires and
    the job becomes claimable again, which makes delivery at-least-once.
    """

    def __init__(
        self,
        repository: JobRepository,
        claim_retries: int = DEFAULT_CLAIM_RETRIES,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the lease manager.

        Args:
            repository: The job record store.
            claim_retries: How many lost races to absorb per claim before
                giving up for this poll cycle.
            metrics: Metrics collector. Defaults to the global collector.
        """
        self._repo = repository
        self.claim_retries = claim_retries
        self._metrics = metrics or get_metrics()
        self._exhausted_listeners: list[ExhaustedListener] = []

    def add_exhausted_listener(self, listener: ExhaustedListener) -> None:
        """Call ``listener`` for every job failed because its final lease expired."""
        self._exhausted_listeners.append(listener)

    def remove_exhausted_listener(self, listener: ExhaustedListener) -> None:
        if listener in self._exhausted_listeners:
            self._exhausted_listeners.remove(listener)

    async def notify_exhausted(self, jobs: list[ExhaustedJob]) -> None:
        """
        Hand terminally failed jobs to the registered listeners.

        A failing listener is logged and does not stop the others.
        """
        for job in jobs:
            for listener in list(self._exhausted_listeners):
                try:
                    result = listener(job)
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    logger.exception(
                        "Exhausted-job listener failed",
                        extra={"job_id": job.id},
                    )

    async def claim(
        self,
        queue_name: str,
        now: datetime,
        lease_duration: timedelta,
    ) -> JobRef | None:
        """
        Claim the oldest eligible job in a queue.

        Args:
            queue_name: The queue to claim from.
            now: Current time.
            lease_duration: How long the lease stays valid.

        Returns:
            The claimed job, or None if nothing was claimable or every
            attempt lost its race.
        """
        conflicts = 0
        while conflicts <= self.claim_retries:
            job = await self._repo.find_claimable(queue_name, now)
            if job is None:
                return None

            if job.status == JobStatus.PROCESSING and not job.is_retryable:
                # Expired on its final attempt: claiming again would exceed max_attempts
                await self._fail_exhausted(job, now)
                continue

            lease_expires_at = now + lease_duration
            claimed = await self._repo.conditional_update(
                job.id,
                Expectation.of(
                    job.status,
                    attempts=job.attempts,
                    lease_expired_before=now,
                ),
                {
                    "status": JobStatus.PROCESSING,
                    "attempts": job.attempts + 1,
                    "lease_expires_at": lease_expires_at,
                    "not_before": None,
                    "updated_at": now,
                },
            )

            if not claimed:
                conflicts += 1
                self._metrics.record_lease_conflict(queue_name)
                logger.debug(
                    "Lost claim race",
                    extra={"job_id": job.id, "queue_name": queue_name},
                )
                continue

            if job.status == JobStatus.PROCESSING:
                self._metrics.record_lease_expired(queue_name)
                logger.warning(
                    "Re-claimed job after lease expiry",
                    extra={"job_id": job.id, "attempts": job.attempts + 1},
                )

            self._metrics.record_lease_claimed(queue_name)
            logger.info(
                "Claimed job",
                extra={
                    "job_id": job.id,
                    "queue_name": queue_name,
                    "attempts": job.attempts + 1,
                },
            )
            return JobRef(
                id=job.id,
                queue_name=job.queue_name,
                payload=job.payload,
                attempts=job.attempts + 1,
                max_attempts=job.max_attempts,
                lease_expires_at=lease_expires_at,
            )

        logger.info(
            "Giving up claim after repeated conflicts",
            extra={"queue_name": queue_name, "conflicts": conflicts},
        )
        return None

    async def renew(
        self,
        job_ref: JobRef,
        now: datetime,
        lease_duration: timedelta,
    ) -> JobRef | None:
        """
        Extend a lease the caller still holds (heartbeat).

        Args:
            job_ref: The claimed job.
            now: Current time.
            lease_duration: New lease length, counted from ``now``.

        Returns:
            The job with its new expiry, or None if the lease already expired
            or was taken over.
        """
        lease_expires_at = now + lease_duration
        renewed = await self._repo.conditional_update(
            job_ref.id,
            Expectation.of(JobStatus.PROCESSING, attempts=job_ref.attempts),
            {"lease_expires_at": lease_expires_at, "updated_at": now},
        )
        if not renewed:
            logger.warning(
                "Lease lost before renewal",
                extra={"job_id": job_ref.id, "attempts": job_ref.attempts},
            )
            return None

        logger.debug("Extended lease", extra={"job_id": job_ref.id})
        return JobRef(
            id=job_ref.id,
            queue_name=job_ref.queue_name,
            payload=job_ref.payload,
            attempts=job_ref.attempts,
            max_attempts=job_ref.max_attempts,
            lease_expires_at=lease_expires_at,
        )

    async def _fail_exhausted(self, job: Job, now: datetime) -> None:
        failed = await self._repo.conditional_update(
            job.id,
            Expectation.of(
                JobStatus.PROCESSING,
                attempts=job.attempts,
                lease_expired_before=now,
            ),
            {
                "status": JobStatus.FAILED,
                "lease_expires_at": None,
                "completed_at": now,
                "last_error": LEASE_EXPIRED_ERROR,
                "updated_at": now,
            },
        )
        if failed:
            self._metrics.record_lease_expired(job.queue_name)
            self._metrics.record_job_finished(job.queue_name, JobStatus.FAILED.value)
            logger.warning(
                "Job failed after its final lease expired",
                extra={"job_id": job.id, "attempts": job.attempts},
            )
            await self.notify_exhausted(
                [
                    ExhaustedJob(
                        id=job.id,
                        queue_name=job.queue_name,
                        attempts=job.attempts,
                        last_error=LEASE_EXPIRED_ERROR,
                    )
                ]
            )
