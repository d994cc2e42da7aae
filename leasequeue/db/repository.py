"""
Job repository for database operations.
Implements the job record store: durable rows plus one atomic primitive,
the conditional update.
"""

import logging
from collections.abc import AsyncGenerator, Mapping, Sequence
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from leasequeue.constants import JobStatus
from leasequeue.db.models import Job
from leasequeue.exceptions import StorageError
from leasequeue.types.job import ExhaustedJob, Expectation
from leasequeue.utils import Clock, utc_now

logger = logging.getLogger(__name__)

LEASE_EXPIRED_ERROR = "lease expired before the job was finalized"


class JobRepository:
    """
    Repository for job database operations.

    Every method runs in its own short transaction, so no lock is held
    between a lookup and the conditional update that follows it.
    Driver and database failures are raised as StorageError.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock = utc_now,
    ):
        """
        Initialize the repository.

        Args:
            session_factory: Factory producing async sessions.
            clock: Source of the current time for ``updated_at``.
        """
        self._session_factory = session_factory
        self._clock = clock

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncGenerator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as e:
            logger.error(
                "Job store operation failed",
                extra={"operation": operation, "error": str(e)},
            )
            raise StorageError(operation, str(e)) from e

    async def insert(
        self,
        queue_name: str,
        payload: bytes,
        max_attempts: int,
        now: datetime | None = None,
    ) -> int:
        """
        Durably write a new PENDING job.

        Args:
            queue_name: Queue the job belongs to.
            payload: Opaque job payload.
            max_attempts: Maximum number of claims.
            now: Creation time. Defaults to the repository clock.

        Returns:
            The assigned job id.

        Raises:
            StorageError: If the row could not be written.
        """
        now = now or self._clock()
        job = Job(
            queue_name=queue_name,
            payload=payload,
            status=JobStatus.PENDING,
            attempts=0,
            max_attempts=max_attempts,
            created_at=now,
            updated_at=now,
        )
        async with self._transaction("insert") as session:
            session.add(job)
            await session.flush()
            job_id = job.id

        logger.debug(
            "Inserted job",
            extra={"job_id": job_id, "queue_name": queue_name},
        )
        return job_id

    async def get(self, job_id: int) -> Job | None:
        """
        Get a job by ID.

        Args:
            job_id: The job id.

        Returns:
            The Job or None if not found.
        """
        async with self._transaction("get") as session:
            result = await session.execute(select(Job).where(Job.id == job_id))
            return result.scalar_one_or_none()

    async def find_claimable(self, queue_name: str, now: datetime) -> Job | None:
        """
        Find the oldest job that may be claimed right now.

        Eligible rows are PENDING jobs past their backoff, and PROCESSING
        jobs whose lease has expired. Ordering is FIFO by creation time with
        ties broken by id.

        Args:
            queue_name: The queue to search.
            now: The instant leases are compared against.

        Returns:
            The oldest eligible Job, or None.
        """
        stmt = (
            select(Job)
            .where(
                Job.queue_name == queue_name,
                or_(
                    and_(
                        Job.status == JobStatus.PENDING,
                        or_(Job.not_before.is_(None), Job.not_before <= now),
                    ),
                    and_(
                        Job.status == JobStatus.PROCESSING,
                        Job.lease_expires_at < now,
                    ),
                ),
            )
            .order_by(Job.created_at.asc(), Job.id.asc())
            .limit(1)
        )
        async with self._transaction("find_claimable") as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def conditional_update(
        self,
        job_id: int,
        expected: Expectation,
        values: Mapping[str, Any],
    ) -> bool:
        """
        Apply ``values`` to a job only if it still matches ``expected``.

        This is a single UPDATE ... WHERE statement, so the database
        serializes competing writers on the row: of two racing callers with
        the same expectation, exactly one sees True.

        Args:
            job_id: The job id.
            expected: Precondition the row must satisfy.
            values: Column values to set.

        Returns:
            True if the row was updated, False if the precondition no longer
            held (or the job does not exist).
        """
        conditions = [Job.id == job_id, Job.status.in_(expected.statuses)]
        if expected.attempts is not None:
            conditions.append(Job.attempts == expected.attempts)
        if expected.lease_expired_before is not None:
            conditions.append(
                or_(
                    Job.status != JobStatus.PROCESSING,
                    Job.lease_expires_at < expected.lease_expired_before,
                )
            )

        new_values = dict(values)
        new_values.setdefault("updated_at", self._clock())

        stmt = (
            update(Job)
            .where(*conditions)
            .values(**new_values)
            .execution_options(synchronize_session=False)
        )
        async with self._transaction("conditional_update") as session:
            result = await session.execute(stmt)
            applied = result.rowcount == 1

        if not applied:
            logger.debug(
                "Conditional update not applied",
                extra={"job_id": job_id, "expected": sorted(expected.statuses)},
            )
        return applied

    async def expire_leases(self, now: datetime) -> tuple[int, list[ExhaustedJob]]:
        """
        Release every expired lease in one sweep.

        Jobs with attempts remaining return to PENDING; jobs whose last
        permitted attempt expired become FAILED.

        Args:
            now: The instant leases are compared against.

        Returns:
            Tuple of (requeued count, jobs that were failed).
        """
        expired = and_(
            Job.status == JobStatus.PROCESSING,
            Job.lease_expires_at < now,
        )
        requeue_stmt = (
            update(Job)
            .where(expired, Job.attempts < Job.max_attempts)
            .values(
                status=JobStatus.PENDING,
                lease_expires_at=None,
                last_error=LEASE_EXPIRED_ERROR,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        fail_stmt = (
            update(Job)
            .where(expired, Job.attempts >= Job.max_attempts)
            .values(
                status=JobStatus.FAILED,
                lease_expires_at=None,
                last_error=LEASE_EXPIRED_ERROR,
                completed_at=now,
                updated_at=now,
            )
            .returning(Job.id, Job.queue_name, Job.attempts)
            .execution_options(synchronize_session=False)
        )
        async with self._transaction("expire_leases") as session:
            requeued = (await session.execute(requeue_stmt)).rowcount
            failed = [
                ExhaustedJob(
                    id=row.id,
                    queue_name=row.queue_name,
                    attempts=row.attempts,
                    last_error=LEASE_EXPIRED_ERROR,
                )
                for row in (await session.execute(fail_stmt)).all()
            ]

        if requeued or failed:
            logger.info(
                "Released expired leases",
                extra={"requeued": requeued, "failed": len(failed)},
            )
        return requeued, failed

    async def stats(self, queue_name: str) -> dict[str, int]:
        """
        Count jobs by status for a queue.

        Args:
            queue_name: The queue to count.

        Returns:
            Dictionary of status -> count, with every status present.
        """
        stmt = (
            select(Job.status, func.count())
            .where(Job.queue_name == queue_name)
            .group_by(Job.status)
        )
        counts = {status.value: 0 for status in JobStatus}
        async with self._transaction("stats") as session:
            result = await session.execute(stmt)
            for status, count in result.all():
                counts[JobStatus(status).value] = count
        return counts

    async def list_jobs(
        self,
        queue_name: str,
        status: JobStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[Sequence[Job], int]:
        """
        List jobs for a queue with optional filtering.

        Args:
            queue_name: The queue name.
            status: Optional status filter.
            limit: Maximum number of jobs to return.
            offset: Offset for pagination.

        Returns:
            Tuple of (jobs, total_count), oldest first.
        """
        base_filter = Job.queue_name == queue_name
        if status is not None:
            base_filter = and_(base_filter, Job.status == status)

        count_stmt = select(func.count()).select_from(Job).where(base_filter)
        stmt = (
            select(Job)
            .where(base_filter)
            .order_by(Job.created_at.asc(), Job.id.asc())
            .limit(limit)
            .offset(offset)
        )
        async with self._transaction("list_jobs") as session:
            total = (await session.execute(count_stmt)).scalar() or 0
            jobs = (await session.execute(stmt)).scalars().all()

        return jobs, total
