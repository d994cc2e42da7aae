"""
Queue facade.

JobQueue is the public API producers, workers and monitoring tools use. It
composes the job repository, the lease manager and the retry policy; it
holds no job state of its own, so any number of JobQueue instances, in any
number of processes, may share one database.
"""

import logging
from collections.abc import Awaitable, Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine

from leasequeue.config import Settings, get_settings
from leasequeue.constants import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_REAPER_INTERVAL_SECONDS,
    SPAN_CLAIM_JOB,
    SPAN_COMPLETE_JOB,
    SPAN_ENQUEUE_JOB,
    SPAN_FAIL_JOB,
    JobStatus,
    QueueOperation,
)
from leasequeue.db.connection import create_engine, create_schema, create_session_factory
from leasequeue.db.models import Job
from leasequeue.db.repository import JobRepository
from leasequeue.exceptions import InvalidJobError, StorageError
from leasequeue.lease.manager import LeaseManager
from leasequeue.lease.reaper import Reaper
from leasequeue.observability.metrics import MetricsCollector, get_metrics
from leasequeue.observability.tracing import get_tracer, instrument_sqlalchemy, setup_tracing
from leasequeue.retry.policy import RetryPolicy
from leasequeue.types.job import ExhaustedListener, FailureOutcome, JobRef
from leasequeue.utils import Clock, encode_payload, utc_now

logger = logging.getLogger(__name__)


def _as_timedelta(duration: timedelta | float) -> timedelta:
    if isinstance(duration, timedelta):
        return duration
    return timedelta(seconds=duration)


class JobQueue:
    """
    Persistent work queue with lease-based claims.

    Example:
        queue = JobQueue.from_settings()
        await queue.create_schema()
        job_id = await queue.enqueue("emails", {"to": "a@example.com"})
        job = await queue.dequeue("emails", lease_duration=30)
        if job is not None:
            await queue.complete(job.id, attempt=job.attempts)
    """

    def __init__(
        self,
        repository: JobRepository,
        lease_manager: LeaseManager | None = None,
        retry_policy: RetryPolicy | None = None,
        clock: Clock = utc_now,
        default_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        metrics: MetricsCollector | None = None,
        engine: AsyncEngine | None = None,
        reaper_interval_seconds: float = DEFAULT_REAPER_INTERVAL_SECONDS,
    ):
        """
        Initialize the queue.

        Args:
            repository: The job record store.
            lease_manager: Claim protocol. Built from the repository if omitted.
            retry_policy: Failure policy. Immediate retry if omitted.
            clock: Source of the current time.
            default_max_attempts: Attempts allowed when enqueue gives none.
            metrics: Metrics collector. Defaults to the global collector.
            engine: Engine owned by this queue, disposed by close().
            reaper_interval_seconds: Sweep interval of reapers built by reaper().
        """
        self._metrics = metrics or get_metrics()
        self._repo = repository
        self._lease_manager = lease_manager or LeaseManager(repository, metrics=self._metrics)
        self._retry_policy = retry_policy or RetryPolicy(repository)
        self._clock = clock
        self._engine = engine
        self.default_max_attempts = default_max_attempts
        self.reaper_interval_seconds = reaper_interval_seconds

        self._operations: dict[QueueOperation, Callable[..., Awaitable[Any]]] = {
            QueueOperation.ENQUEUE: self.enqueue,
            QueueOperation.DEQUEUE: self.dequeue,
            QueueOperation.COMPLETE: self.complete,
            QueueOperation.FAIL: self.fail,
            QueueOperation.STATS: self.stats,
        }

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        clock: Clock = utc_now,
        metrics: MetricsCollector | None = None,
    ) -> "JobQueue":
        """
        Build a queue and its engine from configuration.

        Args:
            settings: Queue settings. Defaults to the cached environment settings.
            clock: Source of the current time.
            metrics: Metrics collector. Defaults to the global collector.
        """
        settings = settings or get_settings()
        metrics = metrics or get_metrics()
        engine = create_engine(settings)
        if settings.otel_exporter_otlp_endpoint:
            setup_tracing(settings)
            instrument_sqlalchemy(engine)
        repository = JobRepository(create_session_factory(engine), clock=clock)
        return cls(
            repository,
            lease_manager=LeaseManager(
                repository,
                claim_retries=settings.claim_retries,
                metrics=metrics,
            ),
            retry_policy=RetryPolicy(
                repository,
                backoff_base_seconds=settings.retry_backoff_base_seconds,
                backoff_max_seconds=settings.retry_backoff_max_seconds,
            ),
            clock=clock,
            default_max_attempts=settings.queue_default_max_attempts,
            metrics=metrics,
            engine=engine,
            reaper_interval_seconds=settings.reaper_interval_seconds,
        )

    @property
    def repository(self) -> JobRepository:
        return self._repo

    @property
    def clock(self) -> Clock:
        return self._clock

    def add_exhausted_listener(self, listener: ExhaustedListener) -> None:
        """
        Register a callback for jobs failed because their final lease expired.

        Such jobs never pass through report_failure, so this is how callers
        alert on them. Both claims and reaper sweeps notify listeners.
        """
        self._lease_manager.add_exhausted_listener(listener)

    def remove_exhausted_listener(self, listener: ExhaustedListener) -> None:
        self._lease_manager.remove_exhausted_listener(listener)

    def reaper(self, interval_seconds: float | None = None) -> Reaper:
        """
        Build a reaper sweeping this queue's store.

        Args:
            interval_seconds: Seconds between sweeps. Defaults to the
                configured reaper interval.
        """
        return Reaper(
            self._repo,
            interval_seconds=interval_seconds or self.reaper_interval_seconds,
            clock=self._clock,
            metrics=self._metrics,
            on_exhausted=self._lease_manager.notify_exhausted,
        )

    async def create_schema(self) -> None:
        """Create the jobs table on the queue's own engine."""
        if self._engine is None:
            raise RuntimeError("Queue has no engine; create the schema on the caller's engine")
        await create_schema(self._engine)

    async def close(self) -> None:
        """Dispose the engine owned by this queue."""
        if self._engine is not None:
            await self._engine.dispose()
            logger.info("Queue database connection closed")

    @contextmanager
    def _traced(self, span_name: str, **attributes: Any) -> Iterator[Any]:
        with get_tracer().start_as_current_span(span_name) as span:
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, value)
            try:
                yield span
            except StorageError as e:
                self._metrics.record_storage_error(e.operation)
                raise

    async def enqueue(
        self,
        queue_name: str,
        payload: bytes | str | Mapping[str, Any],
        max_attempts: int | None = None,
    ) -> int:
        """
        Add a PENDING job to a queue.

        Args:
            queue_name: The queue name.
            payload: Bytes, a UTF-8 string, or a JSON-serializable mapping.
            max_attempts: Maximum number of claims; defaults to the queue default.

        Returns:
            The new job id.

        Raises:
            InvalidJobError: If the arguments are rejected.
            StorageError: If the job could not be written.
        """
        if not queue_name:
            raise InvalidJobError("queue_name must be a non-empty string")
        if max_attempts is None:
            max_attempts = self.default_max_attempts
        if max_attempts < 1:
            raise InvalidJobError(f"max_attempts must be >= 1, got {max_attempts}")
        try:
            data = encode_payload(payload)
        except (TypeError, ValueError) as e:
            raise InvalidJobError(str(e)) from e

        with self._traced(SPAN_ENQUEUE_JOB, queue_name=queue_name) as span:
            job_id = await self._repo.insert(queue_name, data, max_attempts, self._clock())
            span.set_attribute("job_id", job_id)

        self._metrics.record_job_enqueued(queue_name)
        logger.info(
            "Enqueued job",
            extra={"job_id": job_id, "queue_name": queue_name, "max_attempts": max_attempts},
        )
        return job_id

    async def dequeue(
        self,
        queue_name: str,
        lease_duration: timedelta | float,
    ) -> JobRef | None:
        """
        Claim the oldest eligible job in a queue.

        Args:
            queue_name: The queue name.
            lease_duration: Lease length, as a timedelta or seconds.

        Returns:
            The claimed job, or None if the queue has nothing claimable.
        """
        with self._traced(SPAN_CLAIM_JOB, queue_name=queue_name) as span:
            job = await self._lease_manager.claim(
                queue_name,
                self._clock(),
                _as_timedelta(lease_duration),
            )
            if job is not None:
                span.set_attribute("job_id", job.id)
                span.set_attribute("attempts", job.attempts)
        return job

    async def renew(self, job: JobRef, lease_duration: timedelta | float) -> JobRef | None:
        """Extend the lease on a job the caller holds; None if it was lost."""
        return await self._lease_manager.renew(
            job,
            self._clock(),
            _as_timedelta(lease_duration),
        )

    async def complete(self, job_id: int, attempt: int | None = None) -> bool:
        """
        Mark a held job as completed.

        Args:
            job_id: The job id.
            attempt: The ``attempts`` value of the caller's claim. Passing it
                guarantees a worker whose lease was re-claimed cannot complete
                the newer attempt.

        Returns:
            True once; False if the job is not PROCESSING under that attempt.
        """
        with self._traced(SPAN_COMPLETE_JOB, job_id=job_id, attempt=attempt):
            return await self._retry_policy.on_success(job_id, self._clock(), attempt)

    async def report_failure(
        self,
        job_id: int,
        error: str,
        attempt: int | None = None,
    ) -> FailureOutcome:
        """
        Report a failed attempt and return what happened to the job.

        Returns:
            REQUEUED, FAILED (terminal, caller should alert), or CONFLICT.
        """
        with self._traced(SPAN_FAIL_JOB, job_id=job_id, attempt=attempt) as span:
            outcome = await self._retry_policy.on_failure(
                job_id, error, self._clock(), attempt
            )
            span.set_attribute("outcome", outcome.value)
        return outcome

    async def fail(self, job_id: int, error: str, attempt: int | None = None) -> bool:
        """
        Report a failed attempt.

        Returns:
            True if the failure was recorded, False if the lease was already lost.
        """
        outcome = await self.report_failure(job_id, error, attempt)
        return outcome is not FailureOutcome.CONFLICT

    async def stats(self, queue_name: str) -> dict[str, int]:
        """
        Count jobs in a queue by status.

        Returns:
            Mapping of every status to its count.
        """
        try:
            counts = await self._repo.stats(queue_name)
        except StorageError as e:
            self._metrics.record_storage_error(e.operation)
            raise
        self._metrics.update_queue_depth(queue_name, counts)
        return counts

    async def get(self, job_id: int) -> Job | None:
        """Get a job row by id."""
        return await self._repo.get(job_id)

    async def list_jobs(
        self,
        queue_name: str,
        status: JobStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[Sequence[Job], int]:
        """List jobs in a queue, oldest first, with the total count."""
        return await self._repo.list_jobs(queue_name, status, limit, offset)

    async def dispatch(self, operation: QueueOperation | str, **kwargs: Any) -> Any:
        """
        Run a queue operation selected by name.

        Args:
            operation: One of the QueueOperation values.
            **kwargs: Arguments of the selected operation.

        Raises:
            ValueError: If the operation is unknown.
        """
        return await self._operations[QueueOperation(operation)](**kwargs)
