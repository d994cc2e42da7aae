"""
Worker pool for executing jobs.

Each worker is an asyncio task that repeatedly claims a job, runs the
handler on it and reports the outcome. Workers share nothing but the job
store; mutual exclusion comes entirely from the claim protocol, so pools in
separate processes or on separate machines may consume the same queue.
"""

import asyncio
import inspect
import logging
import time
from datetime import timedelta

from leasequeue.config import Settings, get_settings
from leasequeue.constants import SEVERITY_ERROR, SPAN_EXECUTE_JOB, JobStatus
from leasequeue.exceptions import StorageError
from leasequeue.observability.logging import bind_context
from leasequeue.observability.metrics import MetricsCollector, get_metrics
from leasequeue.observability.tracing import get_tracer
from leasequeue.queue import JobQueue
from leasequeue.types.job import AlertSink, ExhaustedJob, FailureOutcome, JobHandler, JobRef
from leasequeue.worker.handlers import get_handler, invoke_handler

logger = logging.getLogger(__name__)


class WorkerPool:
    """
    N concurrent workers polling one queue.

    Features:
    - Lease-based claims through JobQueue.dequeue
    - Optional execution timeout per handler call
    - Optional heartbeat extending leases of long-running jobs
    - Storage errors logged and backed off instead of crashing the worker
    - Cooperative shutdown with a grace period
    """

    def __init__(
        self,
        queue: JobQueue,
        queue_name: str,
        handler: JobHandler | None = None,
        pool_size: int | None = None,
        poll_interval: float | None = None,
        lease_duration: timedelta | float | None = None,
        execution_timeout: float | None = None,
        heartbeat_interval: float | None = None,
        storage_backoff: float | None = None,
        alert_sink: AlertSink | None = None,
        metrics: MetricsCollector | None = None,
        settings: Settings | None = None,
    ):
        """
        Initialize the pool.

        Args:
            queue: The queue facade workers claim from.
            queue_name: Queue to consume.
            handler: Called with each claimed JobRef. Defaults to the handler
                registered for ``queue_name``.
            pool_size: Number of concurrent workers.
            poll_interval: Seconds a worker sleeps after an empty poll.
            lease_duration: Lease granted per claim (timedelta or seconds).
            execution_timeout: Seconds before a handler call is abandoned
                and treated as a failure.
            heartbeat_interval: Seconds between lease renewals while a
                handler runs. None disables the heartbeat.
            storage_backoff: Seconds a worker waits after a storage error.
            alert_sink: Notified when a job fails terminally.
            metrics: Metrics collector. Defaults to the global collector.
            settings: Defaults for every omitted argument.
        """
        settings = settings or get_settings()

        handler = handler or get_handler(queue_name)
        if handler is None:
            raise ValueError(f"No handler given or registered for queue: {queue_name}")

        if lease_duration is None:
            lease_duration = settings.lease_duration_seconds
        if not isinstance(lease_duration, timedelta):
            lease_duration = timedelta(seconds=lease_duration)

        self.queue = queue
        self.queue_name = queue_name
        self.handler = handler
        self.pool_size = pool_size or settings.worker_pool_size
        self.poll_interval = poll_interval or settings.worker_poll_interval_seconds
        self.lease_duration = lease_duration
        self.execution_timeout = (
            execution_timeout
            if execution_timeout is not None
            else settings.worker_execution_timeout_seconds
        )
        self.heartbeat_interval = (
            heartbeat_interval
            if heartbeat_interval is not None
            else settings.worker_heartbeat_interval_seconds
        )
        self.storage_backoff = (
            storage_backoff
            if storage_backoff is not None
            else settings.worker_storage_backoff_seconds
        )
        self.shutdown_grace = settings.worker_shutdown_grace_seconds
        self.alert_sink = alert_sink

        self._running = False
        self._workers: list[asyncio.Task] = []
        self._metrics = metrics or get_metrics()

    @property
    def running(self) -> bool:
        return self._running

    async def __aenter__(self) -> "WorkerPool":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    async def start(self) -> None:
        """Spawn the worker tasks."""
        if self._running:
            return
        logger.info(
            "Worker pool starting",
            extra={"queue_name": self.queue_name, "pool_size": self.pool_size},
        )
        self._running = True
        self.queue.add_exhausted_listener(self._on_exhausted)
        self._workers = [
            asyncio.create_task(
                self._worker_loop(f"{self.queue_name}-worker-{n}"),
                name=f"{self.queue_name}-worker-{n}",
            )
            for n in range(self.pool_size)
        ]

    async def stop(self, grace_period: float | None = None) -> None:
        """
        Stop polling and wait for in-flight jobs.

        Workers finish their current job; any still running after the grace
        period are cancelled. Their jobs stay PROCESSING until the lease
        expires and another worker claims them.

        Args:
            grace_period: Seconds to wait for in-flight jobs.
        """
        if not self._workers:
            self._running = False
            self.queue.remove_exhausted_listener(self._on_exhausted)
            return

        grace_period = self.shutdown_grace if grace_period is None else grace_period
        logger.info("Worker pool stopping", extra={"queue_name": self.queue_name})
        self._running = False

        done, pending = await asyncio.wait(self._workers, timeout=grace_period)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.error(
                    f"Worker {task.get_name()} died",
                    exc_info=task.exception(),
                    extra={"queue_name": self.queue_name},
                )
        if pending:
            logger.warning(
                f"Abandoning {len(pending)} workers after grace period",
                extra={"queue_name": self.queue_name},
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        self._workers = []
        self.queue.remove_exhausted_listener(self._on_exhausted)
        logger.info("Worker pool stopped", extra={"queue_name": self.queue_name})

    async def drain(self, timeout: float | None = None) -> None:
        """
        Wait until the queue has no PENDING or PROCESSING jobs.

        Args:
            timeout: Seconds to wait before raising TimeoutError.
        """
        async def wait_for_quiescence() -> None:
            while True:
                counts = await self.queue.stats(self.queue_name)
                if counts[JobStatus.PENDING] == 0 and counts[JobStatus.PROCESSING] == 0:
                    return
                await asyncio.sleep(self.poll_interval)

        await asyncio.wait_for(wait_for_quiescence(), timeout)

    async def run_until_idle(self, timeout: float | None = None) -> dict[str, int]:
        """
        Start the pool, process the queue to quiescence, then stop.

        Returns:
            The queue's final status counts.
        """
        await self.start()
        try:
            await self.drain(timeout)
        finally:
            await self.stop()
        return await self.queue.stats(self.queue_name)

    async def _worker_loop(self, worker_id: str) -> None:
        bind_context(worker_id=worker_id, queue_name=self.queue_name)
        logger.debug("Worker started", extra={"worker_id": worker_id})

        while self._running:
            try:
                job = await self.queue.dequeue(self.queue_name, self.lease_duration)
            except StorageError as e:
                logger.error(
                    f"Storage error while polling, backing off {self.storage_backoff}s",
                    extra={"worker_id": worker_id, "error": str(e)},
                )
                await asyncio.sleep(self.storage_backoff)
                continue
            except Exception as e:
                logger.exception(
                    f"Error in worker loop: {e}",
                    extra={"worker_id": worker_id},
                )
                await asyncio.sleep(self.poll_interval)
                continue

            if job is None:
                await asyncio.sleep(self.poll_interval)
                continue

            try:
                await self.execute(job)
            except StorageError as e:
                logger.error(
                    f"Storage error while finalizing job, backing off {self.storage_backoff}s",
                    extra={"worker_id": worker_id, "job_id": job.id, "error": str(e)},
                )
                await asyncio.sleep(self.storage_backoff)
            except Exception:
                logger.exception(
                    "Unexpected error while executing job",
                    extra={"worker_id": worker_id, "job_id": job.id},
                )
                await asyncio.sleep(self.poll_interval)

        logger.debug("Worker stopped", extra={"worker_id": worker_id})

    async def execute(self, job: JobRef) -> None:
        """
        Run the handler on a claimed job and report the outcome.

        Args:
            job: The claimed job.

        Raises:
            StorageError: If the outcome could not be recorded. The job stays
                PROCESSING and is re-delivered once its lease expires.
        """
        start_time = time.monotonic()
        heartbeat = None
        if self.heartbeat_interval:
            heartbeat = asyncio.create_task(self._heartbeat_loop(job))

        logger.info(
            "Executing job",
            extra={"job_id": job.id, "attempts": job.attempts},
        )

        error: str | None = None
        try:
            with get_tracer().start_as_current_span(SPAN_EXECUTE_JOB) as span:
                span.set_attribute("job_id", job.id)
                span.set_attribute("queue_name", job.queue_name)
                span.set_attribute("attempts", job.attempts)
                try:
                    await invoke_handler(self.handler, job, self.execution_timeout)
                except Exception as e:
                    error = str(e) or type(e).__name__
                    span.record_exception(e)
        finally:
            if heartbeat is not None:
                heartbeat.cancel()
                await asyncio.gather(heartbeat, return_exceptions=True)

        duration = time.monotonic() - start_time

        if error is None:
            completed = await self.queue.complete(job.id, attempt=job.attempts)
            outcome = "completed" if completed else FailureOutcome.CONFLICT.value
            if not completed:
                logger.warning(
                    "Lease lost before completion, result discarded",
                    extra={"job_id": job.id, "attempts": job.attempts},
                )
            self._metrics.record_job_finished(job.queue_name, outcome, duration)
            return

        logger.warning(
            "Job attempt failed",
            extra={"job_id": job.id, "attempts": job.attempts, "error": error},
        )
        result = await self.queue.report_failure(job.id, error, attempt=job.attempts)
        self._metrics.record_job_finished(job.queue_name, result.value, duration)

        if result is FailureOutcome.FAILED:
            await self._alert(job.id, job.queue_name, job.attempts, error)

    async def _on_exhausted(self, job: ExhaustedJob) -> None:
        if job.queue_name != self.queue_name:
            return
        await self._alert(job.id, job.queue_name, job.attempts, job.last_error)

    async def _alert(self, job_id: int, queue_name: str, attempts: int, error: str) -> None:
        if self.alert_sink is None:
            return
        message = (
            f"Job {job_id} in queue {queue_name} failed after "
            f"{attempts} attempts: {error}"
        )
        try:
            result = self.alert_sink.notify(SEVERITY_ERROR, message)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Alert sink failed", extra={"job_id": job_id})

    async def _heartbeat_loop(self, job: JobRef) -> None:
        """
        Periodically extend the lease of a running job.

        Stops once the lease is lost; the handler keeps running, but its
        result will be discarded.
        """
        current = job
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                renewed = await self.queue.renew(current, self.lease_duration)
            except StorageError as e:
                logger.error(
                    "Storage error while renewing lease",
                    extra={"job_id": job.id, "error": str(e)},
                )
                continue
            if renewed is None:
                return
            current = renewed
