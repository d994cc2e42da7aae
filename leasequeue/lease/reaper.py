"""
Lease reaper for releasing expired job leases.

Claiming already treats expired leases as eligible, so the reaper is not
needed for correctness. It keeps status counts honest while no worker is
polling, and moves jobs whose final attempt expired to FAILED.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from leasequeue.constants import DEFAULT_REAPER_INTERVAL_SECONDS, JobStatus
from leasequeue.db.repository import JobRepository
from leasequeue.observability.metrics import MetricsCollector, get_metrics
from leasequeue.types.job import ExhaustedJob
from leasequeue.utils import Clock, utc_now

logger = logging.getLogger(__name__)


class Reaper:
    """
    Periodic sweep over expired leases.

    Runs periodically to:
    1. Find PROCESSING jobs whose lease_expires_at has passed
    2. Return them to PENDING, or FAILED when no attempts remain
    3. Hand the FAILED ones to ``on_exhausted`` for alerting
    """

    def __init__(
        self,
        repository: JobRepository,
        interval_seconds: float = DEFAULT_REAPER_INTERVAL_SECONDS,
        clock: Clock = utc_now,
        metrics: MetricsCollector | None = None,
        on_exhausted: Callable[[list[ExhaustedJob]], Awaitable[None]] | None = None,
    ):
        """
        Initialize the reaper.

        Args:
            repository: The job record store.
            interval_seconds: Seconds between sweeps.
            clock: Source of the current time.
            metrics: Metrics collector. Defaults to the global collector.
            on_exhausted: Awaited with the jobs each sweep moved to FAILED.
        """
        self._repo = repository
        self.interval = interval_seconds
        self._clock = clock
        self._metrics = metrics or get_metrics()
        self._on_exhausted = on_exhausted
        self._running = False
        self._wakeup = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Run sweeps until stopped."""
        logger.info(f"Reaper starting with interval {self.interval}s")
        self._running = True
        self._wakeup.clear()

        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.exception(f"Error in reaper loop: {e}")

            try:
                await asyncio.wait_for(self._wakeup.wait(), self.interval)
            except TimeoutError:
                pass

        logger.info("Reaper stopped")

    async def stop(self) -> None:
        """Stop the reaper after the current sweep."""
        logger.info("Reaper stopping")
        self._running = False
        self._wakeup.set()

    async def run_once(self) -> int:
        """
        Run a single sweep (for testing or cron-style execution).

        Returns:
            Number of leases released.
        """
        requeued, failed = await self._repo.expire_leases(self._clock())
        released = requeued + len(failed)

        if released:
            self._metrics.record_lease_expired("all", released)
            logger.info(
                f"Released {released} expired leases",
                extra={"requeued": requeued, "failed": len(failed)},
            )

        for job in failed:
            self._metrics.record_job_finished(job.queue_name, JobStatus.FAILED.value)
        if failed and self._on_exhausted is not None:
            await self._on_exhausted(failed)

        return released
