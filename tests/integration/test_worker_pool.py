"""
Integration tests for worker pool processing.
"""

import asyncio
import logging
from datetime import timedelta

import pytest

from leasequeue.config import Settings
from leasequeue.constants import JobStatus
from leasequeue.exceptions import StorageError
from leasequeue.queue import JobQueue
from leasequeue.types.job import JobRef
from leasequeue.worker import WorkerPool, register_handler


class RecordingSink:
    """Alert sink that keeps every notification."""

    def __init__(self) -> None:
        self.alerts: list[tuple[str, str]] = []

    def notify(self, severity: str, message: str) -> None:
        self.alerts.append((severity, message))


class AsyncRecordingSink(RecordingSink):
    async def notify(self, severity: str, message: str) -> None:
        self.alerts.append((severity, message))


class FlakyQueue(JobQueue):
    """Queue whose first polls fail with a storage error."""

    def __init__(self, *args, failures: int, **kwargs):
        super().__init__(*args, **kwargs)
        self.failures = failures

    async def dequeue(self, queue_name, lease_duration):
        if self.failures > 0:
            self.failures -= 1
            raise StorageError("find_claimable", "database is unavailable")
        return await super().dequeue(queue_name, lease_duration)


def make_pool(queue: JobQueue, settings: Settings, handler, **kwargs) -> WorkerPool:
    return WorkerPool(
        queue,
        "emails",
        handler,
        settings=settings,
        metrics=queue._metrics,
        **kwargs,
    )


class TestWorkerPool:
    """Tests for WorkerPool."""

    @pytest.mark.asyncio
    async def test_processes_all_jobs(self, live_queue: JobQueue, test_settings: Settings):
        """Test every job is handled once and completed."""
        seen: list[bytes] = []

        async def handler(job: JobRef) -> None:
            seen.append(job.payload)

        for n in range(6):
            await live_queue.enqueue("emails", str(n))

        stats = await make_pool(live_queue, test_settings, handler).run_until_idle(timeout=10)

        assert sorted(seen) == [str(n).encode() for n in range(6)]
        assert stats == {"pending": 0, "processing": 0, "completed": 6, "failed": 0}

    @pytest.mark.asyncio
    async def test_always_failing_handler(self, live_queue: JobQueue, test_settings: Settings):
        """Test five single-attempt jobs with a throwing handler all end FAILED."""
        async def handler(job: JobRef) -> None:
            raise RuntimeError("handler always throws")

        for n in range(5):
            await live_queue.enqueue("emails", str(n), max_attempts=1)

        stats = await make_pool(live_queue, test_settings, handler).run_until_idle(timeout=10)

        assert stats == {"failed": 5, "pending": 0, "processing": 0, "completed": 0}
        jobs, _ = await live_queue.list_jobs("emails")
        assert {job.last_error for job in jobs} == {"handler always throws"}

    @pytest.mark.asyncio
    async def test_retries_until_success(self, live_queue: JobQueue, test_settings: Settings):
        """Test a transient failure is retried on the next claim."""
        async def handler(job: JobRef) -> None:
            if job.attempts < 2:
                raise RuntimeError("transient")

        job_id = await live_queue.enqueue("emails", b"x", max_attempts=3)

        stats = await make_pool(live_queue, test_settings, handler).run_until_idle(timeout=10)

        assert stats["completed"] == 1
        row = await live_queue.get(job_id)
        assert row.attempts == 2
        assert row.last_error == "transient"

    @pytest.mark.asyncio
    async def test_sync_handler(self, live_queue: JobQueue, test_settings: Settings):
        handled = []

        def handler(job: JobRef) -> None:
            handled.append(job.id)

        job_id = await live_queue.enqueue("emails", b"x")

        await make_pool(live_queue, test_settings, handler).run_until_idle(timeout=10)

        assert handled == [job_id]

    @pytest.mark.asyncio
    async def test_mutual_exclusion_under_load(self, live_queue: JobQueue, test_settings: Settings):
        """Test no job is ever executed by two workers at the same time."""
        executing: dict[int, str] = {}
        overlaps: list[int] = []
        executions: list[tuple[int, str]] = []

        async def handler(job: JobRef) -> None:
            worker = asyncio.current_task().get_name()
            if job.id in executing:
                overlaps.append(job.id)
            executing[job.id] = worker
            executions.append((job.id, worker))
            await asyncio.sleep(0.005)
            del executing[job.id]

        job_ids = [await live_queue.enqueue("emails", str(n)) for n in range(40)]

        stats = await make_pool(
            live_queue,
            test_settings,
            handler,
            pool_size=8,
            lease_duration=60,
        ).run_until_idle(timeout=60)

        assert overlaps == []
        assert sorted(job_id for job_id, _ in executions) == job_ids
        assert len({worker for _, worker in executions}) > 1
        assert stats["completed"] == 40

    @pytest.mark.asyncio
    async def test_execution_timeout_is_a_failure(self, live_queue: JobQueue, test_settings: Settings):
        async def handler(job: JobRef) -> None:
            await asyncio.sleep(10)

        job_id = await live_queue.enqueue("emails", b"x", max_attempts=2)

        stats = await make_pool(
            live_queue,
            test_settings,
            handler,
            execution_timeout=0.05,
        ).run_until_idle(timeout=10)

        assert stats["failed"] == 1
        row = await live_queue.get(job_id)
        assert row.attempts == 2
        assert "timed out" in row.last_error

    @pytest.mark.parametrize("sink_class", [RecordingSink, AsyncRecordingSink])
    @pytest.mark.asyncio
    async def test_terminal_failure_alerts(
        self,
        live_queue: JobQueue,
        test_settings: Settings,
        sink_class,
    ):
        """Test the alert sink hears about jobs that fail terminally, and only those."""
        sink = sink_class()

        async def handler(job: JobRef) -> None:
            raise RuntimeError("broken")

        job_id = await live_queue.enqueue("emails", b"x", max_attempts=2)

        await make_pool(live_queue, test_settings, handler, alert_sink=sink).run_until_idle(timeout=10)

        assert len(sink.alerts) == 1
        severity, message = sink.alerts[0]
        assert severity == "error"
        assert f"Job {job_id}" in message
        assert "broken" in message

    @pytest.mark.asyncio
    async def test_storage_errors_are_backed_off(
        self,
        session_factory,
        metrics,
        test_settings: Settings,
    ):
        """Test a worker survives storage errors while polling."""
        from leasequeue.db import JobRepository

        queue = FlakyQueue(JobRepository(session_factory), metrics=metrics, failures=3)
        handled = []

        async def handler(job: JobRef) -> None:
            handled.append(job.id)

        job_id = await queue.enqueue("emails", b"x")

        await make_pool(queue, test_settings, handler, pool_size=1).run_until_idle(timeout=10)

        assert queue.failures == 0
        assert handled == [job_id]

    @pytest.mark.asyncio
    async def test_heartbeat_keeps_lease(
        self,
        live_queue: JobQueue,
        test_settings: Settings,
    ):
        """Test a long job keeps its lease while the heartbeat renews it."""
        started = asyncio.Event()

        async def handler(job: JobRef) -> None:
            started.set()
            await asyncio.sleep(1.2)

        job_id = await live_queue.enqueue("emails", b"x")
        pool = make_pool(
            live_queue,
            test_settings,
            handler,
            pool_size=1,
            lease_duration=0.5,
            heartbeat_interval=0.1,
        )

        async with pool:
            await started.wait()
            await asyncio.sleep(0.8)
            assert await live_queue.dequeue("emails", 30) is None
            await pool.drain(timeout=10)

        row = await live_queue.get(job_id)
        assert row.status == JobStatus.COMPLETED
        assert row.attempts == 1

    @pytest.mark.asyncio
    async def test_stop_abandons_stuck_job(self, live_queue: JobQueue, test_settings: Settings):
        """Test shutdown leaves an abandoned job PROCESSING for lease expiry to release."""
        started = asyncio.Event()

        async def handler(job: JobRef) -> None:
            started.set()
            await asyncio.Event().wait()

        job_id = await live_queue.enqueue("emails", b"x")
        pool = make_pool(live_queue, test_settings, handler, pool_size=1, lease_duration=0.2)

        await pool.start()
        await started.wait()
        await pool.stop(grace_period=0.05)

        assert pool.running is False
        row = await live_queue.get(job_id)
        assert row.status == JobStatus.PROCESSING

        await asyncio.sleep(0.3)
        reclaimed = await live_queue.dequeue("emails", timedelta(seconds=30))
        assert reclaimed.id == job_id
        assert reclaimed.attempts == 2

    @pytest.mark.asyncio
    async def test_uses_registered_handler(self, live_queue: JobQueue, test_settings: Settings):
        handled = []

        @register_handler("registered-queue")
        async def handler(job: JobRef) -> None:
            handled.append(job.id)

        job_id = await live_queue.enqueue("registered-queue", b"x")
        pool = WorkerPool(live_queue, "registered-queue", settings=test_settings)

        await pool.run_until_idle(timeout=10)

        assert handled == [job_id]

    @pytest.mark.asyncio
    async def test_requires_handler(self, live_queue: JobQueue, test_settings: Settings):
        with pytest.raises(ValueError):
            WorkerPool(live_queue, "queue-without-handler", settings=test_settings)

    @pytest.mark.asyncio
    async def test_expired_final_attempt_alerts(
        self,
        live_queue: JobQueue,
        test_settings: Settings,
    ):
        """Test a job whose worker vanished on its last attempt still reaches the alert sink."""
        sink = RecordingSink()
        job_id = await live_queue.enqueue("emails", b"x", max_attempts=1)
        assert (await live_queue.dequeue("emails", 0.1)).id == job_id
        await asyncio.sleep(0.2)

        async def handler(job: JobRef) -> None:
            raise AssertionError("an exhausted job must not run again")

        pool = make_pool(live_queue, test_settings, handler, alert_sink=sink)
        stats = await pool.run_until_idle(timeout=10)

        assert stats["failed"] == 1
        assert len(sink.alerts) == 1
        severity, message = sink.alerts[0]
        assert severity == "error"
        assert f"Job {job_id}" in message
        assert "lease expired" in message

    @pytest.mark.asyncio
    async def test_unexpected_error_does_not_kill_worker(
        self,
        session_factory,
        metrics,
        test_settings: Settings,
    ):
        """Test a worker keeps polling after an unexpected error while finalizing."""
        from leasequeue.db import JobRepository

        class BrokenCompleteQueue(JobQueue):
            failures = 1

            async def complete(self, job_id, attempt=None):
                if self.failures > 0:
                    self.failures -= 1
                    raise RuntimeError("driver bug")
                return await super().complete(job_id, attempt)

        queue = BrokenCompleteQueue(JobRepository(session_factory), metrics=metrics)
        job_id = await queue.enqueue("emails", b"x")

        async def handler(job: JobRef) -> None:
            return None

        stats = await make_pool(
            queue,
            test_settings,
            handler,
            pool_size=1,
            lease_duration=0.2,
        ).run_until_idle(timeout=10)

        assert stats["completed"] == 1
        assert (await queue.get(job_id)).attempts == 2

    @pytest.mark.asyncio
    async def test_stop_logs_dead_worker(
        self,
        live_queue: JobQueue,
        test_settings: Settings,
        caplog: pytest.LogCaptureFixture,
    ):
        async def handler(job: JobRef) -> None:
            return None

        pool = make_pool(live_queue, test_settings, handler, pool_size=1)

        async def crashing_loop(worker_id: str) -> None:
            raise RuntimeError("worker crashed")

        pool._worker_loop = crashing_loop
        await pool.start()
        await asyncio.sleep(0.05)

        with caplog.at_level(logging.ERROR, logger="leasequeue.worker.pool"):
            await pool.stop()

        died = [record for record in caplog.records if "died" in record.getMessage()]
        assert len(died) == 1
        assert died[0].exc_info[1].args == ("worker crashed",)
