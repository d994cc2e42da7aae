"""
Prometheus metrics collection.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from leasequeue.constants import (
    METRIC_JOB_DURATION,
    METRIC_JOBS_ENQUEUED,
    METRIC_JOBS_FINISHED,
    METRIC_LEASE_CONFLICTS,
    METRIC_LEASES_CLAIMED,
    METRIC_LEASES_EXPIRED,
    METRIC_QUEUE_DEPTH,
    METRIC_STORAGE_ERRORS,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the queue.

    Collects metrics for:
    - Queue depth per status
    - Job enqueues and terminal outcomes
    - Handler execution duration
    - Lease claims, conflicts and expiries
    - Storage errors
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of jobs in the queue by status",
            ["queue", "status"],
            registry=self._registry,
        )

        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of jobs enqueued",
            ["queue"],
            registry=self._registry,
        )

        # outcome: completed, requeued, failed, conflict
        self.jobs_finished = Counter(
            METRIC_JOBS_FINISHED,
            "Total number of job attempts finished, by outcome",
            ["queue", "outcome"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Handler execution duration in seconds",
            ["queue", "outcome"],
            buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        self.leases_claimed = Counter(
            METRIC_LEASES_CLAIMED,
            "Total number of leases granted",
            ["queue"],
            registry=self._registry,
        )

        self.lease_conflicts = Counter(
            METRIC_LEASE_CONFLICTS,
            "Total number of claims lost to a concurrent worker",
            ["queue"],
            registry=self._registry,
        )

        self.leases_expired = Counter(
            METRIC_LEASES_EXPIRED,
            "Total number of leases that expired before finalization",
            ["queue"],
            registry=self._registry,
        )

        self.storage_errors = Counter(
            METRIC_STORAGE_ERRORS,
            "Total number of job store failures",
            ["operation"],
            registry=self._registry,
        )

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def record_job_enqueued(self, queue: str) -> None:
        """Record a job enqueue."""
        self.jobs_enqueued.labels(queue=queue).inc()

    def record_job_finished(
        self,
        queue: str,
        outcome: str,
        duration_seconds: float | None = None,
    ) -> None:
        """Record the end of an attempt."""
        self.jobs_finished.labels(queue=queue, outcome=outcome).inc()
        if duration_seconds is not None:
            self.job_duration.labels(queue=queue, outcome=outcome).observe(
                duration_seconds
            )

    def record_lease_claimed(self, queue: str) -> None:
        """Record a granted lease."""
        self.leases_claimed.labels(queue=queue).inc()

    def record_lease_conflict(self, queue: str) -> None:
        """Record a lost claim race."""
        self.lease_conflicts.labels(queue=queue).inc()

    def record_lease_expired(self, queue: str, count: int = 1) -> None:
        """Record expired leases."""
        self.leases_expired.labels(queue=queue).inc(count)

    def record_storage_error(self, operation: str) -> None:
        """Record a job store failure."""
        self.storage_errors.labels(operation=operation).inc()

    def update_queue_depth(self, queue: str, counts: dict[str, int]) -> None:
        """Update queue depth gauges from a stats snapshot."""
        for status, count in counts.items():
            self.queue_depth.labels(queue=queue, status=status).set(count)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST


def setup_metrics(registry: CollectorRegistry | None = None) -> MetricsCollector:
    """
    Set up and return the global metrics collector.

    Args:
        registry: Optional custom registry for the first call.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector(registry)
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance, creating it on first use.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
