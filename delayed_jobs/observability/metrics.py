"""
Prometheus metrics collection.
"""

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

from delayed_jobs.constants import (
    METRIC_JOB_DURATION,
    METRIC_JOBS_ENQUEUED,
    METRIC_JOBS_FINISHED,
    METRIC_LEASE_ACQUIRED,
    METRIC_LEASE_CONFLICT,
    METRIC_LEASE_RECLAIMED,
    METRIC_QUEUE_DEPTH,
)
from delayed_jobs.types.job import JobStats

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the delayed job queue.

    Collects metrics for:
    - Jobs enqueued and finished, by queue name
    - Handler execution duration
    - Lease acquisition, lease conflicts and reclaimed leases
    - Queue depth per lifecycle state
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
            "Number of delayed jobs per lifecycle state",
            ["state"],
            registry=self._registry,
        )

        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of delayed jobs enqueued",
            ["queue_name"],
            registry=self._registry,
        )

        self.jobs_finished = Counter(
            METRIC_JOBS_FINISHED,
            "Total number of dispatch attempts by outcome",
            ["queue_name", "outcome"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Handler execution duration in seconds",
            ["queue_name", "outcome"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        self.lease_acquired = Counter(
            METRIC_LEASE_ACQUIRED,
            "Total number of leases acquired",
            ["worker_id"],
            registry=self._registry,
        )

        self.lease_conflict = Counter(
            METRIC_LEASE_CONFLICT,
            "Total number of leases lost to another worker",
            ["worker_id"],
            registry=self._registry,
        )

        self.lease_reclaimed = Counter(
            METRIC_LEASE_RECLAIMED,
            "Total number of expired leases reclaimed",
            registry=self._registry,
        )

    def record_job_enqueued(self, queue_name: str) -> None:
        """Record a job submission."""
        self.jobs_enqueued.labels(queue_name=queue_name).inc()

    def record_job_finished(
        self,
        queue_name: str,
        outcome: str,
        duration_seconds: float,
    ) -> None:
        """Record the outcome of a dispatch attempt."""
        self.jobs_finished.labels(queue_name=queue_name, outcome=outcome).inc()
        self.job_duration.labels(queue_name=queue_name, outcome=outcome).observe(
            duration_seconds
        )

    def record_lease_acquired(self, worker_id: str, count: int = 1) -> None:
        """Record lease acquisition."""
        self.lease_acquired.labels(worker_id=worker_id).inc(count)

    def record_lease_conflict(self, worker_id: str) -> None:
        """Record a lost lease race."""
        self.lease_conflict.labels(worker_id=worker_id).inc()

    def record_leases_reclaimed(self, count: int) -> None:
        """Record reclaimed leases."""
        if count > 0:
            self.lease_reclaimed.inc(count)

    def update_queue_depth(self, stats: JobStats) -> None:
        """Update the queue depth gauge from a stats snapshot."""
        self.queue_depth.labels(state="pending").set(stats.pending)
        self.queue_depth.labels(state="leased").set(stats.leased)
        self.queue_depth.labels(state="succeeded").set(stats.succeeded)
        self.queue_depth.labels(state="failed").set(stats.failed)


def setup_metrics(port: int | None = None) -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Args:
        port: When given, expose metrics over HTTP on this port.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    if port:
        start_http_server(port)
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
