"""
Prometheus metrics collection.
"""

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    start_http_server,
)

from jobqueue.constants import (
    METRIC_JOB_DURATION,
    METRIC_JOBS_COMPLETED,
    METRIC_JOBS_PUSHED,
    METRIC_JOBS_RECOVERED,
    METRIC_JOBS_RESERVED,
    METRIC_QUEUE_DEPTH,
    METRIC_WORKERS_REAPED,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the job queue.

    Collects metrics for:
    - Queue depth
    - Job pushes, reservations and outcomes
    - Job execution duration
    - Stale worker reaping and orphaned job recovery
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        # Queue depth gauge (by queue)
        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of jobs eligible for reservation",
            ["queue"],
            registry=self._registry,
        )

        self.jobs_pushed = Counter(
            METRIC_JOBS_PUSHED,
            "Total number of jobs pushed",
            ["queue", "job_type"],
            registry=self._registry,
        )

        self.jobs_reserved = Counter(
            METRIC_JOBS_RESERVED,
            "Total number of job reservations",
            ["queue"],
            registry=self._registry,
        )

        # Outcome is succeeded, retrying, archived or lost
        self.jobs_completed = Counter(
            METRIC_JOBS_COMPLETED,
            "Total number of job executions by outcome",
            ["queue", "status"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["queue", "status"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        self.workers_reaped = Counter(
            METRIC_WORKERS_REAPED,
            "Total number of stale worker records removed",
            registry=self._registry,
        )

        self.jobs_recovered = Counter(
            METRIC_JOBS_RECOVERED,
            "Total number of orphaned reservations recovered",
            ["outcome"],
            registry=self._registry,
        )

    def record_job_pushed(self, queue: str, job_type: str) -> None:
        """Record a job push."""
        self.jobs_pushed.labels(queue=queue, job_type=job_type).inc()

    def record_job_reserved(self, queue: str) -> None:
        """Record a reservation."""
        self.jobs_reserved.labels(queue=queue).inc()

    def record_job_completed(
        self,
        queue: str,
        status: str,
        duration_seconds: float,
    ) -> None:
        """Record the outcome of one execution."""
        self.jobs_completed.labels(queue=queue, status=status).inc()
        self.job_duration.labels(queue=queue, status=status).observe(duration_seconds)

    def record_workers_reaped(self, count: int) -> None:
        self.workers_reaped.inc(count)

    def record_jobs_recovered(self, outcome: str, count: int) -> None:
        if count:
            self.jobs_recovered.labels(outcome=outcome).inc(count)

    def update_queue_depth(self, queue: str, depth: int) -> None:
        """Update queue depth for a queue."""
        self.queue_depth.labels(queue=queue).set(depth)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)


def setup_metrics(port: int | None = None) -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Args:
        port: If given, expose /metrics on this port.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
        if port:
            start_http_server(port, registry=_metrics._registry)
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
