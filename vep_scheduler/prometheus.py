"""Prometheus metrics exposed by the VEP scheduler."""

from prometheus_client import Counter, Gauge, CollectorRegistry, generate_latest


class SchedulerMetrics:
    """Wrapper around the Prometheus registry used by the service."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.sent = Counter("vep_deliveries_sent_total", "Total successful deliveries", ["category"], registry=self.registry)
        self.failed = Counter("vep_deliveries_failed_total", "Total failed deliveries", ["category"], registry=self.registry)
        self.jobs_finished = Counter("vep_jobs_finished_total", "Jobs moved to FINISHED", registry=self.registry)
        self.jobs_error = Counter("vep_jobs_error_total", "Jobs moved to ERROR", registry=self.registry)
        self.rate_limited = Counter("vep_rate_limited_total", "Total rate limited deliveries", registry=self.registry)
        self.circuit_open = Gauge("vep_circuit_open", "1 while the circuit breaker is open", registry=self.registry)
        self.pending = Gauge("vep_pending_jobs", "Current pending jobs", registry=self.registry)

    def inc_sent(self, category: str):
        """Increase the ``sent`` counter for the given category."""
        self.sent.labels(category=category or "unknown").inc()

    def inc_failed(self, category: str):
        """Increase the ``failed`` counter for the given category."""
        self.failed.labels(category=category or "unknown").inc()

    def inc_job_finished(self):
        self.jobs_finished.inc()

    def inc_job_error(self):
        self.jobs_error.inc()

    def inc_rate_limited(self):
        self.rate_limited.inc()

    def set_circuit_open(self, is_open: bool):
        self.circuit_open.set(1 if is_open else 0)

    def set_pending(self, value: int):
        """Update the gauge tracking pending jobs."""
        self.pending.set(value)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
