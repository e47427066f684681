"""Configuration dataclasses for the VEP scheduler.

Nested structure keeps related knobs together:
- config.timing.poll_interval
- config.delivery.max_attempts
- config.circuit.failure_threshold
- config.rate_limit.max_per_window
"""

from __future__ import annotations

from dataclasses import dataclass, field

from .logger import get_logger

MIB = 1024 * 1024


@dataclass
class TimingConfig:
    """Polling cadence and execution window settings."""

    poll_interval: float = 300.0
    """Seconds between scheduler ticks."""

    recipient_pause: float = 1.5
    """Seconds to wait between two recipients of the same job."""

    bucket_minutes: int = 10
    """Width of the on-time bucket (jobs in the current bucket run immediately)."""

    grace_minutes: float = 2.0
    """Minimum lateness before a job outside the current bucket is picked up."""

    stale_after_minutes: float = 60.0
    """Jobs older than this are treated as missed."""

    timezone: str = "America/Argentina/Buenos_Aires"
    """Reference timezone for naive ``execution_time`` values."""


@dataclass
class DeliveryConfig:
    """Retry, timeout and payload settings of the delivery gateway."""

    max_attempts: int = 3
    document_timeout: float = 45.0
    text_timeout: float = 30.0
    backoff_base: float = 2.0
    document_backoff_cap: float = 10.0
    text_backoff_cap: float = 5.0
    reconnect_wait: float = 30.0
    """Seconds to wait for the channel to come back before an attempt."""

    reconnect_poll: float = 1.0
    multi_send_pause: float = 1.0
    """Pause between consecutive sends of a multi-document delivery."""

    max_attachment_bytes: int = 16 * MIB


@dataclass
class CircuitConfig:
    """Circuit breaker settings."""

    failure_threshold: int = 5
    cooldown_seconds: float = 300.0


@dataclass
class RateLimitConfig:
    """Sliding window rate limiter settings."""

    max_per_window: int = 20
    window_seconds: float = 60.0


@dataclass
class StorageConfig:
    """Object storage holding the VEP documents."""

    backend: str = "s3"
    """``s3`` (DigitalOcean Spaces / S3) or ``filesystem``."""

    bucket: str = "veps-facturacion"
    endpoint_url: str | None = None
    region: str | None = None
    access_key: str | None = None
    secret_key: str | None = None
    base_dir: str | None = None
    """Root directory for the ``filesystem`` backend."""

    default_folder: str = "veps_default"
    fetch_timeout: float = 30.0


@dataclass
class ChannelConfig:
    """WhatsApp bridge connection."""

    bridge_url: str = "http://localhost:3001"
    token: str | None = None
    request_timeout: float = 60.0


@dataclass
class ServerConfig:
    """HTTP server and storage path settings."""

    db_path: str = "/data/vep_scheduler.db"
    host: str = "0.0.0.0"
    port: int = 8000
    api_token: str | None = None
    scheduler_active: bool = True


@dataclass
class SchedulerConfig:
    """Main configuration container."""

    timing: TimingConfig = field(default_factory=TimingConfig)
    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)
    circuit: CircuitConfig = field(default_factory=CircuitConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    channel: ChannelConfig = field(default_factory=ChannelConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    def validate(self) -> list[str]:
        """Return (and log) warnings about settings that can miss jobs."""
        warnings: list[str] = []
        timing = self.timing
        reachable = timing.stale_after_minutes - timing.grace_minutes
        if timing.poll_interval / 60.0 > reachable:
            warnings.append(
                f"poll_interval of {timing.poll_interval:.0f}s exceeds the {reachable:.0f} minute "
                "window between grace and staleness; some jobs may never run"
            )
        if self.delivery.max_attempts < 1:
            warnings.append("delivery.max_attempts below 1, every send will fail")
        logger = get_logger()
        for message in warnings:
            logger.warning(message)
        return warnings
