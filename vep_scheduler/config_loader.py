"""Build a :class:`SchedulerConfig` from config.ini and environment variables."""

from __future__ import annotations

import configparser
import os
from pathlib import Path
from typing import Mapping

from .config import (
    ChannelConfig,
    CircuitConfig,
    DeliveryConfig,
    RateLimitConfig,
    SchedulerConfig,
    ServerConfig,
    StorageConfig,
    TimingConfig,
)


def load_settings(config_path: str | None = None, environ: Mapping[str, str] | None = None) -> SchedulerConfig:
    """
    Load configuration from an INI file (default: config.ini) with environment variables as fallbacks.

    Environment variables (all prefixed with VEP_):
      VEP_CONFIG - Path to config.ini file (default: config.ini)
      VEP_DB_PATH - Database path (default: /data/vep_scheduler.db)
      VEP_HOST, VEP_PORT - HTTP server bind address
      VEP_API_TOKEN - API authentication token
      VEP_SCHEDULER_ACTIVE - Start the polling loop (default: True)
      VEP_POLL_INTERVAL - Seconds between scheduler ticks (default: 300)
      VEP_RECIPIENT_PAUSE - Seconds between recipients (default: 1.5)
      VEP_TIMEZONE - Reference timezone (default: America/Argentina/Buenos_Aires)
      VEP_MAX_ATTEMPTS - Attempts per logical send (default: 3)
      VEP_RATE_LIMIT_PER_MINUTE - Deliveries per minute (default: 20)
      VEP_CIRCUIT_THRESHOLD, VEP_CIRCUIT_COOLDOWN - Circuit breaker settings
      VEP_STORAGE_BACKEND - s3 or filesystem
      VEP_SPACES_BUCKET, VEP_SPACES_ENDPOINT, VEP_SPACES_REGION,
      VEP_SPACES_ACCESS_KEY, VEP_SPACES_SECRET_KEY - Object storage credentials
      VEP_STORAGE_DIR - Root directory for the filesystem backend
      VEP_DEFAULT_FOLDER - Folder used when a job has none
      VEP_BRIDGE_URL, VEP_BRIDGE_TOKEN - WhatsApp bridge endpoint

    Config file sections/keys:
      [server] host, port, api_token, db_path
      [scheduler] active, poll_interval, recipient_pause, timezone
      [delivery] max_attempts, document_timeout, text_timeout, max_attachment_mb
      [limits] per_minute, circuit_threshold, circuit_cooldown
      [storage] backend, bucket, endpoint, region, access_key, secret_key, base_dir, default_folder
      [channel] bridge_url, token
    """
    env = os.environ if environ is None else environ
    path = Path(config_path or env.get("VEP_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(path, encoding="utf-8")

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_int(section: str, option: str, fallback: str | None = None, default: int | None = None) -> int | None:
        value = get(section, option, fallback)
        if value is None or value == "":
            return default
        return int(value)

    def get_bool(section: str, option: str, fallback: str | None = None, default: bool | None = None) -> bool | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    def get_float(section: str, option: str, fallback: str | None = None, default: float | None = None) -> float | None:
        value = get(section, option, fallback)
        if value is None or value == "":
            return default
        return float(value)

    timing = TimingConfig()
    timing.poll_interval = get_float("scheduler", "poll_interval", env.get("VEP_POLL_INTERVAL"), timing.poll_interval)
    timing.recipient_pause = get_float(
        "scheduler", "recipient_pause", env.get("VEP_RECIPIENT_PAUSE"), timing.recipient_pause
    )
    timing.timezone = get("scheduler", "timezone", env.get("VEP_TIMEZONE", timing.timezone))

    delivery = DeliveryConfig()
    delivery.max_attempts = get_int("delivery", "max_attempts", env.get("VEP_MAX_ATTEMPTS"), delivery.max_attempts)
    delivery.document_timeout = get_float("delivery", "document_timeout", None, delivery.document_timeout)
    delivery.text_timeout = get_float("delivery", "text_timeout", None, delivery.text_timeout)
    max_mb = get_float("delivery", "max_attachment_mb", None, None)
    if max_mb is not None:
        delivery.max_attachment_bytes = int(max_mb * 1024 * 1024)

    circuit = CircuitConfig(
        failure_threshold=get_int(
            "limits", "circuit_threshold", env.get("VEP_CIRCUIT_THRESHOLD"), CircuitConfig.failure_threshold
        ),
        cooldown_seconds=get_float(
            "limits", "circuit_cooldown", env.get("VEP_CIRCUIT_COOLDOWN"), CircuitConfig.cooldown_seconds
        ),
    )
    rate_limit = RateLimitConfig(
        max_per_window=get_int(
            "limits", "per_minute", env.get("VEP_RATE_LIMIT_PER_MINUTE"), RateLimitConfig.max_per_window
        ),
    )

    storage = StorageConfig(
        backend=(get("storage", "backend", env.get("VEP_STORAGE_BACKEND", "s3")) or "s3").strip().lower(),
        bucket=get("storage", "bucket", env.get("VEP_SPACES_BUCKET", StorageConfig.bucket)),
        endpoint_url=get("storage", "endpoint", env.get("VEP_SPACES_ENDPOINT")),
        region=get("storage", "region", env.get("VEP_SPACES_REGION")),
        access_key=get("storage", "access_key", env.get("VEP_SPACES_ACCESS_KEY")),
        secret_key=get("storage", "secret_key", env.get("VEP_SPACES_SECRET_KEY")),
        base_dir=get("storage", "base_dir", env.get("VEP_STORAGE_DIR")),
        default_folder=get("storage", "default_folder", env.get("VEP_DEFAULT_FOLDER", StorageConfig.default_folder)),
    )

    channel = ChannelConfig(
        bridge_url=get("channel", "bridge_url", env.get("VEP_BRIDGE_URL", ChannelConfig.bridge_url)),
        token=get("channel", "token", env.get("VEP_BRIDGE_TOKEN")),
    )

    server = ServerConfig(
        db_path=os.path.expanduser(get("server", "db_path", env.get("VEP_DB_PATH", ServerConfig.db_path))),
        host=get("server", "host", env.get("VEP_HOST", ServerConfig.host)),
        port=get_int("server", "port", env.get("VEP_PORT"), ServerConfig.port),
        api_token=get("server", "api_token", env.get("VEP_API_TOKEN")),
        scheduler_active=get_bool("scheduler", "active", env.get("VEP_SCHEDULER_ACTIVE"), True),
    )
    if isinstance(server.api_token, str):
        server.api_token = server.api_token.strip() or None

    return SchedulerConfig(
        timing=timing,
        delivery=delivery,
        circuit=circuit,
        rate_limit=rate_limit,
        storage=storage,
        channel=channel,
        server=server,
    )
