"""Configuration via environment variables with cloud-native secret support.

Supports:
  - Environment variables / .env files (local dev)
  - AWS Secrets Manager (aws-secret://name#key)
  - GCP Secret Manager (gcp-secret://name)

Per-school credentials are not configured here; they live in the config
tables and are loaded by scope.ConfigRepository.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

from scripts.school_sync.secrets import resolve_database_url


@dataclass(frozen=True)
class DatabaseConfig:
    url: str
    min_connections: int = 2
    max_connections: int = 10


@dataclass(frozen=True)
class HttpConfig:
    timeout_s: float = 30.0
    retry_attempts: int = 3
    backoff_base_s: float = 1.0
    backoff_cap_s: float = 60.0
    token_refresh_buffer_s: int = 300  # refresh 5 minutes before expiry
    page_delay_s: float = 0.1


@dataclass(frozen=True)
class LoaderConfig:
    max_parameters: int = 2100  # per-statement bind parameter ceiling
    batch_size: int = 500
    lookup_batch_size: int = 1000
    max_date_span_days: int = 31


@dataclass(frozen=True)
class SchedulerConfig:
    enabled: bool = True
    timezone: str = "Asia/Kolkata"
    reload_interval_min: int = 5
    misfire_grace_time: int = 300


@dataclass(frozen=True)
class RefreshConfig:
    enabled: bool = False


@dataclass(frozen=True)
class SyncConfig:
    database: DatabaseConfig
    http: HttpConfig = field(default_factory=HttpConfig)
    loader: LoaderConfig = field(default_factory=LoaderConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    refresh: RefreshConfig = field(default_factory=RefreshConfig)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() not in ("0", "false", "no", "off")


def load_config() -> SyncConfig:
    """Load configuration from environment variables.

    In cloud environments the database URL (or PG_PASSWORD) may be a secret
    reference; it is resolved via AWS Secrets Manager or GCP Secret Manager.
    """
    load_dotenv()

    database = DatabaseConfig(
        url=resolve_database_url(),
        min_connections=int(os.environ.get("DB_MIN_CONNECTIONS", "2")),
        max_connections=int(os.environ.get("DB_MAX_CONNECTIONS", "10")),
    )

    http = HttpConfig(
        timeout_s=float(os.environ.get("HTTP_TIMEOUT_S", "30")),
        retry_attempts=int(os.environ.get("HTTP_RETRY_ATTEMPTS", "3")),
        backoff_base_s=float(os.environ.get("HTTP_BACKOFF_BASE_S", "1.0")),
        token_refresh_buffer_s=int(os.environ.get("TOKEN_REFRESH_BUFFER_S", "300")),
        page_delay_s=float(os.environ.get("PAGE_DELAY_S", "0.1")),
    )

    loader = LoaderConfig(
        max_parameters=int(os.environ.get("SINK_MAX_PARAMETERS", "2100")),
        batch_size=int(os.environ.get("INGESTION_BATCH_SIZE", "500")),
        lookup_batch_size=int(os.environ.get("LOOKUP_BATCH_SIZE", "1000")),
        max_date_span_days=int(os.environ.get("MAX_DATE_SPAN_DAYS", "31")),
    )

    scheduler = SchedulerConfig(
        enabled=_env_bool("ENABLE_SCHEDULER", True),
        timezone=os.environ.get("CRON_TIMEZONE", "Asia/Kolkata"),
        reload_interval_min=int(os.environ.get("SCHEDULE_RELOAD_MIN", "5")),
        misfire_grace_time=int(os.environ.get("SCHEDULER_MISFIRE_GRACE_S", "300")),
    )

    return SyncConfig(
        database=database,
        http=http,
        loader=loader,
        scheduler=scheduler,
        refresh=RefreshConfig(enabled=_env_bool("RP_REFRESH_ENABLED", False)),
    )
