from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "brandtrust-api"
    environment: str = "dev"
    api_key_header: str = "X-API-Key"
    storage_backend: Literal["postgres", "memory"] = "postgres"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10

    job_batch_size: int = 25
    job_lock_timeout_seconds: int = 120
    job_max_attempts: int = 3
    job_retry_backoff_seconds: list[int] = [1, 5, 30]

    flood_window_hours: int = 24
    flood_threshold: int = 30
    score_lookback_days: int = 365

    quiet_hours_start: int = 22
    quiet_hours_end: int = 7
    notify_bucket_minutes: int = 5
    notify_min_delta: float = 1.0
    push_daily_limit_per_user: int = 5
    push_gateway_url: str | None = None
    push_gateway_token: str | None = None
    push_timeout_seconds: float = 10.0

    adapter_timeout_seconds: float = 10.0
    inter_brand_delay_seconds: float = 1.0
    ingest_feed_urls: dict[str, str] = {}
    ingest_interval_seconds: float = 3600.0
    ingest_lookback_hours: int = 24

    poll_interval_seconds: float = 5.0
    max_backoff_seconds: float = 60.0
    snapshot_interval_seconds: float = 900.0
    snapshot_trending_days: int = 30
    snapshot_trending_limit: int = 50

    otel_enabled: bool = True
    otel_service_name: str = "brandtrust"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="BT_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
