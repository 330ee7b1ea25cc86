from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "link-ingest-api"
    environment: str = "dev"
    api_key_header: str = "X-API-Key"
    admin_api_key_hashes: list[str] = Field(default_factory=list)
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10

    job_max_attempts: int = 3
    job_retry_base_seconds: float = 5.0
    job_retry_max_seconds: float = 300.0
    job_retry_jitter_seconds: float = 1.0
    rate_limit_retry_base_seconds: float = 30.0
    rate_limit_retry_max_seconds: float = 900.0
    rate_limit_retry_jitter_seconds: float = 5.0
    max_concurrent_jobs_per_host: int = 2
    stale_processing_after_seconds: int = 1200

    worker_id: str = "local-worker"
    poll_interval_seconds: float = 2.0
    max_backoff_seconds: float = 15.0
    reaper_interval_seconds: float = 60.0
    reaper_batch_size: int = 50

    fetch_timeout_seconds: float = 10.0
    fetch_max_bytes: int = 2_000_000
    fetch_max_redirects: int = 5
    fetch_user_agent: str = "link-ingest/1.0"
    laylo_api_base_url: str = "https://api.laylo.com"

    score_base_manual: float = 0.60
    score_base_admin: float = 0.50
    score_base_ingested: float = 0.20
    score_base_ingested_by_strategy: dict[str, float] = Field(
        default_factory=lambda: {"import_youtube": 0.30, "import_laylo": 0.25}
    )
    score_handle_bonus_min: float = 0.10
    score_handle_bonus_max: float = 0.20
    score_handle_min_similarity: float = 0.60
    score_corroboration_bonus: float = 0.15
    score_active_threshold: float = 0.70
    merge_conflict_retries: int = 3

    otel_enabled: bool = True
    otel_service_name: str = "link-ingest"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="LI_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
