"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # Storage backend
    storage_backend: str = "memory"  # "memory", "file" or "supabase"
    data_dir: str = "/data/scrape_sessions"
    storage_quota_bytes: int = 10 * 1024 * 1024
    max_index_entries: int = 1000
    quota_eviction_threshold: float = 0.8
    quota_eviction_fraction: float = 0.25
    stats_max_age_seconds: int = 3600
    search_session_limit: int = 50
    export_session_limit: int = 1000
    history_max_entries: int = 50

    # Supabase (only when storage_backend=supabase)
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    supabase_table: str = "scrape_storage"

    # Timers
    watchdog_interval_seconds: int = 300
    stale_job_minutes: int = 30
    retention_interval_seconds: int = 3600

    # External sink
    sink_timeout_seconds: float = 15.0

    # Defaults for the runtime scraper settings
    max_concurrent_scrapes: int = 2
    max_pages_per_scrape: int = 5
    delay_between_pages_ms: int = 3000
    delay_between_jobs_ms: int = 2000
    max_retries: int = 3
    rate_limit_delay_ms: int = 5000
    data_retention_days: int = 30
    api_endpoint: Optional[str] = None
    api_key: Optional[str] = None

    # Service
    service_port: int = 8001
    log_level: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
