"""
Configuration management for the brandsync service
"""
from pydantic import model_validator
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    """Application settings"""

    # Application
    app_name: str = "BrandSync Data Sync Service"
    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"
    log_to_file: bool = True
    log_dir: str = "logs"

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Database
    database_url: str = "sqlite:///./brandsync.db"

    # Cron invoker shared secret (Authorization: Bearer <secret>)
    cron_secret: Optional[str] = None

    # Dashboard Basic Auth (gate for non-cron routes)
    dash_user: str = ""
    dash_pass: str = ""

    # Meta Graph API
    meta_api_version: str = "v18.0"
    meta_graph_url: str = "https://graph.facebook.com"
    meta_page_limit: int = 500

    # Shopify Admin API
    shopify_api_version: str = "2024-01"
    shopify_page_limit: int = 250

    # Day boundaries for platform queries (Shopify created_at filters)
    report_timezone: str = "UTC"

    # HTTP / execution budgets
    http_timeout_seconds: float = 30.0  # Per HTTP call
    job_timeout_seconds: float = 45.0  # Whole fetch for one job, within the drain deadline

    # Intra-job rate limit retry
    rate_limit_max_retries: int = 4
    rate_limit_base_delay: float = 2.0
    rate_limit_max_delay: float = 60.0

    # Chunk planning
    chunk_days: int = 30
    historical_days: int = 365
    incremental_days: int = 3

    # Job ledger
    max_job_attempts: int = 3
    ledger_backoff_base_seconds: float = 60.0
    ledger_backoff_max_seconds: float = 3600.0
    lease_seconds: int = 900  # Running job presumed stuck after this

    # Queue drain budget per invocation (serverless execution limit)
    drain_max_jobs: int = 5
    drain_deadline_seconds: float = 50.0

    # Fact storage
    upsert_batch_size: int = 200

    # Gap detection
    gap_lookback_days: int = 365

    # Manual trigger throttling
    manual_sync_limit: int = 10
    manual_sync_window_seconds: int = 3600

    # In-process scheduler (long-running deployments; serverless uses /cron/*)
    enable_scheduler: bool = False
    queue_drain_interval_minutes: int = 2
    sync_incremental_schedule: str = "0 3 * * *"
    sync_gap_detection_schedule: str = "30 4 * * *"

    @model_validator(mode="after")
    def _job_fits_drain_deadline(self):
        if self.job_timeout_seconds > self.drain_deadline_seconds:
            raise ValueError(
                f"job_timeout_seconds ({self.job_timeout_seconds}) must not exceed "
                f"drain_deadline_seconds ({self.drain_deadline_seconds})"
            )
        return self

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
