"""
Configuration management for the sync orchestrator
"""
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Dict, List, Optional


class Settings(BaseSettings):
    """Application settings"""

    # Application
    app_name: str = "Ad & Commerce Sync Orchestrator"
    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"
    log_to_file: bool = True
    log_dir: str = "logs"
    log_retention_days: int = 30
    error_log_retention_days: int = 90

    # Database
    database_url: str = "sqlite:///./sync_orchestrator.db"

    # Ads platform (Meta Graph API)
    meta_graph_url: str = "https://graph.facebook.com"
    meta_api_version: str = "v19.0"

    # Commerce platform (Shopify Admin REST)
    shopify_api_version: str = "2024-01"
    shopify_page_size: int = 250

    # Upstream calls
    upstream_timeout_seconds: float = 60.0

    # Entities synced per platform, in backfill order
    ads_entities: List[str] = ["campaigns", "demographics", "insights"]
    commerce_entities: List[str] = ["orders", "customers", "products"]

    # Historical priority per entity (higher drains first)
    historical_entity_priorities: Dict[str, int] = {
        "campaigns": 8,
        "demographics": 6,
        "insights": 4,
        "orders": 8,
        "customers": 6,
        "products": 4,
    }

    # Sync windows
    recent_sync_days: int = 7
    backfill_days: int = 365  # Meta only reaches back ~13 months
    chunk_span_days: int = 90
    daily_sync_days: int = 2

    # Worker pool
    run_workers: bool = True
    worker_batch_size: int = 5
    ads_worker_concurrency: int = 2
    commerce_worker_concurrency: int = 3
    worker_poll_interval_seconds: float = 5.0

    # Retries for hard upstream errors
    job_max_attempts: int = 5
    retry_base_delay_seconds: float = 10.0
    retry_max_delay_seconds: float = 600.0

    # Rate limiting
    rate_limit_phrases: List[str] = [
        "rate limit",
        "rate limited",
        "too many calls",
        "too many requests",
        "user request limit reached",
        "request limit exceeded",
        "code 17",
        "subcode 2446079",
    ]
    rate_limit_retry_after_seconds: int = 300
    rate_limit_max_deferrals: int = 12

    # Ledger / queue housekeeping
    fresh_sync_window_minutes: int = 60
    job_retention_days: int = 7
    stalled_job_timeout_minutes: int = 45

    # Schedules
    daily_sync_schedule: str = "0 3 * * *"
    reconcile_schedule: str = "30 4 * * *"
    housekeeping_interval_minutes: int = 15

    # Reconciliation: value field summed per entity
    aggregate_value_fields: Dict[str, str] = {
        "campaigns": "spend",
        "demographics": "spend",
        "insights": "spend",
        "orders": "total_price",
    }

    # Optional shared-secret for the manual drain endpoint
    process_token: Optional[str] = None

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
