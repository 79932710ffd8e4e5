"""
Configuration management using Pydantic settings.
Loads environment variables for Supabase, Redis, the two catalogs, and sync tuning.
"""
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    # Supabase Configuration
    supabase_url: str = ""  # Required when the service is wired up
    supabase_service_key: str = ""

    # Redis (idempotency receipts, alerts, metrics, exchange-rate cache)
    redis_url: str = "redis://localhost:6379/0"

    # Shopify Configuration
    shopify_shop_domain: str = ""
    shopify_access_token: str = ""
    shopify_api_version: str = "2024-01"
    shopify_location_id: str = ""
    shopify_webhook_secret: str = ""  # Empty disables webhook verification (development only)

    # Naver Commerce Configuration
    naver_api_base_url: str = "https://api.commerce.naver.com"
    naver_client_id: str = ""
    naver_client_secret: str = ""

    # Exchange Rate Configuration
    exchange_rate_api_url: str = "https://api.exchangerate-api.com/v4/latest/KRW"
    exchange_rate_cache_ttl_seconds: int = 3600
    manual_rate_default_valid_days: int = 7

    # Application Configuration
    app_environment: str = "development"
    log_level: str = "INFO"

    # Retry / timeout Configuration
    max_retry_attempts: int = 3
    retry_backoff_multiplier: float = 2.0
    retry_initial_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 30.0
    external_call_timeout_seconds: float = 10.0

    # Worker Configuration
    sync_worker_interval_seconds: int = 5  # Poll interval for pending sync jobs
    sync_batch_size: int = 10
    sync_batch_concurrency: int = 5
    sync_batch_pause_seconds: float = 1.0

    # Reconciliation
    default_price_margin: float = 1.15
    default_rounding_strategy: str = "nearest"
    inventory_source_platform: str = "naver"
    webhook_source_platform: str = "shopify"

    # Thresholds
    low_stock_threshold: int = 10
    critical_stock_threshold: int = 5
    discrepancy_tolerance: int = 5
    discrepancy_medium_delta: int = 10
    discrepancy_high_delta: int = 20
    stale_sync_hours: int = 1
    stale_sync_high_hours: int = 3

    # Idempotency and alerting
    webhook_receipt_ttl_seconds: int = 86400
    webhook_claim_ttl_seconds: int = 300
    monitoring_interval_seconds: int = 60
    alert_sweep_interval_seconds: int = 300
    alert_max_age_hours: int = 24
    alert_purge_grace_seconds: int = 3600
    metrics_cache_ttl_seconds: int = 60

    # Slack notifications
    slack_webhook_url: str = ""
    slack_alerts_enabled: str = "false"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


# Global settings instance
settings = Settings()
