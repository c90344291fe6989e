"""
Application configuration using pydantic-settings.
All config is validated at startup - fail fast if anything is missing.
"""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Application
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    log_level: str = "INFO"

    # Database
    database_url: str
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Redis
    redis_url: str = "redis://localhost:6379/0"

    # Provider webhook secrets
    stripe_webhook_secret: str = ""
    resend_webhook_secret: str = ""
    twilio_auth_token: str = ""
    allow_unsigned_webhooks: bool = False  # honoured outside production only

    # Sentry
    sentry_dsn: str = ""

    # Alerting
    alert_webhook_url: str = ""  # Discord/Slack webhook URL for critical alerts

    # Processing limits
    webhook_handler_timeout_seconds: float = 10.0
    webhook_slow_threshold_ms: int = 1000
    webhook_max_retries: int = 5
    webhook_stuck_after_seconds: int = 300

    # Error-rate monitor
    webhook_error_rate_window_minutes: int = 60
    webhook_error_rate_threshold_pct: float = 5.0
    webhook_error_rate_min_events: int = 20
    webhook_monitor_interval_seconds: int = 300

    # Admission control
    webhook_rate_limit_per_minute: int = 600  # per source IP
    webhook_max_inflight_per_provider: int = 50

    # Background workers
    workers_enabled: bool = True

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
