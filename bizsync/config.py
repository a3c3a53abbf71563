"""
Configuration management for the BizSync platform
"""
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    """Application settings"""

    # Application
    app_name: str = "BizSync Data Synchronization Service"
    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"
    log_dir: str = "logs"
    log_to_file: bool = True

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Database
    database_url: str = "sqlite:///./data/bizsync.db"

    # Scheduler
    scheduler_timezone: str = "UTC"
    scheduler_enabled: bool = True

    # Default sync schedules (5-field cron)
    default_ga4_sync_schedule: str = "0 2 * * *"
    default_n8n_sync_schedule: str = "*/5 * * * *"
    default_cleanup_sync_schedule: str = "0 3 * * 0"

    # Default retry policy (delays in milliseconds)
    default_max_retries: int = 3
    default_initial_delay_ms: int = 60000
    default_max_delay_ms: int = 3600000
    default_backoff_multiplier: float = 2.0

    # Re-runs pending jobs whose next_retry_at has passed
    retry_sweep_enabled: bool = True
    retry_sweep_schedule: str = "* * * * *"

    # Data retention
    data_retention_days: int = 90

    # Health thresholds
    health_max_running_jobs: int = 5
    health_min_success_rate: float = 90.0

    # Google Analytics 4
    ga4_credentials_path: str = "./credentials/ga4-credentials.json"

    # Alerts
    alert_email_from: Optional[str] = None
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    slack_webhook_url: Optional[str] = None

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
