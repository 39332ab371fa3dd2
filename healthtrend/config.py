from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # Storage
    db_path: str = "data/health.db"
    catalog_file: str = "checks.yaml"

    # Retention defaults (used when an assignment has no retention config)
    default_raw_retention_days: int = 7
    default_hourly_retention_days: int = 30
    default_daily_retention_days: int = 365

    # History queries
    default_target_points: int = 60

    # Retention job
    retention_interval_seconds: int = 24 * 60 * 60  # daily
    retention_lock_ttl_seconds: int = 60 * 60

    # Real-time writer (t-digest accuracy, smaller = more centroids)
    tdigest_delta: float = 0.01

    # Check scheduler
    check_workers: int = 4

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Logging
    log_level: str = "INFO"


settings = Settings()
