"""
Production configuration settings
"""
import os
from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    # App
    APP_NAME: str = "Confusion Engine"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = os.getenv("DEBUG", "false").lower() == "true"
    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")  # development, staging, production

    # Redis (weight/baseline snapshot mirror)
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379")
    SNAPSHOT_CACHE_ENABLED: bool = os.getenv("SNAPSHOT_CACHE_ENABLED", "false").lower() == "true"
    SNAPSHOT_CACHE_PREFIX: str = "confusion"

    # Ingestion lanes
    WORKER_LANES: int = int(os.getenv("WORKER_LANES", "4"))
    MAX_QUEUE_SIZE: int = int(os.getenv("MAX_QUEUE_SIZE", "10000"))
    MAX_PENDING_PER_KEY: int = int(os.getenv("MAX_PENDING_PER_KEY", "256"))
    FEEDBACK_QUEUE_SIZE: int = int(os.getenv("FEEDBACK_QUEUE_SIZE", "5000"))
    LATENCY_BUDGET_MS: int = 500

    # Windows
    REWIND_WINDOW_MS: int = 30_000
    SCROLL_WINDOW_MS: int = 10_000
    HIGH_VELOCITY_THRESHOLD: float = 1000.0  # px/s
    WINDOW_IDLE_TIMEOUT_MS: int = int(os.getenv("WINDOW_IDLE_TIMEOUT_MS", "300000"))
    WINDOW_SWEEP_INTERVAL_SECONDS: float = 30.0

    # Cohort baselines
    BASELINE_ALPHA: float = 0.1
    BASELINE_MIN_SAMPLES: int = 10
    BASELINE_RECOMPUTE_INTERVAL_SECONDS: float = 24 * 60 * 60

    # Weight feedback
    REVERSAL_SCAN_INTERVAL_SECONDS: float = 60.0
    FEEDBACK_WINDOW_SIZE: int = 20
    FEEDBACK_WINDOW_DAYS: int = 7

    # Webhooks
    WEBHOOK_URLS: List[str] = []
    WEBHOOK_SECRET: str = os.getenv("WEBHOOK_SECRET", "change-this-webhook-secret")

    # CORS
    ALLOWED_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:3001",
    ]

    # Monitoring
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_JSON: bool = os.getenv("LOG_JSON", "false").lower() == "true"

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )


settings = Settings()
