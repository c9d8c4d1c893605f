"""
CashGuard Configuration.

Pydantic Settings v2 — loads from .env, environment variables.
"""

from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # ── Application ──────────────────────────────────────────────────────
    app_name: str = "CashGuard"
    app_version: str = "1.0.0"
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")

    # ── API ───────────────────────────────────────────────────────────────
    api_host: str = Field(default="0.0.0.0", alias="API_HOST")
    api_port: int = Field(default=8001, alias="API_PORT")
    api_prefix: str = "/api/v1"
    allowed_origins: List[str] = Field(
        default=["http://localhost:3000"],
        alias="CORS_ORIGINS",
    )

    # ── Database ─────────────────────────────────────────────────────────
    database_url: str = Field(
        default="sqlite+aiosqlite:///./cashguard.db",
        alias="DATABASE_URL",
    )
    db_pool_size: int = Field(default=10, alias="DB_POOL_SIZE")
    db_max_overflow: int = Field(default=20, alias="DB_MAX_OVERFLOW")
    db_pool_recycle: int = Field(default=3600, alias="DB_POOL_RECYCLE")
    db_lock_timeout_seconds: float = Field(default=15.0, alias="DB_LOCK_TIMEOUT_SECONDS")  # SQLite only

    # ── Notification channel ──────────────────────────────────────────────
    alert_channel: str = Field(default="log", alias="ALERT_CHANNEL")  # log | smtp | resend
    alert_from_email: str = Field(default="alerts@cashguard.app", alias="ALERT_FROM_EMAIL")
    alert_smtp_host: str = Field(default="", alias="ALERT_SMTP_HOST")
    alert_smtp_port: int = Field(default=587, alias="ALERT_SMTP_PORT")
    alert_smtp_user: str = Field(default="", alias="ALERT_SMTP_USER")
    alert_smtp_password: str = Field(default="", alias="ALERT_SMTP_PASSWORD")
    resend_api_key: str = Field(default="", alias="RESEND_API_KEY")
    resend_api_url: str = Field(default="https://api.resend.com/emails", alias="RESEND_API_URL")
    channel_timeout_seconds: float = Field(default=10.0, alias="CHANNEL_TIMEOUT_SECONDS")
    alert_recipient_roles: List[str] = Field(
        default=["owner", "admin", "member"],
        alias="ALERT_RECIPIENT_ROLES",
    )

    # Circuit breaker around the channel
    channel_failure_threshold: int = Field(default=5, alias="CHANNEL_FAILURE_THRESHOLD")
    channel_failure_window_seconds: float = Field(default=60.0, alias="CHANNEL_FAILURE_WINDOW_SECONDS")
    channel_recovery_timeout_seconds: float = Field(default=30.0, alias="CHANNEL_RECOVERY_TIMEOUT_SECONDS")

    # ── Trigger thresholds ────────────────────────────────────────────────
    critical_runway_days: float = Field(default=30.0, alias="CRITICAL_RUNWAY_DAYS")
    low_runway_days: float = Field(default=90.0, alias="LOW_RUNWAY_DAYS")
    churn_rate_threshold_pct: float = Field(default=5.0, alias="CHURN_RATE_THRESHOLD_PCT")
    payment_failure_threshold_pct: float = Field(default=10.0, alias="PAYMENT_FAILURE_THRESHOLD_PCT")
    cancellation_increase_threshold_pct: float = Field(
        default=50.0, alias="CANCELLATION_INCREASE_THRESHOLD_PCT",
    )
    data_sync_delay_hours: float = Field(default=24.0, alias="DATA_SYNC_DELAY_HOURS")

    # ── Scheduler ─────────────────────────────────────────────────────────
    evaluation_scan_minutes: int = Field(default=60, alias="EVALUATION_SCAN_MINUTES")
    retry_sweep_minutes: int = Field(default=10, alias="RETRY_SWEEP_MINUTES")
    retry_grace_seconds: int = Field(
        default=300, alias="RETRY_GRACE_SECONDS",
        description="Age an activation must reach before a missing delivery record is retried",
    )

    # ── Operational ────────────────────────────────────────────────────────
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_format: str = Field(default="console", alias="LOG_FORMAT")  # console | json

    @property
    def async_database_url(self) -> str:
        """Ensure the database URL uses an async driver."""
        url = self.database_url
        if url.startswith("postgresql://"):
            url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        if url.startswith("sqlite://"):
            url = url.replace("sqlite://", "sqlite+aiosqlite://", 1)
        return url


settings = Settings()
