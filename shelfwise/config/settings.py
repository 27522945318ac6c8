"""Application settings using Pydantic for environment-based configuration."""
from decimal import Decimal
from functools import lru_cache
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class FeatureFlags(BaseModel):
    """
    Immutable snapshot of the feature switches.

    Built once from Settings and handed to each component at construction,
    so business code never reads the process environment.
    """

    model_config = ConfigDict(frozen=True)

    reserve_on_request: bool = True
    background_jobs_enabled: bool = True
    notifications_enabled: bool = True
    overdue_detection_enabled: bool = True
    idempotency_enabled: bool = True
    audit_logging_enabled: bool = True

    @classmethod
    def all_disabled(cls) -> "FeatureFlags":
        return cls(
            reserve_on_request=False,
            background_jobs_enabled=False,
            notifications_enabled=False,
            overdue_detection_enabled=False,
            idempotency_enabled=False,
            audit_logging_enabled=False,
        )


class LendingPolicy(BaseModel):
    """Business constants for loans, fines and restrictions."""

    model_config = ConfigDict(frozen=True)

    loan_period_days: int = 7
    grace_period_days: int = 7
    flat_fee: Decimal = Decimal("10.00")
    daily_fee: Decimal = Decimal("0.50")
    max_daily_fee_days: int = 6
    lost_book_after_days: int = 15
    lost_book_penalty_rate: Decimal = Decimal("0.30")
    default_book_price: Decimal = Decimal("50.00")
    restriction_threshold: Decimal = Decimal("60.00")
    due_soon_lead_days: int = 1
    require_zero_balance_to_borrow: bool = False


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./shelfwise.db",
        description="Database connection URL (postgresql+asyncpg://... in production)",
    )
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: Optional[str] = Field(
        default=None, description="Redis connection URL (in-memory store when unset)"
    )

    # Application Configuration
    app_name: str = Field(default="shelfwise", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)"
    )

    # Idempotency
    idempotency_cache_ttl: int = Field(
        default=86400, description="Idempotency cache TTL for user operations (seconds)"
    )
    admin_idempotency_ttl: int = Field(
        default=172800, description="Idempotency cache TTL for admin and payment operations"
    )

    # Notifications
    notification_service_url: Optional[str] = Field(
        default=None, description="Email service endpoint (log-only dispatcher when unset)"
    )
    notification_timeout_seconds: float = Field(
        default=10.0, description="Email service request timeout (seconds)"
    )

    # Payments
    stripe_webhook_secret: Optional[str] = Field(
        default=None, description="Stripe webhook signing secret"
    )

    # Maintenance worker
    maintenance_hour: int = Field(
        default=2, ge=0, le=23, description="Hour of day (UTC) for the nightly jobs"
    )

    # Feature flags
    feature_reserve_on_request: bool = Field(
        default=True, description="Reserve inventory at request time for every book"
    )
    feature_enable_background_jobs: bool = Field(default=True)
    feature_enable_notifications: bool = Field(default=True)
    feature_enable_overdue: bool = Field(default=True)
    feature_enable_idempotency: bool = Field(default=True)
    feature_enable_audit_logs: bool = Field(default=True)

    # Emergency rollback switches
    emergency_disable_all: bool = Field(default=False)
    emergency_disable_jobs: bool = Field(default=False)
    emergency_disable_emails: bool = Field(default=False)
    emergency_disable_new_features: bool = Field(default=False)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    def feature_flags(self) -> FeatureFlags:
        """
        Resolve the feature switches, applying the emergency overrides.

        Returns:
            FeatureFlags: Frozen flag snapshot
        """
        if self.emergency_disable_all:
            return FeatureFlags.all_disabled()

        new_features_off = self.emergency_disable_new_features
        return FeatureFlags(
            reserve_on_request=self.feature_reserve_on_request,
            background_jobs_enabled=(
                self.feature_enable_background_jobs and not self.emergency_disable_jobs
            ),
            notifications_enabled=(
                self.feature_enable_notifications
                and not self.emergency_disable_emails
                and not new_features_off
            ),
            overdue_detection_enabled=self.feature_enable_overdue and not new_features_off,
            idempotency_enabled=self.feature_enable_idempotency,
            audit_logging_enabled=self.feature_enable_audit_logs,
        )

    def lending_policy(self) -> LendingPolicy:
        return LendingPolicy()


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
