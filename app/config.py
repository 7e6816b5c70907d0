"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_read_url: str | None = None  # Optional read replica
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    migrate_on_startup: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Redemption API"
    api_version: str = "0.1.0"
    api_description: str = "Redemption token and quota engine for local deals"

    # Caller authentication - JWTs minted by the external identity provider
    auth_jwt_secret: str = ""
    auth_jwt_algorithm: str = "HS256"
    auth_jwt_audience: str | None = None
    auth_jwt_issuer: str | None = None

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True
    metrics_port: int = 9090

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "redemption-api"

    # Observability - Sampling
    trace_sample_rate: float = 1.0  # 1.0 = 100% sampling

    # Redemption tokens
    token_signing_secret: str = ""
    token_ttl_default_seconds: int = 90
    token_ttl_min_seconds: int = 1
    token_ttl_max_seconds: int = 300

    # Quota
    free_redemptions_per_user: int = 3

    # Offer daily caps roll over at midnight in this zone unless the offer has its own
    default_timezone: str = "UTC"

    # Housekeeping
    reaper_enabled: bool = True
    reaper_interval_seconds: int = 300
    counter_retention_days: int = 30

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        Unsigned tokens or an unbounded TTL range would silently
        weaken every code handed out afterwards.
        """
        errors: list[str] = []

        # DATABASE_URL is absolutely required
        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if not self.auth_jwt_secret:
            errors.append("AUTH_JWT_SECRET is required to verify caller tokens")

        if len(self.token_signing_secret) < 32:
            errors.append("TOKEN_SIGNING_SECRET must be at least 32 characters")

        if self.token_ttl_min_seconds <= 0:
            errors.append("TOKEN_TTL_MIN_SECONDS must be positive")
        if self.token_ttl_min_seconds > self.token_ttl_max_seconds:
            errors.append(
                f"TOKEN_TTL_MIN_SECONDS ({self.token_ttl_min_seconds}) exceeds "
                f"TOKEN_TTL_MAX_SECONDS ({self.token_ttl_max_seconds})"
            )
        elif not (
            self.token_ttl_min_seconds
            <= self.token_ttl_default_seconds
            <= self.token_ttl_max_seconds
        ):
            errors.append(
                f"TOKEN_TTL_DEFAULT_SECONDS ({self.token_ttl_default_seconds}) must lie "
                f"within [{self.token_ttl_min_seconds}, {self.token_ttl_max_seconds}]"
            )

        if self.free_redemptions_per_user < 0:
            errors.append("FREE_REDEMPTIONS_PER_USER cannot be negative")

        try:
            ZoneInfo(self.default_timezone)
        except (ZoneInfoNotFoundError, ValueError):
            errors.append(f"DEFAULT_TIMEZONE is not a known zone: {self.default_timezone}")

        # If we have errors, fail immediately with clear messaging
        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def read_database_url(self) -> str:
        """Get read database URL (fallback to primary if no replica)."""
        return self.database_read_url or self.database_url

    def clamp_ttl(self, ttl_seconds: int | None) -> int:
        """Bound a client-requested TTL to the configured window."""
        if ttl_seconds is None:
            return self.token_ttl_default_seconds
        return max(self.token_ttl_min_seconds, min(ttl_seconds, self.token_ttl_max_seconds))


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
