"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

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

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "CloudOps Broker API"
    api_version: str = "0.1.0"
    api_description: str = "Credential, consent and notification broker for cloud management actions"

    # Cloud provider regions
    default_region: str = "ap-south-1"  # Used when neither request nor credential sets one
    cost_region: str = "us-east-1"  # Cost Explorer is a global service
    ai_region: str = "us-east-1"
    ai_model_id: str = "anthropic.claude-3-sonnet-20240229-v1:0"
    provider_timeout_seconds: int = 30

    # Schema
    run_migrations_on_startup: bool = True

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "cloudops-broker"

    # Observability - Sampling
    trace_sample_rate: float = 1.0  # 1.0 = 100% sampling

    # Notification delivery (chat platform incoming webhook)
    notification_delivery_enabled: bool = True
    notification_webhook_url: str = ""  # e.g. https://chat.example.com/api/v2/channelsbyname/{channel}/message
    notification_bot_token: str = ""
    notification_timeout_seconds: float = 5.0

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
        This prevents silent failures that only manifest at runtime.
        """
        errors: list[str] = []

        # DATABASE_URL is absolutely required
        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if (
            self.notification_delivery_enabled
            and self.notification_webhook_url
            and "{channel}" not in self.notification_webhook_url
        ):
            errors.append("NOTIFICATION_WEBHOOK_URL must contain a {channel} placeholder")

        if not self.default_region:
            errors.append("DEFAULT_REGION cannot be empty")

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

    @property
    def delivery_configured(self) -> bool:
        """Whether notifications can actually be posted anywhere."""
        return self.notification_delivery_enabled and bool(self.notification_webhook_url)


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
