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
    database_pool_size: int = 10
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 1800

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "KapryDEV Dashboard API"
    api_version: str = "0.1.0"
    api_description: str = "Projects, AI assistants and billing for the KapryDEV dashboard"

    # Supabase Auth - access tokens are HS256 JWTs signed with the project secret
    supabase_jwt_secret: str = ""
    supabase_jwt_audience: str = "authenticated"

    # Site URL used for Stripe checkout return URLs
    site_url: str = "http://localhost:3000"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "kaprydev-dashboard-api"

    # Generation Provider - Gemini
    gemini_api_key: str = ""
    gemini_api_base: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_timeout_seconds: float = 120.0
    default_model_key: str = "gemini-3-pro-preview"

    # Payment Provider - Stripe
    stripe_api_key: str = ""  # Stripe secret key (sk_test_... or sk_live_...)
    stripe_webhook_secret: str = ""  # Stripe webhook signing secret (whsec_...)
    stripe_api_base: str = "https://api.stripe.com"
    stripe_currency: str = "eur"

    # Token accounting
    chars_per_token: int = 4
    token_output_buffer: int = 50
    token_pack_validity_days: int = 365
    chat_title_max_chars: int = 30

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
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if self.chars_per_token <= 0:
            errors.append(f"CHARS_PER_TOKEN must be positive, got: {self.chars_per_token}")

        if self.token_output_buffer < 0:
            errors.append(
                f"TOKEN_OUTPUT_BUFFER cannot be negative, got: {self.token_output_buffer}"
            )

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
    def sync_database_url(self) -> str:
        """Database URL for synchronous drivers (Alembic)."""
        return self.database_url.replace("+asyncpg", "+psycopg2")


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
