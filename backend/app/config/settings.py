"""
Application Settings for the Billing Engine

Centralized configuration using Pydantic Settings with .env support.
All environment variables are validated at startup.
"""

from functools import lru_cache
from typing import Optional
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Cardcom credentials are optional in development so the API can boot
    without a terminal; production refuses to start without them.
    """

    # Supabase Auth Configuration (JWT verification + profile lookup)
    supabase_url: str = "http://localhost:54321"
    supabase_jwt_secret: Optional[str] = None

    # Application Settings
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # CORS / Redirect Configuration
    frontend_url: str = "http://localhost:5173"
    public_api_url: str = "http://localhost:8000"
    allowed_origins: list[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
    ]

    # Admin
    admin_api_key: Optional[str] = None

    # Cardcom Provider Configuration
    cardcom_terminal_number: Optional[int] = None
    cardcom_api_name: Optional[str] = None
    cardcom_base_url: str = "https://secure.cardcom.solutions/api/v11"
    cardcom_language: str = "he"
    cardcom_iso_coin_id: int = 1  # 1 = ILS
    provider_timeout_seconds: float = 15.0

    # Lifecycle Timing
    session_ttl_minutes: int = 30
    grace_period_days: int = 7
    trial_days: int = 30
    status_poll_interval_seconds: int = 5
    renewal_retry_hours: int = 24

    # Contract
    contract_version: str = "1.0"

    # Retry Configuration
    reconcile_max_attempts: int = 3
    max_processing_attempts: int = 5
    retry_base_delay: float = 1.0
    retry_max_delay: float = 10.0

    # Database Configuration (SQLModel/SQLAlchemy)
    database_url: Optional[str] = None
    database_pool_size: int = 5
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_echo: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @model_validator(mode="after")
    def validate_provider_credentials(self) -> "Settings":
        """Cardcom credentials are mandatory outside development."""
        if self.is_production:
            missing = []
            if not self.cardcom_terminal_number:
                missing.append("CARDCOM_TERMINAL_NUMBER")
            if not self.cardcom_api_name:
                missing.append("CARDCOM_API_NAME")
            if missing:
                raise ValueError(
                    f"{', '.join(missing)} required when ENVIRONMENT=production"
                )

        self.cardcom_base_url = self.cardcom_base_url.rstrip("/")
        self.public_api_url = self.public_api_url.rstrip("/")
        self.frontend_url = self.frontend_url.rstrip("/")
        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment.lower() == "development"

    @property
    def webhook_url(self) -> str:
        """Public URL Cardcom posts notifications to."""
        return f"{self.public_api_url}/api/webhooks/cardcom"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export for direct import
settings = get_settings()
