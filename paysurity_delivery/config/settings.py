"""Application settings using Pydantic for environment-based configuration."""
from decimal import Decimal
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # DoorDash Drive Configuration
    doordash_developer_id: Optional[str] = Field(
        default=None, description="DoorDash Drive developer ID (JWT issuer)"
    )
    doordash_key_id: Optional[str] = Field(
        default=None, description="DoorDash Drive signing key ID (JWT kid)"
    )
    doordash_signing_secret: Optional[str] = Field(
        default=None, description="DoorDash Drive signing secret"
    )
    doordash_webhook_secret: Optional[str] = Field(
        default=None, description="Secret used to verify DoorDash webhook signatures"
    )
    doordash_base_url: str = Field(
        default="https://openapi.doordash.com/drive/v2",
        description="DoorDash Drive API base URL",
    )

    # Internal Delivery Configuration
    internal_webhook_secret: Optional[str] = Field(
        default=None, description="Shared secret for internal delivery webhooks"
    )

    # Pricing
    internal_platform_fee_percent: Decimal = Field(
        default=Decimal("0"), description="Platform markup on internal delivery fees (%)"
    )
    external_platform_fee_percent: Decimal = Field(
        default=Decimal("10"), description="Platform markup on external delivery fees (%)"
    )

    # Provider HTTP Configuration
    provider_http_timeout: float = Field(
        default=10.0, description="Timeout for provider API calls (seconds)"
    )
    provider_retry_max_attempts: int = Field(
        default=3, description="Max attempts for transient provider API failures"
    )
    provider_retry_base_delay: float = Field(
        default=0.5, description="Base delay for retry backoff (seconds)"
    )
    circuit_breaker_failure_threshold: int = Field(
        default=5, description="Consecutive failures before the circuit opens"
    )
    circuit_breaker_timeout: int = Field(
        default=60, description="Seconds before an open circuit is retried"
    )

    # Application Configuration
    app_name: str = Field(default="paysurity-delivery", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)",
    )
    test_mode_header: str = Field(default="X-Test-Mode", description="Test-mode header name")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("internal_platform_fee_percent", "external_platform_fee_percent")
    @classmethod
    def validate_fee_percent(cls, v: Decimal) -> Decimal:
        """Platform markup must be a percentage between 0 and 100."""
        if v < 0 or v > 100:
            raise ValueError("Platform fee percent must be between 0 and 100")
        return v

    @field_validator("provider_retry_max_attempts")
    @classmethod
    def validate_retry_attempts(cls, v: int) -> int:
        """At least one attempt is always made."""
        if v < 1:
            raise ValueError("provider_retry_max_attempts must be at least 1")
        return v

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def doordash_configured(self) -> bool:
        """Check if DoorDash Drive credentials are present."""
        return bool(
            self.doordash_developer_id
            and self.doordash_key_id
            and self.doordash_signing_secret
        )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
