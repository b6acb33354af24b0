"""
Shared configuration management for the community unlock entitlements service.
"""

from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="ACCESS_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # External services
    redis_url: str = Field(default="redis://localhost:6379/0")
    postgres_dsn: str = Field(default="postgres://localhost:5432/access")


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"


class EntitlementsConfig(ServiceConfig):
    """Settings for the entitlements service."""

    # Storage: memory | redis | postgres
    storage_backend: str = Field(default="memory")
    redis_key_prefix: str = Field(default="ent:")

    # Feature registry
    feature_registry_file: Optional[str] = Field(default=None)

    # Community milestone
    milestone_target: int = Field(default=10000)

    # Referral rewards: 1 referral = 1 week, every 5th referral = 1 month
    referral_boost_days: int = Field(default=7)
    referral_bonus_days: int = Field(default=30)
    referral_bonus_threshold: int = Field(default=5)

    # Quota
    quota_warning_threshold: int = Field(default=2)

    # Admin surface
    admin_api_key: Optional[str] = Field(default=None)

    @field_validator("storage_backend")
    @classmethod
    def _check_backend(cls, value: str) -> str:
        value = value.lower()
        if value not in ("memory", "redis", "postgres"):
            raise ValueError(f"unsupported storage backend: {value}")
        return value

    @field_validator("milestone_target", "referral_boost_days", "referral_bonus_days")
    @classmethod
    def _check_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("referral_bonus_threshold", "quota_warning_threshold")
    @classmethod
    def _check_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value


def get_config(service_name: str, port: int) -> EntitlementsConfig:
    """Get configuration for a specific service."""
    return EntitlementsConfig(service_name=service_name, port=port)
