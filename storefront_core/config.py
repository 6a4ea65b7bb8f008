"""Environment-driven configuration with Pydantic v2."""

from typing import List, Literal
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Storefront settings, read from STOREFRONT_* environment variables or .env."""

    model_config = SettingsConfigDict(
        env_prefix="STOREFRONT_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = Field(default="sqlite:///./storefront.db")
    database_echo: bool = Field(default=False)

    # Cache
    cache_max_size: int = Field(default=100, ge=1)
    cache_default_ttl_minutes: float = Field(default=5, gt=0)
    coupons_cache_ttl_minutes: float = Field(default=5, gt=0)

    # Performance tracking
    performance_tracking_enabled: bool = Field(default=True)
    performance_excluded_paths: List[str] = Field(default_factory=lambda: ["/health"])

    # Logging
    log_level: str = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="json")


def get_settings() -> Settings:
    return Settings()
