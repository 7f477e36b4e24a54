"""
Shared configuration management for the validation gate service.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class GateSettings(BaseSettings):
    """Service configuration, read from GATE_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="GATE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Service
    service_name: str = Field(default="gate")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8020)

    # Key sets
    jwks_cache_ttl: float = Field(default=300.0, gt=0)
    jwks_fetch_timeout: float = Field(default=5.0, gt=0)

    # Token checks
    token_leeway: int = Field(default=0, ge=0)
    audience: Optional[str] = Field(default=None)
    docs_url: Optional[str] = Field(default=None)

    # Trust list
    whitelist_file: Optional[str] = Field(default=None)


@lru_cache()
def get_settings() -> GateSettings:
    """Get process-wide settings."""
    return GateSettings()
