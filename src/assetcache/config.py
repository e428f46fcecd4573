"""
Configuration management using pydantic-settings.

Loads configuration from ASSET_CACHE_* environment variables and .env files.
Validates limits and provides typed access to settings.
"""

from __future__ import annotations

from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from assetcache import __version__
from assetcache.types import DEFAULT_CAPACITY_BYTES, DEFAULT_TTL, OversizedPolicy


class Settings(BaseSettings):
    """Asset cache settings loaded from environment variables.

    All fields are optional and read with the ASSET_CACHE_ prefix,
    e.g. ASSET_CACHE_MAX_CACHE_BYTES.

    Optional:
        CACHE_DIR: Directory holding the database and blob files
        TTL_SECONDS: Record time-to-live
        MAX_CACHE_BYTES: Total capacity of the cache
        OVERSIZED_POLICY: reject | store, for items larger than the capacity
        REQUEST_TIMEOUT: Download timeout in seconds (unset = no timeout)
        CHUNK_SIZE: Streaming read size in bytes
        USER_AGENT: User-Agent header sent with downloads
        LOG_LEVEL: Logging level
        LOG_FILE: JSON Lines log file
    """

    model_config = SettingsConfigDict(
        env_prefix="ASSET_CACHE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    CACHE_DIR: Path = Field(default=Path(".asset_cache"), description="Cache directory")

    TTL_SECONDS: int = Field(
        default=int(DEFAULT_TTL.total_seconds()),
        gt=0,
        description="Time-to-live of cached records in seconds",
    )
    MAX_CACHE_BYTES: int = Field(
        default=DEFAULT_CAPACITY_BYTES,
        gt=0,
        description="Maximum total size of cached payloads in bytes",
    )
    OVERSIZED_POLICY: OversizedPolicy = Field(
        default=OversizedPolicy.REJECT,
        description="Handling of items larger than MAX_CACHE_BYTES",
    )

    REQUEST_TIMEOUT: float | None = Field(
        default=None, gt=0, description="Download timeout in seconds"
    )
    CHUNK_SIZE: int = Field(
        default=64 * 1024,
        ge=1024,
        le=16 * 1024 * 1024,
        description="Streaming read size in bytes",
    )
    USER_AGENT: str = Field(
        default=f"assetcache/{__version__}", description="User-Agent for downloads"
    )

    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    LOG_FILE: Path | None = Field(default=None, description="JSON Lines log file")

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        """Accept lowercase level names."""
        return v.upper() if isinstance(v, str) else v

    @field_validator("OVERSIZED_POLICY", mode="before")
    @classmethod
    def normalize_policy(cls, v: object) -> object:
        """Accept policy names in any case."""
        return v.strip().lower() if isinstance(v, str) else v

    @property
    def ttl(self) -> timedelta:
        """TTL as a timedelta."""
        return timedelta(seconds=self.TTL_SECONDS)

    def ensure_directories(self) -> None:
        """Create the cache directory if it doesn't exist."""
        self.CACHE_DIR.mkdir(parents=True, exist_ok=True)

    def display(self) -> dict[str, str | int | float | None]:
        """Return settings for display."""
        return {
            "CACHE_DIR": str(self.CACHE_DIR),
            "TTL_SECONDS": self.TTL_SECONDS,
            "MAX_CACHE_BYTES": self.MAX_CACHE_BYTES,
            "OVERSIZED_POLICY": self.OVERSIZED_POLICY.value,
            "REQUEST_TIMEOUT": self.REQUEST_TIMEOUT,
            "CHUNK_SIZE": self.CHUNK_SIZE,
            "USER_AGENT": self.USER_AGENT,
            "LOG_LEVEL": self.LOG_LEVEL,
            "LOG_FILE": str(self.LOG_FILE) if self.LOG_FILE else None,
        }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton.

    Returns:
        Settings instance loaded from environment.

    Raises:
        ValidationError: If settings are invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for testing)."""
    get_settings.cache_clear()
