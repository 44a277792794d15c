"""
Configuration management for the Credit Batcher.

Supports configuration via environment variables and .env files.
"""

from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_MEDIA_TYPES = [
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/gif",
    "image/webp",
]


class BatcherConfig(BaseSettings):
    """
    Configuration settings for the Credit Batcher.

    All settings can be configured via environment variables with the
    CREDIT_BATCHER_ prefix.
    """

    model_config = SettingsConfigDict(
        env_prefix="CREDIT_BATCHER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Database settings
    database_url: str = Field(
        default="sqlite+aiosqlite:///credits.db",
        description="SQLAlchemy database URL for the balance ledger"
    )

    # Ledger settings
    balance_cache_ttl_seconds: float = Field(
        default=5.0,
        ge=0,
        description="How long a read balance is served from cache"
    )

    # Batching parameters
    max_batch_size: int = Field(
        default=10,
        ge=1,
        description="Maximum number of items accepted in a single batch"
    )
    concurrency_limit: int = Field(
        default=5,
        ge=1,
        description="Number of items processed concurrently per window"
    )
    per_item_cost: int = Field(
        default=1,
        ge=0,
        description="Credits charged for each successfully processed item"
    )

    # Item validation
    max_item_size_bytes: int = Field(
        default=10 * 1024 * 1024,
        ge=1,
        description="Largest accepted item payload in bytes"
    )
    allowed_media_types: List[str] = Field(
        default_factory=lambda: list(DEFAULT_MEDIA_TYPES),
        description="Media types accepted for processing"
    )

    # Provider settings
    provider_base_url: str = Field(
        default="https://api.ideogram.ai",
        description="Base URL of the classification provider"
    )
    provider_endpoint: str = Field(
        default="/describe",
        description="Path of the classification endpoint"
    )
    provider_api_key: Optional[str] = Field(
        default=None,
        description="API key sent to the classification provider"
    )
    worker_timeout_seconds: float = Field(
        default=15.0,
        gt=0,
        description="Upper bound on a single provider call"
    )

    # Logging settings
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )
    log_json: bool = Field(
        default=False,
        description="Output logs in JSON format"
    )

    @property
    def provider_url(self) -> str:
        """Full URL of the classification endpoint."""
        return self.provider_base_url.rstrip("/") + "/" + self.provider_endpoint.lstrip("/")


# Global config instance
_config: Optional[BatcherConfig] = None


def get_config() -> BatcherConfig:
    """Get or create the global configuration instance."""
    global _config
    if _config is None:
        _config = BatcherConfig()
    return _config


def set_config(config: BatcherConfig) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
