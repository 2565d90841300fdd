"""Dependency providers and settings management."""

from functools import lru_cache
from typing import List

from fastapi import HTTPException, status
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"

    # Redis Configuration
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_MAX_CONNECTIONS: int = 20
    KV_TIMEOUT_SECONDS: float = 3.0

    # Raw event namespaces (ordered; legacy conventions after the main one)
    PAGEVIEW_PATTERNS: List[str] = ["attribution_*"]
    CONVERSION_PATTERNS: List[str] = ["conversions:*", "conversion:*"]

    # Index records
    INDEX_TTL_SECONDS: int = 2592000  # 30 days
    INDEX_MAX_PAGEVIEWS: int = 50
    LANDING_INDEX_MAX_PAGEVIEWS: int = 30
    INDEX_CHECKPOINT_EVERY_CHUNKS: int = 10

    # Scanning and fan-out
    SCAN_COUNT: int = 100
    SCAN_MAX_PAGES: int = 200
    FETCH_CONCURRENCY: int = 50
    WRITE_CONCURRENCY: int = 50

    # Time-boxed slices
    SLICE_BUDGET_SECONDS: float = 25.0
    SLICE_SAFETY_MARGIN_SECONDS: float = 3.0
    PROGRESS_TTL_SECONDS: int = 7200  # 2 hours

    # Attribution
    DEFAULT_HALF_LIFE_HOURS: float = 168.0

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    settings = Settings()  # type: ignore[call-arg]
    if not settings.REDIS_URL:
        raise ConfigurationError("REDIS_URL is not configured")
    if not settings.PAGEVIEW_PATTERNS or not settings.CONVERSION_PATTERNS:
        raise ConfigurationError("PAGEVIEW_PATTERNS and CONVERSION_PATTERNS must not be empty")
    return settings


def get_kv_client():
    """Resolve the shared KV client for a request.

    Raises 503 when the store could not be initialized at startup.
    """
    from . import state

    client = state.get_kv_client()
    if client is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Key-value store is not available",
        )
    return client
