"""Configuration management using pydantic-settings."""
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Storefront API configuration
    storefront_api_base_url: str = "https://api.pluggn.com.ng"
    # None means the main app (no store): config falls back to defaults
    storefront_subdomain: Optional[str] = None
    http_timeout_seconds: float = 10.0

    # Cache settings
    cache_enabled: bool = True
    cache_directory: Path = Path("./cache")
    cache_db_name: str = "storefront_cache.db"

    # Persistent backend: "auto" probes SQLite and falls back to the flat file
    persistence_backend: str = "auto"
    flat_store_quota_bytes: int = 5 * 1024 * 1024

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
