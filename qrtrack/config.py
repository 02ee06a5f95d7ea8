"""Runtime settings loaded from QRTRACK_* environment variables or a .env file."""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="QRTRACK_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Rendering defaults (lowest precedence after template defaults)
    default_size: int = 400
    default_error_correction: str = "M"
    default_format: str = "PNG"
    default_dark_color: str = "#000000"
    default_light_color: str = "#FFFFFF"
    default_margin: int = 4

    # Quality
    fallback_quality_score: float = 0.8

    # Decoding
    max_decode_dimension: int = 800
    image_fetch_timeout_seconds: float = 10.0

    # Storage
    store_path: Optional[str] = None
    templates_path: Optional[str] = None

    # Cache
    redis_url: Optional[str] = None
    cache_ttl_seconds: int = 3600

    # Asset registry enrichment
    asset_registry_url: Optional[str] = None
    asset_registry_timeout_seconds: float = 5.0

    # Analytics
    analytics_window_days: int = 30
    recent_scans_limit: int = 50

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None
    log_json: bool = False

    # HTTP adapter
    api_host: str = "0.0.0.0"
    api_port: int = 3001


@lru_cache()
def get_settings() -> Settings:
    return Settings()
