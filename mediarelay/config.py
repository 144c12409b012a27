from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Server
    PORT: int = 3002
    ENVIRONMENT: str = "production"

    # Internal Authentication
    API_KEY: str = ""

    # Supabase (object store and optional cache table)
    SUPABASE_URL: str = ""
    SUPABASE_SERVICE_KEY: str = ""
    STORAGE_BUCKET: str = "media"

    # Delivery cache: "file" (JSON file) or "supabase" (table)
    CACHE_BACKEND: str = "file"
    CACHE_FILE_PATH: str = "file_id_cache.json"
    CACHE_TABLE: str = "delivery_cache"

    # Temp storage and logs
    TEMP_DIR: str = "/tmp/mediarelay"
    LOG_DIR: Optional[str] = None

    # Invidious backend
    INVIDIOUS_PRIMARY: str = "https://inv.perditum.com"
    INVIDIOUS_DIRECTORY: str = "https://api.invidious.io/instances.json?sort_by=health"
    INSTANCE_TTL_SECONDS: int = 3600
    RESOLVE_TIMEOUT_SECONDS: float = 8.0

    # yt-dlp backend
    EXTRACT_TIMEOUT_SECONDS: float = 60.0
    PROXY_URL: Optional[str] = None

    # Download queue courtesy delay after every task
    QUEUE_DELAY_SECONDS: float = 1.0

    # Uploads
    MAX_UPLOAD_BYTES: int = 2000 * 1024 * 1024
    UPLOAD_TIMEOUT_SECONDS: float = 300.0
    SIGNED_URL_TTL_SECONDS: int = 3600

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
