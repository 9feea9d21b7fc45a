from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="SONDER_", env_file=".env", env_file_encoding="utf-8")

    database_url: str = "sqlite:///./sonder.db"
    supabase_url: str = ""
    supabase_key: str = ""
    session_dir: Path = Path.home() / ".sonder" / "session"

    # Reconciliation loop; intervals under ~30s burn battery and API quota
    sync_interval_seconds: int = 30
    network_timeout_seconds: float = 15.0
    backoff_base_seconds: float = 5.0
    backoff_max_seconds: float = 300.0
    start_automatically: bool = True
    realtime_enabled: bool = False

    # Photo uploads
    photo_bucket: str = "photos"
    max_concurrent_uploads: int = 3
    photo_max_dimension: int = 1200
    photo_max_bytes: int = 500_000
    photo_jpeg_quality: int = 80
    photo_upload_attempts: int = 3


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
