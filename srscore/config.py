"""
Centralized configuration management for srscore.
"""
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


def get_default_db_path() -> Path:
    """Returns the default path for the database file."""
    return Path.home() / ".srscore" / "srs.db"


class Settings(BaseSettings):
    """
    Application settings, loaded from SRSCORE_* environment variables or a
    .env file.
    """

    model_config = SettingsConfigDict(
        env_prefix="SRSCORE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- Storage ---
    db_path: Path = get_default_db_path()

    # --- Queue sizes ---
    default_queue_limit: int = 20
    filtered_queue_limit: int = 50
    max_queue_limit: int = 100

    # --- Sync paging ---
    sync_event_page_size: int = 1000
    sync_state_page_size: int = 2000

    # --- Logging ---
    log_level: str = "WARNING"

    # --- Testing Configuration ---
    # When True, disables the guard that refuses to drop tables holding data.
    # Should NEVER be enabled in production.
    testing_mode: bool = False


settings = Settings()
