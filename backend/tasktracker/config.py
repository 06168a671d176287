from __future__ import annotations

import os
from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing_extensions import Literal


class Settings(BaseSettings):
    """Process configuration. User preferences live in the snapshot instead."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    app_name: str = "TaskTracker"
    environment: str = "development"
    host: str = os.getenv("TT_HOST", "127.0.0.1")
    port: int = int(os.getenv("TT_PORT", "8080"))

    storage_backend: Literal["sqlite", "json"] = os.getenv("TT_STORAGE", "sqlite")
    sqlite_path: Path = Path(os.getenv("TT_SQLITE_PATH", "./data/tasktracker.db"))
    json_dir: Path = Path(os.getenv("TT_JSON_DIR", "./data/state"))
    storage_key: str = os.getenv("TT_STORAGE_KEY", "task-tracker-data")
    max_snapshot_bytes: int = int(os.getenv("TT_MAX_SNAPSHOT_BYTES", str(5 * 1024 * 1024)))

    tick_interval_seconds: float = float(os.getenv("TT_TICK_INTERVAL", "1.0"))
    cleanup_interval_hours: float = float(os.getenv("TT_CLEANUP_INTERVAL_HOURS", "24"))

    log_dir: Path = Path(os.getenv("TT_LOG_DIR", "./data/logs"))
    log_level: str = os.getenv("TT_LOG_LEVEL", "INFO")

    @field_validator("storage_backend", mode="before")
    @classmethod
    def _normalize_backend(cls, value: str) -> str:
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.strip().upper()


settings = Settings()

# Ensure essential directories exist
settings.sqlite_path.parent.mkdir(parents=True, exist_ok=True)
settings.json_dir.mkdir(parents=True, exist_ok=True)
