"""Application configuration loaded from environment variables."""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "Workout Sync"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Device ---
    device_role: Literal["primary", "companion"] = "primary"
    device_model: str = "unknown"

    # --- Local state ---
    local_store_path: str = "workouts.sqlite3"  # ":memory:" for ephemeral stores
    scratch_dir: str = "scratch"
    cursor_path: str | None = "sync_cursor.json"

    # --- Supabase (remote durable store) ---
    supabase_db_url: str = ""  # direct postgres connection string for asyncpg
    remote_table: str = "workout_records"
    remote_change_channel: str = "workout_changes"

    # --- Artifact namespace ---
    archive_backend: Literal["r2", "directory"] = "r2"
    archive_dir: str = "archive"  # used when archive_backend == "directory"
    archive_prefix: str = "workouts/audio"

    # --- Cloudflare R2 ---
    r2_account_id: str = ""
    r2_access_key_id: str = ""
    r2_secret_access_key: str = ""
    r2_bucket_name: str = "workout-archive"

    # --- Link (companion <-> primary) ---
    link_peer_url: str | None = None
    link_timeout_seconds: float = 5.0

    # --- Uploads ---
    max_audio_size_bytes: int = 50 * 1024 * 1024  # 50 MB
    allowed_audio_types: list[str] = [
        "audio/mp4",
        "audio/x-m4a",
        "audio/m4a",
        "audio/aac",
        "audio/mpeg",
        "audio/wav",
        "application/octet-stream",
    ]

    # --- Sweeps ---
    orphan_sweep_interval_seconds: int = 900  # 0 disables the periodic sweep

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
