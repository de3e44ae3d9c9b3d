"""
Application configuration management.
"""
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "Pixel Art VJ Sync"
    environment: str = "development"
    debug: bool = False
    log_level: str = "info"

    # Server
    host: str = "0.0.0.0"
    port: int = 3001
    server_db_url: str = "file:./data/server.db"

    # Local storage
    data_dir: str = "./data"
    local_db_name: str = "pixelart.db"
    kv_store_name: str = "local_storage.json"

    # Custom REST backend
    custom_api_url: Optional[str] = None
    custom_api_key: Optional[str] = None

    # Supabase (hosted BaaS)
    supabase_url: Optional[str] = None
    supabase_anon_key: Optional[str] = None

    # GitHub gist backend
    github_token: Optional[str] = None
    github_username: Optional[str] = None
    github_api_url: str = "https://api.github.com"

    # Firebase Realtime Database
    firebase_database_url: Optional[str] = None
    firebase_api_key: Optional[str] = None

    # Sync scheduling
    sync_interval_seconds: float = 30
    connectivity_interval_seconds: float = 10
    connectivity_probe_url: str = "https://www.google.com/favicon.ico"
    http_timeout_seconds: float = 30.0

    # Sessions
    session_timeout_hours: int = 24
    session_refresh_window_minutes: int = 60
    session_check_interval_seconds: float = 300
    jwt_secret: str
    jwt_algorithm: str = "HS256"
    legacy_plaintext_passwords: bool = True

    # Encryption
    encryption_iterations: int = 100_000

    # Migrations and backups
    migration_target_version: str = "2.0"
    auto_backup_retention: int = 5

    class Config:
        env_file = ".env"
        case_sensitive = False

    @property
    def local_db_url(self) -> str:
        return f"file:{Path(self.data_dir) / self.local_db_name}"

    @property
    def kv_store_path(self) -> Path:
        return Path(self.data_dir) / self.kv_store_name


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide settings instance."""
    return Settings()
