from pydantic import model_validator
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional
import os

class Settings(BaseSettings):
    # App Settings
    app_name: str = "Converty"
    app_version: str = "1.0.0"
    debug: bool = False

    # API Settings
    backend_host: str = "0.0.0.0"
    backend_port: int = int(os.getenv("PORT", "4000"))
    allowed_origins: str = "http://localhost:3000"
    submit_rate_limit: str = "60/minute"

    # Database - DATABASE_URL wins, fallback to SQLite for local
    database_url: Optional[str] = None
    sqlite_busy_timeout_seconds: float = 30.0

    # Blob storage
    blob_dir: str = "./data/blobs"
    max_file_size_mb: int = 50

    # Worker pool
    run_workers_in_process: bool = True
    worker_count: int = 2
    poll_interval_seconds: float = 1.0
    max_idle_interval_seconds: float = 10.0

    # Retry policy
    max_attempts: int = 3
    backoff_base_seconds: float = 2.0
    backoff_max_seconds: float = 300.0
    store_retry_attempts: int = 5
    store_retry_base_seconds: float = 0.5

    # Converter processes
    ffmpeg_path: str = "ffmpeg"
    pdftoppm_path: str = "pdftoppm"
    converter_timeout_seconds: float = 600.0

    # Liveness: a running job without a heartbeat for this long is orphaned
    liveness_timeout_seconds: float = 900.0
    heartbeat_interval_seconds: float = 30.0
    recovery_interval_seconds: float = 60.0

    # Retention
    retention_hours: float = 24.0
    purge_after_hours: float = 168.0
    reaper_interval_seconds: float = 3600.0

    # Webhooks
    webhook_timeout_seconds: float = 10.0

    # Logging
    log_level: str = "INFO"
    log_format: str = "text"
    log_dir: Optional[str] = None

    class Config:
        env_file = ".env"
        env_prefix = "CONVERTY_"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # Auto-detect database URL
        if self.database_url is None:
            hosted_db = os.getenv("DATABASE_URL")
            if hosted_db:
                # Hosted providers hand out postgres:// URLs, SQLAlchemy async needs postgresql+asyncpg://
                if hosted_db.startswith("postgres://"):
                    self.database_url = hosted_db.replace("postgres://", "postgresql+asyncpg://", 1)
                elif hosted_db.startswith("postgresql://"):
                    self.database_url = hosted_db.replace("postgresql://", "postgresql+asyncpg://", 1)
                else:
                    self.database_url = hosted_db
            else:
                # Fallback to local SQLite
                self.database_url = "sqlite+aiosqlite:///./data/converty.db"

    @model_validator(mode="after")
    def heartbeat_within_liveness(self):
        # A live worker must heartbeat at least once per liveness window
        if self.heartbeat_interval_seconds >= self.liveness_timeout_seconds:
            raise ValueError("heartbeat_interval_seconds must be less than liveness_timeout_seconds")
        return self

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * 1024 * 1024

    @property
    def retention_seconds(self) -> float:
        return self.retention_hours * 3600

    @property
    def purge_after_seconds(self) -> float:
        return self.purge_after_hours * 3600

@lru_cache()
def get_settings() -> Settings:
    return Settings()
