from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Literal
from urllib.parse import quote_plus

from loguru import logger
from pydantic import Field, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from rich.console import Console

console = Console()
log = logger.bind(module="config")


class Settings(BaseSettings):
    """Centralised application configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    app_name: str = Field(default="Jarsmith", alias="APP_NAME")
    environment: str = Field(default="development", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    database_url: str | None = Field(default=None, alias="DATABASE_URL")
    db_scheme: str = Field(default="postgresql+psycopg", alias="DB_SCHEME")
    db_host: str = Field(default="localhost", alias="DB_HOST")
    db_port: int = Field(default=5432, alias="DB_PORT")
    db_username: str = Field(default="postgres", alias="DB_USER")
    db_password: str = Field(default="postgres", alias="DB_PASSWORD")
    db_name: str = Field(default="jarsmith", alias="DB_NAME")
    db_pool_size: int = Field(default=10, alias="DB_POOL_SIZE")
    db_max_overflow: int = Field(default=20, alias="DB_MAX_OVERFLOW")
    db_pool_timeout: int = Field(default=30, alias="DB_POOL_TIMEOUT")
    db_echo: bool = Field(default=False, alias="DB_ECHO")

    tasks_broker: Literal["redis", "stub"] = Field(default="redis", alias="TASKS_BROKER")
    tasks_redis_url: str = Field(default="redis://localhost:6379/0", alias="TASKS_REDIS_URL")
    tasks_queue_prefix: str = Field(default="jarsmith.jobs", alias="TASKS_QUEUE_PREFIX")
    tasks_worker_threads: int = Field(default=4, ge=1, alias="TASKS_WORKER_THREADS")
    tasks_worker_time_limit_seconds: int = Field(
        default=3600,
        ge=0,
        alias="TASKS_WORKER_TIME_LIMIT_SECONDS",
    )

    repo_cache_dir: Path = Field(default=Path(".jarsmith/repos"), alias="REPO_CACHE_DIR")
    repo_fetch_depth: int | None = Field(default=None, alias="REPO_FETCH_DEPTH")
    git_bin: str = Field(default="git", alias="GIT_BIN")
    diff_max_files: int = Field(default=500, ge=1, alias="DIFF_MAX_FILES")

    archive_root: Path = Field(default=Path(".jarsmith/archives"), alias="ARCHIVE_ROOT")
    archive_compression_level: int = Field(default=6, ge=0, le=9, alias="ARCHIVE_COMPRESSION_LEVEL")

    deploy_max_attempts: int = Field(default=3, ge=1, alias="DEPLOY_MAX_ATTEMPTS")
    deploy_backoff_seconds: float = Field(default=2.0, ge=0.0, alias="DEPLOY_BACKOFF_SECONDS")
    deploy_backoff_max_seconds: float = Field(default=30.0, ge=0.0, alias="DEPLOY_BACKOFF_MAX_SECONDS")
    deploy_timeout_seconds: float = Field(default=600.0, gt=0.0, alias="DEPLOY_TIMEOUT_SECONDS")
    deploy_http_path: str = Field(default="/deploy", alias="DEPLOY_HTTP_PATH")
    deploy_wlst_bin: str = Field(default="wlst.sh", alias="DEPLOY_WLST_BIN")
    deploy_lock_backend: Literal["local", "redis"] = Field(default="local", alias="DEPLOY_LOCK_BACKEND")
    deploy_lock_poll_seconds: float = Field(default=1.0, gt=0.0, alias="DEPLOY_LOCK_POLL_SECONDS")
    deploy_lock_lease_seconds: float = Field(default=3600.0, gt=0.0, alias="DEPLOY_LOCK_LEASE_SECONDS")

    api_host: str = Field(default="127.0.0.1", alias="API_HOST")
    api_port: int = Field(default=8000, alias="API_PORT")
    log_page_max: int = Field(default=1000, ge=1, alias="LOG_PAGE_MAX")

    @field_validator("deploy_http_path")
    @classmethod
    def _rooted_path(cls, value: str) -> str:
        value = (value or "").strip()
        return value if value.startswith("/") else f"/{value}"

    @computed_field(return_type=str)
    @property
    def database_dsn(self) -> str:
        """SQLAlchemy URL: ``DATABASE_URL`` verbatim, else built from the ``DB_*`` parts."""
        if self.database_url:
            return self.database_url
        credentials = f"{quote_plus(self.db_username)}:{quote_plus(self.db_password)}"
        return f"{self.db_scheme}://{credentials}@{self.db_host}:{self.db_port}/{self.db_name}"

    def export_safe(self) -> dict[str, Any]:
        """Settings worth logging at startup; credentials are left out."""
        return {
            "environment": self.environment,
            "database": f"{self.db_host}:{self.db_port}/{self.db_name}" if not self.database_url else "DATABASE_URL",
            "tasks_broker": self.tasks_broker,
            "tasks_worker_threads": self.tasks_worker_threads,
            "repo_cache_dir": str(self.repo_cache_dir),
            "archive_root": str(self.archive_root),
            "diff_max_files": self.diff_max_files,
            "deploy_max_attempts": self.deploy_max_attempts,
            "deploy_lock_backend": self.deploy_lock_backend,
        }


@lru_cache
def get_settings() -> Settings:
    """Load and cache application settings."""
    settings = Settings()
    console.log(
        f"[bold green]Loaded settings[/] env={settings.environment!r} "
        f"broker={settings.tasks_broker!r}",
    )
    log.info("Settings initialised: {}", settings.export_safe())
    return settings
