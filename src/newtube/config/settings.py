from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="NEWTUBE_",
        env_file=".env",
        extra="ignore",
    )

    # Runtime
    ENVIRONMENT: str = Field(default="dev", description="Environment name")
    HOST: str = Field(default="0.0.0.0", description="Bind host")
    PORT: int = Field(default=7920, description="Bind port")
    LOG_LEVEL: str = Field(default="INFO", description="Root log level")

    # Database
    DATABASE_URL: str = Field(default="sqlite:///newtube_dev.db")
    SCHEMA_MODE: str = Field(
        default="create_all",
        description="create_all: auto-create tables (dev), migrations: use Alembic only (prod)",
    )

    # Inference service
    INFERENCE_BASE_URL: str = Field(
        default="http://localhost:8300", description="Embedding inference base URL"
    )
    INFERENCE_API_KEY: str = Field(default="", description="Optional bearer token")
    INFERENCE_TIMEOUT_SECONDS: float = Field(default=30.0)
    INFERENCE_MAX_CONCURRENCY: int = Field(
        default=8, description="Process-wide cap on in-flight inference calls"
    )

    # Active embedding model
    EMBEDDING_MODEL: str = Field(default="text-embedding-3-small")
    EMBEDDING_VERSION: str = Field(default="1")
    EMBEDDING_DIMENSIONS: int = Field(
        default=1536, description="Expected vector length; 0 disables the check"
    )

    # Jobs
    JOB_DEFAULT_BATCH_SIZE: int = Field(default=100)
    JOB_MAX_BATCH_SIZE: int = Field(default=500)
    JOB_MAX_RETRIES_DEFAULT: int = Field(default=3)
    JOB_RETRY_BASE_DELAY_SECONDS: float = Field(default=1.0)
    JOB_RETRY_MAX_DELAY_SECONDS: float = Field(default=60.0)
    JOB_ITEM_CONCURRENCY: int = Field(
        default=3, description="Concurrent items per batch within one job"
    )
    JOB_STALE_TIMEOUT_SECONDS: int = Field(
        default=900, description="RUNNING jobs without heartbeat beyond this are recovered"
    )
    JOB_RETENTION_HOURS: int = Field(default=24)

    # Workers
    WORKER_POOL_SIZE: int = Field(default=2)
    WORKER_POLL_INTERVAL_SECONDS: int = Field(default=5)

    # Incremental updates / staleness sweep
    INCREMENTAL_UPDATE_MAX_ITEMS: int = Field(default=200)
    INCREMENTAL_UPDATE_MAX_PENDING_JOBS: int = Field(
        default=5, description="Skip scheduling incremental updates above this backlog"
    )
    EMBEDDING_STALE_AFTER_HOURS: int = Field(default=24)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
