"""Process level settings read from the environment."""

import socket
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_worker_id() -> str:
    return f"{socket.gethostname()}-worker"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="JOBCTL_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Store
    db_path: str = Field(default=".jobctl/jobs.db", description="SQLite job store")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", description="Logging level"
    )

    # Handlers
    registry: Optional[str] = Field(
        default=None,
        description="Import path of the HandlerRegistry, e.g. 'myapp.jobs:registry'",
    )

    # Worker loop
    worker_id: str = Field(default_factory=_default_worker_id)
    batch_size: int = Field(default=10, ge=1)
    max_runtime_ms: int = Field(default=5 * 60 * 1000, gt=0)
    cycle_runtime_ms: int = Field(default=10000, gt=0)
    poll_interval_ms: int = Field(default=5000, ge=0)
    stats_every_cycles: int = Field(default=10, ge=1)
    dlq_cleanup_every_cycles: int = Field(default=50, ge=1)
    dlq_cleanup_batch_size: int = Field(default=25, ge=1, le=100)
    stale_claim_grace_ms: int = Field(default=60000, ge=0)


def get_settings() -> Settings:
    return Settings()
