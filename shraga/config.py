from __future__ import annotations

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from shraga.monitor.base import MIN_LOCK_LEASE


class Settings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {
        "env_prefix": "SHRAGA_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    # Storage
    database_path: str = "data/shraga.db"
    monitors_file: str = "monitors.yaml"

    # Scheduling
    pool_size: int = Field(default=10, ge=1)
    tick_interval: float = Field(default=1.0, gt=0)  # seconds between store polls
    # Locks older than this are force-released; 0 disables.
    # Must outlast the longest probe: TLS inspection plus request, each capped at 300s.
    lock_lease: float = Field(default=900.0, ge=0)

    # Logging
    app_env: str = "dev"  # "prod" | "dev"
    log_level: str = "INFO"

    @field_validator("lock_lease")
    @classmethod
    def _lease_outlasts_probe(cls, v: float) -> float:
        if v and v < MIN_LOCK_LEASE:
            raise ValueError(f"lock_lease must be 0 or at least {MIN_LOCK_LEASE:g} seconds")
        return v


settings = Settings()
