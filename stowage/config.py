"""Configuration management using Pydantic Settings."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class StowageSettings(BaseSettings):
    """Storage settings, overridable through STOWAGE_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="STOWAGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database
    db_url: str = "sqlite:///stowage.db"

    # Finished workflows are deleted, or kept with state 'finished'
    remove_when_finished: bool = True

    # Queue engine
    insert_batch_size: int = Field(default=100, gt=0)
    response_batch_size: int = Field(default=25, gt=0)

    # Wait reconciliation
    promotion_batch_size: int = Field(default=5000, gt=0)
    recovery_batch_size: int = Field(default=100000, gt=0)
    partial_batch_sleep: float = Field(default=1.0, ge=0)
    idle_sleep: float = Field(default=2.0, ge=0)

    # Stale response reaper
    stale_delete_batch_size: int = Field(default=20000, gt=0)
    stale_response_retention: float = Field(default=3600.0, ge=0)  # seconds
    delete_stale_responses_interval: float = Field(default=3600.0, gt=0)  # seconds

    # Transaction retries
    retry_max_attempts: int = Field(default=5, gt=0)
    retry_delay: float = Field(default=0.1, ge=0)
    retry_max_delay: float = Field(default=5.0, ge=0)

    # Batcher
    batcher_capacity: int = Field(default=10000, gt=0)
    batcher_batch_size: int = Field(default=100, gt=0)
