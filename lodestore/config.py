import logging
import os
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class StoreSettings(BaseSettings):
    """Configuration for the on-disk store."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", env_prefix="LODESTORE_STORE_", extra="ignore"
    )

    directory: str = Field(".", description="Directory holding one SQLite file per database, or ':memory:'")


class WorkerSettings(BaseSettings):
    """Configuration for the background worker thread."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", env_prefix="LODESTORE_WORKER_", extra="ignore"
    )

    enabled: bool = Field(True, description="Try to run queries in a background worker thread")
    probe_window: float = Field(0.1, ge=0, description="Seconds to wait for a worker failure signal")
    join_timeout: float = Field(5.0, ge=0, description="Seconds to wait for the worker thread on shutdown")


class AppSettings(BaseSettings):
    """General settings."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", env_prefix="LODESTORE_", extra="ignore"
    )

    debug: bool = Field(False, description="Enable debug mode for development")
    log_level: str = Field("INFO", description="Logging level")
    max_pending: int = Field(10000, ge=0, description="Maximum queued requests, 0 for no bound")
    strict_routing: bool = Field(False, description="Raise instead of logging on unroutable results")

    store: StoreSettings = Field(default_factory=StoreSettings)
    worker: WorkerSettings = Field(default_factory=WorkerSettings)

    @property
    def log_level_value(self) -> int:
        """Return the numeric value of the log level."""
        return logging.getLevelName(self.log_level.upper())


@lru_cache
def get_settings() -> AppSettings:
    """
    Get application settings.
    If the TEST_MODE environment variable is set, it returns an in-memory
    configuration suitable for testing, otherwise loads the configuration
    from the environment and the .env file.
    """
    if os.getenv("TEST_MODE"):
        return AppSettings(
            debug=True,
            log_level="DEBUG",
            store=StoreSettings(directory=":memory:"),
            worker=WorkerSettings(probe_window=0.05),
        )
    return AppSettings()
