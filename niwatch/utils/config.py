"""
Configuration management for the ni watcher.

Uses pydantic-settings to load configuration from environment variables
and .env files.
"""

from pathlib import Path
from typing import Literal, Optional

from loguru import logger
from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from domains.normalization.errors import ConfigurationError


class Settings(BaseSettings):
    """Service settings loaded from environment."""

    # Watch root
    watch_folder: Path
    recursive: bool = False

    # Normalizer tool
    normalizer_path: str = "ni"
    normalizer_args: str = ""
    output_mode: Literal["directory", "file"] = "directory"
    normalizer_timeout: float = Field(default=120.0, gt=0)

    # Quiescence detection (seconds)
    quiet_interval: float = Field(default=2.0, gt=0)
    sample_interval: float = Field(default=0.5, gt=0)
    coalesce_window: float = Field(default=0.05, ge=0)
    suppression_window: float = Field(default=10.0, gt=0)

    # Worker configuration
    worker_count: int = Field(default=4, ge=1)
    work_queue_size: int = Field(default=64, ge=1)
    event_queue_size: int = Field(default=1024, ge=1)

    # Retry configuration
    max_retries: int = Field(default=3, ge=0)
    retry_initial_delay: float = Field(default=1.0, ge=0)
    retry_max_delay: float = Field(default=30.0, ge=0)
    retry_backoff_base: float = Field(default=2.0, ge=1)
    transient_exit_codes: str = ""
    retry_spawn_errors: bool = False

    # Path filters
    include_patterns: str = ""
    exclude_patterns: str = ""

    # Logging
    log_level: str = "INFO"
    log_file: Optional[Path] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("watch_folder", mode="after")
    @classmethod
    def _expand_watch_folder(cls, value: Path) -> Path:
        return value.expanduser()

    @field_validator("transient_exit_codes", mode="after")
    @classmethod
    def _check_exit_codes(cls, value: str) -> str:
        for code in _split(value):
            int(code)
        return value

    @field_validator("log_level", mode="after")
    @classmethod
    def _check_level(cls, value: str) -> str:
        value = value.upper()
        # Raises ValueError for names loguru does not know
        logger.level(value)
        return value

    def get_normalizer_args(self) -> list[str]:
        """Parse extra normalizer arguments into a list."""
        return _split(self.normalizer_args)

    def get_transient_exit_codes(self) -> frozenset[int]:
        """Parse exit codes that should be retried."""
        return frozenset(int(code) for code in _split(self.transient_exit_codes))

    def get_include_patterns(self) -> list[str]:
        """Parse include globs into list."""
        return _split(self.include_patterns)

    def get_exclude_patterns(self) -> list[str]:
        """Parse exclude globs into list."""
        return _split(self.exclude_patterns)


def _split(value: str) -> list[str]:
    return [item.strip() for item in value.split(',') if item.strip()]


def load_settings(**overrides) -> Settings:
    """
    Build settings and validate the watch root.

    Args:
        **overrides: Values that take precedence over the environment

    Returns:
        Validated settings

    Raises:
        ConfigurationError: If settings are invalid or the watch root is unusable
    """
    try:
        settings = Settings(**{k: v for k, v in overrides.items() if v is not None})
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e

    root = settings.watch_folder
    if not root.exists():
        raise ConfigurationError(f"Watch folder does not exist: {root}")
    if not root.is_dir():
        raise ConfigurationError(f"Watch folder is not a directory: {root}")

    return settings
