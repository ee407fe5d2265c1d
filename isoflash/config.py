"""Configuration settings for isoflash.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

import logging
import tempfile
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

# Mount points whose backing device must never be written to
DEFAULT_SYSTEM_MOUNTS = ["/", "/boot", "/home", "/var", "/usr", "/tmp", "/opt", "/etc"]


def _default_staging_dir() -> Path:
    """Return the default staging directory."""
    return Path(tempfile.gettempdir()) / "homelab-iso-flasher"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "homelab-isoflash" / "history.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the ISOFLASH_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="ISOFLASH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    staging_dir: Path = Field(
        default_factory=_default_staging_dir,
        description="Root directory for downloaded artifacts awaiting a write",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL for flash history",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Safety
    system_mounts: list[str] = Field(
        default_factory=lambda: list(DEFAULT_SYSTEM_MOUNTS),
        min_length=1,
        description="Mount points whose devices are never offered or written",
    )
    use_sudo: bool = Field(
        default=True,
        description="Prefix privileged commands with sudo when not running as root",
    )

    # Write tuning
    block_size: str = Field(
        default="4M",
        pattern=r"^\d+[KkMm]?$",
        description="dd transfer block size (platform casing applied at runtime)",
    )
    heartbeat_interval: float = Field(
        default=5.0,
        gt=0,
        description="Seconds without a progress token before a heartbeat event",
    )

    # Timeouts (in seconds)
    download_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for artifact downloads",
    )
    flash_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for the block-level write",
    )

    # Build service
    build_service_url: str = Field(
        default="http://localhost:8080/api",
        description="Base URL of the ISO build service",
    )
    build_poll_interval: float = Field(
        default=10.0,
        gt=0,
        description="Seconds between build status polls",
    )
    build_wait_timeout: int = Field(
        default=4 * 3600,
        ge=60,
        description="Maximum seconds to wait for a build to complete",
    )

    # Push-stream surface
    flash_rate_limit: int = Field(
        default=5,
        ge=1,
        description="Flash operations a single client may start per window",
    )
    flash_rate_window: int = Field(
        default=3600,
        ge=1,
        description="Rate-limit window in seconds",
    )


def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


def configure_logging(
    settings: Settings | None = None,
    *,
    level: str | None = None,
    handler: logging.Handler | None = None,
) -> None:
    """Configure root logging.

    Args:
        settings: Optional settings instance; uses default if not provided.
        level: Overrides ``settings.log_level``.
        handler: Handler to install instead of the default stderr stream;
            it is expected to do its own formatting.
    """
    if settings is None:
        settings = get_settings()
    level = level or settings.log_level
    if handler is not None:
        logging.basicConfig(level=level, format="%(message)s", handlers=[handler])
    else:
        logging.basicConfig(level=level, format=LOG_FORMAT)


__all__ = [
    "DEFAULT_SYSTEM_MOUNTS",
    "Settings",
    "configure_logging",
    "get_settings",
    "print_settings_json",
]
