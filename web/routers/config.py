"""Configuration endpoints."""

from typing import Any

from fastapi import APIRouter

from web.deps import AppSettings

router = APIRouter()


@router.get("")
def get_config(settings: AppSettings) -> dict[str, Any]:
    """Get effective configuration.

    Returns:
        Current configuration as JSON (database URL omitted).
    """
    return {
        "staging_dir": str(settings.staging_dir),
        "log_level": settings.log_level,
        "system_mounts": settings.system_mounts,
        "use_sudo": settings.use_sudo,
        "block_size": settings.block_size,
        "heartbeat_interval": settings.heartbeat_interval,
        "download_timeout": settings.download_timeout,
        "flash_timeout": settings.flash_timeout,
        "build_service_url": settings.build_service_url,
        "flash_rate_limit": settings.flash_rate_limit,
        "flash_rate_window": settings.flash_rate_window,
    }
