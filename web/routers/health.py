"""Health check endpoints."""

from fastapi import APIRouter

from isoflash import __version__
from web.deps import Guard, HostPlatform

router = APIRouter()


@router.get("/health")
def health(platform: HostPlatform, guard: Guard) -> dict[str, object]:
    """Health check endpoint.

    Returns:
        Health status with version, host platform and whether a flash is running.
    """
    return {
        "status": "ok",
        "version": __version__,
        "platform": platform.name,
        "flash_in_progress": guard.busy,
    }


@router.get("/")
def root() -> dict[str, str]:
    """Root endpoint.

    Returns:
        API name and version.
    """
    return {"name": "Homelab ISO Flasher API", "version": __version__}
