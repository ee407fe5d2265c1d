"""Device discovery endpoints.

- GET /devices - List removable devices that can be flashed
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from isoflash.errors import DiscoveryError
from isoflash.flash.service import list_devices
from web.deps import HostPlatform

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("", response_model=None)
async def list_devices_endpoint(platform: HostPlatform) -> dict[str, Any] | JSONResponse:
    """List removable devices.

    Devices mounted at system locations are never included.

    Returns:
        Devices with a timestamp, or a 500 error if discovery failed.
    """
    try:
        devices = await asyncio.to_thread(list_devices, platform)
    except DiscoveryError as e:
        logger.error("Device discovery failed (%s): %s", e.error_code, e.message)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "success": False,
                "error": "Failed to list USB devices",
                "code": e.error_code,
                "message": e.message,
            },
        )

    return {
        "success": True,
        "devices": [d.to_dict() for d in devices],
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
