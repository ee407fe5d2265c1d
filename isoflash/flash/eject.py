"""Safe removal of a written device.

Ejecting is best effort: the image is already on the device, so a failure
only means the operator has to remove the drive by hand. Every ejector
raises AdvisoryError rather than WriteError.
"""

from __future__ import annotations

import logging
from typing import Protocol

from isoflash.errors import AdvisoryError
from isoflash.flash.process import run_command
from isoflash.types import Device

logger = logging.getLogger(__name__)

# Timeout for sync/eject commands (seconds)
EJECT_TIMEOUT = 120


class Ejector(Protocol):
    """Capability: flush and detach a device."""

    async def eject(self, device: Device) -> None:
        """Eject the device (raises AdvisoryError on failure)."""
        ...


async def _run_step(cmd: list[str], what: str) -> None:
    try:
        result = await run_command(cmd, timeout=EJECT_TIMEOUT)
    except (OSError, TimeoutError) as e:
        raise AdvisoryError(f"{what} failed: {e}", error_code="EJECT_FAILED") from e
    if not result.ok:
        detail = f": {result.output_tail}" if result.output_tail else ""
        raise AdvisoryError(
            f"{what} failed with exit code {result.returncode}{detail}",
            error_code="EJECT_FAILED",
        )


class LinuxEjector:
    """Flush buffers with ``sync`` and detach with ``eject``."""

    def __init__(self, sudo: list[str] | None = None) -> None:
        self.sudo = sudo or []

    async def eject(self, device: Device) -> None:
        await _run_step(["sync"], "sync")
        await _run_step([*self.sudo, "eject", device.path], f"eject {device.path}")
        logger.info("Ejected %s", device.path)


class MacOSEjector:
    """Detach with ``diskutil eject``."""

    async def eject(self, device: Device) -> None:
        await _run_step(["diskutil", "eject", device.path], f"eject {device.path}")
        logger.info("Ejected %s", device.path)


class WindowsEjector:
    async def eject(self, device: Device) -> None:
        raise AdvisoryError(
            f"Eject {device.path} from Explorer before removing it",
            error_code="EJECT_MANUAL",
        )


__all__ = [
    "Ejector",
    "LinuxEjector",
    "MacOSEjector",
    "WindowsEjector",
]
