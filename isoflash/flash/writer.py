"""Writer module for USB flashing.

This module handles the destructive part of the pipeline:
- Best-effort unmount of the target's partitions
- Block-level copy with dd and a large transfer block size, flushed to
  the device before success is reported
- Best-effort verification that the device has a readable partition table

Unmount and verify failures raise AdvisoryError; a failed copy raises
WriteError naming the device, since a half-written drive must not be
booted.
"""

from __future__ import annotations

import logging
import re
import shutil
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

from isoflash.errors import AdvisoryError, UnsupportedPlatformError, WriteError
from isoflash.flash.fetch import Emit
from isoflash.flash.process import ProcessResult, run_command, supervise
from isoflash.flash.progress import ByteToken, Token, to_percent
from isoflash.flash.safety import get_mount_points
from isoflash.types import Device

logger = logging.getLogger(__name__)

# Default dd transfer block size
DEFAULT_BLOCK_SIZE = "4M"

# Timeout for the block copy (seconds)
WRITE_TIMEOUT = 3600

# Timeout for unmount/verify/sync helpers (seconds)
HELPER_TIMEOUT = 120

WINDOWS_FLASH_TOOLS = [
    "Rufus (https://rufus.ie/)",
    "balenaEtcher (https://etcher.balena.io/)",
    "Win32 Disk Imager (https://sourceforge.net/projects/win32diskimager/)",
]

_BLOCK_SIZE_PATTERN = re.compile(r"^(\d+)([KkMm]?)$")


class DeviceWriter(Protocol):
    """Capability: prepare, write and verify a target device."""

    async def unmount(self, device: Device) -> None:
        """Unmount the device's partitions (raises AdvisoryError on failure)."""
        ...

    async def write(
        self, image_path: Path, device: Device, size_bytes: int, emit: Emit
    ) -> int:
        """Copy the image onto the device; returns bytes written."""
        ...

    async def verify(self, device: Device) -> None:
        """Check the written device (raises AdvisoryError on failure)."""
        ...


def platform_block_size(block_size: str, upper: bool) -> str:
    """Apply platform casing to a dd block size ('4M' on GNU, '4m' on BSD)."""
    match = _BLOCK_SIZE_PATTERN.match(block_size.strip())
    if not match:
        raise ValueError(f"Invalid block size: {block_size!r}")
    number, unit = match.groups()
    return number + (unit.upper() if upper else unit.lower())


def _write_failure(device: Device, result: ProcessResult) -> WriteError:
    detail = f": {result.output_tail}" if result.output_tail else ""
    return WriteError(
        f"Write to {device.path} failed with exit code {result.returncode}"
        f"{detail}. The device may be partially written; do not boot from it.",
        device_path=device.path,
        exit_code=result.returncode,
    )


class _DdWriter:
    """Shared dd supervision for POSIX writers."""

    upper_block_size = True

    def __init__(
        self,
        *,
        block_size: str = DEFAULT_BLOCK_SIZE,
        sudo: list[str] | None = None,
        heartbeat_interval: float = 5.0,
        timeout: float = WRITE_TIMEOUT,
    ) -> None:
        self.block_size = platform_block_size(block_size, self.upper_block_size)
        self.sudo = sudo or []
        self.heartbeat_interval = heartbeat_interval
        self.timeout = timeout

    async def _run_copy(
        self, cmd: list[str], device: Device, size_bytes: int, emit: Emit
    ) -> ProcessResult:
        bytes_reported: int | None = None

        def _on_token(token: Token) -> None:
            nonlocal bytes_reported
            if isinstance(token, ByteToken):
                bytes_reported = token.bytes_done
            percent = to_percent(token, size_bytes)
            if percent is not None:
                emit(percent, f"Writing: {percent}%")

        def _on_heartbeat(elapsed: float) -> None:
            emit(None, f"Writing to {device.path} ({elapsed:.0f}s elapsed)")

        try:
            result = await supervise(
                cmd,
                on_token=_on_token,
                on_heartbeat=_on_heartbeat,
                heartbeat_interval=self.heartbeat_interval,
                timeout=self.timeout,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise WriteError(
                f"Could not start the write to {device.path}: {e}",
                device_path=device.path,
                error_code="WRITE_TOOL_UNAVAILABLE",
            ) from e
        except TimeoutError as e:
            raise WriteError(
                f"Write to {device.path} timed out: {e}. "
                "The device may be partially written; do not boot from it.",
                device_path=device.path,
                error_code="WRITE_TIMEOUT",
            ) from e

        if not result.ok:
            raise _write_failure(device, result)
        # dd's closing summary carries the final byte count
        if bytes_reported is not None and bytes_reported < size_bytes:
            raise WriteError(
                f"Write to {device.path} stopped after {bytes_reported} of "
                f"{size_bytes} bytes. The device is partially written; "
                "do not boot from it.",
                device_path=device.path,
                error_code="SHORT_WRITE",
            )
        return result

    async def _helper(self, cmd: list[str], what: str) -> ProcessResult:
        try:
            result = await run_command(cmd, timeout=HELPER_TIMEOUT)
        except (OSError, TimeoutError) as e:
            raise AdvisoryError(f"{what} failed: {e}") from e
        if not result.ok:
            detail = f": {result.output_tail}" if result.output_tail else ""
            raise AdvisoryError(
                f"{what} failed with exit code {result.returncode}{detail}"
            )
        return result


class LinuxWriter(_DdWriter):
    """GNU dd writer with status=progress and conv=fsync."""

    def __init__(
        self,
        *,
        mount_lookup: Callable[[str], list[str]] = get_mount_points,
        **kwargs: object,
    ) -> None:
        super().__init__(**kwargs)  # type: ignore[arg-type]
        self._mount_lookup = mount_lookup

    async def unmount(self, device: Device) -> None:
        mount_points = self._mount_lookup(device.path)
        if not mount_points:
            logger.debug("No mounted partitions on %s", device.path)
            return

        failures: list[str] = []
        for mount_point in mount_points:
            logger.info("Unmounting %s", mount_point)
            try:
                await self._helper([*self.sudo, "umount", mount_point], "umount")
            except AdvisoryError as e:
                failures.append(f"{mount_point} ({e.message})")

        if failures:
            raise AdvisoryError(
                f"Could not unmount {', '.join(failures)}", error_code="UNMOUNT_FAILED"
            )

    async def write(
        self, image_path: Path, device: Device, size_bytes: int, emit: Emit
    ) -> int:
        cmd = [
            *self.sudo,
            "dd",
            f"if={image_path}",
            f"of={device.path}",
            f"bs={self.block_size}",
            "conv=fsync",
            "status=progress",
        ]
        logger.info("Writing %s (%d bytes) to %s", image_path.name, size_bytes, device.path)
        await self._run_copy(cmd, device, size_bytes, emit)
        logger.info("Wrote %d bytes to %s", size_bytes, device.path)
        return size_bytes

    async def verify(self, device: Device) -> None:
        await self._helper(
            [*self.sudo, "fdisk", "-l", device.path], "Partition table check"
        )


class MacOSWriter(_DdWriter):
    """BSD dd writer against the raw disk node.

    BSD dd cannot report progress itself, so the image is piped through
    ``pv -n`` when available; otherwise the copy runs with heartbeats only.
    """

    upper_block_size = False

    def __init__(
        self, *, which: Callable[[str], str | None] = shutil.which, **kwargs: object
    ) -> None:
        super().__init__(**kwargs)  # type: ignore[arg-type]
        self._which = which

    @staticmethod
    def raw_device_path(device_path: str) -> str:
        """Map /dev/diskN to the unbuffered /dev/rdiskN node."""
        if device_path.startswith("/dev/disk"):
            return "/dev/r" + device_path[len("/dev/") :]
        return device_path

    async def unmount(self, device: Device) -> None:
        logger.info("Unmounting %s", device.path)
        await self._helper(
            ["diskutil", "unmountDisk", device.path], "diskutil unmountDisk"
        )

    async def write(
        self, image_path: Path, device: Device, size_bytes: int, emit: Emit
    ) -> int:
        target = self.raw_device_path(device.path)
        pv = self._which("pv")
        if pv:
            cmd = [
                *self.sudo,
                "sh",
                "-c",
                'set -o pipefail; pv -n -s "$1" "$2" | dd of="$3" bs="$4"',
                "sh",
                str(size_bytes),
                str(image_path),
                target,
                self.block_size,
            ]
        else:
            logger.warning("pv not found; write progress will be reported as heartbeats")
            emit(None, "Install 'pv' for write progress (brew install pv)")
            cmd = [
                *self.sudo,
                "dd",
                f"if={image_path}",
                f"of={target}",
                f"bs={self.block_size}",
            ]

        logger.info("Writing %s (%d bytes) to %s", image_path.name, size_bytes, target)
        await self._run_copy(cmd, device, size_bytes, emit)

        try:
            await self._helper(["sync"], "sync")
        except AdvisoryError as e:
            raise WriteError(
                f"Flushing writes to {device.path} failed: {e.message}",
                device_path=device.path,
                error_code="SYNC_FAILED",
            ) from e
        logger.info("Wrote %d bytes to %s", size_bytes, device.path)
        return size_bytes

    async def verify(self, device: Device) -> None:
        await self._helper(["diskutil", "list", device.path], "Partition table check")


class WindowsWriter:
    """Windows has no safe automated raw-write path; direct the operator to a GUI tool."""

    async def unmount(self, device: Device) -> None:
        logger.info("Leaving %s mounted for manual flashing", device.path)

    async def write(
        self, image_path: Path, device: Device, size_bytes: int, emit: Emit
    ) -> int:
        raise UnsupportedPlatformError("Windows", device.path, WINDOWS_FLASH_TOOLS)

    async def verify(self, device: Device) -> None:
        raise AdvisoryError("Verification is not available on Windows")


__all__ = [
    "DEFAULT_BLOCK_SIZE",
    "DeviceWriter",
    "LinuxWriter",
    "MacOSWriter",
    "WINDOWS_FLASH_TOOLS",
    "WindowsWriter",
    "platform_block_size",
]
