"""Removable device discovery.

This module lists candidate write targets on the running host:
- Linux: structured ``lsblk`` JSON, whole disks on an external transport
- macOS: line-oriented ``diskutil list external physical`` output
- Windows: PowerShell volume metadata for removable, non-empty volumes

Every strategy drops devices mounted at a system location. A strategy that
cannot run its native tool raises DiscoveryError; an empty list always means
"no removable devices attached".
"""

import json
import logging
import re
import shutil
import subprocess
from collections.abc import Callable, Sequence
from typing import Any, Protocol

from isoflash.errors import DiscoveryError
from isoflash.flash.safety import SafetyValidator
from isoflash.types import Device

logger = logging.getLogger(__name__)

# Timeout for listing commands (seconds)
LIST_TIMEOUT = 30

# lsblk transports that indicate hot-pluggable external storage
EXTERNAL_TRANSPORTS = frozenset({"usb", "mmc", "ieee1394"})

LSBLK_COLUMNS = "NAME,PATH,SIZE,TYPE,TRAN,HOTPLUG,RM,MOUNTPOINT,VENDOR,MODEL,SERIAL"

# Win32_LogicalDisk.DriveType for removable media
WINDOWS_REMOVABLE_DRIVE_TYPE = 2

_SIZE_UNITS = {
    "B": 1,
    "KB": 1000,
    "MB": 1000**2,
    "GB": 1000**3,
    "TB": 1000**4,
}

Runner = Callable[[Sequence[str]], subprocess.CompletedProcess]


class DeviceEnumerator(Protocol):
    """Capability: list currently attached removable storage."""

    def list_devices(self) -> list[Device]:
        """Return removable, non-system devices."""
        ...


def _run_command(cmd: Sequence[str]) -> subprocess.CompletedProcess:
    """Run a listing command, capturing text output."""
    return subprocess.run(
        list(cmd),
        capture_output=True,
        text=True,
        check=False,
        timeout=LIST_TIMEOUT,
    )


def format_size(size_bytes: int) -> str:
    """Format a byte count with decimal units, as device vendors label them."""
    if size_bytes <= 0:
        return "unknown size"
    value = float(size_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1000:
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1000
    return f"{value:.1f} TB"


def parse_size(text: str) -> int:
    """Parse a size token such as '15.5 GB' or '*7.8 GB' into bytes."""
    match = re.search(r"\*?\s*(\d+(?:\.\d+)?)\s*([KMGT]?B)\b", text)
    if not match:
        return 0
    return int(float(match.group(1)) * _SIZE_UNITS[match.group(2)])


def format_display_name(
    name: str, vendor: str, model: str, size_bytes: int
) -> str:
    """Build the label shown in device selection lists."""
    vendor = vendor.strip()
    model = model.strip()
    if vendor and model:
        label = f"{vendor} {model}"
    elif model:
        label = model
    elif vendor:
        label = vendor
    else:
        label = f"USB Drive ({name})"
    return f"{label} - {format_size(size_bytes)}"


def _truthy(value: Any) -> bool:
    """Interpret lsblk boolean columns across util-linux versions."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in {"1", "true", "yes"}


def _run_listing(runner: Runner, cmd: Sequence[str], tool: str) -> str:
    """Run a listing command and return stdout, raising DiscoveryError on failure."""
    try:
        proc = runner(cmd)
    except FileNotFoundError as e:
        raise DiscoveryError(
            f"{tool} not found; cannot enumerate devices on this host",
            error_code="TOOL_MISSING",
        ) from e
    except PermissionError as e:
        raise DiscoveryError(
            f"Permission denied running {tool}. Try running with elevated privileges.",
            error_code="PERMISSION_DENIED",
        ) from e
    except (OSError, subprocess.SubprocessError) as e:
        raise DiscoveryError(f"Failed to run {tool}: {e}") from e

    if proc.returncode != 0:
        stderr = (proc.stderr or "").strip()
        raise DiscoveryError(
            f"{tool} exited with code {proc.returncode}: {stderr or 'no output'}",
            error_code="TOOL_FAILED",
        )
    return proc.stdout or ""


class LinuxDeviceEnumerator:
    """List removable whole disks from ``lsblk`` JSON output."""

    def __init__(
        self, validator: SafetyValidator, runner: Runner = _run_command
    ) -> None:
        self.validator = validator
        self._runner = runner

    def list_devices(self) -> list[Device]:
        lsblk = shutil.which("lsblk")
        if lsblk is None:
            raise DiscoveryError(
                "lsblk not found; install util-linux to enumerate devices",
                error_code="TOOL_MISSING",
            )

        stdout = _run_listing(
            self._runner, [lsblk, "-J", "-b", "-o", LSBLK_COLUMNS], "lsblk"
        )
        try:
            payload = json.loads(stdout)
        except json.JSONDecodeError as e:
            raise DiscoveryError(f"lsblk returned non-JSON output: {e}") from e

        devices = parse_lsblk(payload, self.validator)
        logger.info("Found %d removable device(s)", len(devices))
        return devices


def collect_mount_points(entry: dict[str, Any]) -> list[str]:
    """Mount points of an lsblk node and everything stacked on it.

    Partitions, LVM volumes and dm-crypt mappings appear as nested
    ``children``; all levels are walked.
    """
    mount_points: list[str] = []
    values = list(entry.get("mountpoints") or [])
    if entry.get("mountpoint"):
        values.append(entry["mountpoint"])
    for value in values:
        if value and str(value) not in mount_points:
            mount_points.append(str(value))
    for child in entry.get("children") or []:
        for mount_point in collect_mount_points(child):
            if mount_point not in mount_points:
                mount_points.append(mount_point)
    return mount_points


def parse_lsblk(payload: dict[str, Any], validator: SafetyValidator) -> list[Device]:
    """Translate ``lsblk -J`` output into Device records.

    Args:
        payload: Parsed lsblk JSON document.
        validator: Safety validator used to drop system-mounted disks.

    Returns:
        Removable whole-disk devices, in lsblk order.
    """
    devices: list[Device] = []

    for entry in payload.get("blockdevices", []):
        if entry.get("type") != "disk":
            continue

        name = str(entry.get("name") or "")
        tran = (entry.get("tran") or "").lower()
        external = tran in EXTERNAL_TRANSPORTS or (
            _truthy(entry.get("hotplug")) and _truthy(entry.get("rm"))
        )
        if not external:
            logger.debug("Skipping non-removable disk %s (tran=%s)", name, tran)
            continue

        mount_points = collect_mount_points(entry)

        if any(not validator.is_safe_mount(mp) for mp in mount_points):
            logger.warning(
                "Skipping %s: mounted at a system location (%s)",
                name,
                ", ".join(mount_points),
            )
            continue

        try:
            size_bytes = int(entry.get("size") or 0)
        except (TypeError, ValueError):
            size_bytes = 0
        vendor = str(entry.get("vendor") or "").strip()
        model = str(entry.get("model") or "").strip()

        devices.append(
            Device(
                path=entry.get("path") or f"/dev/{name}",
                display_name=format_display_name(name, vendor, model, size_bytes),
                size_bytes=size_bytes,
                vendor=vendor or "Unknown",
                model=model or "Unknown",
                serial=str(entry.get("serial") or "").strip(),
                current_mount_point=mount_points[0] if mount_points else None,
            )
        )

    return devices


_DARWIN_IDENTIFIER = re.compile(r"^/dev/(disk\d+)\b")
_DARWIN_PARTITION_LINE = re.compile(
    r"^\s*(\d+):\s+(.*?)\s+(\*?\d+(?:\.\d+)?\s+[KMGT]?B)\s+(disk\d+(?:s\d+)?)\s*$"
)


class MacOSDeviceEnumerator:
    """List external physical disks from ``diskutil`` text output."""

    def __init__(
        self, validator: SafetyValidator, runner: Runner = _run_command
    ) -> None:
        self.validator = validator
        self._runner = runner

    def list_devices(self) -> list[Device]:
        stdout = _run_listing(
            self._runner,
            ["diskutil", "list", "external", "physical"],
            "diskutil",
        )
        devices = [
            device
            for device in parse_diskutil_list(stdout)
            if self.validator.is_safe_mount(device.current_mount_point)
        ]
        logger.info("Found %d external disk(s)", len(devices))
        return devices


def parse_diskutil_list(output: str) -> list[Device]:
    """Rebuild Device records from ``diskutil list external physical``.

    Each ``/dev/diskN`` line opens a new device; the following table rows
    contribute its size (the '*'-marked scheme row) and a volume name, until
    the next identifier line.

    Args:
        output: Raw diskutil output.

    Returns:
        One Device per identifier line.
    """
    devices: list[Device] = []
    current: dict[str, Any] | None = None

    def _flush() -> None:
        if current is None:
            return
        name = current["identifier"]
        size_bytes = current["size"]
        label = current["label"]
        devices.append(
            Device(
                path=f"/dev/{name}",
                display_name=format_display_name(name, "", label, size_bytes),
                size_bytes=size_bytes,
                model=label or "USB Drive",
            )
        )

    for line in output.splitlines():
        identifier = _DARWIN_IDENTIFIER.match(line)
        if identifier:
            _flush()
            current = {"identifier": identifier.group(1), "size": 0, "label": ""}
            continue

        if current is None:
            continue

        row = _DARWIN_PARTITION_LINE.match(line)
        if not row:
            continue

        size_token = row.group(3)
        type_and_name = row.group(2).split(None, 1)
        if size_token.startswith("*") or not current["size"]:
            current["size"] = parse_size(size_token)
        if len(type_and_name) == 2 and not current["label"]:
            current["label"] = type_and_name[1].strip()

    _flush()
    return devices


class WindowsDeviceEnumerator:
    """List removable volumes from PowerShell CIM metadata."""

    COMMAND = (
        "Get-CimInstance -ClassName Win32_LogicalDisk "
        "| Select-Object DeviceID,VolumeName,Size,DriveType,FileSystem "
        "| ConvertTo-Json -Compress"
    )

    def __init__(
        self, validator: SafetyValidator, runner: Runner = _run_command
    ) -> None:
        self.validator = validator
        self._runner = runner

    def list_devices(self) -> list[Device]:
        stdout = _run_listing(
            self._runner,
            ["powershell", "-NoProfile", "-Command", self.COMMAND],
            "PowerShell",
        )
        if not stdout.strip():
            return []
        try:
            payload = json.loads(stdout)
        except json.JSONDecodeError as e:
            raise DiscoveryError(f"PowerShell returned non-JSON output: {e}") from e

        devices = parse_logical_disks(payload)
        logger.info("Found %d removable volume(s)", len(devices))
        return devices


def parse_logical_disks(payload: Any) -> list[Device]:
    """Translate Win32_LogicalDisk JSON into Device records."""
    items = payload if isinstance(payload, list) else [payload]
    devices: list[Device] = []

    for item in items:
        if not isinstance(item, dict):
            continue
        try:
            drive_type = int(item.get("DriveType") or 0)
            size_bytes = int(item.get("Size") or 0)
        except (TypeError, ValueError):
            continue
        if drive_type != WINDOWS_REMOVABLE_DRIVE_TYPE or size_bytes <= 0:
            continue

        letter = str(item.get("DeviceID") or "").rstrip("\\")
        if not letter:
            continue
        label = str(item.get("VolumeName") or "").strip()
        devices.append(
            Device(
                path=f"\\\\.\\{letter}",
                display_name=format_display_name(letter, "", label, size_bytes),
                size_bytes=size_bytes,
                model=label or "USB Drive",
                current_mount_point=f"{letter}\\",
            )
        )

    return devices


__all__ = [
    "DeviceEnumerator",
    "LinuxDeviceEnumerator",
    "MacOSDeviceEnumerator",
    "WindowsDeviceEnumerator",
    "collect_mount_points",
    "format_display_name",
    "format_size",
    "parse_diskutil_list",
    "parse_logical_disks",
    "parse_lsblk",
    "parse_size",
]
