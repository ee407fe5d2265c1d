"""Safety checks for write targets.

This module decides whether a device may be overwritten:
- Device path must follow the platform's device grammar (no free text)
- Whole devices only (reject partitions like /dev/sda1 or /dev/disk2s1)
- Never the device backing the root filesystem
- Never a device mounted at, or below, a system mount point

The same validator runs during enumeration (system devices are never
offered) and again when a target is accepted for writing.
"""

import logging
import os
import platform
import re
import stat
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path

from isoflash.config import DEFAULT_SYSTEM_MOUNTS
from isoflash.errors import ValidationError
from isoflash.types import Device

logger = logging.getLogger(__name__)

# Device grammar per platform family
_POSIX_DEVICE_PATTERN = re.compile(r"^/dev/[A-Za-z0-9_.-]+$")
_WINDOWS_DEVICE_PATTERN = re.compile(
    r"^\\\\\.\\(?:PhysicalDrive\d+|[A-Za-z]:)$", re.IGNORECASE
)
_WINDOWS_DRIVE_LETTER = re.compile(r"^([A-Za-z]):\\?$")

# Patterns for partition detection
# /dev/sdX1, /dev/hdX1, /dev/vdX1
_PARTITION_PATTERN_SD = re.compile(r"^/dev/[shv]d[a-z]+(\d+)$")
# /dev/nvme0n1p1, /dev/nvme0n1p2
_PARTITION_PATTERN_NVME = re.compile(r"^/dev/nvme\d+n\d+p(\d+)$")
# /dev/mmcblk0p1, /dev/mmcblk0p2
_PARTITION_PATTERN_MMC = re.compile(r"^/dev/mmcblk\d+p(\d+)$")
# /dev/loop0p1
_PARTITION_PATTERN_LOOP = re.compile(r"^/dev/loop\d+p(\d+)$")
# /dev/disk2s1, /dev/rdisk2s1
_PARTITION_PATTERN_DARWIN = re.compile(r"^/dev/r?disk\d+s(\d+)$")

_PARTITION_PATTERNS = [
    _PARTITION_PATTERN_SD,
    _PARTITION_PATTERN_NVME,
    _PARTITION_PATTERN_MMC,
    _PARTITION_PATTERN_LOOP,
    _PARTITION_PATTERN_DARWIN,
]


@dataclass(frozen=True)
class Accepted:
    """The device may be written to."""

    device: Device


@dataclass(frozen=True)
class Rejected:
    """The device must not be written to."""

    reason: str
    code: str


ValidationOutcome = Accepted | Rejected


def normalize_device_path(device_path: str, system: str | None = None) -> str:
    """Normalize a user-supplied device path.

    On Windows a bare drive letter ('E:' or 'E:\\') becomes '\\\\.\\E:'.
    Elsewhere the path is stripped of surrounding whitespace only.

    Args:
        device_path: Raw path as supplied by the caller.
        system: Platform name (defaults to the running host).

    Returns:
        Normalized device path.
    """
    system = system or platform.system()
    device_path = device_path.strip()
    if system == "Windows":
        match = _WINDOWS_DRIVE_LETTER.match(device_path)
        if match:
            return f"\\\\.\\{match.group(1).upper()}:"
    return device_path


def matches_device_grammar(device_path: str, system: str | None = None) -> bool:
    """Check a path against the platform's device-namespace grammar."""
    system = system or platform.system()
    if system == "Windows":
        return bool(_WINDOWS_DEVICE_PATTERN.match(device_path))
    return bool(_POSIX_DEVICE_PATTERN.match(device_path))


def is_partition_path(device_path: str) -> bool:
    """Check if a device path looks like a partition.

    This uses naming conventions to detect partitions:
    - /dev/sda1, /dev/sdb2 (SCSI/SATA/USB)
    - /dev/mmcblk0p1, /dev/mmcblk0p2 (MMC/SD cards)
    - /dev/nvme0n1p1 (NVMe)
    - /dev/loop0p1 (Loop devices with partitions)
    - /dev/disk2s1 (macOS slices)

    Args:
        device_path: Path to the device.

    Returns:
        True if the path appears to be a partition, False otherwise.
    """
    return any(pattern.match(device_path) for pattern in _PARTITION_PATTERNS)


def partition_to_whole_device(partition_path: str) -> str:
    """Convert a partition path to its whole device path.

    Args:
        partition_path: Path to a partition (e.g., '/dev/sda1').

    Returns:
        Path to the whole device (e.g., '/dev/sda').
    """
    # Handle /dev/sdXN -> /dev/sdX
    match = _PARTITION_PATTERN_SD.match(partition_path)
    if match:
        return partition_path[: -len(match.group(1))]

    # Handle /dev/disk2sN -> /dev/disk2
    match = _PARTITION_PATTERN_DARWIN.match(partition_path)
    if match:
        return partition_path[: partition_path.rfind("s")]

    # nvme0n1pN, mmcblk0pN, loop0pN
    for pattern in (
        _PARTITION_PATTERN_NVME,
        _PARTITION_PATTERN_MMC,
        _PARTITION_PATTERN_LOOP,
    ):
        if pattern.match(partition_path):
            return partition_path[: partition_path.rfind("p")]

    # If no pattern matches, return as-is (might already be whole device)
    return partition_path


def is_block_device(device_path: str) -> bool:
    """Check if a path is a block device.

    Args:
        device_path: Path to check.

    Returns:
        True if the path is a block device, False otherwise.
    """
    try:
        mode = os.stat(device_path).st_mode
        return stat.S_ISBLK(mode)
    except OSError:
        return False


def stacked_device_names(device_name: str, sys_block: str = "/sys/block") -> set[str]:
    """Names of a disk, its partitions and every device stacked on them.

    Walks sysfs: partitions are subdirectories holding a ``partition``
    file, and LVM or dm-crypt mappings appear under ``holders``. Device
    mapper nodes contribute both their kernel name (dm-0) and their
    mapper name (vg-home) so /dev/mapper/ entries in the mount table match.

    Args:
        device_name: Kernel name of the whole disk (e.g., 'sdb').
        sys_block: Root of the sysfs block tree.

    Returns:
        Related names; just ``device_name`` when sysfs has no entry for it.
    """
    root = Path(sys_block)
    names = {device_name}
    pending = [root / device_name]
    seen: set[Path] = set()

    while pending:
        node = pending.pop()
        if node in seen or not node.is_dir():
            continue
        seen.add(node)

        children = [
            child
            for child in node.iterdir()
            if child.name.startswith(node.name) and (child / "partition").exists()
        ]
        for child in children:
            names.add(child.name)
            pending.append(child)

        holders = node / "holders"
        if holders.is_dir():
            for holder in holders.iterdir():
                names.add(holder.name)
                pending.append(root / holder.name)

        mapper_name = node / "dm" / "name"
        if mapper_name.is_file():
            names.add(mapper_name.read_text().strip())

    return names


def get_mount_points(
    device_path: str,
    mounts_file: str = "/proc/mounts",
    sys_block: str = "/sys/block",
) -> list[str]:
    """Get mount points for a device, its partitions and stacked volumes.

    A mount counts when its source is the device itself, one of its
    partitions, or an LVM/dm-crypt volume built on top of them.

    Args:
        device_path: Path to the device (e.g., '/dev/sda').
        mounts_file: Mount table to read.
        sys_block: Root of the sysfs block tree.

    Returns:
        List of mount points (empty if none mounted or the table is unreadable).
    """
    related = stacked_device_names(Path(device_path).name, sys_block)
    mount_points: list[str] = []

    try:
        with open(mounts_file) as f:
            for line in f:
                parts = line.split()
                if len(parts) < 2 or not parts[0].startswith("/dev/"):
                    continue
                source, mount_point = parts[0], parts[1]
                if (
                    source == device_path
                    or partition_to_whole_device(source) == device_path
                    or Path(source).name in related
                ):
                    mount_points.append(mount_point)
    except OSError:
        logger.debug("Could not read %s, skipping mount lookup", mounts_file)

    return mount_points


def get_root_device(mounts_file: str = "/proc/mounts") -> str | None:
    """Get the whole device that contains the root filesystem.

    Returns:
        Path to the root device, or None if unknown.
    """
    try:
        with open(mounts_file) as f:
            for line in f:
                parts = line.split()
                if len(parts) >= 2 and parts[1] == "/":
                    return partition_to_whole_device(parts[0])
    except OSError:
        logger.debug("Could not read %s to determine root device", mounts_file)

    return None


def is_system_mount(mount_point: str | None, system_mounts: Iterable[str]) -> bool:
    """Check whether a mount point is, or lies below, a system mount.

    The root mount '/' only matches exactly; every other entry also matches
    its descendants ('/boot' covers '/boot/efi').

    Args:
        mount_point: Mount point to check (None means not mounted).
        system_mounts: Denylisted system mount points.

    Returns:
        True if the mount point belongs to the host system.
    """
    if not mount_point:
        return False

    normalized = mount_point.rstrip("/") or "/"
    for system_mount in system_mounts:
        candidate = system_mount.rstrip("/") or "/"
        if normalized == candidate:
            return True
        if candidate != "/" and normalized.startswith(candidate + "/"):
            return True
    return False


class SafetyValidator:
    """Decides whether a device may be used as a write target.

    Args:
        system_mounts: Denylisted mount points; must not be empty.
        system: Platform name used for the device grammar.
        mount_lookup: Returns live mount points for a device path.
        root_lookup: Returns the whole device backing '/'.
        block_device_check: When set, paths must satisfy this predicate.
    """

    def __init__(
        self,
        system_mounts: Iterable[str] = DEFAULT_SYSTEM_MOUNTS,
        *,
        system: str | None = None,
        mount_lookup: Callable[[str], list[str]] | None = get_mount_points,
        root_lookup: Callable[[], str | None] | None = get_root_device,
        block_device_check: Callable[[str], bool] | None = None,
    ) -> None:
        self.system_mounts = list(system_mounts)
        if not self.system_mounts:
            raise ValueError("system_mounts denylist must not be empty")
        self.system = system or platform.system()
        self._mount_lookup = mount_lookup
        self._root_lookup = root_lookup
        self._block_device_check = block_device_check

    def is_safe_mount(self, mount_point: str | None) -> bool:
        """Whether a mount point is outside the system denylist."""
        return not is_system_mount(mount_point, self.system_mounts)

    def check_path(self, device_path: str) -> str:
        """Normalize a device path and check it against the device grammar.

        Runs no commands and reads no files, so callers can reject free
        text before anything else happens.

        Raises:
            ValidationError: The path is not a device identifier.
        """
        path = normalize_device_path(device_path, self.system)
        if not matches_device_grammar(path, self.system):
            raise ValidationError(
                f"Invalid device path: {path!r}. Expected a device identifier "
                f"such as {self._example_path()}",
                error_code="INVALID_DEVICE_PATH",
            )
        return path

    def validate(self, device_or_path: Device | str) -> ValidationOutcome:
        """Validate a device (or raw path) as a write target.

        Args:
            device_or_path: Enumerated device or a path supplied directly.

        Returns:
            Accepted with the device, or Rejected with a reason and code.
        """
        if isinstance(device_or_path, Device):
            device = device_or_path
        else:
            path = normalize_device_path(device_or_path, self.system)
            device = Device(path=path, display_name=path)

        path = device.path
        if not matches_device_grammar(path, self.system):
            return self._reject(
                f"Invalid device path: {path!r}. Expected a device identifier "
                f"such as {self._example_path()}",
                "INVALID_DEVICE_PATH",
            )

        if is_partition_path(path):
            return self._reject(
                f"Device appears to be a partition, not a whole device: {path}",
                "PARTITION_NOT_ALLOWED",
            )

        if self._block_device_check is not None and not self._block_device_check(
            path
        ):
            return self._reject(f"Not a block device: {path}", "NOT_BLOCK_DEVICE")

        if self._root_lookup is not None:
            root_device = self._root_lookup()
            if root_device and root_device == path:
                return self._reject(
                    f"Device {path} holds the root filesystem. "
                    "Refusing to flash to avoid destroying the host system.",
                    "SYSTEM_DEVICE",
                )

        mount_points = [device.current_mount_point] if device.current_mount_point else []
        if self._mount_lookup is not None:
            mount_points.extend(self._mount_lookup(path))

        for mount_point in mount_points:
            if is_system_mount(mount_point, self.system_mounts):
                return self._reject(
                    f"Device {path} is mounted at system location {mount_point}. "
                    "Refusing to flash to avoid destroying the host system.",
                    "SYSTEM_MOUNT",
                )

        logger.debug("Device accepted as write target: %s", path)
        return Accepted(device)

    def require_valid(self, device_or_path: Device | str) -> Device:
        """Validate and return the device, raising on rejection.

        Raises:
            ValidationError: The device was rejected.
        """
        outcome = self.validate(device_or_path)
        if isinstance(outcome, Rejected):
            raise ValidationError(outcome.reason, error_code=outcome.code)
        return outcome.device

    def _reject(self, reason: str, code: str) -> Rejected:
        logger.error("Device rejected (%s): %s", code, reason)
        return Rejected(reason=reason, code=code)

    def _example_path(self) -> str:
        if self.system == "Windows":
            return "\\\\.\\E:"
        if self.system == "Darwin":
            return "/dev/disk4"
        return "/dev/sdb"


__all__ = [
    "Accepted",
    "Rejected",
    "SafetyValidator",
    "ValidationOutcome",
    "get_mount_points",
    "get_root_device",
    "is_block_device",
    "is_partition_path",
    "is_system_mount",
    "matches_device_grammar",
    "normalize_device_path",
    "partition_to_whole_device",
    "stacked_device_names",
]
