"""Shared type definitions for isoflash.

This module contains dataclasses and enums shared across subpackages
to avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum


class Stage(str, Enum):
    """Pipeline stage, in execution order."""

    DISCOVER = "discover"
    VALIDATE = "validate"
    FETCH = "fetch"
    UNMOUNT = "unmount"
    WRITE = "write"
    VERIFY = "verify"
    EJECT = "eject"
    CLEANUP = "cleanup"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Whether this stage ends the pipeline."""
        return self in (Stage.SUCCESS, Stage.FAILED)

    @property
    def order(self) -> int:
        """Position of the stage; both terminal states share the last slot."""
        if self.is_terminal:
            return len(_STAGE_ORDER)
        return _STAGE_ORDER.index(self)


_STAGE_ORDER = [
    Stage.DISCOVER,
    Stage.VALIDATE,
    Stage.FETCH,
    Stage.UNMOUNT,
    Stage.WRITE,
    Stage.VERIFY,
    Stage.EJECT,
    Stage.CLEANUP,
]


class FlashStatus(str, Enum):
    """Status of a flash operation."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class Device:
    """A removable storage device eligible as a write target.

    Attributes:
        path: Whole block-device identifier (e.g., '/dev/sdb', '/dev/disk4').
        display_name: Human-readable label for selection lists.
        size_bytes: Device capacity in bytes (0 when unknown).
        vendor: Vendor string.
        model: Model string.
        serial: Serial number (empty when unknown).
        current_mount_point: Where the device or one of its partitions is mounted.
    """

    path: str
    display_name: str
    size_bytes: int = 0
    vendor: str = ""
    model: str = ""
    serial: str = ""
    current_mount_point: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Convert to dictionary for JSON serialization."""
        return {
            "path": self.path,
            "display_name": self.display_name,
            "size_bytes": self.size_bytes,
            "vendor": self.vendor,
            "model": self.model,
            "serial": self.serial,
            "current_mount_point": self.current_mount_point,
        }


@dataclass(frozen=True)
class ProgressEvent:
    """A single progress notification emitted by the pipeline."""

    stage: Stage
    percent: int
    message: str

    def __post_init__(self) -> None:
        """Validate percent range."""
        if not 0 <= self.percent <= 100:
            raise ValueError(f"percent must be within 0..100, got {self.percent}")


@dataclass
class FlashOutcome:
    """Result of one pipeline run.

    Attributes:
        success: Whether the pipeline reached the success terminal.
        stage: Stage.SUCCESS on success, otherwise the stage that failed.
        message: Human-readable summary.
        error_code: Stable error code on failure.
        advisories: Messages from best-effort stages that did not succeed.
        bytes_written: Size of the artifact written to the device.
    """

    success: bool
    stage: Stage
    message: str
    error_code: str | None = None
    advisories: list[str] = field(default_factory=list)
    bytes_written: int = 0


__all__ = [
    "Device",
    "FlashOutcome",
    "FlashStatus",
    "ProgressEvent",
    "Stage",
]
