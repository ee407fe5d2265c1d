"""Error taxonomy for the flashing pipeline.

Every error carries a stable ``error_code`` so surfaces (push stream,
CLI, flash history) can report failures without parsing messages.

- ValidationError: bad device path or artifact reference; raised before
  any subprocess is spawned.
- DiscoveryError: device enumeration tool unavailable or denied.
- FetchError: download failed; fatal.
- WriteError: block copy failed; fatal, the device may be half-written.
- AdvisoryError: unmount, verify or eject failed; logged, never fatal.
- BusyError: another flash operation is already running in this process.
- FlashAbortedError: the operator declined the destructive write.
"""


class FlashError(Exception):
    """Base exception for flashing pipeline errors."""

    def __init__(self, message: str, error_code: str) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class ValidationError(FlashError):
    """A device path or artifact reference was rejected."""

    def __init__(self, message: str, error_code: str = "VALIDATION_ERROR") -> None:
        super().__init__(message, error_code)


class DiscoveryError(FlashError):
    """Device enumeration could not run."""

    def __init__(self, message: str, error_code: str = "DISCOVERY_ERROR") -> None:
        super().__init__(message, error_code)


class FetchError(FlashError):
    """Artifact download failed."""

    def __init__(self, message: str, error_code: str = "FETCH_ERROR") -> None:
        super().__init__(message, error_code)


class WriteError(FlashError):
    """Block-level write failed."""

    def __init__(
        self,
        message: str,
        device_path: str,
        exit_code: int | None = None,
        error_code: str = "WRITE_ERROR",
    ) -> None:
        super().__init__(message, error_code)
        self.device_path = device_path
        self.exit_code = exit_code


class UnsupportedPlatformError(WriteError):
    """No safe automated write path exists on this host platform."""

    def __init__(self, platform_name: str, device_path: str, tools: list[str]) -> None:
        super().__init__(
            f"Automatic flashing is not supported on {platform_name}. "
            f"Write the image to {device_path} manually with one of: "
            f"{', '.join(tools)}",
            device_path=device_path,
            error_code="UNSUPPORTED_PLATFORM",
        )
        self.platform_name = platform_name
        self.tools = tools


class AdvisoryError(FlashError):
    """A best-effort step failed; the pipeline continues."""

    def __init__(self, message: str, error_code: str = "ADVISORY") -> None:
        super().__init__(message, error_code)


class BusyError(FlashError):
    """A flash operation is already in progress."""

    def __init__(self, active_device: str | None = None) -> None:
        target = f" on {active_device}" if active_device else ""
        super().__init__(
            f"A flash operation is already in progress{target}. "
            "Wait for it to finish before starting another.",
            error_code="BUSY",
        )
        self.active_device = active_device


class FlashAbortedError(FlashError):
    """The operator declined to overwrite the device."""

    def __init__(self, device_path: str) -> None:
        super().__init__(
            f"Flash aborted; {device_path} was not modified", error_code="ABORTED"
        )
        self.device_path = device_path


__all__ = [
    "AdvisoryError",
    "BusyError",
    "DiscoveryError",
    "FetchError",
    "FlashError",
    "FlashAbortedError",
    "UnsupportedPlatformError",
    "ValidationError",
    "WriteError",
]
