"""Host platform selection.

Bundles the enumerator, writer, ejector and safety validator for the
running operating system. Unknown POSIX hosts use the Linux tooling.
"""

from __future__ import annotations

import platform as _platform
from dataclasses import dataclass

from isoflash.config import Settings
from isoflash.flash.device import (
    DeviceEnumerator,
    LinuxDeviceEnumerator,
    MacOSDeviceEnumerator,
    WindowsDeviceEnumerator,
)
from isoflash.flash.eject import Ejector, LinuxEjector, MacOSEjector, WindowsEjector
from isoflash.flash.process import privilege_prefix
from isoflash.flash.safety import SafetyValidator, is_block_device
from isoflash.flash.writer import DeviceWriter, LinuxWriter, MacOSWriter, WindowsWriter


@dataclass
class Platform:
    """Platform-specific capabilities used by the pipeline.

    Attributes:
        name: Platform name ('Linux', 'Darwin', 'Windows').
        validator: Safety validator configured for this platform.
        enumerator: Removable device discovery.
        writer: Unmount, write and verify implementation.
        ejector: Device ejection.
    """

    name: str
    validator: SafetyValidator
    enumerator: DeviceEnumerator
    writer: DeviceWriter
    ejector: Ejector


def select_platform(settings: Settings, system: str | None = None) -> Platform:
    """Build the capability bundle for a host platform.

    Args:
        settings: Application settings.
        system: Platform name (defaults to the running host).

    Returns:
        Platform bundle.
    """
    system = system or _platform.system()
    sudo = privilege_prefix(settings.use_sudo)
    writer_options = {
        "block_size": settings.block_size,
        "sudo": sudo,
        "heartbeat_interval": settings.heartbeat_interval,
        "timeout": settings.flash_timeout,
    }

    if system == "Windows":
        validator = SafetyValidator(
            settings.system_mounts,
            system=system,
            mount_lookup=None,
            root_lookup=None,
        )
        return Platform(
            name=system,
            validator=validator,
            enumerator=WindowsDeviceEnumerator(validator),
            writer=WindowsWriter(),
            ejector=WindowsEjector(),
        )

    if system == "Darwin":
        validator = SafetyValidator(
            settings.system_mounts,
            system=system,
            mount_lookup=None,
            root_lookup=None,
        )
        return Platform(
            name=system,
            validator=validator,
            enumerator=MacOSDeviceEnumerator(validator),
            writer=MacOSWriter(**writer_options),
            ejector=MacOSEjector(),
        )

    validator = SafetyValidator(
        settings.system_mounts,
        system=system,
        block_device_check=is_block_device,
    )
    return Platform(
        name=system,
        validator=validator,
        enumerator=LinuxDeviceEnumerator(validator),
        writer=LinuxWriter(**writer_options),
        ejector=LinuxEjector(sudo),
    )


__all__ = [
    "Platform",
    "select_platform",
]
