"""Removable-device flashing for isoflash.

This package implements the flashing pipeline shared by the CLI and the
web app: device discovery, safety checks, artifact download, the
block-level write with live progress, eject and cleanup.
"""

from isoflash.flash.pipeline import (
    FlashJob,
    FlashPipeline,
    FlashRequest,
    JobGuard,
    get_job_guard,
)
from isoflash.flash.platform import Platform, select_platform
from isoflash.flash.reporters import ConsoleReporter, ProgressReporter, QueueReporter
from isoflash.flash.safety import SafetyValidator
from isoflash.flash.service import get_flash_records, list_devices, run_flash

__all__ = [
    "ConsoleReporter",
    "FlashJob",
    "FlashPipeline",
    "FlashRequest",
    "JobGuard",
    "Platform",
    "ProgressReporter",
    "QueueReporter",
    "SafetyValidator",
    "get_flash_records",
    "get_job_guard",
    "list_devices",
    "run_flash",
    "select_platform",
]
