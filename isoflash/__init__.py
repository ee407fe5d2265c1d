"""Homelab ISO Flasher - write custom installer images to USB drives.

This package provides the device-flashing pipeline behind the Homelab ISO
builder: removable device discovery, target safety checks, artifact
download, block-level write with live progress, verify and eject.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
