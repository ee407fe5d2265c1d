"""Build service integration.

This module handles:
- Build status polling
- Signed download URLs for completed ISO builds
"""

from isoflash.builds.client import BuildServiceClient, BuildStatus, DownloadInfo

__all__ = ["BuildServiceClient", "BuildStatus", "DownloadInfo"]
