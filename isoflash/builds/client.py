"""Client for the ISO build service.

The build service assembles installer images and publishes them behind
short-lived signed URLs. This module only talks to its status and
download endpoints:
- GET {base}/build/{id}/status
- GET {base}/build/{id}/download

A completed build's signed URL is then handed to the flash pipeline.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx

from isoflash.errors import FetchError, ValidationError

logger = logging.getLogger(__name__)

# Timeout for status/download requests (seconds)
REQUEST_TIMEOUT = 30.0

BUILD_COMPLETE = "complete"
BUILD_FAILED = "failed"

_BUILD_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


@dataclass
class BuildStatus:
    """Status record of a build.

    Attributes:
        build_id: Build identifier.
        status: Build state ('queued', 'building', 'complete', 'failed', ...).
        progress: Percent complete as reported by the service.
        stage: Free-text build stage.
        iso_filename: Name of the produced image, once known.
        error: Failure description for failed builds.
    """

    build_id: str
    status: str
    progress: int = 0
    stage: str | None = None
    iso_filename: str | None = None
    error: str | None = None

    @property
    def is_complete(self) -> bool:
        return self.status == BUILD_COMPLETE

    @property
    def is_failed(self) -> bool:
        return self.status == BUILD_FAILED

    @classmethod
    def from_dict(cls, build_id: str, data: dict[str, Any]) -> BuildStatus:
        """Build a status from the service's JSON payload."""
        try:
            progress = int(data.get("progress") or 0)
        except (TypeError, ValueError):
            progress = 0
        return cls(
            build_id=str(data.get("build_id") or build_id),
            status=str(data.get("status") or "unknown"),
            progress=progress,
            stage=data.get("stage"),
            iso_filename=data.get("iso_filename"),
            error=data.get("error"),
        )


@dataclass
class DownloadInfo:
    """Signed download reference for a completed build."""

    build_id: str
    download_url: str
    iso_filename: str
    iso_size: int | None = None
    expires_in_seconds: int | None = None


def check_build_id(build_id: str) -> str:
    """Validate a build identifier.

    Raises:
        ValidationError: The identifier contains unexpected characters.
    """
    build_id = build_id.strip()
    if not _BUILD_ID_PATTERN.match(build_id):
        raise ValidationError(
            f"Invalid build ID: {build_id!r}", error_code="INVALID_BUILD_ID"
        )
    return build_id


class BuildServiceClient:
    """Synchronous client for the build service API.

    Args:
        base_url: API base URL (e.g., 'http://localhost:8080/api').
        client: Optional httpx client; one is created if not provided.
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        base_url: str,
        client: httpx.Client | None = None,
        timeout: float = REQUEST_TIMEOUT,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._manage_client = client is None
        self._client = client or httpx.Client(follow_redirects=True)
        self.timeout = timeout

    def __enter__(self) -> BuildServiceClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._manage_client:
            self._client.close()

    def get_status(self, build_id: str) -> BuildStatus:
        """Fetch the status record of a build.

        Raises:
            ValidationError: Invalid or unknown build ID.
            FetchError: The service could not be reached or returned an error.
        """
        build_id = check_build_id(build_id)
        data = self._get_json(f"/build/{build_id}/status", build_id)
        return BuildStatus.from_dict(build_id, data)

    def get_download_url(self, build_id: str) -> DownloadInfo:
        """Fetch the signed download reference for a completed build.

        Raises:
            ValidationError: Invalid or unknown build ID.
            FetchError: The build is not complete or the service failed.
        """
        build_id = check_build_id(build_id)
        data = self._get_json(f"/build/{build_id}/download", build_id)

        download_url = data.get("download_url")
        if not download_url:
            raise FetchError(
                f"Build service returned no download URL for build {build_id}",
                error_code="BUILD_SERVICE_ERROR",
            )
        return DownloadInfo(
            build_id=build_id,
            download_url=str(download_url),
            iso_filename=str(data.get("iso_filename") or ""),
            iso_size=data.get("iso_size"),
            expires_in_seconds=data.get("expires_in_seconds"),
        )

    def wait_until_complete(
        self,
        build_id: str,
        poll_interval: float = 10.0,
        timeout: float = 4 * 3600,
        *,
        on_status: Callable[[BuildStatus], None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> BuildStatus:
        """Poll a build until it completes.

        Args:
            build_id: Build identifier.
            poll_interval: Seconds between polls.
            timeout: Maximum seconds to wait.
            on_status: Called with every status received.
            sleep: Sleep function (injectable for tests).
            clock: Monotonic clock (injectable for tests).

        Returns:
            Final (complete) status.

        Raises:
            FetchError: The build failed or did not complete in time.
        """
        deadline = clock() + timeout
        while True:
            status = self.get_status(build_id)
            if on_status is not None:
                on_status(status)

            if status.is_complete:
                logger.info("Build %s complete (%s)", build_id, status.iso_filename)
                return status
            if status.is_failed:
                raise FetchError(
                    f"Build {build_id} failed: {status.error or 'no details'}",
                    error_code="BUILD_FAILED",
                )

            if clock() + poll_interval > deadline:
                raise FetchError(
                    f"Build {build_id} did not complete within {timeout:.0f} seconds "
                    f"(last status: {status.status})",
                    error_code="BUILD_TIMEOUT",
                )
            logger.debug(
                "Build %s is %s (%d%%); polling again in %.0fs",
                build_id,
                status.status,
                status.progress,
                poll_interval,
            )
            sleep(poll_interval)

    def _get_json(self, path: str, build_id: str) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        logger.debug("GET %s", url)
        try:
            response = self._client.get(url, timeout=self.timeout)
            if response.status_code == 404:
                raise ValidationError(
                    f"Build not found: {build_id}", error_code="BUILD_NOT_FOUND"
                )
            if response.status_code == 400:
                raise FetchError(
                    f"Build {build_id} is not ready: {_error_detail(response)}",
                    error_code="BUILD_NOT_READY",
                )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise FetchError(
                f"Build service error: {e.response.status_code} "
                f"{_error_detail(e.response)}",
                error_code="BUILD_SERVICE_ERROR",
            ) from e
        except httpx.TimeoutException as e:
            raise FetchError(
                f"Timeout contacting build service at {self.base_url}",
                error_code="TIMEOUT",
            ) from e
        except httpx.RequestError as e:
            raise FetchError(
                f"Network error contacting build service: {e}",
                error_code="NETWORK_ERROR",
            ) from e
        except ValueError as e:
            raise FetchError(
                f"Build service returned invalid JSON: {e}",
                error_code="BUILD_SERVICE_ERROR",
            ) from e

        if not isinstance(data, dict):
            raise FetchError(
                "Build service returned an unexpected payload",
                error_code="BUILD_SERVICE_ERROR",
            )
        return data


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(data, dict) and data.get("error"):
        return str(data["error"])
    return response.reason_phrase


__all__ = [
    "BuildServiceClient",
    "BuildStatus",
    "DownloadInfo",
    "check_build_id",
]
