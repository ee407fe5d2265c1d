"""Artifact fetch module.

This module downloads the installer image into the staging directory:
- HTTP(S) locations (including signed URLs) stream through httpx, with
  progress derived from bytes received over Content-Length
- gs:// locations run ``gsutil cp`` and parse its percentage output

Any failure removes the partial file; a partial artifact is never usable.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path, PurePosixPath
from typing import Protocol
from urllib.parse import unquote, urlparse

import httpx

from isoflash.errors import FetchError, ValidationError
from isoflash.flash.device import format_size
from isoflash.flash.process import supervise
from isoflash.flash.progress import Token, to_percent

logger = logging.getLogger(__name__)

# Timeout for downloads (seconds)
DOWNLOAD_TIMEOUT = 3600

# Chunk size for downloads (bytes)
DOWNLOAD_CHUNK_SIZE = 1024 * 1024  # 1 MiB

# Heartbeat spacing when the server sends no Content-Length
UNKNOWN_LENGTH_REPORT_BYTES = 64 * 1024 * 1024

DEFAULT_ARTIFACT_NAME = "artifact.iso"

GSUTIL_COMMAND = ("gsutil", "-o", "GSUtil:sliced_object_download_threshold=0", "cp")

# Callback receiving (percent or None for a heartbeat, message)
Emit = Callable[[int | None, str], None]


class ArtifactFetcher(Protocol):
    """Capability: download an artifact into a staging directory."""

    async def fetch(self, location: str, staging_dir: Path, emit: Emit) -> Path:
        """Download ``location`` into ``staging_dir`` and return the file path."""
        ...


def artifact_filename(location: str) -> str:
    """Derive a local filename from an artifact location."""
    path = PurePosixPath(unquote(urlparse(location).path))
    name = path.name
    if not name or name in {".", ".."}:
        return DEFAULT_ARTIFACT_NAME
    return name


def _prepare_destination(location: str, staging_dir: Path) -> Path:
    staging_dir.mkdir(parents=True, exist_ok=True)
    return staging_dir / artifact_filename(location)


class HttpFetcher:
    """Stream an HTTP(S) artifact to disk with httpx.

    Args:
        client: Optional shared AsyncClient; one is created per fetch otherwise.
        timeout: Download timeout in seconds.
        chunk_size: Size of chunks to read.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        timeout: float = DOWNLOAD_TIMEOUT,
        chunk_size: int = DOWNLOAD_CHUNK_SIZE,
    ) -> None:
        self._client = client
        self.timeout = timeout
        self.chunk_size = chunk_size

    async def fetch(self, location: str, staging_dir: Path, emit: Emit) -> Path:
        dest_path = _prepare_destination(location, staging_dir)
        logger.info("Downloading %s to %s", _redact(location), dest_path)

        client = self._client or httpx.AsyncClient(follow_redirects=True)
        try:
            total_bytes = await self._stream(client, location, dest_path, emit)
        except httpx.HTTPStatusError as e:
            dest_path.unlink(missing_ok=True)
            raise FetchError(
                f"HTTP error downloading artifact: "
                f"{e.response.status_code} {e.response.reason_phrase}",
                error_code="HTTP_ERROR",
            ) from e
        except httpx.TimeoutException as e:
            dest_path.unlink(missing_ok=True)
            raise FetchError(
                "Timeout downloading artifact", error_code="TIMEOUT"
            ) from e
        except httpx.RequestError as e:
            dest_path.unlink(missing_ok=True)
            raise FetchError(
                f"Network error downloading artifact: {e}",
                error_code="NETWORK_ERROR",
            ) from e
        except OSError as e:
            dest_path.unlink(missing_ok=True)
            raise FetchError(f"Could not write artifact to {dest_path}: {e}") from e
        except BaseException:
            dest_path.unlink(missing_ok=True)
            raise
        finally:
            if self._client is None:
                await client.aclose()

        logger.info("Downloaded %s (%d bytes)", dest_path.name, total_bytes)
        return dest_path

    async def _stream(
        self, client: httpx.AsyncClient, url: str, dest_path: Path, emit: Emit
    ) -> int:
        async with client.stream("GET", url, timeout=self.timeout) as response:
            response.raise_for_status()

            # Content-Length counts bytes on the wire, before any content decoding
            expected = int(response.headers.get("content-length") or 0)
            written = 0
            next_report = UNKNOWN_LENGTH_REPORT_BYTES

            with dest_path.open("wb") as f:
                async for chunk in response.aiter_bytes(self.chunk_size):
                    f.write(chunk)
                    written += len(chunk)
                    received = response.num_bytes_downloaded
                    if expected:
                        percent = min(100, received * 100 // expected)
                        emit(percent, f"Downloading ISO: {percent}%")
                    elif received >= next_report:
                        next_report += UNKNOWN_LENGTH_REPORT_BYTES
                        emit(None, f"Downloading ISO: {format_size(received)}")

            received = response.num_bytes_downloaded
            if expected and received != expected:
                raise FetchError(
                    f"Download truncated: received {received} of {expected} bytes",
                    error_code="TRUNCATED",
                )
            return written


class CommandFetcher:
    """Download through an external tool that prints percentage progress.

    Args:
        command: Tool invocation; source and destination are appended.
        heartbeat_interval: Quiet period before a heartbeat event.
        timeout: Download timeout in seconds.
    """

    def __init__(
        self,
        command: tuple[str, ...] = GSUTIL_COMMAND,
        heartbeat_interval: float = 5.0,
        timeout: float = DOWNLOAD_TIMEOUT,
    ) -> None:
        self.command = command
        self.heartbeat_interval = heartbeat_interval
        self.timeout = timeout

    async def fetch(self, location: str, staging_dir: Path, emit: Emit) -> Path:
        dest_path = _prepare_destination(location, staging_dir)
        tool = self.command[0]
        logger.info("Downloading %s with %s to %s", location, tool, dest_path)

        def _on_token(token: Token) -> None:
            percent = to_percent(token)
            if percent is not None:
                emit(percent, f"Downloading ISO: {percent}%")

        def _on_heartbeat(elapsed: float) -> None:
            emit(None, f"Downloading ISO ({elapsed:.0f}s elapsed)")

        try:
            result = await supervise(
                [*self.command, location, str(dest_path)],
                on_token=_on_token,
                on_heartbeat=_on_heartbeat,
                heartbeat_interval=self.heartbeat_interval,
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise FetchError(
                f"{tool} not found; install it to download {location}",
                error_code="TOOL_MISSING",
            ) from e
        except PermissionError as e:
            raise FetchError(
                f"{tool} could not be started: {e}",
                error_code="TOOL_UNAVAILABLE",
            ) from e
        except TimeoutError as e:
            dest_path.unlink(missing_ok=True)
            raise FetchError(str(e), error_code="TIMEOUT") from e
        except BaseException:
            dest_path.unlink(missing_ok=True)
            raise

        if not result.ok:
            dest_path.unlink(missing_ok=True)
            detail = f": {result.output_tail}" if result.output_tail else ""
            raise FetchError(
                f"Download failed with code {result.returncode}{detail}",
                error_code="DOWNLOAD_FAILED",
            )
        if not dest_path.exists():
            raise FetchError(
                f"{tool} exited successfully but {dest_path.name} is missing",
                error_code="DOWNLOAD_FAILED",
            )

        return dest_path


def select_fetcher(
    location: str,
    *,
    heartbeat_interval: float = 5.0,
    timeout: float = DOWNLOAD_TIMEOUT,
    client: httpx.AsyncClient | None = None,
) -> ArtifactFetcher:
    """Pick a fetcher for an artifact location.

    Raises:
        ValidationError: The location is empty or uses an unsupported scheme.
    """
    scheme = urlparse(location).scheme.lower() if location else ""
    if scheme in {"http", "https"}:
        return HttpFetcher(client=client, timeout=timeout)
    if scheme == "gs":
        return CommandFetcher(heartbeat_interval=heartbeat_interval, timeout=timeout)
    raise ValidationError(
        f"Unsupported artifact location: {location!r}. "
        "Expected an http(s):// or gs:// URL",
        error_code="INVALID_ARTIFACT_LOCATION",
    )


def _redact(url: str) -> str:
    """Drop the query string (signed URL credentials) for logging."""
    parsed = urlparse(url)
    return parsed._replace(query="").geturl() if parsed.query else url


__all__ = [
    "ArtifactFetcher",
    "CommandFetcher",
    "Emit",
    "HttpFetcher",
    "artifact_filename",
    "select_fetcher",
]
