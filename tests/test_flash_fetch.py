"""Tests for flash/fetch.py - artifact download."""

import asyncio
import gzip
from unittest.mock import patch

import httpx
import pytest
import respx

from isoflash.errors import FetchError, ValidationError
from isoflash.flash.fetch import (
    CommandFetcher,
    HttpFetcher,
    artifact_filename,
    select_fetcher,
)
from isoflash.flash.process import ProcessResult
from isoflash.flash.progress import PercentToken

ISO_URL = "https://builds.example.com/images/homelab.iso"


def _collect():
    events = []

    def emit(percent, message):
        events.append((percent, message))

    return events, emit


class TestArtifactFilename:
    """Tests for artifact_filename function."""

    def test_from_url_path(self):
        assert artifact_filename(ISO_URL) == "homelab.iso"

    def test_signed_url_query_ignored(self):
        url = "https://storage.example.com/b/ubuntu.iso?X-Goog-Signature=abc&X-Goog-Expires=900"
        assert artifact_filename(url) == "ubuntu.iso"

    def test_percent_encoded(self):
        assert artifact_filename("https://x.example.com/my%20image.iso") == "my image.iso"

    def test_gs_location(self):
        assert artifact_filename("gs://bucket/builds/42/homelab.iso") == "homelab.iso"

    def test_no_name(self):
        assert artifact_filename("https://x.example.com/") == "artifact.iso"


class TestSelectFetcher:
    """Tests for select_fetcher function."""

    def test_http(self):
        assert isinstance(select_fetcher(ISO_URL), HttpFetcher)
        assert isinstance(select_fetcher("http://10.0.0.5/a.iso"), HttpFetcher)

    def test_gs(self):
        fetcher = select_fetcher("gs://bucket/a.iso", heartbeat_interval=1.0, timeout=120)
        assert isinstance(fetcher, CommandFetcher)
        assert fetcher.heartbeat_interval == 1.0
        assert fetcher.timeout == 120

    @pytest.mark.parametrize("location", ["", "ftp://x/a.iso", "/tmp/a.iso", "file:///a.iso"])
    def test_unsupported(self, location):
        with pytest.raises(ValidationError) as exc_info:
            select_fetcher(location)
        assert exc_info.value.error_code == "INVALID_ARTIFACT_LOCATION"


class TestHttpFetcher:
    """Tests for HttpFetcher class."""

    @respx.mock
    def test_successful_download(self, tmp_path):
        """Should stream the file and report percent progress."""
        content = b"0123456789abcdef"

        async def body():
            for start in range(0, len(content), 4):
                yield content[start : start + 4]

        respx.get(ISO_URL).mock(
            side_effect=lambda request: httpx.Response(
                200, headers={"Content-Length": str(len(content))}, content=body()
            )
        )
        events, emit = _collect()

        fetcher = HttpFetcher(chunk_size=4)
        path = asyncio.run(fetcher.fetch(ISO_URL, tmp_path / "job", emit))

        assert path == tmp_path / "job" / "homelab.iso"
        assert path.read_bytes() == content
        assert [percent for percent, _ in events] == [25, 50, 75, 100]
        assert events[-1] == (100, "Downloading ISO: 100%")

    @respx.mock
    def test_compressed_transfer(self, tmp_path):
        """Content-Length counts compressed bytes; the file holds the decoded image."""
        content = b"homelab installer image " * 512
        compressed = gzip.compress(content)
        respx.get(ISO_URL).mock(
            return_value=httpx.Response(
                200,
                headers={"Content-Encoding": "gzip", "Content-Length": str(len(compressed))},
                content=compressed,
            )
        )
        events, emit = _collect()

        path = asyncio.run(HttpFetcher().fetch(ISO_URL, tmp_path, emit))

        assert path.read_bytes() == content
        assert events[-1] == (100, "Downloading ISO: 100%")

    @respx.mock
    def test_truncated_body(self, tmp_path):
        respx.get(ISO_URL).mock(
            return_value=httpx.Response(
                200, headers={"Content-Length": "4096"}, content=b"\x00" * 1024
            )
        )

        with pytest.raises(FetchError) as exc_info:
            asyncio.run(HttpFetcher().fetch(ISO_URL, tmp_path, lambda p, m: None))

        assert exc_info.value.error_code == "TRUNCATED"
        assert "1024 of 4096" in exc_info.value.message
        assert not (tmp_path / "homelab.iso").exists()

    @respx.mock
    def test_signed_url(self, tmp_path):
        url = f"{ISO_URL}?X-Goog-Signature=abc"
        respx.get(url).mock(return_value=httpx.Response(200, content=b"iso"))

        path = asyncio.run(HttpFetcher().fetch(url, tmp_path, lambda p, m: None))
        assert path.name == "homelab.iso"

    @respx.mock
    def test_http_error_removes_partial_file(self, tmp_path):
        """An HTTP error is fatal and leaves nothing behind."""
        respx.get(ISO_URL).mock(return_value=httpx.Response(404))

        with pytest.raises(FetchError) as exc_info:
            asyncio.run(HttpFetcher().fetch(ISO_URL, tmp_path, lambda p, m: None))

        assert exc_info.value.error_code == "HTTP_ERROR"
        assert "404" in exc_info.value.message
        assert not (tmp_path / "homelab.iso").exists()

    @respx.mock
    def test_network_error(self, tmp_path):
        respx.get(ISO_URL).mock(side_effect=httpx.ConnectError("connection refused"))

        with pytest.raises(FetchError) as exc_info:
            asyncio.run(HttpFetcher().fetch(ISO_URL, tmp_path, lambda p, m: None))

        assert exc_info.value.error_code == "NETWORK_ERROR"
        assert not (tmp_path / "homelab.iso").exists()

    @respx.mock
    def test_timeout(self, tmp_path):
        respx.get(ISO_URL).mock(side_effect=httpx.ReadTimeout("timed out"))

        with pytest.raises(FetchError) as exc_info:
            asyncio.run(HttpFetcher().fetch(ISO_URL, tmp_path, lambda p, m: None))

        assert exc_info.value.error_code == "TIMEOUT"

    @respx.mock
    def test_shared_client_left_open(self, tmp_path):
        respx.get(ISO_URL).mock(return_value=httpx.Response(200, content=b"iso"))

        async def scenario():
            async with httpx.AsyncClient() as client:
                await HttpFetcher(client=client).fetch(ISO_URL, tmp_path, lambda p, m: None)
                return client.is_closed

        assert asyncio.run(scenario()) is False


class FakeSupervise:
    """Stands in for supervise, writing the destination file."""

    def __init__(self, returncode=0, write_file=True, error=None):
        self.returncode = returncode
        self.write_file = write_file
        self.error = error
        self.commands = []

    async def __call__(self, cmd, *, on_token=None, on_heartbeat=None, **kwargs):
        self.commands.append(list(cmd))
        if self.error is not None:
            raise self.error
        if self.write_file:
            with open(cmd[-1], "wb") as f:
                f.write(b"iso")
        on_token(PercentToken(50.0))
        on_heartbeat(7.0)
        return ProcessResult(self.returncode, "AccessDeniedException: 403", 0.1)


class TestCommandFetcher:
    """Tests for CommandFetcher class."""

    LOCATION = "gs://homelab-builds/42/homelab.iso"

    def test_successful_download(self, tmp_path):
        fake = FakeSupervise()
        events, emit = _collect()
        with patch("isoflash.flash.fetch.supervise", fake):
            path = asyncio.run(CommandFetcher().fetch(self.LOCATION, tmp_path, emit))

        assert path == tmp_path / "homelab.iso"
        assert fake.commands[0][0] == "gsutil"
        assert fake.commands[0][-2:] == [self.LOCATION, str(path)]
        assert (50, "Downloading ISO: 50%") in events
        assert (None, "Downloading ISO (7s elapsed)") in events

    def test_failure_removes_partial_file(self, tmp_path):
        fake = FakeSupervise(returncode=1)
        with patch("isoflash.flash.fetch.supervise", fake):
            with pytest.raises(FetchError) as exc_info:
                asyncio.run(CommandFetcher().fetch(self.LOCATION, tmp_path, lambda p, m: None))

        assert exc_info.value.error_code == "DOWNLOAD_FAILED"
        assert "Download failed with code 1" in exc_info.value.message
        assert not (tmp_path / "homelab.iso").exists()

    def test_tool_missing(self, tmp_path):
        fake = FakeSupervise(error=FileNotFoundError("gsutil"))
        with patch("isoflash.flash.fetch.supervise", fake):
            with pytest.raises(FetchError) as exc_info:
                asyncio.run(CommandFetcher().fetch(self.LOCATION, tmp_path, lambda p, m: None))
        assert exc_info.value.error_code == "TOOL_MISSING"

    def test_tool_not_executable(self, tmp_path):
        fake = FakeSupervise(error=PermissionError(13, "Permission denied", "gsutil"))
        with patch("isoflash.flash.fetch.supervise", fake):
            with pytest.raises(FetchError) as exc_info:
                asyncio.run(CommandFetcher().fetch(self.LOCATION, tmp_path, lambda p, m: None))
        assert exc_info.value.error_code == "TOOL_UNAVAILABLE"
        assert "Permission denied" in exc_info.value.message

    def test_timeout(self, tmp_path):
        fake = FakeSupervise(error=TimeoutError("gsutil did not finish within 60 seconds"))
        with patch("isoflash.flash.fetch.supervise", fake):
            with pytest.raises(FetchError) as exc_info:
                asyncio.run(CommandFetcher().fetch(self.LOCATION, tmp_path, lambda p, m: None))
        assert exc_info.value.error_code == "TIMEOUT"

    def test_missing_output(self, tmp_path):
        fake = FakeSupervise(write_file=False)
        with patch("isoflash.flash.fetch.supervise", fake):
            with pytest.raises(FetchError, match="missing"):
                asyncio.run(CommandFetcher().fetch(self.LOCATION, tmp_path, lambda p, m: None))
