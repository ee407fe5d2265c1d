"""Tests for configuration module."""

import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from isoflash.config import (
    DEFAULT_SYSTEM_MOUNTS,
    Settings,
    get_settings,
    print_settings_json,
)


class TestSettings:
    """Tests for Settings class."""

    def test_default_settings(self):
        """Default settings should have sensible values."""
        settings = Settings()
        assert settings.staging_dir.name == "homelab-iso-flasher"
        assert settings.db_url.startswith("sqlite:///")
        assert settings.log_level == "INFO"
        assert settings.system_mounts == DEFAULT_SYSTEM_MOUNTS
        assert settings.use_sudo is True
        assert settings.block_size == "4M"
        assert settings.download_timeout == 3600
        assert settings.flash_timeout == 3600

    def test_default_system_mounts_cover_host_locations(self):
        """The denylist should cover the root filesystem and core system paths."""
        for mount in ("/", "/boot", "/home", "/var", "/usr", "/tmp", "/opt", "/etc"):
            assert mount in DEFAULT_SYSTEM_MOUNTS

    def test_env_var_override(self):
        """Settings should be overridable via environment variables."""
        with patch.dict(
            os.environ,
            {
                "ISOFLASH_STAGING_DIR": "/srv/isoflash",
                "ISOFLASH_LOG_LEVEL": "DEBUG",
                "ISOFLASH_BLOCK_SIZE": "1M",
                "ISOFLASH_USE_SUDO": "false",
            },
        ):
            settings = Settings()
            assert settings.staging_dir == Path("/srv/isoflash")
            assert settings.log_level == "DEBUG"
            assert settings.block_size == "1M"
            assert settings.use_sudo is False

    def test_system_mounts_from_env_json(self):
        """List settings are read as JSON from the environment."""
        with patch.dict(os.environ, {"ISOFLASH_SYSTEM_MOUNTS": '["/", "/srv"]'}):
            settings = Settings()
            assert settings.system_mounts == ["/", "/srv"]

    def test_empty_system_mounts_rejected(self):
        """An empty denylist would make every device eligible and is refused."""
        with pytest.raises(ValidationError):
            Settings(system_mounts=[])

    @pytest.mark.parametrize("block_size", ["4M", "4m", "512K", "1048576"])
    def test_valid_block_sizes(self, block_size):
        """dd block sizes with an optional K/M suffix are accepted."""
        assert Settings(block_size=block_size).block_size == block_size

    @pytest.mark.parametrize("block_size", ["", "4G", "4 M", "four"])
    def test_invalid_block_sizes(self, block_size):
        """Anything else is rejected before it can reach a dd command line."""
        with pytest.raises(ValidationError):
            Settings(block_size=block_size)

    def test_invalid_log_level(self):
        """Unknown log levels are rejected."""
        with pytest.raises(ValidationError):
            Settings(log_level="VERBOSE")

    def test_download_timeout_lower_bound(self):
        """Download timeouts below a minute are rejected."""
        with pytest.raises(ValidationError):
            Settings(download_timeout=10)


class TestGetSettings:
    """Tests for get_settings function."""

    def test_returns_settings(self):
        """get_settings should return a Settings instance."""
        settings = get_settings()
        assert isinstance(settings, Settings)


class TestPrintSettingsJson:
    """Tests for print_settings_json function."""

    def test_returns_valid_json(self, tmp_path):
        """print_settings_json should return valid JSON."""
        settings = Settings(staging_dir=tmp_path)
        data = json.loads(print_settings_json(settings))
        assert data["staging_dir"] == str(tmp_path)
        assert data["block_size"] == "4M"
        assert data["system_mounts"] == DEFAULT_SYSTEM_MOUNTS

    def test_uses_default_settings(self):
        """Without an argument the environment settings are rendered."""
        with patch.dict(os.environ, {"ISOFLASH_FLASH_RATE_LIMIT": "9"}):
            data = json.loads(print_settings_json())
            assert data["flash_rate_limit"] == 9
