"""Shared fixtures: settings rooted in tmp_path and a fake host platform."""

from pathlib import Path

import pytest
from fakes import FakeFetcher, RecordingReporter, make_platform

from isoflash.config import Settings
from isoflash.flash.fetch import select_fetcher
from isoflash.flash.pipeline import FlashPipeline, JobGuard
from isoflash.flash.platform import Platform


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        staging_dir=tmp_path / "staging",
        db_url=f"sqlite:///{tmp_path / 'history.sqlite'}",
        heartbeat_interval=0.05,
        use_sudo=False,
    )


@pytest.fixture
def fake_platform() -> Platform:
    return make_platform()


@pytest.fixture
def fake_fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def pipeline(
    fake_platform: Platform, settings: Settings, fake_fetcher: FakeFetcher
) -> FlashPipeline:
    def fetcher_factory(location: str, **kwargs: object) -> FakeFetcher:
        # Unsupported schemes must still be refused
        select_fetcher(location, **kwargs)  # type: ignore[arg-type]
        return fake_fetcher

    return FlashPipeline(
        fake_platform, settings, guard=JobGuard(), fetcher_factory=fetcher_factory
    )


@pytest.fixture
def reporter() -> RecordingReporter:
    return RecordingReporter()
