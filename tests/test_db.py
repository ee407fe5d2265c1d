"""Tests for db.py - history engine and sessions."""

import pytest
from sqlalchemy import inspect, text

from isoflash.db import create_all_tables, get_engine, get_session, get_session_factory
from isoflash.flash.models import FlashRecord


@pytest.fixture
def engine(tmp_path):
    engine = get_engine(f"sqlite:///{tmp_path / 'nested' / 'dir' / 'flash.db'}")
    yield engine
    engine.dispose()


class TestEngine:
    """Tests for get_engine function."""

    def test_creates_parent_directory(self, engine, tmp_path):
        assert (tmp_path / "nested" / "dir").is_dir()

    def test_busy_timeout_set(self, engine):
        with engine.connect() as conn:
            assert conn.execute(text("PRAGMA busy_timeout")).scalar() == 5000

    def test_memory_database(self):
        engine = get_engine("sqlite:///:memory:")
        create_all_tables(engine)
        assert "flash_records" in inspect(engine).get_table_names()


class TestSession:
    """Tests for get_session context manager."""

    def test_commits_on_success(self, engine):
        create_all_tables(engine)
        factory = get_session_factory(engine)

        with get_session(factory) as session:
            session.add(FlashRecord(job_id="j1", device_path="/dev/sdb", artifact_location="x"))

        with factory() as session:
            assert session.query(FlashRecord).count() == 1

    def test_rolls_back_on_error(self, engine):
        create_all_tables(engine)
        factory = get_session_factory(engine)

        with pytest.raises(RuntimeError):
            with get_session(factory) as session:
                session.add(
                    FlashRecord(job_id="j1", device_path="/dev/sdb", artifact_location="x")
                )
                session.flush()
                raise RuntimeError("boom")

        with factory() as session:
            assert session.query(FlashRecord).count() == 0
