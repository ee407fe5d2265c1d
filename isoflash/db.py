"""Flash history storage.

History lives in a small SQLite database by default. Callers build an
engine from ``Settings.db_url``, create the tables once and hand the
session factory to the service layer, which writes from worker threads.
"""

import logging
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

logger = logging.getLogger(__name__)

# Seconds a writer waits on a locked SQLite file before failing
SQLITE_BUSY_TIMEOUT = 5


class Base(DeclarativeBase):
    """Declarative base for history tables."""


def _sqlite_on_connect(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute(f"PRAGMA busy_timeout = {SQLITE_BUSY_TIMEOUT * 1000}")
    cursor.close()


def get_engine(db_url: str) -> Engine:
    """Create the history engine.

    For file-backed SQLite the parent directory is created, and connections
    may be used from any thread.
    """
    url = make_url(db_url)
    if url.get_backend_name() != "sqlite":
        return create_engine(url, echo=False)

    database = url.database
    if database and database != ":memory:":
        Path(database).expanduser().parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(
        url, connect_args={"check_same_thread": False}, echo=False
    )
    event.listen(engine, "connect", _sqlite_on_connect)
    logger.debug("History database at %s", database or ":memory:")
    return engine


def get_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def get_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """Session that commits on success and rolls back on any error."""
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine: Engine) -> None:
    """Create the history tables if they do not exist."""
    from isoflash.flash import models  # noqa: F401

    Base.metadata.create_all(bind=engine)


__all__ = [
    "Base",
    "create_all_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
]
