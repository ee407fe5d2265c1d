"""Dependencies for FastAPI route handlers.

Shared state is created once by the application lifespan and kept on
``app.state``; these helpers hand it to route handlers:
- settings, host platform bundle and job guard
- flash history sessions
- the per-client flash rate limiter
"""

from __future__ import annotations

from collections.abc import Generator
from typing import Annotated, Any

from fastapi import Depends, Request
from sqlalchemy.orm import Session, sessionmaker

from isoflash.config import Settings
from isoflash.flash.pipeline import JobGuard
from isoflash.flash.platform import Platform
from isoflash.ratelimit import SlidingWindowStore


def get_session_factory(request: Request) -> sessionmaker[Session]:
    """Get session factory from app state.

    Args:
        request: FastAPI request object.

    Returns:
        SQLAlchemy session factory.
    """
    factory: Any = request.app.state.session_factory
    return factory  # type: ignore[no-any-return]


def get_db(
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
) -> Generator[Session, None, None]:
    """Provide a database session for a request.

    Commits on success, rolls back on any exception and always closes
    the session after the request completes.

    Yields:
        Database session.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_app_settings(request: Request) -> Settings:
    """Get the settings the app was started with."""
    settings: Settings = request.app.state.settings
    return settings


def get_platform(request: Request) -> Platform:
    """Get the host platform bundle."""
    platform: Platform = request.app.state.platform
    return platform


def get_job_guard(request: Request) -> JobGuard:
    """Get the guard allowing one flash job at a time."""
    guard: JobGuard = request.app.state.job_guard
    return guard


def get_rate_limiter(request: Request) -> SlidingWindowStore:
    """Get the flash-start rate limiter."""
    limiter: SlidingWindowStore = request.app.state.rate_limiter
    return limiter


def client_key(request: Request) -> str:
    """Identify the caller for rate limiting."""
    return request.client.host if request.client else "unknown"


# Type aliases for dependencies
DbSession = Annotated[Session, Depends(get_db)]
SessionFactory = Annotated[sessionmaker[Session], Depends(get_session_factory)]
AppSettings = Annotated[Settings, Depends(get_app_settings)]
HostPlatform = Annotated[Platform, Depends(get_platform)]
Guard = Annotated[JobGuard, Depends(get_job_guard)]
RateLimiter = Annotated[SlidingWindowStore, Depends(get_rate_limiter)]
ClientKey = Annotated[str, Depends(client_key)]


__all__ = [
    "AppSettings",
    "ClientKey",
    "DbSession",
    "Guard",
    "HostPlatform",
    "RateLimiter",
    "SessionFactory",
    "client_key",
    "get_app_settings",
    "get_db",
    "get_job_guard",
    "get_platform",
    "get_rate_limiter",
    "get_session_factory",
]
