"""FastAPI application factory and main app.

This module creates the FastAPI application with all routers and the
shared state they depend on.

Web routes are thin proxies to the core modules in isoflash/.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from isoflash import __version__
from isoflash.config import Settings, configure_logging, get_settings
from isoflash.db import create_all_tables, get_engine, get_session_factory
from isoflash.flash.pipeline import get_job_guard
from isoflash.flash.platform import select_platform
from isoflash.ratelimit import SlidingWindowStore
from web.routers import config, devices, flash, health

logger = logging.getLogger(__name__)

# Seconds between rate-limiter sweeps
RATE_LIMIT_SWEEP_INTERVAL = 300


async def _sweep_rate_limits(store: SlidingWindowStore, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        store.sweep()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan context manager.

    Configures logging, initializes the history database and builds the
    shared state used by the routers. On shutdown, running flash jobs are
    cancelled so they clean up their staging directories.
    """
    settings: Settings = getattr(app.state, "settings", None) or get_settings()
    configure_logging(settings)

    engine = get_engine(settings.db_url)
    create_all_tables(engine)

    app.state.settings = settings
    app.state.session_factory = get_session_factory(engine)
    app.state.platform = select_platform(settings)
    app.state.job_guard = get_job_guard()
    app.state.rate_limiter = SlidingWindowStore(
        window=settings.flash_rate_window, limit=settings.flash_rate_limit
    )
    app.state.flash_tasks = set()
    logger.info("Homelab ISO Flasher API %s on %s", __version__, app.state.platform.name)

    sweeper = asyncio.create_task(
        _sweep_rate_limits(app.state.rate_limiter, RATE_LIMIT_SWEEP_INTERVAL)
    )
    try:
        yield
    finally:
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper

        running = list(app.state.flash_tasks)
        for task in running:
            task.cancel()
        if running:
            logger.warning("Cancelling %d running flash job(s)", len(running))
            await asyncio.gather(*running, return_exceptions=True)
        engine.dispose()


async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Report malformed request bodies as 400 Bad Request."""
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "detail": {
                "code": "invalid_request",
                "message": "Invalid request",
                "errors": [
                    {"loc": list(error["loc"]), "msg": error["msg"]}
                    for error in exc.errors()
                ],
            }
        },
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application.
    """
    application = FastAPI(
        title="Homelab ISO Flasher API",
        description="HTTP API for listing removable devices and writing "
        "installer images to them with streamed progress",
        version=__version__,
        lifespan=lifespan,
    )

    application.add_exception_handler(RequestValidationError, validation_error_handler)  # type: ignore[arg-type]

    # Include routers
    application.include_router(health.router, tags=["health"])
    application.include_router(config.router, prefix="/config", tags=["config"])
    application.include_router(devices.router, prefix="/devices", tags=["devices"])
    application.include_router(flash.router, prefix="/flash", tags=["flash"])

    return application


# Create the default application instance
app = create_app()
