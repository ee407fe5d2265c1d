"""Router modules for FastAPI web API."""

from web.routers import config, devices, flash, health

__all__ = ["config", "devices", "flash", "health"]
