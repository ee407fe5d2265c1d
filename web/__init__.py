"""FastAPI web application for Homelab ISO Flasher.

This module provides the push-stream delivery surface: device listing
and flash operations whose progress is streamed as server-sent events.

All business logic is delegated to core modules in isoflash/.
"""

from web.app import app, create_app

__all__ = ["app", "create_app"]
