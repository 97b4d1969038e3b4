"""Router modules for FastAPI web API."""

from web.routers import builds, config, health, listings, publish, serve

__all__ = ["builds", "config", "health", "listings", "publish", "serve"]
