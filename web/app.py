"""FastAPI application factory and main app.

This module creates the FastAPI application with all routers and
dependency injection configured. Routes are thin proxies to the core
services in bundlepipe/.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from bundlepipe import __version__
from bundlepipe.builds.queue import OrchestratorContext
from bundlepipe.builds.worker import WorkerPool
from bundlepipe.config import get_settings
from bundlepipe.db import create_all_tables, get_engine, get_session_factory
from web.routers import builds, config, health, listings, publish, serve

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan context manager.

    Initializes database tables and the orchestrator context on startup,
    starts the worker pool when the queue is enabled, and tears both down
    on shutdown.
    """
    settings = get_settings()
    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    app.state.session_factory = get_session_factory(engine)
    context = OrchestratorContext.create(settings, app.state.session_factory)
    app.state.context = context

    pool: WorkerPool | None = None
    if context.queue_enabled:
        pool = WorkerPool(context)
        pool.start()
    try:
        yield
    finally:
        if pool is not None:
            pool.stop(timeout=settings.build_timeout)
        context.close()
        engine.dispose()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application.
    """
    application = FastAPI(
        title="Bundle Pipeline API",
        description="HTTP API for publishing, building and serving "
        "network-policy-constrained app bundles",
        version=__version__,
        lifespan=lifespan,
    )

    # Include routers
    application.include_router(health.router, tags=["health"])
    application.include_router(config.router, prefix="/config", tags=["config"])
    application.include_router(builds.router, prefix="/build", tags=["builds"])
    application.include_router(publish.router, prefix="/publish", tags=["publish"])
    application.include_router(listings.router, prefix="/listings", tags=["listings"])
    application.include_router(serve.router, prefix="/builds", tags=["serve"])

    return application


# Create the default application instance
app = create_app()
