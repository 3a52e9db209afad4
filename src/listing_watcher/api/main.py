"""FastAPI application factory and configuration."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from listing_watcher import __version__
from listing_watcher.api.routes import health, search_configs
from listing_watcher.services.scheduler import Scheduler
from listing_watcher.worker import create_scheduler

logger = logging.getLogger(__name__)


def create_app(scheduler: Scheduler | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    The lifespan starts the scheduler on startup and stops it on shutdown.

    Args:
        scheduler: Scheduler to run. Built from settings on startup if None.

    Returns:
        Configured FastAPI application instance.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        app.state.scheduler = scheduler or create_scheduler()
        await app.state.scheduler.start()
        try:
            yield
        finally:
            await app.state.scheduler.stop()

    app = FastAPI(
        title="listing-watcher API",
        description="Marketplace listing watcher worker",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.include_router(health.router, tags=["health"])
    app.include_router(search_configs.router, prefix="/api/search-configs", tags=["search-configs"])

    return app


# Create app instance for uvicorn
app = create_app()
