"""FastAPI application factory and main app.

This module creates the FastAPI application with all routers and
dependency injection configured. Routes are thin proxies to core APIs.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from kata_static import __version__
from kata_static.config import get_settings
from kata_static.db import create_all_tables, get_engine, get_session_factory
from kata_static.store.local import LocalArtifactStore
from web.routers import artifacts, assets, config, health, runs


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan context manager.

    Initializes database tables and the served artifact store on startup.
    """
    settings = get_settings()
    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    app.state.session_factory = get_session_factory(engine)
    app.state.artifact_store = LocalArtifactStore(
        settings.store_dir, default_retention_days=settings.retention_days
    )
    yield
    engine.dispose()


def include_routers(application: FastAPI) -> None:
    """Mount every API router on an application."""
    application.include_router(health.router, tags=["health"])
    application.include_router(config.router, prefix="/config", tags=["config"])
    application.include_router(assets.router, prefix="/assets", tags=["assets"])
    application.include_router(runs.router, prefix="/runs", tags=["runs"])
    application.include_router(
        artifacts.router, prefix="/artifacts", tags=["artifacts"]
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application.
    """
    application = FastAPI(
        title="Kata Static Builder API",
        description="HTTP API over the asset catalog, the run ledger "
        "and the artifact store",
        version=__version__,
        lifespan=lifespan,
    )
    include_routers(application)
    return application


# Create the default application instance
app = create_app()
