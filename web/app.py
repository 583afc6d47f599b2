"""FastAPI application factory and main app.

This module creates the FastAPI application with all routers and
dependency injection configured. Web routes are thin proxies to core APIs.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles

from fleet_imagegen import __version__
from fleet_imagegen.builds.orchestrator import (
    BuildOrchestrator,
    recover_interrupted_builds,
)
from fleet_imagegen.builds.store import BuildStore
from fleet_imagegen.config import Settings, get_settings
from fleet_imagegen.db import create_all_tables, get_engine, get_session_factory
from web.routers import (
    builds,
    config,
    fleets,
    health,
    profiles,
    releases,
    rollouts,
    update,
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan context manager.

    Initializes database tables, fails builds interrupted by a previous
    process, and only then makes the orchestrator available to requests.
    """
    settings: Settings = app.state.settings
    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    session_factory = get_session_factory(engine)
    store = BuildStore(session_factory)

    recover_interrupted_builds(store)
    settings.updates_dir.mkdir(parents=True, exist_ok=True)

    app.state.session_factory = session_factory
    app.state.orchestrator = BuildOrchestrator(store, settings=settings)
    yield
    engine.dispose()


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Application settings; loaded from the environment if omitted.

    Returns:
        Configured FastAPI application.
    """
    if settings is None:
        settings = get_settings()

    application = FastAPI(
        title="Fleet Image Builder API",
        description="HTTP API for building, releasing and rolling out "
        "fleet device images",
        version=__version__,
        lifespan=lifespan,
    )
    application.state.settings = settings

    # Include routers
    application.include_router(health.router, tags=["health"])
    application.include_router(config.router, prefix="/config", tags=["config"])
    application.include_router(fleets.router, prefix="/fleets", tags=["fleets"])
    application.include_router(profiles.router, prefix="/profiles", tags=["profiles"])
    application.include_router(builds.router, prefix="/builds", tags=["builds"])
    application.include_router(releases.router, prefix="/releases", tags=["releases"])
    application.include_router(rollouts.router, prefix="/rollouts", tags=["rollouts"])
    application.include_router(update.router, prefix="/update", tags=["update"])

    # Checksum routes above take precedence over static files
    application.mount(
        "/update",
        StaticFiles(directory=settings.updates_dir, check_dir=False),
        name="update-files",
    )

    return application


# Create the default application instance
app = create_app()
