"""Dependencies for FastAPI route handlers.

Provides the database session, settings and build orchestrator to route
handlers via FastAPI dependency injection.

Transaction boundaries are managed here:
- Session is created at request start
- On success (no exception): session is committed automatically
- On exception: session is rolled back automatically
- Session is closed after request completes
"""

from __future__ import annotations

from collections.abc import Generator
from typing import Any

from fastapi import Depends, Request
from sqlalchemy.orm import Session, sessionmaker

from fleet_imagegen.builds.orchestrator import BuildOrchestrator
from fleet_imagegen.config import Settings


def get_session_factory(request: Request) -> sessionmaker[Session]:
    """Get session factory from app state.

    Args:
        request: FastAPI request object.

    Returns:
        SQLAlchemy session factory.
    """
    factory: Any = request.app.state.session_factory
    return factory  # type: ignore[no-any-return]


def get_app_settings(request: Request) -> Settings:
    """Get the settings the application was created with."""
    settings: Settings = request.app.state.settings
    return settings


def get_orchestrator(request: Request) -> BuildOrchestrator:
    """Get the build orchestrator from app state."""
    orchestrator: BuildOrchestrator = request.app.state.orchestrator
    return orchestrator


def get_db(
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
) -> Generator[Session, None, None]:
    """Provide a database session for a request.

    Creates a session at the start of the request. Transaction boundaries
    are managed automatically:
    - Commits on successful completion (no exception)
    - Rolls back on any exception
    - Closes the session after request completes

    Yields:
        Database session.
    """
    session = session_factory()
    try:
        yield session
        # Commit on success - only reached if no exception was raised
        session.commit()
    except Exception:
        # Rollback on any exception
        session.rollback()
        raise
    finally:
        session.close()
