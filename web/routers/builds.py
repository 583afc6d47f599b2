"""Build management endpoints.

- GET /builds - List builds
- POST /builds - Submit a build (runs in the background)
- GET /builds/{id} - Get build by ID
- POST /builds/{id}/installer - Submit the installer build of a build
- GET /builds/{id}/logs - Read build output incrementally
- GET /builds/{id}/installer/logs - Read installer output incrementally
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi import status as http_status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from fleet_imagegen.builds.logs import parse_log_cursor, read_log_page
from fleet_imagegen.builds.models import Build
from fleet_imagegen.builds.orchestrator import BuildOrchestrator
from fleet_imagegen.builds.service import (
    BuildNotFoundError,
    BuildNotReadyForInstallerError,
    BuildValidationError,
    BuildVersionExistsError,
    InstallerAlreadyQueuedError,
    ProfileNotAssignedToFleetError,
    get_build,
    list_builds,
)
from fleet_imagegen.fleets.service import FleetNotFoundError
from fleet_imagegen.profiles.service import ProfileNotFoundError
from fleet_imagegen.types import BuildStatus
from web.deps import get_db, get_orchestrator

router = APIRouter()


class BuildRequest(BaseModel):
    """Request body for a build submission."""

    profile_id: str
    fleet_id: str
    version: str


def _build_to_dict(build: Build) -> dict[str, Any]:
    """Convert a build record to a dictionary."""
    return {
        "id": build.id,
        "profile_revision_id": build.profile_revision_id,
        "fleet_id": build.fleet_id,
        "version": build.version,
        "status": build.status,
        "artifact_url": build.artifact_url,
        "installer_status": build.installer_status,
        "installer_artifact_url": build.installer_artifact_url,
        "created_at": build.created_at.isoformat() if build.created_at else None,
        "started_at": build.started_at.isoformat() if build.started_at else None,
        "finished_at": build.finished_at.isoformat() if build.finished_at else None,
    }


def _error(status_code: int, e: Exception) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"code": getattr(e, "code", "error"), "message": str(e)},
    )


@router.get("")
def list_builds_endpoint(
    fleet: str | None = Query(None, description="Filter by fleet ID"),
    status: str | None = Query(None, description="Filter by status"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum results"),
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    """List build records.

    Args:
        fleet: Filter by fleet ID.
        status: Filter by status.
        limit: Maximum results.
        db: Database session.

    Returns:
        List of build records.
    """
    status_filter: BuildStatus | None = None
    if status:
        try:
            status_filter = BuildStatus(status)
        except ValueError:
            raise HTTPException(
                status_code=http_status.HTTP_400_BAD_REQUEST,
                detail={
                    "code": "invalid_status",
                    "message": f"Invalid status: {status}. "
                    "Valid values: queued, running, succeeded, failed",
                },
            ) from None

    builds = list_builds(db, fleet_id=fleet, status=status_filter, limit=limit)
    return [_build_to_dict(b) for b in builds]


@router.post("", status_code=http_status.HTTP_202_ACCEPTED)
def submit_build_endpoint(
    request: BuildRequest,
    orchestrator: BuildOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Submit a build.

    The build is recorded as queued and runs in the background; poll
    GET /builds/{id} or its logs for progress.

    Raises:
        HTTPException: 400 on invalid input, 404 for an unknown profile or
            fleet, 409 if the version was already built.
    """
    try:
        build_id = orchestrator.submit_build(
            request.profile_id, request.fleet_id, request.version
        )
    except (BuildValidationError, ProfileNotAssignedToFleetError) as e:
        raise _error(http_status.HTTP_400_BAD_REQUEST, e) from None
    except (ProfileNotFoundError, FleetNotFoundError) as e:
        raise _error(http_status.HTTP_404_NOT_FOUND, e) from None
    except BuildVersionExistsError as e:
        raise _error(http_status.HTTP_409_CONFLICT, e) from None
    return {"id": build_id, "status": BuildStatus.QUEUED.value}


@router.get("/{build_id}")
def get_build_endpoint(
    build_id: str,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Get a build by ID."""
    try:
        build = get_build(db, build_id)
    except BuildNotFoundError as e:
        raise _error(http_status.HTTP_404_NOT_FOUND, e) from None
    return _build_to_dict(build)


@router.post("/{build_id}/installer", status_code=http_status.HTTP_202_ACCEPTED)
def submit_installer_endpoint(
    build_id: str,
    orchestrator: BuildOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Submit the installer build of a succeeded build.

    Raises:
        HTTPException: 404 for an unknown build, 409 if the build has not
            succeeded or an installer is already in flight.
    """
    try:
        orchestrator.submit_installer_build(build_id)
    except BuildNotFoundError as e:
        raise _error(http_status.HTTP_404_NOT_FOUND, e) from None
    except (BuildNotReadyForInstallerError, InstallerAlreadyQueuedError) as e:
        raise _error(http_status.HTTP_409_CONFLICT, e) from None
    return {"id": build_id, "installer_status": "queued"}


def _read_logs(
    orchestrator: BuildOrchestrator,
    build_id: str,
    after: str | None,
    installer: bool,
) -> dict[str, Any]:
    cursor = parse_log_cursor(after)
    try:
        page = read_log_page(orchestrator.store, build_id, cursor, installer=installer)
    except BuildNotFoundError as e:
        raise _error(http_status.HTTP_404_NOT_FOUND, e) from None

    return {
        "status": page.status,
        "chunk": page.chunk,
        "next_after": page.next_after,
        "done": page.done,
    }


@router.get("/{build_id}/logs")
def build_logs_endpoint(
    build_id: str,
    after: str | None = Query(None, description="Cursor from the previous read"),
    orchestrator: BuildOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Read build output after a cursor.

    Returns:
        status, chunk, next_after, and done (terminal and fully read).
    """
    return _read_logs(orchestrator, build_id, after, installer=False)


@router.get("/{build_id}/installer/logs")
def installer_logs_endpoint(
    build_id: str,
    after: str | None = Query(None, description="Cursor from the previous read"),
    orchestrator: BuildOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Read installer build output after a cursor."""
    return _read_logs(orchestrator, build_id, after, installer=True)
