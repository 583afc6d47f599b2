"""Release management endpoints.

- GET /releases - List releases
- POST /releases - Publish a succeeded build as a release
- GET /releases/{id} - Get release by ID
- POST /releases/{id}/withdraw - Withdraw a release
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from fleet_imagegen.builds.service import BuildNotFoundError
from fleet_imagegen.config import Settings
from fleet_imagegen.releases.activation import FleetActivationError
from fleet_imagegen.releases.models import Release
from fleet_imagegen.releases.service import (
    DEFAULT_CHANNEL,
    ReleaseExistsError,
    ReleaseNotFoundError,
    ReleaseValidationError,
    create_release,
    get_release,
    list_releases,
    withdraw_release,
)
from fleet_imagegen.types import ReleaseStatus
from web.deps import get_app_settings, get_db

router = APIRouter()


class ReleaseCreateRequest(BaseModel):
    """Request body for release creation."""

    build_id: str
    version: str
    channel: str = DEFAULT_CHANNEL
    notes: str = ""


def _release_to_dict(release: Release) -> dict[str, Any]:
    """Convert a release to a dictionary."""
    return {
        "id": release.id,
        "build_id": release.build_id,
        "version": release.version,
        "channel": release.channel,
        "notes": release.notes,
        "status": release.status,
        "created_at": release.created_at.isoformat() if release.created_at else None,
    }


@router.get("")
def list_releases_endpoint(
    release_status: str | None = Query(
        None, alias="status", description="Filter by status (active/withdrawn)"
    ),
    channel: str | None = Query(None, description="Filter by channel"),
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    """List releases."""
    status_filter: ReleaseStatus | None = None
    if release_status:
        try:
            status_filter = ReleaseStatus(release_status)
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={
                    "code": "invalid_status",
                    "message": f"Invalid status: {release_status}. "
                    "Valid values: active, withdrawn",
                },
            ) from None
    releases = list_releases(db, status=status_filter, channel=channel)
    return [_release_to_dict(r) for r in releases]


@router.post("", status_code=status.HTTP_201_CREATED)
def create_release_endpoint(
    request: ReleaseCreateRequest,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Publish a build as a release.

    Raises:
        HTTPException: 400 on invalid input, 404 for an unknown build,
            409 if the version is taken.
    """
    try:
        release = create_release(
            db,
            request.build_id,
            request.version,
            channel=request.channel,
            notes=request.notes,
        )
    except ReleaseValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": e.code, "message": str(e)},
        ) from None
    except BuildNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": e.code, "message": str(e)},
        ) from None
    except ReleaseExistsError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": e.code, "message": str(e)},
        ) from None
    db.refresh(release)
    return _release_to_dict(release)


@router.get("/{release_id}")
def get_release_endpoint(
    release_id: str,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Get a release by ID."""
    try:
        release = get_release(db, release_id)
    except ReleaseNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": e.code, "message": str(e)},
        ) from None
    return _release_to_dict(release)


@router.post("/{release_id}/withdraw")
def withdraw_release_endpoint(
    release_id: str,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> dict[str, Any]:
    """Withdraw a release, clearing its fleet's live artifacts if it is live.

    Raises:
        HTTPException: 404 for an unknown release, 500 if the live
            artifacts cannot be removed (the release stays active).
    """
    try:
        release = withdraw_release(db, release_id, settings.updates_dir)
    except ReleaseNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": e.code, "message": str(e)},
        ) from None
    except FleetActivationError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": e.code, "message": str(e)},
        ) from None
    return _release_to_dict(release)
