"""Rollout endpoints.

- GET /rollouts - List rollouts
- POST /rollouts - Deploy a release to its fleet
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from fleet_imagegen.config import Settings
from fleet_imagegen.fleets.service import FleetNotFoundError
from fleet_imagegen.releases.models import Rollout
from fleet_imagegen.releases.service import (
    ReleaseNotFoundError,
    ReleaseWithdrawnError,
    RolloutFleetReleaseMismatchError,
    deploy_release,
    list_rollouts,
)
from web.deps import get_app_settings, get_db

router = APIRouter()


class RolloutRequest(BaseModel):
    """Request body for a deployment."""

    fleet_id: str
    release_id: str


def _rollout_to_dict(rollout: Rollout) -> dict[str, Any]:
    """Convert a rollout to a dictionary."""
    return {
        "id": rollout.id,
        "release_id": rollout.release_id,
        "fleet_id": rollout.fleet_id,
        "strategy": rollout.strategy,
        "stage_percent": rollout.stage_percent,
        "status": rollout.status,
        "created_at": rollout.created_at.isoformat() if rollout.created_at else None,
        "updated_at": rollout.updated_at.isoformat() if rollout.updated_at else None,
    }


@router.get("")
def list_rollouts_endpoint(
    fleet: str | None = Query(None, description="Filter by fleet ID"),
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    """List rollouts."""
    return [_rollout_to_dict(r) for r in list_rollouts(db, fleet_id=fleet)]


@router.post("", status_code=status.HTTP_201_CREATED)
def deploy_release_endpoint(
    request: RolloutRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> dict[str, Any]:
    """Make a release live for its fleet.

    A failed activation is still recorded as a failed rollout.

    Raises:
        HTTPException: 404 for an unknown fleet or release, 409 for a
            withdrawn release or a fleet mismatch, 500 if activation fails.
    """
    try:
        result = deploy_release(
            db, request.fleet_id, request.release_id, settings.updates_dir
        )
    except (FleetNotFoundError, ReleaseNotFoundError) as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": e.code, "message": str(e)},
        ) from None
    except (ReleaseWithdrawnError, RolloutFleetReleaseMismatchError) as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": e.code, "message": str(e)},
        ) from None

    # Persist the rollout record before reporting an activation failure
    db.commit()
    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "code": result.error_code,
                "message": result.error_message,
                "rollout_id": result.rollout.id,
            },
        )
    db.refresh(result.rollout)
    return _rollout_to_dict(result.rollout)
