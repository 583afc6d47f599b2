"""Profile management endpoints.

- GET /profiles - List profiles
- POST /profiles - Create profile (with its first revision)
- GET /profiles/kernels - List selectable kernels
- GET /profiles/{id} - Get profile with its latest revision
- POST /profiles/{id}/revisions - Append a configuration revision
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from fleet_imagegen.builds.overrides import PackageExpressionError
from fleet_imagegen.config import Settings
from fleet_imagegen.fleets.service import FleetNotFoundError
from fleet_imagegen.profiles.kernel import (
    KernelConfigError,
    KernelQueryError,
    list_available_kernel_options,
)
from fleet_imagegen.profiles.models import Profile, ProfileRevision
from fleet_imagegen.profiles.service import (
    InvalidProfileConfigError,
    ProfileExistsError,
    ProfileNotFoundError,
    add_revision,
    create_profile,
    get_profile,
    list_profiles,
)
from web.deps import get_app_settings, get_db

router = APIRouter()


class ProfileCreateRequest(BaseModel):
    """Request body for profile creation."""

    name: str
    fleet_ids: list[str] = Field(default_factory=list)
    description: str = ""
    config: dict[str, Any] = Field(default_factory=dict)


class RevisionCreateRequest(BaseModel):
    """Request body for a new profile revision."""

    config: dict[str, Any]


def _revision_to_dict(revision: ProfileRevision) -> dict[str, Any]:
    """Convert a profile revision to a dictionary."""
    return {
        "id": revision.id,
        "revision": revision.revision,
        "config": revision.config,
        "config_hash": revision.config_hash,
        "created_at": revision.created_at.isoformat()
        if revision.created_at
        else None,
    }


def _profile_to_dict(profile: Profile) -> dict[str, Any]:
    """Convert a profile to a dictionary, including its newest revision."""
    latest = profile.revisions[-1] if profile.revisions else None
    return {
        "id": profile.id,
        "name": profile.name,
        "description": profile.description,
        "fleet_ids": sorted(f.id for f in profile.fleets),
        "latest_revision": _revision_to_dict(latest) if latest else None,
    }


def _invalid_config(
    e: InvalidProfileConfigError | KernelConfigError | PackageExpressionError,
) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"code": e.code, "message": str(e)},
    )


@router.get("")
def list_profiles_endpoint(db: Session = Depends(get_db)) -> list[dict[str, Any]]:
    """List all profiles."""
    return [_profile_to_dict(p) for p in list_profiles(db)]


@router.post("", status_code=status.HTTP_201_CREATED)
def create_profile_endpoint(
    request: ProfileCreateRequest,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Create a profile.

    Raises:
        HTTPException: 400 on invalid input or configuration, 404 for an
            unknown fleet, 409 if the name is taken.
    """
    try:
        profile = create_profile(
            db,
            request.name,
            request.fleet_ids,
            config=request.config,
            description=request.description,
        )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "invalid_profile", "message": str(e)},
        ) from None
    except (
        InvalidProfileConfigError,
        KernelConfigError,
        PackageExpressionError,
    ) as e:
        raise _invalid_config(e) from None
    except FleetNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": e.code, "message": str(e)},
        ) from None
    except ProfileExistsError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": e.code, "message": str(e)},
        ) from None
    db.refresh(profile)
    return _profile_to_dict(profile)


@router.get("/kernels")
def list_kernels_endpoint(
    settings: Settings = Depends(get_app_settings),
) -> list[dict[str, str]]:
    """List kernels that profiles may select.

    Raises:
        HTTPException: 503 if the build tool cannot be queried.
    """
    try:
        options = list_available_kernel_options(
            settings.kernel_options_flake_ref,
            build_command=settings.build_command,
            timeout=settings.kernel_query_timeout,
        )
    except KernelQueryError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": e.code, "message": str(e)},
        ) from None
    return [{"attr": o.attr, "version": o.version} for o in options]


@router.get("/{profile_id}")
def get_profile_endpoint(
    profile_id: str,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Get a profile by ID."""
    try:
        profile = get_profile(db, profile_id)
    except ProfileNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": e.code, "message": str(e)},
        ) from None
    return _profile_to_dict(profile)


@router.post("/{profile_id}/revisions", status_code=status.HTTP_201_CREATED)
def add_revision_endpoint(
    profile_id: str,
    request: RevisionCreateRequest,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Append a configuration revision to a profile."""
    try:
        revision = add_revision(db, profile_id, request.config)
    except ProfileNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": e.code, "message": str(e)},
        ) from None
    except (
        InvalidProfileConfigError,
        KernelConfigError,
        PackageExpressionError,
    ) as e:
        raise _invalid_config(e) from None
    db.refresh(revision)
    return _revision_to_dict(revision)
