"""Fleet management endpoints.

- GET /fleets - List fleets
- POST /fleets - Create a fleet
- GET /fleets/{id} - Get fleet by ID
- GET /fleets/{id}/devices - List devices of a fleet
- POST /fleets/{id}/devices - Register a device
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from fleet_imagegen.fleets.models import Device, Fleet
from fleet_imagegen.fleets.service import (
    FleetExistsError,
    FleetNotFoundError,
    add_device,
    create_fleet,
    get_fleet,
    list_devices,
    list_fleets,
)
from web.deps import get_db

router = APIRouter()


class FleetCreateRequest(BaseModel):
    """Request body for fleet creation."""

    name: str
    description: str = ""


class DeviceCreateRequest(BaseModel):
    """Request body for device registration."""

    name: str


def _fleet_to_dict(fleet: Fleet) -> dict[str, Any]:
    """Convert a fleet to a dictionary."""
    return {
        "id": fleet.id,
        "name": fleet.name,
        "description": fleet.description,
        "created_at": fleet.created_at.isoformat() if fleet.created_at else None,
    }


def _device_to_dict(device: Device) -> dict[str, Any]:
    """Convert a device to a dictionary."""
    return {
        "id": device.id,
        "fleet_id": device.fleet_id,
        "name": device.name,
        "state": device.state,
        "desired_release_id": device.desired_release_id,
        "last_seen_at": device.last_seen_at.isoformat()
        if device.last_seen_at
        else None,
    }


def _fleet_not_found(e: FleetNotFoundError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"code": e.code, "message": str(e)},
    )


@router.get("")
def list_fleets_endpoint(db: Session = Depends(get_db)) -> list[dict[str, Any]]:
    """List all fleets."""
    return [_fleet_to_dict(f) for f in list_fleets(db)]


@router.post("", status_code=status.HTTP_201_CREATED)
def create_fleet_endpoint(
    request: FleetCreateRequest,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Create a fleet.

    Raises:
        HTTPException: 400 on an empty name, 409 if the name is taken.
    """
    try:
        fleet = create_fleet(db, request.name, request.description)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "invalid_fleet", "message": str(e)},
        ) from None
    except FleetExistsError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": e.code, "message": str(e)},
        ) from None
    db.refresh(fleet)
    return _fleet_to_dict(fleet)


@router.get("/{fleet_id}")
def get_fleet_endpoint(
    fleet_id: str,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Get a fleet by ID."""
    try:
        fleet = get_fleet(db, fleet_id)
    except FleetNotFoundError as e:
        raise _fleet_not_found(e) from None
    return _fleet_to_dict(fleet)


@router.get("/{fleet_id}/devices")
def list_devices_endpoint(
    fleet_id: str,
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    """List the devices of a fleet."""
    try:
        get_fleet(db, fleet_id)
    except FleetNotFoundError as e:
        raise _fleet_not_found(e) from None
    return [_device_to_dict(d) for d in list_devices(db, fleet_id)]


@router.post("/{fleet_id}/devices", status_code=status.HTTP_201_CREATED)
def add_device_endpoint(
    fleet_id: str,
    request: DeviceCreateRequest,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Register a device in a fleet."""
    try:
        device = add_device(db, fleet_id, request.name)
    except FleetNotFoundError as e:
        raise _fleet_not_found(e) from None
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "invalid_device", "message": str(e)},
        ) from None
    return _device_to_dict(device)
