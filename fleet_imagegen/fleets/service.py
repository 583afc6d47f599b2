"""Fleet service for CRUD and query operations."""

from sqlalchemy import select
from sqlalchemy.orm import Session

from fleet_imagegen.fleets.models import Device, Fleet


class FleetNotFoundError(Exception):
    """Raised when a fleet is not found."""

    def __init__(self, fleet_id: str, code: str = "fleet_not_found") -> None:
        super().__init__(f"Fleet not found: {fleet_id}")
        self.fleet_id = fleet_id
        self.code = code


class FleetExistsError(Exception):
    """Raised when creating a fleet whose name is already taken."""

    def __init__(self, name: str, code: str = "fleet_exists") -> None:
        super().__init__(f"Fleet already exists: {name}")
        self.name = name
        self.code = code


def create_fleet(session: Session, name: str, description: str = "") -> Fleet:
    """Create a new fleet.

    Args:
        session: Database session.
        name: Unique fleet name.
        description: Optional description.

    Returns:
        Created Fleet.

    Raises:
        ValueError: If the name is empty.
        FleetExistsError: If a fleet with this name exists.
    """
    name = name.strip()
    if not name:
        raise ValueError("fleet name is required")

    existing = session.execute(
        select(Fleet).where(Fleet.name == name)
    ).scalar_one_or_none()
    if existing is not None:
        raise FleetExistsError(name)

    fleet = Fleet(name=name, description=description.strip())
    session.add(fleet)
    session.flush()
    return fleet


def get_fleet(session: Session, fleet_id: str) -> Fleet:
    """Get a fleet by ID.

    Args:
        session: Database session.
        fleet_id: Fleet ID.

    Returns:
        Fleet instance.

    Raises:
        FleetNotFoundError: If fleet not found.
    """
    fleet = session.get(Fleet, fleet_id)
    if fleet is None:
        raise FleetNotFoundError(fleet_id)
    return fleet


def list_fleets(session: Session) -> list[Fleet]:
    """List all fleets ordered by name."""
    return list(session.execute(select(Fleet).order_by(Fleet.name)).scalars().all())


def add_device(session: Session, fleet_id: str, name: str) -> Device:
    """Register a device in a fleet.

    Args:
        session: Database session.
        fleet_id: Fleet ID.
        name: Device name.

    Returns:
        Created Device.

    Raises:
        FleetNotFoundError: If fleet not found.
        ValueError: If the name is empty.
    """
    fleet = get_fleet(session, fleet_id)
    name = name.strip()
    if not name:
        raise ValueError("device name is required")

    device = Device(fleet_id=fleet.id, name=name)
    session.add(device)
    session.flush()
    return device


def list_devices(session: Session, fleet_id: str) -> list[Device]:
    """List the devices of a fleet."""
    stmt = select(Device).where(Device.fleet_id == fleet_id).order_by(Device.name)
    return list(session.execute(stmt).scalars().all())


__all__ = [
    "FleetExistsError",
    "FleetNotFoundError",
    "add_device",
    "create_fleet",
    "get_fleet",
    "list_devices",
    "list_fleets",
]
