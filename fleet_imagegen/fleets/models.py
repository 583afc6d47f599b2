"""Fleet ORM models.

This module defines the Fleet and Device models. A fleet is a named group
of devices sharing one update target; its ID is embedded into the update
URLs baked into every image built for it.
"""

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, ForeignKey, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fleet_imagegen.db import Base, new_id
from fleet_imagegen.types import DeviceState

if TYPE_CHECKING:
    from fleet_imagegen.profiles.models import Profile


class Fleet(Base):
    """ORM model for device fleets.

    Attributes:
        id: Opaque UUID primary key, used in update URLs.
        name: Unique human-readable name.
        description: Optional longer description.
        created_at: Timestamp of creation.
    """

    __tablename__ = "fleets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )

    devices: Mapped[list["Device"]] = relationship(
        "Device", back_populates="fleet", cascade="all, delete-orphan"
    )
    profiles: Mapped[list["Profile"]] = relationship(
        "Profile", secondary="profile_fleets", back_populates="fleets"
    )

    def __repr__(self) -> str:
        """Return string representation of Fleet."""
        return f"<Fleet(id='{self.id}', name='{self.name}')>"


class Device(Base):
    """ORM model for a device belonging to a fleet.

    Attributes:
        id: Opaque UUID primary key.
        fleet_id: Foreign key to Fleet.
        name: Device name.
        state: Last reported update state.
        desired_release_id: Release the device should converge to.
        last_seen_at: Timestamp of the last device check-in.
    """

    __tablename__ = "devices"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    fleet_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("fleets.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    state: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DeviceState.IDLE.value
    )
    desired_release_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("releases.id"), nullable=True
    )
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    fleet: Mapped["Fleet"] = relationship("Fleet", back_populates="devices")

    def __repr__(self) -> str:
        """Return string representation of Device."""
        return (
            f"<Device(id='{self.id}', fleet_id='{self.fleet_id}', "
            f"state='{self.state}')>"
        )


__all__ = ["Device", "Fleet"]
