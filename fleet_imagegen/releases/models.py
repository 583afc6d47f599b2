"""Release and rollout ORM models."""

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fleet_imagegen.db import Base, new_id
from fleet_imagegen.types import ReleaseStatus, RolloutStatus, RolloutStrategy

if TYPE_CHECKING:
    from fleet_imagegen.builds.models import Build
    from fleet_imagegen.fleets.models import Fleet


class Release(Base):
    """ORM model for a published version of a succeeded build.

    Attributes:
        id: Opaque UUID primary key.
        build_id: Foreign key to the released Build.
        version: Unique semantic version label.
        channel: Distribution channel (defaults to 'stable').
        notes: Free-form release notes.
        status: active or withdrawn.
        created_at: Timestamp of creation.
    """

    __tablename__ = "releases"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    build_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("builds.id"), nullable=False, index=True
    )
    version: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    channel: Mapped[str] = mapped_column(String(50), nullable=False, default="stable")
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ReleaseStatus.ACTIVE.value
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )

    build: Mapped["Build"] = relationship("Build")
    rollouts: Mapped[list["Rollout"]] = relationship(
        "Rollout", back_populates="release", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        """Return string representation of Release."""
        return (
            f"<Release(id='{self.id}', version='{self.version}', "
            f"status='{self.status}')>"
        )


class Rollout(Base):
    """ORM model for making a release the active target of a fleet.

    Attributes:
        id: Opaque UUID primary key.
        release_id: Foreign key to Release.
        fleet_id: Foreign key to Fleet.
        strategy: all-at-once.
        stage_percent: Share of devices targeted.
        status: planned, in_progress, completed or failed.
        created_at: Timestamp of creation.
        updated_at: Timestamp of the last status change.
    """

    __tablename__ = "rollouts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    release_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("releases.id"), nullable=False, index=True
    )
    fleet_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("fleets.id"), nullable=False, index=True
    )
    strategy: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RolloutStrategy.ALL_AT_ONCE.value
    )
    stage_percent: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RolloutStatus.PLANNED.value
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    release: Mapped["Release"] = relationship("Release", back_populates="rollouts")
    fleet: Mapped["Fleet"] = relationship("Fleet")

    def __repr__(self) -> str:
        """Return string representation of Rollout."""
        return (
            f"<Rollout(id='{self.id}', release_id='{self.release_id}', "
            f"fleet_id='{self.fleet_id}', status='{self.status}')>"
        )


__all__ = ["Release", "Rollout"]
