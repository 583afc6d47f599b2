"""Profile ORM models.

This module defines Profile and ProfileRevision. A profile's content is
versioned: every edit appends a new revision with the full configuration
document, and builds always reference the revision they were built from.
"""

from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fleet_imagegen.db import Base, new_id

if TYPE_CHECKING:
    from fleet_imagegen.builds.models import Build
    from fleet_imagegen.fleets.models import Fleet


profile_fleets = Table(
    "profile_fleets",
    Base.metadata,
    Column(
        "profile_id",
        String(36),
        ForeignKey("profiles.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "fleet_id",
        String(36),
        ForeignKey("fleets.id", ondelete="CASCADE"),
        primary_key=True,
    ),
)


class Profile(Base):
    """ORM model for device profiles.

    Attributes:
        id: Opaque UUID primary key.
        name: Unique human-readable name.
        description: Optional longer description.
        created_at: Timestamp of creation.
    """

    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )

    revisions: Mapped[list["ProfileRevision"]] = relationship(
        "ProfileRevision",
        back_populates="profile",
        cascade="all, delete-orphan",
        order_by="ProfileRevision.revision",
    )
    fleets: Mapped[list["Fleet"]] = relationship(
        "Fleet", secondary=profile_fleets, back_populates="profiles"
    )

    def __repr__(self) -> str:
        """Return string representation of Profile."""
        return f"<Profile(id='{self.id}', name='{self.name}')>"


class ProfileRevision(Base):
    """ORM model for an immutable profile configuration snapshot.

    Attributes:
        id: Opaque UUID primary key.
        profile_id: Foreign key to Profile.
        revision: Revision number, starting at 1 per profile.
        config: JSON configuration document (packages, kernel, overlays).
        config_hash: SHA-256 of the canonical JSON configuration.
        created_at: Timestamp of creation.
    """

    __tablename__ = "profile_revisions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    profile_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("profiles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    revision: Mapped[int] = mapped_column(Integer, nullable=False)
    config: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    config_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )

    profile: Mapped["Profile"] = relationship("Profile", back_populates="revisions")
    builds: Mapped[list["Build"]] = relationship(
        "Build", back_populates="profile_revision"
    )

    __table_args__ = (
        UniqueConstraint("profile_id", "revision", name="uq_profile_revision"),
    )

    def __repr__(self) -> str:
        """Return string representation of ProfileRevision."""
        return (
            f"<ProfileRevision(profile_id='{self.profile_id}', "
            f"revision={self.revision}, hash='{self.config_hash[:12]}')>"
        )


__all__ = ["Profile", "ProfileRevision", "profile_fleets"]
