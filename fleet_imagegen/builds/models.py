"""Build ORM models.

This module defines the Build model and the two append-only log chunk
tables (primary build and installer sub-build). A build's status and
artifact fields are written only by the orchestrator while it runs.
"""

from datetime import datetime, timezone
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fleet_imagegen.db import Base, new_id
from fleet_imagegen.types import BuildStatus, InstallerStatus

if TYPE_CHECKING:
    from fleet_imagegen.fleets.models import Fleet
    from fleet_imagegen.profiles.models import ProfileRevision


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Build(Base):
    """ORM model for one attempt to build an image for one fleet.

    Attributes:
        id: Opaque UUID primary key.
        profile_revision_id: Foreign key to the profile revision built.
        fleet_id: Foreign key to the target fleet.
        version: Semantic version label (e.g. 'v1.2.0').
        status: queued, running, succeeded or failed.
        artifact_url: Primary artifact URL; non-empty only when succeeded.
        installer_status: Installer sub-build status.
        installer_artifact_url: Installer artifact URL.
        created_at: Timestamp of creation.
        started_at: Timestamp of the first transition to running.
        finished_at: Timestamp of the terminal transition.
        installer_started_at: Installer start timestamp.
        installer_finished_at: Installer terminal timestamp.
    """

    __tablename__ = "builds"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    profile_revision_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("profile_revisions.id"), nullable=False, index=True
    )
    fleet_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("fleets.id"), nullable=False, index=True
    )
    version: Mapped[str] = mapped_column(String(100), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BuildStatus.QUEUED.value, index=True
    )
    artifact_url: Mapped[str] = mapped_column(Text, nullable=False, default="")
    installer_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=InstallerStatus.NOT_REQUESTED.value
    )
    installer_artifact_url: Mapped[str] = mapped_column(
        Text, nullable=False, default=""
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    installer_started_at: Mapped[datetime | None] = mapped_column(
        DateTime, nullable=True
    )
    installer_finished_at: Mapped[datetime | None] = mapped_column(
        DateTime, nullable=True
    )

    profile_revision: Mapped["ProfileRevision"] = relationship(
        "ProfileRevision", back_populates="builds"
    )
    fleet: Mapped["Fleet"] = relationship("Fleet")
    log_chunks: Mapped[list["BuildLogChunk"]] = relationship(
        "BuildLogChunk",
        back_populates="build",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    installer_log_chunks: Mapped[list["BuildInstallerLogChunk"]] = relationship(
        "BuildInstallerLogChunk",
        back_populates="build",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index(
            "ix_builds_revision_fleet_version",
            "profile_revision_id",
            "fleet_id",
            "version",
        ),
    )

    def __repr__(self) -> str:
        """Return string representation of Build."""
        return (
            f"<Build(id='{self.id}', version='{self.version}', "
            f"status='{self.status}', installer='{self.installer_status}')>"
        )

    def apply_status(self, status: BuildStatus, artifact_url: str = "") -> None:
        """Transition the primary build status.

        The artifact URL is kept only for the succeeded state.

        Args:
            status: New status.
            artifact_url: Canonical artifact URL (required when succeeded).

        Raises:
            ValueError: If succeeded is requested without an artifact URL.
        """
        if status == BuildStatus.SUCCEEDED and not artifact_url:
            raise ValueError("succeeded builds require an artifact URL")

        self.status = status.value
        self.artifact_url = artifact_url if status == BuildStatus.SUCCEEDED else ""
        if status == BuildStatus.RUNNING and self.started_at is None:
            self.started_at = _utcnow()
        if status.is_terminal:
            self.finished_at = _utcnow()

    def apply_installer_status(
        self, status: InstallerStatus, artifact_url: str = ""
    ) -> None:
        """Transition the installer sub-build status.

        Args:
            status: New installer status.
            artifact_url: Installer artifact URL (required when succeeded).

        Raises:
            ValueError: If succeeded is requested without an artifact URL.
        """
        if status == InstallerStatus.SUCCEEDED and not artifact_url:
            raise ValueError("succeeded installers require an artifact URL")

        self.installer_status = status.value
        self.installer_artifact_url = (
            artifact_url if status == InstallerStatus.SUCCEEDED else ""
        )
        if status == InstallerStatus.QUEUED:
            self.installer_started_at = None
            self.installer_finished_at = None
        if status == InstallerStatus.RUNNING and self.installer_started_at is None:
            self.installer_started_at = _utcnow()
        if status.is_terminal:
            self.installer_finished_at = _utcnow()


class BuildLogChunk(Base):
    """ORM model for a fragment of primary build output.

    Attributes:
        id: Monotonically increasing sequence number.
        build_id: Foreign key to Build.
        content: Text of the fragment.
        created_at: Timestamp of the append.
    """

    __tablename__ = "build_log_chunks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    build_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("builds.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )

    build: Mapped["Build"] = relationship("Build", back_populates="log_chunks")


class BuildInstallerLogChunk(Base):
    """ORM model for a fragment of installer sub-build output."""

    __tablename__ = "build_installer_log_chunks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    build_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("builds.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )

    build: Mapped["Build"] = relationship(
        "Build", back_populates="installer_log_chunks"
    )


__all__ = ["Build", "BuildInstallerLogChunk", "BuildLogChunk"]
