"""Build service module.

This module provides the session-level build API:
- create_build(): validate a build request and record it as queued
- queue_installer(): gate and queue the installer sub-build
- get_build() / list_builds(): queries
- fail_running_builds() / fail_running_installers(): crash recovery

Execution itself lives in the orchestrator; these functions only touch
the database.
"""

from __future__ import annotations

import logging
import re

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from fleet_imagegen.builds.models import Build, BuildInstallerLogChunk
from fleet_imagegen.fleets.service import get_fleet
from fleet_imagegen.profiles.service import (
    get_latest_revision,
    get_profile,
)
from fleet_imagegen.types import BuildStatus, InstallerStatus

logger = logging.getLogger(__name__)

SEMVER_PATTERN = re.compile(
    r"^v(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?"
    r"(?:\+[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?$"
)


class BuildNotFoundError(Exception):
    """Raised when a build is not found."""

    def __init__(self, build_id: str, code: str = "build_not_found") -> None:
        super().__init__(f"Build not found: {build_id}")
        self.build_id = build_id
        self.code = code


class BuildServiceError(Exception):
    """Base error for build request validation."""

    def __init__(self, message: str, code: str = "build_service_error") -> None:
        super().__init__(message)
        self.code = code


class BuildValidationError(BuildServiceError):
    """Raised when a build request has missing or malformed fields."""

    def __init__(self, message: str, code: str = "invalid_build_request") -> None:
        super().__init__(message, code=code)


class BuildVersionExistsError(BuildServiceError):
    """Raised when the version was already built for this revision and fleet."""

    def __init__(self, version: str) -> None:
        super().__init__(
            f"Build version already exists for this profile revision and fleet: "
            f"{version}",
            code="build_version_exists",
        )
        self.version = version


class ProfileNotAssignedToFleetError(BuildServiceError):
    """Raised when a profile is built for a fleet it is not attached to."""

    def __init__(self, profile_id: str, fleet_id: str) -> None:
        super().__init__(
            f"Profile {profile_id} is not assigned to fleet {fleet_id}",
            code="profile_not_assigned_to_fleet",
        )


class BuildNotReadyForInstallerError(BuildServiceError):
    """Raised when an installer is requested for a build that did not succeed."""

    def __init__(self, build_id: str) -> None:
        super().__init__(
            f"Build {build_id} must succeed before an installer can be generated",
            code="build_not_ready_for_installer",
        )


class InstallerAlreadyQueuedError(BuildServiceError):
    """Raised when an installer is already queued or running for a build."""

    def __init__(self, build_id: str) -> None:
        super().__init__(
            f"Installer for build {build_id} is already queued or running",
            code="installer_already_queued",
        )


def is_valid_version(version: str) -> bool:
    """Check a version label against the v<major>.<minor>.<patch> pattern."""
    return SEMVER_PATTERN.fullmatch(version) is not None


def create_build(
    session: Session,
    profile_id: str,
    fleet_id: str,
    version: str,
) -> Build:
    """Record a new build request in the queued state.

    The build is pinned to the newest revision of the profile.

    Args:
        session: Database session.
        profile_id: Profile ID.
        fleet_id: Target fleet ID.
        version: Version label, e.g. 'v1.2.0'.

    Returns:
        Created Build.

    Raises:
        BuildValidationError: If a field is missing or the version is malformed.
        ProfileNotFoundError: If the profile does not exist.
        FleetNotFoundError: If the fleet does not exist.
        ProfileNotAssignedToFleetError: If the profile is not on the fleet.
        BuildVersionExistsError: If a non-failed build has the same version.
    """
    profile_id = profile_id.strip()
    fleet_id = fleet_id.strip()
    version = version.strip()

    if not profile_id:
        raise BuildValidationError("profile is required")
    if not fleet_id:
        raise BuildValidationError("fleet is required")
    if not version:
        raise BuildValidationError("version is required")
    if not is_valid_version(version):
        raise BuildValidationError(
            f"version must look like v1.2.3: {version}", code="invalid_version"
        )

    profile = get_profile(session, profile_id)
    fleet = get_fleet(session, fleet_id)
    if fleet not in profile.fleets:
        raise ProfileNotAssignedToFleetError(profile_id, fleet_id)

    revision = get_latest_revision(session, profile_id)

    duplicate = session.execute(
        select(Build.id).where(
            Build.profile_revision_id == revision.id,
            Build.fleet_id == fleet.id,
            Build.version == version,
            Build.status != BuildStatus.FAILED.value,
        )
    ).first()
    if duplicate is not None:
        raise BuildVersionExistsError(version)

    build = Build(
        profile_revision_id=revision.id,
        fleet_id=fleet.id,
        version=version,
        status=BuildStatus.QUEUED.value,
    )
    session.add(build)
    session.flush()
    logger.info(
        "Queued build %s (profile=%s revision=%d fleet=%s version=%s)",
        build.id,
        profile.id,
        revision.revision,
        fleet.id,
        version,
    )
    return build


def get_build(session: Session, build_id: str) -> Build:
    """Get a build by ID.

    Raises:
        BuildNotFoundError: If build not found.
    """
    build = session.get(Build, build_id)
    if build is None:
        raise BuildNotFoundError(build_id)
    return build


def list_builds(
    session: Session,
    fleet_id: str | None = None,
    status: BuildStatus | None = None,
    limit: int = 100,
) -> list[Build]:
    """List builds, newest first, with optional filters.

    Args:
        session: Database session.
        fleet_id: Filter by fleet.
        status: Filter by status.
        limit: Maximum results to return.

    Returns:
        List of Build instances.
    """
    stmt = select(Build)
    if fleet_id is not None:
        stmt = stmt.where(Build.fleet_id == fleet_id)
    if status is not None:
        stmt = stmt.where(Build.status == status.value)
    stmt = stmt.order_by(Build.created_at.desc(), Build.id).limit(limit)
    return list(session.execute(stmt).scalars().all())


def queue_installer(session: Session, build_id: str) -> Build:
    """Queue the installer sub-build of a succeeded build.

    Previous installer log output is discarded.

    Args:
        session: Database session.
        build_id: Build ID.

    Returns:
        Updated Build.

    Raises:
        BuildNotFoundError: If build not found.
        BuildNotReadyForInstallerError: If the build has not succeeded.
        InstallerAlreadyQueuedError: If an installer is queued or running.
    """
    build = get_build(session, build_id)
    if build.status != BuildStatus.SUCCEEDED.value:
        raise BuildNotReadyForInstallerError(build_id)
    if build.installer_status in (
        InstallerStatus.QUEUED.value,
        InstallerStatus.RUNNING.value,
    ):
        raise InstallerAlreadyQueuedError(build_id)

    session.execute(
        delete(BuildInstallerLogChunk).where(
            BuildInstallerLogChunk.build_id == build_id
        )
    )
    build.apply_installer_status(InstallerStatus.QUEUED)
    session.flush()
    return build


def fail_running_builds(session: Session) -> int:
    """Force every running build to failed.

    Returns:
        Number of builds changed.
    """
    builds = session.execute(
        select(Build).where(Build.status == BuildStatus.RUNNING.value)
    ).scalars().all()
    for build in builds:
        build.apply_status(BuildStatus.FAILED)
    session.flush()
    return len(builds)


def fail_running_installers(session: Session) -> int:
    """Force every running installer sub-build to failed.

    Returns:
        Number of builds changed.
    """
    builds = session.execute(
        select(Build).where(Build.installer_status == InstallerStatus.RUNNING.value)
    ).scalars().all()
    for build in builds:
        build.apply_installer_status(InstallerStatus.FAILED)
    session.flush()
    return len(builds)


__all__ = [
    "SEMVER_PATTERN",
    "BuildNotFoundError",
    "BuildNotReadyForInstallerError",
    "BuildServiceError",
    "BuildValidationError",
    "BuildVersionExistsError",
    "InstallerAlreadyQueuedError",
    "ProfileNotAssignedToFleetError",
    "create_build",
    "fail_running_builds",
    "fail_running_installers",
    "get_build",
    "is_valid_version",
    "list_builds",
    "queue_installer",
]
