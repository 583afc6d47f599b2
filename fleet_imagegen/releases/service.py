"""Release and rollout service module.

This module provides:
- create_release(): publish a succeeded build under a version label
- withdraw_release(): take a release down, clearing the fleet's live
  artifacts when it is the one currently served
- deploy_release(): record a rollout and make a release live for its fleet
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.orm import Session

from fleet_imagegen.builds.service import get_build, is_valid_version
from fleet_imagegen.fleets.models import Device
from fleet_imagegen.fleets.service import get_fleet
from fleet_imagegen.releases.activation import (
    FleetActivationError,
    activate_fleet_artifacts,
    deactivate_fleet_artifacts,
)
from fleet_imagegen.releases.models import Release, Rollout
from fleet_imagegen.types import (
    BuildStatus,
    ReleaseStatus,
    RolloutStatus,
    RolloutStrategy,
)

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL = "stable"


class ReleaseNotFoundError(Exception):
    """Raised when a release is not found."""

    def __init__(self, release_id: str, code: str = "release_not_found") -> None:
        super().__init__(f"Release not found: {release_id}")
        self.release_id = release_id
        self.code = code


class ReleaseValidationError(Exception):
    """Raised when a release request is malformed."""

    def __init__(self, message: str, code: str = "invalid_release_request") -> None:
        super().__init__(message)
        self.code = code


class ReleaseExistsError(Exception):
    """Raised when a release version is already taken."""

    def __init__(self, version: str, code: str = "release_exists") -> None:
        super().__init__(f"Release version already exists: {version}")
        self.version = version
        self.code = code


class ReleaseWithdrawnError(Exception):
    """Raised when a withdrawn release is deployed."""

    def __init__(self, release_id: str, code: str = "release_withdrawn") -> None:
        super().__init__(f"Release {release_id} has been withdrawn")
        self.release_id = release_id
        self.code = code


class RolloutFleetReleaseMismatchError(Exception):
    """Raised when a release is deployed to a fleet it was not built for."""

    def __init__(
        self, release_id: str, fleet_id: str, code: str = "fleet_release_mismatch"
    ) -> None:
        super().__init__(f"Release {release_id} does not belong to fleet {fleet_id}")
        self.release_id = release_id
        self.fleet_id = fleet_id
        self.code = code


@dataclass
class DeployResult:
    """Outcome of a deployment.

    Attributes:
        success: Whether the release is now live for the fleet.
        rollout: The recorded rollout (completed or failed).
        error_message: Failure description when not successful.
        error_code: Stable failure code when not successful.
    """

    success: bool
    rollout: Rollout
    error_message: str | None = None
    error_code: str | None = None


def create_release(
    session: Session,
    build_id: str,
    version: str,
    channel: str = DEFAULT_CHANNEL,
    notes: str = "",
) -> Release:
    """Publish a succeeded build as a release.

    Args:
        session: Database session.
        build_id: Build to release.
        version: Version label, e.g. 'v1.2.0'.
        channel: Distribution channel (lower-cased; 'stable' when blank).
        notes: Release notes.

    Returns:
        Created Release.

    Raises:
        ReleaseValidationError: If a field is missing, the version is
            malformed, or the build has not succeeded.
        BuildNotFoundError: If the build does not exist.
        ReleaseExistsError: If the version is already released.
    """
    build_id = build_id.strip()
    version = version.strip()
    channel = channel.strip().lower() or DEFAULT_CHANNEL

    if not build_id:
        raise ReleaseValidationError("build is required")
    if not version:
        raise ReleaseValidationError("version is required")
    if not is_valid_version(version):
        raise ReleaseValidationError(
            f"version must look like v1.2.3: {version}", code="invalid_version"
        )

    build = get_build(session, build_id)
    if build.status != BuildStatus.SUCCEEDED.value:
        raise ReleaseValidationError(
            f"build {build_id} has not succeeded", code="build_not_succeeded"
        )

    existing = session.execute(
        select(Release.id).where(Release.version == version)
    ).first()
    if existing is not None:
        raise ReleaseExistsError(version)

    release = Release(
        build_id=build.id,
        version=version,
        channel=channel,
        notes=notes.strip(),
        status=ReleaseStatus.ACTIVE.value,
    )
    session.add(release)
    session.flush()
    logger.info("Created release %s (%s) from build %s", release.id, version, build.id)
    return release


def get_release(session: Session, release_id: str) -> Release:
    """Get a release by ID.

    Raises:
        ReleaseNotFoundError: If release not found.
    """
    release = session.get(Release, release_id)
    if release is None:
        raise ReleaseNotFoundError(release_id)
    return release


def list_releases(
    session: Session,
    status: ReleaseStatus | None = None,
    channel: str | None = None,
) -> list[Release]:
    """List releases, newest first."""
    stmt = select(Release)
    if status is not None:
        stmt = stmt.where(Release.status == status.value)
    if channel is not None:
        stmt = stmt.where(Release.channel == channel.strip().lower())
    stmt = stmt.order_by(Release.created_at.desc(), Release.version.desc())
    return list(session.execute(stmt).scalars().all())


def get_live_release_id(session: Session, fleet_id: str) -> str | None:
    """Return the release of the most recently completed rollout of a fleet."""
    return session.execute(
        select(Rollout.release_id)
        .where(
            Rollout.fleet_id == fleet_id,
            Rollout.status == RolloutStatus.COMPLETED.value,
        )
        .order_by(Rollout.updated_at.desc(), Rollout.created_at.desc())
        .limit(1)
    ).scalar_one_or_none()


def is_release_live(session: Session, release: Release) -> bool:
    """Check whether a release is the one currently served to its fleet."""
    return get_live_release_id(session, release.build.fleet_id) == release.id


def withdraw_release(session: Session, release_id: str, updates_dir: Path) -> Release:
    """Withdraw a release.

    When the release is live for its fleet, the fleet's live artifact
    directory is removed first; otherwise only the status changes.

    Args:
        session: Database session.
        release_id: Release ID.
        updates_dir: Updates root.

    Returns:
        Updated Release.

    Raises:
        ReleaseNotFoundError: If release not found.
        FleetActivationError: If the live artifacts cannot be removed.
    """
    release = get_release(session, release_id)
    if is_release_live(session, release):
        fleet_id = release.build.fleet_id
        logger.info(
            "Release %s is live for fleet %s; removing live artifacts",
            release.id,
            fleet_id,
        )
        deactivate_fleet_artifacts(updates_dir, fleet_id)

    release.status = ReleaseStatus.WITHDRAWN.value
    session.flush()
    logger.info("Withdrew release %s (%s)", release.id, release.version)
    return release


def _set_rollout_status(rollout: Rollout, status: RolloutStatus) -> None:
    rollout.status = status.value
    rollout.updated_at = datetime.now(timezone.utc).replace(tzinfo=None)


def deploy_release(
    session: Session, fleet_id: str, release_id: str, updates_dir: Path
) -> DeployResult:
    """Make a release the live update target of its fleet.

    An in-progress all-at-once rollout is recorded first. On an activation
    failure the rollout is marked failed and returned unsuccessfully, so
    the caller can persist the failure.

    Args:
        session: Database session.
        fleet_id: Target fleet ID.
        release_id: Release ID.
        updates_dir: Updates root.

    Returns:
        DeployResult with the recorded rollout.

    Raises:
        FleetNotFoundError: If the fleet does not exist.
        ReleaseNotFoundError: If the release does not exist.
        RolloutFleetReleaseMismatchError: If the release was built for
            another fleet.
        ReleaseWithdrawnError: If the release has been withdrawn.
    """
    fleet = get_fleet(session, fleet_id.strip())
    release = get_release(session, release_id.strip())
    if release.build.fleet_id != fleet.id:
        raise RolloutFleetReleaseMismatchError(release.id, fleet.id)
    if release.status == ReleaseStatus.WITHDRAWN.value:
        raise ReleaseWithdrawnError(release.id)

    rollout = Rollout(
        release_id=release.id,
        fleet_id=fleet.id,
        strategy=RolloutStrategy.ALL_AT_ONCE.value,
        stage_percent=100,
    )
    _set_rollout_status(rollout, RolloutStatus.IN_PROGRESS)
    session.add(rollout)
    session.flush()

    try:
        activate_fleet_artifacts(updates_dir, fleet.id, release.build_id)
    except FleetActivationError as e:
        logger.error(
            "Failed to activate release %s (build %s) for fleet %s: %s",
            release.id,
            release.build_id,
            fleet.id,
            e,
        )
        _set_rollout_status(rollout, RolloutStatus.FAILED)
        session.flush()
        return DeployResult(
            success=False,
            rollout=rollout,
            error_message=str(e),
            error_code=e.code,
        )

    devices = session.execute(
        select(Device).where(Device.fleet_id == fleet.id)
    ).scalars().all()
    for device in devices:
        device.desired_release_id = release.id

    _set_rollout_status(rollout, RolloutStatus.COMPLETED)
    session.flush()
    logger.info(
        "Rolled out release %s to fleet %s (%d devices)",
        release.version,
        fleet.id,
        len(devices),
    )
    return DeployResult(success=True, rollout=rollout)


def list_rollouts(session: Session, fleet_id: str | None = None) -> list[Rollout]:
    """List rollouts, newest first."""
    stmt = select(Rollout)
    if fleet_id is not None:
        stmt = stmt.where(Rollout.fleet_id == fleet_id)
    stmt = stmt.order_by(Rollout.created_at.desc(), Rollout.updated_at.desc())
    return list(session.execute(stmt).scalars().all())


__all__ = [
    "DEFAULT_CHANNEL",
    "DeployResult",
    "ReleaseExistsError",
    "ReleaseNotFoundError",
    "ReleaseValidationError",
    "ReleaseWithdrawnError",
    "RolloutFleetReleaseMismatchError",
    "create_release",
    "deploy_release",
    "get_live_release_id",
    "get_release",
    "is_release_live",
    "list_releases",
    "list_rollouts",
    "withdraw_release",
]
