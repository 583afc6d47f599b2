"""Profile service for CRUD and query operations.

Profiles are attached to one or more fleets and carry an append-only list
of configuration revisions. Configuration documents are validated with the
schema models and the kernel validator before they are stored.
"""

import hashlib
import json
from collections.abc import Sequence
from typing import Any

from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from fleet_imagegen.builds.overrides import build_package_expressions
from fleet_imagegen.fleets.service import get_fleet
from fleet_imagegen.profiles.kernel import validate_kernel_config
from fleet_imagegen.profiles.models import Profile, ProfileRevision
from fleet_imagegen.profiles.schema import ProfileConfigSchema


class ProfileNotFoundError(Exception):
    """Raised when a profile is not found."""

    def __init__(self, profile_id: str, code: str = "profile_not_found") -> None:
        super().__init__(f"Profile not found: {profile_id}")
        self.profile_id = profile_id
        self.code = code


class ProfileExistsError(Exception):
    """Raised when attempting to create a profile that already exists."""

    def __init__(self, name: str, code: str = "profile_exists") -> None:
        super().__init__(f"Profile already exists: {name}")
        self.name = name
        self.code = code


class InvalidProfileConfigError(Exception):
    """Raised when a profile configuration document is malformed."""

    def __init__(self, message: str, code: str = "invalid_profile_config") -> None:
        super().__init__(message)
        self.code = code


def parse_profile_config(config: dict[str, Any] | None) -> ProfileConfigSchema:
    """Parse a stored configuration document.

    Args:
        config: Raw JSON document; None is treated as empty.

    Returns:
        Parsed configuration with a normalized package list.

    Raises:
        InvalidProfileConfigError: If the document has the wrong shape.
    """
    try:
        return ProfileConfigSchema.model_validate(config or {})
    except ValidationError as e:
        raise InvalidProfileConfigError(
            f"profile config is invalid: {e.error_count()} error(s)"
        ) from e


def compute_config_hash(config: dict[str, Any]) -> str:
    """Compute the SHA-256 of a configuration in canonical JSON form."""
    canonical = json.dumps(config, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def create_profile(
    session: Session,
    name: str,
    fleet_ids: Sequence[str],
    config: dict[str, Any] | None = None,
    description: str = "",
    allowed_kernel_attrs: Sequence[str] | None = None,
) -> Profile:
    """Create a profile with its first revision.

    Args:
        session: Database session.
        name: Unique profile name.
        fleet_ids: Fleets the profile is assigned to.
        config: Initial configuration document.
        description: Optional description.
        allowed_kernel_attrs: Optional allow-list of kernel attributes.

    Returns:
        Created Profile.

    Raises:
        ValueError: If the name is empty.
        ProfileExistsError: If the name is taken.
        FleetNotFoundError: If a fleet does not exist.
        InvalidProfileConfigError: If the configuration is malformed.
        KernelConfigError: If the kernel selection is invalid.
        PackageExpressionError: If a package name cannot be rendered.
    """
    name = name.strip()
    if not name:
        raise ValueError("profile name is required")

    existing = session.execute(
        select(Profile).where(Profile.name == name)
    ).scalar_one_or_none()
    if existing is not None:
        raise ProfileExistsError(name)

    fleets = [get_fleet(session, fleet_id) for fleet_id in dict.fromkeys(fleet_ids)]

    profile = Profile(name=name, description=description.strip(), fleets=fleets)
    session.add(profile)
    session.flush()

    add_revision(session, profile.id, config or {}, allowed_kernel_attrs)
    return profile


def add_revision(
    session: Session,
    profile_id: str,
    config: dict[str, Any],
    allowed_kernel_attrs: Sequence[str] | None = None,
) -> ProfileRevision:
    """Append a configuration revision to a profile.

    Args:
        session: Database session.
        profile_id: Profile ID.
        config: Full configuration document.
        allowed_kernel_attrs: Optional allow-list of kernel attributes.

    Returns:
        Created ProfileRevision.

    Raises:
        ProfileNotFoundError: If profile not found.
        InvalidProfileConfigError: If the configuration is malformed.
        KernelConfigError: If the kernel selection is invalid.
        PackageExpressionError: If a package name cannot be rendered.
    """
    profile = get_profile(session, profile_id)
    parsed = parse_profile_config(config)
    kernel = validate_kernel_config(parsed.kernel, allowed_kernel_attrs)
    build_package_expressions(parsed.packages)

    document = parsed.model_dump()
    document["kernel"] = kernel.model_dump()

    current = session.execute(
        select(func.max(ProfileRevision.revision)).where(
            ProfileRevision.profile_id == profile.id
        )
    ).scalar()
    revision = ProfileRevision(
        profile_id=profile.id,
        revision=(current or 0) + 1,
        config=document,
        config_hash=compute_config_hash(document),
    )
    session.add(revision)
    session.flush()
    return revision


def get_profile(session: Session, profile_id: str) -> Profile:
    """Get a profile by ID.

    Raises:
        ProfileNotFoundError: If profile not found.
    """
    profile = session.get(Profile, profile_id)
    if profile is None:
        raise ProfileNotFoundError(profile_id)
    return profile


def get_latest_revision(session: Session, profile_id: str) -> ProfileRevision:
    """Get the newest revision of a profile.

    Raises:
        ProfileNotFoundError: If the profile does not exist or has no revisions.
    """
    stmt = (
        select(ProfileRevision)
        .where(ProfileRevision.profile_id == profile_id)
        .order_by(ProfileRevision.revision.desc())
        .limit(1)
    )
    revision = session.execute(stmt).scalar_one_or_none()
    if revision is None:
        raise ProfileNotFoundError(profile_id)
    return revision


def list_profiles(session: Session) -> list[Profile]:
    """List all profiles ordered by name."""
    return list(
        session.execute(select(Profile).order_by(Profile.name)).scalars().all()
    )


def is_profile_assigned_to_fleet(
    session: Session, profile_id: str, fleet_id: str
) -> bool:
    """Check whether a profile is attached to a fleet."""
    profile = get_profile(session, profile_id)
    return any(fleet.id == fleet_id for fleet in profile.fleets)


__all__ = [
    "InvalidProfileConfigError",
    "ProfileExistsError",
    "ProfileNotFoundError",
    "add_revision",
    "compute_config_hash",
    "create_profile",
    "get_latest_revision",
    "get_profile",
    "is_profile_assigned_to_fleet",
    "list_profiles",
    "parse_profile_config",
]
