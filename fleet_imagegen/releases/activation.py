"""Live artifact set management for fleets.

Devices of a fleet poll ``<updates>/<fleet-id>/`` for updates. Activating a
build stages its artifacts into a temporary sibling directory and renames
it into place, so pollers never see a partially written directory.
Activations for the same fleet are serialized within this process.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import stat
import tempfile
import threading
from collections import defaultdict
from pathlib import Path

from fleet_imagegen.builds.artifacts import (
    build_artifacts_dir,
    collect_update_artifacts,
    copy_file,
)

logger = logging.getLogger(__name__)

SAFE_PATH_SEGMENT_PATTERN = re.compile(r"^[A-Za-z0-9-]+$")

_fleet_locks: defaultdict[str, threading.Lock] = defaultdict(threading.Lock)
_fleet_locks_guard = threading.Lock()


class FleetActivationError(Exception):
    """Raised when a fleet's live artifacts cannot be replaced."""

    def __init__(self, message: str, code: str = "activation_failed") -> None:
        super().__init__(message)
        self.code = code


def is_safe_path_segment(value: str) -> bool:
    """Check that an identifier is safe to use as one path segment.

    Args:
        value: Identifier from a persisted record.

    Returns:
        True if it contains only letters, digits and hyphens.
    """
    trimmed = value.strip()
    if not trimmed:
        return False
    if "/" in trimmed or "\\" in trimmed or ".." in trimmed:
        return False
    return SAFE_PATH_SEGMENT_PATTERN.fullmatch(trimmed) is not None


def fleet_live_dir(updates_dir: Path, fleet_id: str) -> Path:
    """Return the live artifact directory of a fleet.

    Raises:
        FleetActivationError: If the fleet ID is not a safe path segment.
    """
    if not is_safe_path_segment(fleet_id):
        raise FleetActivationError(
            "invalid fleet identifier", code="invalid_identifier"
        )
    return updates_dir / fleet_id.strip()


def _fleet_lock(fleet_id: str) -> threading.Lock:
    with _fleet_locks_guard:
        return _fleet_locks[fleet_id]


def activate_fleet_artifacts(
    updates_dir: Path, fleet_id: str, build_id: str
) -> Path:
    """Make a build's published artifacts the live set of a fleet.

    Args:
        updates_dir: Updates root.
        fleet_id: Fleet ID.
        build_id: Succeeded build ID.

    Returns:
        The fleet's live directory.

    Raises:
        FleetActivationError: On invalid identifiers, missing artifacts, or
            filesystem errors. The previous live set is restored on failure.
    """
    target = fleet_live_dir(updates_dir, fleet_id)
    if not is_safe_path_segment(build_id):
        raise FleetActivationError(
            "invalid build identifier", code="invalid_identifier"
        )

    source = build_artifacts_dir(updates_dir, build_id.strip())
    try:
        artifacts = collect_update_artifacts(source)
    except FileNotFoundError as e:
        raise FleetActivationError(
            "build artifacts not found", code="artifacts_not_found"
        ) from e
    except OSError as e:
        raise FleetActivationError(f"failed to read build artifacts: {e}") from e
    if not artifacts:
        raise FleetActivationError(
            "build artifacts directory contains no update artifacts",
            code="artifacts_not_found",
        )

    with _fleet_lock(target.name):
        try:
            staging = Path(
                tempfile.mkdtemp(prefix=f".fleet-{target.name}-", dir=updates_dir)
            )
        except OSError as e:
            raise FleetActivationError(
                f"failed to create temporary fleet artifacts directory: {e}"
            ) from e

        displaced: Path | None = None
        try:
            for artifact in artifacts:
                mode = stat.S_IMODE(artifact.path.stat().st_mode)
                copy_file(artifact.path, staging / artifact.name, mode)
            # mkdtemp creates the directory with mode 0700
            staging.chmod(0o750)
            if target.exists():
                displaced = staging.with_name(f"{staging.name}.old")
                os.replace(target, displaced)
            os.replace(staging, target)
        except OSError as e:
            shutil.rmtree(staging, ignore_errors=True)
            if displaced is not None and not target.exists():
                restore_from, displaced = displaced, None
                try:
                    os.replace(restore_from, target)
                except OSError as restore_error:
                    # Left in place for manual recovery
                    logger.error(
                        "Failed to restore live artifacts of fleet %s from %s: %s",
                        fleet_id,
                        restore_from,
                        restore_error,
                    )
                    raise FleetActivationError(
                        "failed to activate fleet artifacts and restore the "
                        f"previous set: {restore_error}"
                    ) from e
            raise FleetActivationError(
                f"failed to activate fleet artifacts: {e}"
            ) from e
        finally:
            if displaced is not None:
                shutil.rmtree(displaced, ignore_errors=True)

    logger.info(
        "Activated %d artifacts of build %s for fleet %s",
        len(artifacts),
        build_id,
        fleet_id,
    )
    return target


def deactivate_fleet_artifacts(updates_dir: Path, fleet_id: str) -> None:
    """Remove a fleet's live artifact set entirely.

    Raises:
        FleetActivationError: On an invalid fleet ID or filesystem error.
    """
    target = fleet_live_dir(updates_dir, fleet_id)
    with _fleet_lock(target.name):
        try:
            if target.exists():
                shutil.rmtree(target)
        except OSError as e:
            raise FleetActivationError(
                f"failed to clear current fleet artifacts: {e}"
            ) from e
    logger.info("Deactivated live artifacts for fleet %s", fleet_id)


__all__ = [
    "SAFE_PATH_SEGMENT_PATTERN",
    "FleetActivationError",
    "activate_fleet_artifacts",
    "deactivate_fleet_artifacts",
    "fleet_live_dir",
    "is_safe_path_segment",
]
