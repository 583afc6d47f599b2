"""Artifact discovery, publication, and checksum manifests.

Successful builds leave their outputs behind a result link in the
workspace. This module copies the recognized files into the permanent
per-build directory under the updates root and picks the canonical URL
that is stored on the build record.

Layout under the updates root:
    artifacts/<build-id>/              primary update artifacts
    artifacts/<build-id>/installer/    installer images
    <fleet-id>/                        live artifacts served to a fleet
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
import stat
from collections.abc import Sequence
from pathlib import Path
from urllib.parse import quote

from fleet_imagegen.types import PublishedArtifact

logger = logging.getLogger(__name__)

ARTIFACTS_DIR_NAME = "artifacts"
INSTALLER_DIR_NAME = "installer"
CHECKSUM_MANIFEST_NAME = "SHA256SUMS"
UPDATE_URL_PREFIX = "/update"

DEFAULT_FILE_MODE = 0o644
DEFAULT_DIR_MODE = 0o750

UPDATE_ARTIFACT_PATTERNS = (
    re.compile(r"^[^/]+_[^/]+\.nix-store\.raw$"),
    re.compile(r"^[^/]+_[^/]+\.efi$"),
)
INSTALLER_ARTIFACT_SUFFIXES = (".iso", ".iso.zst")


class ArtifactPublishError(Exception):
    """Raised when build artifacts cannot be published."""

    def __init__(self, message: str, code: str = "publish_error") -> None:
        super().__init__(message)
        self.code = code


def is_update_artifact_name(name: str) -> bool:
    """Check whether a filename is a recognized update artifact."""
    return any(pattern.fullmatch(name) for pattern in UPDATE_ARTIFACT_PATTERNS)


def is_installer_artifact_name(name: str) -> bool:
    """Check whether a filename is a recognized installer image."""
    normalized = name.strip().lower()
    if not normalized or "/" in normalized:
        return False
    return normalized.endswith(INSTALLER_ARTIFACT_SUFFIXES)


def build_artifacts_dir(updates_dir: Path, build_id: str) -> Path:
    """Return the per-build artifact directory."""
    return updates_dir / ARTIFACTS_DIR_NAME / build_id


def compute_file_hash(path: Path, chunk_size: int = 65536) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        path: Path to file.
        chunk_size: Read chunk size.

    Returns:
        Hex-encoded SHA-256 hash.
    """
    sha256 = hashlib.sha256()
    with path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def copy_file(source: Path, destination: Path, mode: int) -> None:
    """Copy file contents and apply a permission mode.

    A zero mode is replaced by DEFAULT_FILE_MODE.

    Args:
        source: Source file.
        destination: Destination file (replaced if present).
        mode: Permission bits for the destination.
    """
    if destination.exists() or destination.is_symlink():
        destination.unlink()
    with source.open("rb") as src, destination.open("wb") as dst:
        while chunk := src.read(1024 * 1024):
            dst.write(chunk)
    os.chmod(destination, mode or DEFAULT_FILE_MODE)


def collect_update_artifacts(
    directory: Path, log_skipped: bool = False
) -> list[PublishedArtifact]:
    """List the update artifacts at the top level of a directory.

    The checksum manifest, unrecognized names, directories and non-regular
    entries are skipped.

    Args:
        directory: Build result or published artifact directory.
        log_skipped: Log a warning for every skipped entry.

    Returns:
        Artifacts sorted by name.

    Raises:
        OSError: If the directory cannot be read.
    """
    artifacts: list[PublishedArtifact] = []
    with os.scandir(directory) as it:
        entries = sorted(it, key=lambda e: e.name)

    for entry in entries:
        name = entry.name
        if name == CHECKSUM_MANIFEST_NAME:
            if log_skipped:
                logger.warning("Ignoring pre-generated checksum manifest %s", name)
            continue
        if not is_update_artifact_name(name):
            if log_skipped:
                logger.warning("Ignoring non-matching build artifact %s", name)
            continue
        if entry.is_dir(follow_symlinks=False):
            if log_skipped:
                logger.warning("Ignoring artifact directory %s", name)
            continue
        if not entry.is_file(follow_symlinks=False):
            if log_skipped:
                logger.warning("Ignoring non-regular artifact %s", name)
            continue
        artifacts.append(PublishedArtifact(name=name, path=Path(entry.path)))
    return artifacts


def collect_installer_artifacts(result_path: Path) -> list[PublishedArtifact]:
    """Find installer images behind a build result.

    The result may resolve to a single image file or to a directory tree.
    In a tree, two images with the same basename are ambiguous and rejected.

    Args:
        result_path: Result link or path.

    Returns:
        Installer images sorted by name.

    Raises:
        ArtifactPublishError: If nothing usable is found or names collide.
    """
    resolved = result_path.resolve()
    try:
        st = resolved.stat()
    except OSError as e:
        raise ArtifactPublishError(
            f"failed to inspect installer build result: {e}"
        ) from e

    if stat.S_ISREG(st.st_mode):
        if not is_installer_artifact_name(resolved.name):
            raise ArtifactPublishError(
                "installer build result is not an ISO artifact"
            )
        return [PublishedArtifact(name=resolved.name, path=resolved)]

    if not stat.S_ISDIR(st.st_mode):
        raise ArtifactPublishError(
            "installer build result is neither a file nor directory"
        )

    seen: dict[str, Path] = {}
    for dirpath, dirnames, filenames in os.walk(resolved):
        dirnames.sort()
        for name in sorted(filenames):
            if not is_installer_artifact_name(name):
                continue
            path = Path(dirpath) / name
            if not path.is_file():
                continue
            if name in seen:
                raise ArtifactPublishError(
                    f"duplicate installer artifact filename {name} found at "
                    f"{seen[name]} and {path}",
                    code="duplicate_artifact",
                )
            seen[name] = path

    if not seen:
        raise ArtifactPublishError(
            "installer build produced no ISO artifacts", code="no_artifacts"
        )
    return [PublishedArtifact(name=name, path=seen[name]) for name in sorted(seen)]


def _artifact_url(segments: Sequence[str]) -> str:
    return UPDATE_URL_PREFIX + "/" + "/".join(quote(s, safe="") for s in segments)


def choose_primary_artifact_url(build_id: str, names: Sequence[str]) -> str:
    """Pick the canonical URL among a build's published artifacts.

    Preference: store image, then boot image, then the checksum manifest,
    then the lexicographically first name.

    Args:
        build_id: Build ID.
        names: Published filenames (non-empty).

    Returns:
        Percent-escaped URL path.
    """
    ordered = sorted(names)
    for suffix in (".nix-store.raw", ".efi"):
        for name in ordered:
            if name.endswith(suffix):
                return _artifact_url([ARTIFACTS_DIR_NAME, build_id, name])

    chosen = CHECKSUM_MANIFEST_NAME if CHECKSUM_MANIFEST_NAME in ordered else ordered[0]
    return _artifact_url([ARTIFACTS_DIR_NAME, build_id, chosen])


def choose_installer_artifact_url(build_id: str, names: Sequence[str]) -> str:
    """Pick the canonical URL among a build's installer images."""
    ordered = sorted(names)
    chosen = next((n for n in ordered if n.lower().endswith(".iso")), ordered[0])
    return _artifact_url([ARTIFACTS_DIR_NAME, build_id, INSTALLER_DIR_NAME, chosen])


def _copy_artifacts(
    artifacts: Sequence[PublishedArtifact], destination: Path
) -> None:
    for artifact in artifacts:
        mode = stat.S_IMODE(artifact.path.stat().st_mode)
        copy_file(artifact.path, destination / artifact.name, mode)


def publish_build_artifacts(
    result_dir: Path, updates_dir: Path, build_id: str
) -> str:
    """Publish the update artifacts of a successful build.

    Only the top level of the result directory is scanned.

    Args:
        result_dir: Build result directory (or link to one).
        updates_dir: Updates root.
        build_id: Build ID.

    Returns:
        Canonical artifact URL.

    Raises:
        ArtifactPublishError: If nothing matches or copying fails.
    """
    build_id = build_id.strip()
    if not build_id:
        raise ArtifactPublishError("build ID is required")

    try:
        artifacts = collect_update_artifacts(result_dir, log_skipped=True)
    except OSError as e:
        raise ArtifactPublishError(
            f"failed to read build result directory: {e}"
        ) from e
    if not artifacts:
        raise ArtifactPublishError(
            "build produced no artifacts matching update naming patterns",
            code="no_artifacts",
        )

    destination = build_artifacts_dir(updates_dir, build_id)
    try:
        destination.mkdir(mode=DEFAULT_DIR_MODE, parents=True, exist_ok=True)
        _copy_artifacts(artifacts, destination)
    except OSError as e:
        raise ArtifactPublishError(f"failed to copy build artifacts: {e}") from e

    logger.info("Published %d artifacts for build %s", len(artifacts), build_id)
    return choose_primary_artifact_url(build_id, [a.name for a in artifacts])


def publish_installer_artifacts(
    result_path: Path, updates_dir: Path, build_id: str
) -> str:
    """Publish the installer images of a successful installer build.

    Every image is located before any is copied, so a duplicate name
    leaves the destination untouched.

    Args:
        result_path: Installer result link, file or directory.
        updates_dir: Updates root.
        build_id: Build ID.

    Returns:
        Canonical installer URL.

    Raises:
        ArtifactPublishError: If nothing matches, names collide, or copying fails.
    """
    build_id = build_id.strip()
    if not build_id:
        raise ArtifactPublishError("build ID is required")

    artifacts = collect_installer_artifacts(result_path)

    destination = build_artifacts_dir(updates_dir, build_id) / INSTALLER_DIR_NAME
    try:
        destination.mkdir(mode=DEFAULT_DIR_MODE, parents=True, exist_ok=True)
        _copy_artifacts(artifacts, destination)
    except OSError as e:
        raise ArtifactPublishError(f"failed to copy installer artifacts: {e}") from e

    logger.info(
        "Published %d installer artifacts for build %s", len(artifacts), build_id
    )
    return choose_installer_artifact_url(build_id, [a.name for a in artifacts])


def render_update_checksums(directory: Path) -> str:
    """Render a checksum manifest for the update artifacts in a directory.

    Hashes are computed on every call so the manifest always reflects the
    files currently present.

    Args:
        directory: Live fleet directory.

    Returns:
        Manifest text: one '<sha256>  <name>' line per artifact, sorted.

    Raises:
        OSError: If the directory or a file cannot be read.
    """
    lines = [
        f"{compute_file_hash(artifact.path)}  {artifact.name}\n"
        for artifact in collect_update_artifacts(directory)
    ]
    return "".join(lines)


__all__ = [
    "ARTIFACTS_DIR_NAME",
    "CHECKSUM_MANIFEST_NAME",
    "DEFAULT_FILE_MODE",
    "INSTALLER_DIR_NAME",
    "ArtifactPublishError",
    "build_artifacts_dir",
    "choose_installer_artifact_url",
    "choose_primary_artifact_url",
    "collect_installer_artifacts",
    "collect_update_artifacts",
    "compute_file_hash",
    "copy_file",
    "is_installer_artifact_name",
    "is_update_artifact_name",
    "publish_build_artifacts",
    "publish_installer_artifacts",
    "render_update_checksums",
]
