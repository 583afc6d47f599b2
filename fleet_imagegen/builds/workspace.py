"""Workspace materialization for build attempts.

Every build attempt runs against its own copy of the reference build
source tree, so generated override files never race across concurrent
builds and the reference tree is never mutated.
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)

# Stale build outputs that must never leak into a fresh workspace
SKIPPED_ENTRY_NAMES = frozenset({"result", "demo-disk.raw"})
SKIPPED_DIRECTORY_NAMES = frozenset({".git"})


class WorkspaceError(Exception):
    """Raised when a build workspace cannot be materialized."""

    def __init__(self, message: str, code: str = "workspace_error") -> None:
        super().__init__(message)
        self.code = code


def should_skip_entry(name: str, is_dir: bool) -> bool:
    """Check whether a source tree entry is excluded from workspaces.

    Args:
        name: Entry basename.
        is_dir: Whether the entry is a real directory (not a symlink).

    Returns:
        True if the entry (and its subtree) should be skipped.
    """
    if name in SKIPPED_ENTRY_NAMES:
        return True
    return is_dir and name in SKIPPED_DIRECTORY_NAMES


def copy_tree_with_filters(source_dir: Path, destination_dir: Path) -> None:
    """Recursively copy a build source tree, skipping stale outputs.

    Regular files keep their permission bits, directories are recreated
    with their source permission bits, and symlinks are copied as links.

    Args:
        source_dir: Reference source tree.
        destination_dir: Destination directory (created if missing).

    Raises:
        WorkspaceError: On unsupported file types or filesystem errors.
    """
    try:
        destination_dir.mkdir(parents=True, exist_ok=True)
        _copy_directory_contents(source_dir, destination_dir)
    except WorkspaceError:
        raise
    except OSError as e:
        raise WorkspaceError(f"Failed to copy workspace: {e}") from e


def _copy_directory_contents(source_dir: Path, destination_dir: Path) -> None:
    with os.scandir(source_dir) as it:
        entries = sorted(it, key=lambda e: e.name)

    for entry in entries:
        source = Path(entry.path)
        target = destination_dir / entry.name
        st = entry.stat(follow_symlinks=False)

        if stat.S_ISLNK(st.st_mode):
            if should_skip_entry(entry.name, is_dir=False):
                continue
            os.symlink(os.readlink(source), target)
        elif stat.S_ISDIR(st.st_mode):
            if should_skip_entry(entry.name, is_dir=True):
                logger.debug("Skipping directory %s", source)
                continue
            target.mkdir()
            _copy_directory_contents(source, target)
            os.chmod(target, stat.S_IMODE(st.st_mode))
        elif stat.S_ISREG(st.st_mode):
            if should_skip_entry(entry.name, is_dir=False):
                continue
            shutil.copyfile(source, target)
            os.chmod(target, stat.S_IMODE(st.st_mode))
        else:
            raise WorkspaceError(
                f"unsupported file type in workspace copy: {source}",
                code="unsupported_file_type",
            )


@contextmanager
def build_workspace(
    source_dir: Path,
    prefix: str = "fleet-build-",
    tmp_dir: Path | None = None,
) -> Iterator[Path]:
    """Materialize a disposable workspace for one build attempt.

    The temporary root is removed on exit. A removal failure is logged as
    a warning and never raised.

    Args:
        source_dir: Reference build source tree.
        prefix: Prefix for the temporary root directory name.
        tmp_dir: Parent directory for the temporary root.

    Yields:
        Path of the copied source tree inside the temporary root.

    Raises:
        WorkspaceError: If the source is missing or the copy fails.
    """
    if not source_dir.is_dir():
        raise WorkspaceError(f"build source is not a directory: {source_dir}")

    try:
        workspace_root = Path(tempfile.mkdtemp(prefix=prefix, dir=tmp_dir))
    except OSError as e:
        raise WorkspaceError(f"Failed to create build workspace: {e}") from e

    try:
        workspace_source = workspace_root / source_dir.name
        copy_tree_with_filters(source_dir, workspace_source)
        logger.debug("Materialized workspace %s", workspace_source)
        yield workspace_source
    finally:
        try:
            shutil.rmtree(workspace_root)
        except OSError as e:
            logger.warning(
                "Failed to clean build workspace %s: %s", workspace_root, e
            )


__all__ = [
    "SKIPPED_DIRECTORY_NAMES",
    "SKIPPED_ENTRY_NAMES",
    "WorkspaceError",
    "build_workspace",
    "copy_tree_with_filters",
    "should_skip_entry",
]
