"""Shared type definitions for fleet_imagegen.

This module contains enums and dataclasses shared across subpackages
to avoid circular imports.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path


class BuildStatus(str, Enum):
    """Status of a primary image build."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Whether no further transitions are expected."""
        return self in (BuildStatus.SUCCEEDED, BuildStatus.FAILED)


class InstallerStatus(str, Enum):
    """Status of the installer sub-build attached to a build."""

    NOT_REQUESTED = "not_requested"
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Whether no further transitions are expected."""
        return self in (InstallerStatus.SUCCEEDED, InstallerStatus.FAILED)


class ReleaseStatus(str, Enum):
    """Status of a release."""

    ACTIVE = "active"
    WITHDRAWN = "withdrawn"


class RolloutStatus(str, Enum):
    """Status of a rollout."""

    PLANNED = "planned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class RolloutStrategy(str, Enum):
    """How a rollout reaches the devices of a fleet."""

    ALL_AT_ONCE = "all-at-once"


class DeviceState(str, Enum):
    """Last reported update state of a device."""

    IDLE = "idle"


@dataclass
class PublishedArtifact:
    """A file copied into permanent artifact storage.

    Attributes:
        name: Artifact filename (unique within its directory).
        path: Absolute path of the source or stored file.
    """

    name: str
    path: Path


@dataclass
class LogPage:
    """One incremental read of a build log.

    Attributes:
        status: Current status of the job the log belongs to.
        chunk: Concatenated text of the returned log chunks.
        next_after: Cursor to pass on the next read.
        done: True when the job is terminal and no chunks remain.
    """

    status: str
    chunk: str
    next_after: int
    done: bool


__all__ = [
    "BuildStatus",
    "DeviceState",
    "InstallerStatus",
    "LogPage",
    "PublishedArtifact",
    "ReleaseStatus",
    "RolloutStatus",
    "RolloutStrategy",
]
