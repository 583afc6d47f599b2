"""Tests for shared types module."""

from pathlib import Path

from fleet_imagegen.types import (
    BuildStatus,
    DeviceState,
    InstallerStatus,
    LogPage,
    PublishedArtifact,
    ReleaseStatus,
    RolloutStatus,
    RolloutStrategy,
)


class TestEnums:
    """Test enum definitions."""

    def test_build_status_values(self) -> None:
        """BuildStatus should have expected values."""
        assert [s.value for s in BuildStatus] == [
            "queued",
            "running",
            "succeeded",
            "failed",
        ]

    def test_build_status_terminal(self) -> None:
        """Only succeeded and failed builds are terminal."""
        assert BuildStatus.SUCCEEDED.is_terminal is True
        assert BuildStatus.FAILED.is_terminal is True
        assert BuildStatus.QUEUED.is_terminal is False
        assert BuildStatus.RUNNING.is_terminal is False

    def test_installer_status_values(self) -> None:
        """InstallerStatus should include the not-requested state."""
        assert InstallerStatus("not_requested") is InstallerStatus.NOT_REQUESTED
        assert InstallerStatus.NOT_REQUESTED.is_terminal is False
        assert InstallerStatus.FAILED.is_terminal is True

    def test_release_and_rollout_values(self) -> None:
        """Release and rollout enums should have expected values."""
        assert ReleaseStatus.WITHDRAWN.value == "withdrawn"
        assert RolloutStatus.IN_PROGRESS.value == "in_progress"
        assert RolloutStrategy.ALL_AT_ONCE.value == "all-at-once"
        assert DeviceState.IDLE.value == "idle"

    def test_enums_compare_as_strings(self) -> None:
        """Status enums should compare equal to their stored values."""
        assert BuildStatus.RUNNING == "running"
        assert InstallerStatus.QUEUED == "queued"


class TestDataclasses:
    """Test dataclass definitions."""

    def test_published_artifact(self) -> None:
        """PublishedArtifact should hold name and path."""
        artifact = PublishedArtifact(name="a.efi", path=Path("/tmp/a.efi"))
        assert artifact.name == "a.efi"
        assert artifact.path == Path("/tmp/a.efi")

    def test_log_page(self) -> None:
        """LogPage should hold a read result."""
        page = LogPage(status="running", chunk="x", next_after=3, done=False)
        assert page.next_after == 3
        assert page.done is False
