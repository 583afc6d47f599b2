"""Tests for builds/orchestrator.py module.

Jobs run inline through an injected spawn function, and the external
build tool is replaced by a fake runner that fabricates a result tree.
"""

import shutil
import threading
from pathlib import Path

import pytest
from conftest import (
    FakeRunner,
    inline_spawn,
    make_result_dir,
    make_succeeded_build,
)

from fleet_imagegen.builds.logs import read_log_page
from fleet_imagegen.builds.orchestrator import BuildOrchestrator, spawn_thread
from fleet_imagegen.builds.overrides import BUILD_OVERRIDES_PATH
from fleet_imagegen.builds.runner import BuildExecutionError
from fleet_imagegen.builds.service import (
    BuildNotReadyForInstallerError,
    BuildValidationError,
)
from fleet_imagegen.profiles.service import get_latest_revision
from fleet_imagegen.types import BuildStatus, InstallerStatus


def make_installer_result(workspace: Path) -> Path:
    """Create a fake installer result tree."""
    iso_dir = workspace / "result" / "iso"
    iso_dir.mkdir(parents=True)
    (iso_dir / "fleet-installer.iso").write_bytes(b"iso")
    return workspace / "result"


@pytest.fixture
def runner():
    """Create a fake runner."""
    return FakeRunner()


@pytest.fixture
def orchestrator(store, settings, runner):
    """Create an orchestrator that runs jobs inline."""
    return BuildOrchestrator(
        store, settings=settings, spawn=inline_spawn, runner=runner
    )


class TestSubmitBuild:
    """Tests for the primary build path."""

    def test_successful_build(
        self, orchestrator, store, settings, runner, profile, fleet
    ):
        """A build runs, publishes artifacts and records the canonical URL."""
        build_id = orchestrator.submit_build(profile.id, fleet.id, "v1.0.0")

        build = store.get_build(build_id)
        assert build.status == BuildStatus.SUCCEEDED.value
        assert build.artifact_url == (
            f"/update/artifacts/{build_id}/fleet_1.0.0.nix-store.raw"
        )
        assert build.started_at is not None
        assert build.finished_at is not None

        published = settings.updates_dir / "artifacts" / build_id
        assert sorted(p.name for p in published.iterdir()) == [
            "fleet_1.0.0.efi",
            "fleet_1.0.0.nix-store.raw",
        ]

        workspace, target, command = runner.calls[0]
        assert target == ".#fleet-update"
        assert command == "nix"
        assert workspace.name == settings.source_dir.name
        # Workspaces are disposable
        assert not workspace.exists()
        assert list(settings.tmp_dir.iterdir()) == []

    def test_overrides_written_into_workspace(
        self, orchestrator, runner, settings, profile, fleet
    ):
        """The override module carries version, fleet URL and packages."""
        orchestrator.submit_build(profile.id, fleet.id, "v1.0.0")

        overrides = runner.overrides[0]
        assert 'system.image.version = "v1.0.0";' in overrides
        assert f"http://localhost:8080/update/{fleet.id}/" in overrides
        assert "    htop\n" in overrides
        assert "    python3Packages.requests\n" in overrides
        # The reference tree is never modified
        reference = settings.source_dir / BUILD_OVERRIDES_PATH
        assert reference.read_text() == "{ ... }: { }\n"

    def test_build_log_persisted(self, orchestrator, store, profile, fleet):
        """Build output is readable through the log API once finished."""
        build_id = orchestrator.submit_build(profile.id, fleet.id, "v1.0.0")

        page = read_log_page(store, build_id, 0)
        assert page.chunk == "building system\n"
        assert page.done is True

    def test_invalid_request_records_nothing(self, orchestrator, store, runner):
        """Validation errors are raised to the caller and nothing runs."""
        with pytest.raises(BuildValidationError):
            orchestrator.submit_build("p", "f", "not-a-version")
        assert runner.calls == []

    def test_build_tool_failure(self, store, settings, profile, fleet):
        """A failing build tool leaves the build failed without a URL."""

        def failing_runner(workspace, target, sink, command):
            sink.write(b"error: builder failed\n")
            raise BuildExecutionError("nix build failed: exit status 1", exit_code=1)

        orchestrator = BuildOrchestrator(
            store, settings=settings, spawn=inline_spawn, runner=failing_runner
        )
        build_id = orchestrator.submit_build(profile.id, fleet.id, "v1.0.0")

        build = store.get_build(build_id)
        assert build.status == BuildStatus.FAILED.value
        assert build.artifact_url == ""
        assert "builder failed" in read_log_page(store, build_id, 0).chunk
        assert not (settings.updates_dir / "artifacts" / build_id).exists()

    def test_no_artifacts_fails_build(self, store, settings, profile, fleet):
        """A result without update artifacts fails the build."""
        runner = FakeRunner(produce=lambda ws: make_result_dir(ws, ("disk.img",)))
        orchestrator = BuildOrchestrator(
            store, settings=settings, spawn=inline_spawn, runner=runner
        )
        build_id = orchestrator.submit_build(profile.id, fleet.id, "v1.0.0")
        assert store.get_build(build_id).status == BuildStatus.FAILED.value

    def test_missing_source_tree(
        self, orchestrator, store, settings, runner, profile, fleet
    ):
        """A missing build source fails the build before the tool runs."""
        shutil.rmtree(settings.source_dir)

        build_id = orchestrator.submit_build(profile.id, fleet.id, "v1.0.0")

        assert store.get_build(build_id).status == BuildStatus.FAILED.value
        assert runner.calls == []

    def test_invalid_package_fails_before_workspace(
        self, orchestrator, store, session, runner, profile, fleet, monkeypatch
    ):
        """A stored package name that cannot be rendered never copies the tree."""
        revision = get_latest_revision(session, profile.id)
        revision.config = {**revision.config, "packages": ["foo\n.bar"]}
        session.commit()
        workspaces = []
        monkeypatch.setattr(
            "fleet_imagegen.builds.orchestrator.build_workspace",
            lambda *args, **kwargs: workspaces.append(args),
        )

        build_id = orchestrator.submit_build(profile.id, fleet.id, "v1.0.0")

        assert store.get_build(build_id).status == BuildStatus.FAILED.value
        assert workspaces == []
        assert runner.calls == []

    def test_unexpected_error_is_contained(self, store, settings, profile, fleet):
        """A bug inside a job still leaves the build failed."""

        def buggy_runner(workspace, target, sink, command):
            raise RuntimeError("unexpected")

        orchestrator = BuildOrchestrator(
            store, settings=settings, spawn=inline_spawn, runner=buggy_runner
        )
        build_id = orchestrator.submit_build(profile.id, fleet.id, "v1.0.0")
        assert store.get_build(build_id).status == BuildStatus.FAILED.value

    def test_system_exit_is_contained(self, store, settings, profile, fleet):
        """A job that calls sys.exit still leaves the build failed."""

        def exiting_runner(workspace, target, sink, command):
            raise SystemExit(1)

        orchestrator = BuildOrchestrator(
            store, settings=settings, spawn=inline_spawn, runner=exiting_runner
        )
        build_id = orchestrator.submit_build(profile.id, fleet.id, "v1.0.0")
        assert store.get_build(build_id).status == BuildStatus.FAILED.value

    def test_failure_while_recording_success(
        self, orchestrator, store, profile, fleet, monkeypatch
    ):
        """If persisting success fails, the build is forced to failed."""
        original = store.update_build

        def flaky_update(build_id, status, artifact_url=""):
            if status == BuildStatus.SUCCEEDED:
                raise RuntimeError("database unavailable")
            original(build_id, status, artifact_url)

        monkeypatch.setattr(store, "update_build", flaky_update)

        build_id = orchestrator.submit_build(profile.id, fleet.id, "v1.0.0")
        assert store.get_build(build_id).status == BuildStatus.FAILED.value


class TestSubmitInstallerBuild:
    """Tests for the installer sub-build path."""

    def test_successful_installer(self, session, store, settings, profile, fleet):
        """The installer image is published under the build's directory."""
        build = make_succeeded_build(session, profile, fleet)
        runner = FakeRunner(output=b"building iso\n", produce=make_installer_result)
        orchestrator = BuildOrchestrator(
            store, settings=settings, spawn=inline_spawn, runner=runner
        )

        orchestrator.submit_installer_build(build.id)

        updated = store.get_build(build.id)
        assert updated.installer_status == InstallerStatus.SUCCEEDED.value
        assert updated.installer_artifact_url == (
            f"/update/artifacts/{build.id}/installer/fleet-installer.iso"
        )
        assert updated.status == BuildStatus.SUCCEEDED.value
        assert runner.calls[0][1] == ".#fleet-installer"
        installer_log = read_log_page(store, build.id, 0, installer=True)
        assert installer_log.chunk == "building iso\n"
        assert read_log_page(store, build.id, 0).chunk == ""

    def test_installer_requires_succeeded_build(
        self, orchestrator, store, runner, profile, fleet
    ):
        """Installers cannot be queued for unfinished builds."""
        build = store.create_build(profile.id, fleet.id, "v1.0.0")
        with pytest.raises(BuildNotReadyForInstallerError):
            orchestrator.submit_installer_build(build.id)
        assert runner.calls == []

    def test_installer_failure_keeps_primary(
        self, session, store, settings, profile, fleet
    ):
        """A failed installer never touches the primary build result."""
        build = make_succeeded_build(session, profile, fleet)
        orchestrator = BuildOrchestrator(
            store, settings=settings, spawn=inline_spawn, runner=FakeRunner()
        )

        orchestrator.submit_installer_build(build.id)

        updated = store.get_build(build.id)
        assert updated.installer_status == InstallerStatus.FAILED.value
        assert updated.installer_artifact_url == ""
        assert updated.status == BuildStatus.SUCCEEDED.value
        assert updated.artifact_url == build.artifact_url

    def test_installer_can_be_retried(self, session, store, settings, profile, fleet):
        """A failed installer can be queued again with a fresh log."""
        build = make_succeeded_build(session, profile, fleet)
        BuildOrchestrator(
            store, settings=settings, spawn=inline_spawn, runner=FakeRunner()
        ).submit_installer_build(build.id)

        runner = FakeRunner(output=b"retry\n", produce=make_installer_result)
        BuildOrchestrator(
            store, settings=settings, spawn=inline_spawn, runner=runner
        ).submit_installer_build(build.id)

        updated = store.get_build(build.id)
        assert updated.installer_status == InstallerStatus.SUCCEEDED.value
        page = read_log_page(store, build.id, 0, installer=True)
        assert page.chunk == "retry\n"


class TestSpawnThread:
    """Tests for spawn_thread function."""

    def test_runs_target_on_daemon_thread(self):
        """The job runs on a named daemon thread."""
        seen = {}
        done = threading.Event()

        def target():
            current = threading.current_thread()
            seen["name"] = current.name
            seen["daemon"] = current.daemon
            done.set()

        spawn_thread(target, "build-123")

        assert done.wait(5)
        assert seen == {"name": "build-123", "daemon": True}
