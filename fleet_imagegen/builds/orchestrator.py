"""Build orchestration: the per-build state machine.

The orchestrator accepts build and installer requests, records them, and
launches one background thread per job. Each job walks
queued -> running -> succeeded/failed and persists every transition
through the injected BuildStore.

Every job entry point is wrapped in a boundary that turns any unexpected
exception into a failed status, so a job can never stay running after its
thread has ended.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from functools import partial
from pathlib import Path

from fleet_imagegen.builds.artifacts import (
    ArtifactPublishError,
    publish_build_artifacts,
    publish_installer_artifacts,
)
from fleet_imagegen.builds.logs import PersistentLogWriter
from fleet_imagegen.builds.overrides import (
    BuildOverridesError,
    build_package_expressions,
    write_build_overrides,
)
from fleet_imagegen.builds.runner import (
    BuildExecutionError,
    OutputSink,
    run_build_command,
)
from fleet_imagegen.builds.service import (
    BuildNotFoundError,
    BuildNotReadyForInstallerError,
    BuildServiceError,
)
from fleet_imagegen.builds.store import BuildStore
from fleet_imagegen.builds.workspace import WorkspaceError, build_workspace
from fleet_imagegen.config import Settings, get_settings
from fleet_imagegen.profiles.kernel import KernelConfigError, validate_kernel_config
from fleet_imagegen.profiles.service import InvalidProfileConfigError
from fleet_imagegen.types import BuildStatus, InstallerStatus

logger = logging.getLogger(__name__)

SpawnFn = Callable[[Callable[[], None], str], None]
RunnerFn = Callable[[Path, str, OutputSink, str], Path]

# Failures that end a build attempt without indicating a bug
EXPECTED_BUILD_ERRORS: tuple[type[Exception], ...] = (
    ArtifactPublishError,
    BuildExecutionError,
    BuildNotFoundError,
    BuildOverridesError,
    BuildServiceError,
    InvalidProfileConfigError,
    KernelConfigError,
    WorkspaceError,
)


def spawn_thread(target: Callable[[], None], name: str) -> None:
    """Run a job on a new daemon thread."""
    thread = threading.Thread(target=target, name=name, daemon=True)
    thread.start()


@dataclass
class _Attempt:
    """Progress of one job, used to tag failures with the phase they hit."""

    build_id: str
    kind: str
    phase: str = "starting"


class BuildOrchestrator:
    """Runs build and installer jobs against a BuildStore."""

    def __init__(
        self,
        store: BuildStore,
        settings: Settings | None = None,
        spawn: SpawnFn | None = None,
        runner: RunnerFn | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            store: Persistence client.
            settings: Application settings; loaded from the environment if omitted.
            spawn: Launches a job; defaults to one daemon thread per job.
            runner: Executes the build tool; defaults to run_build_command.
        """
        self.store = store
        self.settings = settings if settings is not None else get_settings()
        self._spawn = spawn if spawn is not None else spawn_thread
        self._runner = runner if runner is not None else run_build_command

    def submit_build(self, profile_id: str, fleet_id: str, version: str) -> str:
        """Record a build request and start it in the background.

        Args:
            profile_id: Profile ID.
            fleet_id: Target fleet ID.
            version: Version label, e.g. 'v1.2.0'.

        Returns:
            ID of the queued build.

        Raises:
            BuildServiceError: If the request is invalid.
            ProfileNotFoundError: If the profile does not exist.
            FleetNotFoundError: If the fleet does not exist.
        """
        build = self.store.create_build(profile_id, fleet_id, version)
        self._spawn(partial(self.execute_build, build.id), f"build-{build.id}")
        return build.id

    def submit_installer_build(self, build_id: str) -> None:
        """Queue the installer for a succeeded build and start it.

        Raises:
            BuildNotFoundError: If build not found.
            BuildNotReadyForInstallerError: If the build has not succeeded.
            InstallerAlreadyQueuedError: If an installer is queued or running.
        """
        self.store.queue_installer(build_id)
        self._spawn(
            partial(self.execute_installer_build, build_id), f"installer-{build_id}"
        )

    def execute_build(self, build_id: str) -> None:
        """Run a primary build to a terminal state. Never raises."""
        attempt = _Attempt(build_id=build_id, kind="build")
        try:
            self._execute(attempt, self._run_build, self._set_build_status)
        except BaseException:
            logger.exception("Build %s panicked during %s", build_id, attempt.phase)
            self._force_fail(attempt, self._set_build_status)

    def execute_installer_build(self, build_id: str) -> None:
        """Run an installer sub-build to a terminal state. Never raises."""
        attempt = _Attempt(build_id=build_id, kind="installer")
        try:
            self._execute(attempt, self._run_installer, self._set_installer_status)
        except BaseException:
            logger.exception(
                "Installer build %s panicked during %s", build_id, attempt.phase
            )
            self._force_fail(attempt, self._set_installer_status)

    def _set_build_status(
        self, build_id: str, succeeded: bool | None, url: str
    ) -> None:
        if succeeded is None:
            status = BuildStatus.RUNNING
        else:
            status = BuildStatus.SUCCEEDED if succeeded else BuildStatus.FAILED
        self.store.update_build(build_id, status, url)

    def _set_installer_status(
        self, build_id: str, succeeded: bool | None, url: str
    ) -> None:
        if succeeded is None:
            status = InstallerStatus.RUNNING
        else:
            status = InstallerStatus.SUCCEEDED if succeeded else InstallerStatus.FAILED
        self.store.update_installer(build_id, status, url)

    def _execute(
        self,
        attempt: _Attempt,
        run: Callable[[_Attempt], str],
        set_status: Callable[[str, bool | None, str], None],
    ) -> None:
        attempt.phase = "marking running"
        set_status(attempt.build_id, None, "")
        logger.info("Started %s %s", attempt.kind, attempt.build_id)

        try:
            artifact_url = run(attempt)
        except EXPECTED_BUILD_ERRORS as e:
            logger.error(
                "%s %s failed during %s: %s",
                attempt.kind.capitalize(),
                attempt.build_id,
                attempt.phase,
                e,
            )
            attempt.phase = "recording failure"
            set_status(attempt.build_id, False, "")
            return

        attempt.phase = "recording success"
        set_status(attempt.build_id, True, artifact_url)
        logger.info(
            "%s %s succeeded: %s",
            attempt.kind.capitalize(),
            attempt.build_id,
            artifact_url,
        )

    def _force_fail(
        self,
        attempt: _Attempt,
        set_status: Callable[[str, bool | None, str], None],
    ) -> None:
        try:
            set_status(attempt.build_id, False, "")
        except Exception:
            logger.exception(
                "Failed to record failure for %s %s", attempt.kind, attempt.build_id
            )

    def _build_in_workspace(
        self,
        attempt: _Attempt,
        build_target: str,
        installer: bool,
    ) -> str:
        settings = self.settings
        attempt.phase = "loading profile"
        metadata = self.store.get_execution_metadata(attempt.build_id)
        kernel = validate_kernel_config(metadata.kernel)
        build_package_expressions(metadata.packages)

        attempt.phase = "preparing workspace"
        prefix = "fleet-installer-build-" if installer else "fleet-build-"
        with build_workspace(
            settings.source_dir, prefix=prefix, tmp_dir=settings.tmp_dir
        ) as workspace:
            attempt.phase = "writing build overrides"
            write_build_overrides(
                workspace,
                metadata.version,
                metadata.fleet_id,
                metadata.packages,
                kernel,
                settings.update_base_url,
            )

            attempt.phase = "running build"
            append = partial(
                self.store.append_log_chunk, attempt.build_id, installer=installer
            )
            with PersistentLogWriter(
                append, label=f"{attempt.kind} {attempt.build_id}"
            ) as log_writer:
                result = self._runner(
                    workspace, build_target, log_writer, settings.build_command
                )

            attempt.phase = "publishing artifacts"
            if installer:
                return publish_installer_artifacts(
                    result, settings.updates_dir, attempt.build_id
                )
            return publish_build_artifacts(
                result, settings.updates_dir, attempt.build_id
            )

    def _run_build(self, attempt: _Attempt) -> str:
        return self._build_in_workspace(
            attempt, self.settings.update_build_target, installer=False
        )

    def _run_installer(self, attempt: _Attempt) -> str:
        attempt.phase = "checking build"
        build = self.store.get_build(attempt.build_id)
        if build.status != BuildStatus.SUCCEEDED.value:
            raise BuildNotReadyForInstallerError(attempt.build_id)
        return self._build_in_workspace(
            attempt, self.settings.installer_build_target, installer=True
        )


def recover_interrupted_builds(store: BuildStore) -> tuple[int, int]:
    """Fail every build and installer left running by a previous process.

    Must run once at startup, before new build requests are accepted.

    Args:
        store: Persistence client.

    Returns:
        (failed builds, failed installers).
    """
    builds = store.fail_running_builds()
    installers = store.fail_running_installers()
    if builds:
        logger.warning("Marked %d interrupted builds as failed", builds)
    if installers:
        logger.warning("Marked %d interrupted installer builds as failed", installers)
    return builds, installers


__all__ = [
    "EXPECTED_BUILD_ERRORS",
    "BuildOrchestrator",
    "recover_interrupted_builds",
    "spawn_thread",
]
