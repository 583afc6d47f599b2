"""Persistence client used by the build orchestrator.

BuildStore wraps a session factory and runs every call in its own short
transaction, so it can be shared between request handlers and build
threads. It is passed explicitly into the orchestrator and the log
writer instead of living in module-level state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from fleet_imagegen.builds import service
from fleet_imagegen.builds.models import Build, BuildInstallerLogChunk, BuildLogChunk
from fleet_imagegen.db import get_session
from fleet_imagegen.profiles.schema import KernelConfigSchema
from fleet_imagegen.profiles.service import parse_profile_config
from fleet_imagegen.types import BuildStatus, InstallerStatus

logger = logging.getLogger(__name__)

DEFAULT_LOG_CHUNK_LIMIT = 128
MAX_LOG_CHUNK_LIMIT = 512


@dataclass
class BuildExecutionMetadata:
    """Everything a build attempt needs from the database.

    Attributes:
        build_id: Build ID.
        fleet_id: Target fleet ID.
        version: Version label.
        status: Primary build status at load time.
        packages: Normalized package names of the profile revision.
        kernel: Kernel selection of the profile revision.
    """

    build_id: str
    fleet_id: str
    version: str
    status: str
    packages: list[str] = field(default_factory=list)
    kernel: KernelConfigSchema = field(default_factory=KernelConfigSchema)


def clamp_log_limit(limit: int) -> int:
    """Clamp a chunk limit to [1, MAX_LOG_CHUNK_LIMIT], defaulting when <= 0."""
    if limit <= 0:
        return DEFAULT_LOG_CHUNK_LIMIT
    return min(limit, MAX_LOG_CHUNK_LIMIT)


class BuildStore:
    """Database access for build execution and log storage."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    @property
    def session_factory(self) -> sessionmaker[Session]:
        """Session factory backing this store."""
        return self._session_factory

    def get_build(self, build_id: str) -> Build:
        """Load a build (detached from any session).

        Raises:
            BuildNotFoundError: If build not found.
        """
        with get_session(self._session_factory) as session:
            build = service.get_build(session, build_id)
            session.expunge(build)
            return build

    def get_execution_metadata(self, build_id: str) -> BuildExecutionMetadata:
        """Load the fleet, version and profile configuration of a build.

        Raises:
            BuildNotFoundError: If build not found.
            InvalidProfileConfigError: If the stored configuration is malformed.
        """
        with get_session(self._session_factory) as session:
            build = service.get_build(session, build_id)
            config = parse_profile_config(build.profile_revision.config)
            return BuildExecutionMetadata(
                build_id=build.id,
                fleet_id=build.fleet_id,
                version=build.version,
                status=build.status,
                packages=list(config.packages),
                kernel=config.kernel,
            )

    def create_build(self, profile_id: str, fleet_id: str, version: str) -> Build:
        """Validate and record a queued build. See service.create_build."""
        with get_session(self._session_factory) as session:
            build = service.create_build(session, profile_id, fleet_id, version)
            session.flush()
            session.refresh(build)
            session.expunge(build)
            return build

    def queue_installer(self, build_id: str) -> Build:
        """Gate and queue an installer sub-build. See service.queue_installer."""
        with get_session(self._session_factory) as session:
            build = service.queue_installer(session, build_id)
            session.flush()
            session.refresh(build)
            session.expunge(build)
            return build

    def update_build(
        self, build_id: str, status: BuildStatus, artifact_url: str = ""
    ) -> None:
        """Persist a primary build transition.

        Raises:
            BuildNotFoundError: If build not found.
        """
        with get_session(self._session_factory) as session:
            build = service.get_build(session, build_id)
            build.apply_status(status, artifact_url)

    def update_installer(
        self, build_id: str, status: InstallerStatus, artifact_url: str = ""
    ) -> None:
        """Persist an installer sub-build transition.

        Raises:
            BuildNotFoundError: If build not found.
        """
        with get_session(self._session_factory) as session:
            build = service.get_build(session, build_id)
            build.apply_installer_status(status, artifact_url)

    def append_log_chunk(
        self, build_id: str, content: str, installer: bool = False
    ) -> None:
        """Append one chunk of output to a build log. Empty content is ignored."""
        if not content:
            return
        model = BuildInstallerLogChunk if installer else BuildLogChunk
        with get_session(self._session_factory) as session:
            session.add(model(build_id=build_id, content=content))

    def list_log_chunks_since(
        self,
        build_id: str,
        after: int,
        limit: int = DEFAULT_LOG_CHUNK_LIMIT,
        installer: bool = False,
    ) -> list[tuple[int, str]]:
        """List log chunks with a sequence ID greater than a cursor.

        Args:
            build_id: Build ID.
            after: Cursor; negative values are treated as 0.
            limit: Maximum chunks; clamped to MAX_LOG_CHUNK_LIMIT.
            installer: Read the installer log.

        Returns:
            (sequence ID, content) pairs in sequence order.
        """
        model = BuildInstallerLogChunk if installer else BuildLogChunk
        stmt = (
            select(model.id, model.content)
            .where(model.build_id == build_id, model.id > max(after, 0))
            .order_by(model.id)
            .limit(clamp_log_limit(limit))
        )
        with get_session(self._session_factory) as session:
            return [(row[0], row[1]) for row in session.execute(stmt).all()]

    def fail_running_builds(self) -> int:
        """Force every running build to failed; return the count."""
        with get_session(self._session_factory) as session:
            return service.fail_running_builds(session)

    def fail_running_installers(self) -> int:
        """Force every running installer to failed; return the count."""
        with get_session(self._session_factory) as session:
            return service.fail_running_installers(session)


__all__ = [
    "DEFAULT_LOG_CHUNK_LIMIT",
    "MAX_LOG_CHUNK_LIMIT",
    "BuildExecutionMetadata",
    "BuildStore",
    "clamp_log_limit",
]
