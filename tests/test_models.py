"""Tests for ORM models and CRUD operations.

These tests verify the database models, relationships, and basic
CRUD operations using an in-memory SQLite database.
"""

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from fleet_imagegen.builds.models import Build, BuildLogChunk
from fleet_imagegen.db import Base, create_all_tables, get_engine, get_session
from fleet_imagegen.fleets.models import Device, Fleet
from fleet_imagegen.profiles.models import ProfileRevision
from fleet_imagegen.releases.models import Release, Rollout
from fleet_imagegen.types import BuildStatus, DeviceState, InstallerStatus


class TestDatabaseSetup:
    """Test database setup and helpers."""

    def test_get_engine_creates_parent_directory(self, tmp_path):
        """get_engine should create the SQLite file's parent directory."""
        db_path = tmp_path / "nested" / "state" / "test.db"
        engine = get_engine(f"sqlite:///{db_path}")
        assert engine is not None
        assert db_path.parent.is_dir()

    def test_create_all_tables(self, tmp_path):
        """create_all_tables should create all model tables."""
        engine = get_engine(f"sqlite:///{tmp_path / 'test.db'}")
        create_all_tables(engine)
        for table in (
            "fleets",
            "devices",
            "profiles",
            "profile_fleets",
            "profile_revisions",
            "builds",
            "build_log_chunks",
            "build_installer_log_chunks",
            "releases",
            "rollouts",
        ):
            assert table in Base.metadata.tables

    def test_get_session_context_manager(self, tmp_path):
        """get_session should commit on success and roll back on error."""
        engine = get_engine(f"sqlite:///{tmp_path / 'test.db'}")
        create_all_tables(engine)
        factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

        with get_session(factory) as session:
            session.add(Fleet(name="lab"))

        with pytest.raises(RuntimeError):
            with get_session(factory) as session:
                session.add(Fleet(name="rolled-back"))
                session.flush()
                raise RuntimeError("boom")

        with get_session(factory) as session:
            names = [f.name for f in session.query(Fleet).all()]
            assert names == ["lab"]


class TestFleetModels:
    """Test Fleet and Device models."""

    def test_create_fleet(self, session):
        """Should assign an ID and creation timestamp."""
        fleet = Fleet(name="lab")
        session.add(fleet)
        session.commit()

        assert len(fleet.id) == 36
        assert fleet.description == ""
        assert fleet.created_at is not None

    def test_fleet_name_unique(self, session):
        """Should reject duplicate fleet names."""
        session.add(Fleet(name="lab"))
        session.commit()
        session.add(Fleet(name="lab"))
        with pytest.raises(IntegrityError):
            session.commit()

    def test_device_defaults(self, session, fleet):
        """Devices start idle without a desired release."""
        device = Device(fleet_id=fleet.id, name="kiosk-01")
        session.add(device)
        session.commit()

        assert device.state == DeviceState.IDLE.value
        assert device.desired_release_id is None
        assert device.fleet is fleet
        assert repr(device).startswith("<Device(")


class TestProfileModels:
    """Test Profile and ProfileRevision models."""

    def test_profile_fleet_assignment(self, session, profile, fleet):
        """Profiles and fleets are linked in both directions."""
        assert profile.fleets == [fleet]
        assert fleet.profiles == [profile]

    def test_revision_unique_per_profile(self, session, profile):
        """Revision numbers are unique per profile."""
        session.add(
            ProfileRevision(
                profile_id=profile.id, revision=1, config={}, config_hash="x"
            )
        )
        with pytest.raises(IntegrityError):
            session.commit()

    def test_revisions_ordered(self, session, profile):
        """Revisions are ordered by number."""
        assert [r.revision for r in profile.revisions] == [1]
        assert profile.revisions[0].config["packages"] == [
            "htop",
            "python3Packages.requests",
        ]


class TestBuildModel:
    """Test Build model transitions."""

    @pytest.fixture
    def build(self, session, profile, fleet):
        """Create a queued build."""
        revision = profile.revisions[0]
        build = Build(
            profile_revision_id=revision.id, fleet_id=fleet.id, version="v1.0.0"
        )
        session.add(build)
        session.commit()
        return build

    def test_defaults(self, build):
        """New builds are queued with no installer."""
        assert build.status == BuildStatus.QUEUED.value
        assert build.installer_status == InstallerStatus.NOT_REQUESTED.value
        assert build.artifact_url == ""
        assert build.started_at is None

    def test_running_sets_start_once(self, build):
        """The start timestamp is set on the first running transition."""
        build.apply_status(BuildStatus.RUNNING)
        started = build.started_at
        build.apply_status(BuildStatus.RUNNING)
        assert started is not None
        assert build.started_at == started
        assert build.finished_at is None

    def test_failed_clears_url(self, build):
        """Only succeeded builds keep an artifact URL."""
        build.apply_status(BuildStatus.FAILED, "/update/artifacts/x/a.efi")
        assert build.artifact_url == ""
        assert build.finished_at is not None

    def test_succeeded_requires_url(self, build):
        """Success without an artifact URL is refused."""
        with pytest.raises(ValueError):
            build.apply_status(BuildStatus.SUCCEEDED)
        with pytest.raises(ValueError):
            build.apply_installer_status(InstallerStatus.SUCCEEDED)

    def test_installer_requeue_resets_timestamps(self, build):
        """Queueing the installer again clears its timestamps."""
        build.apply_installer_status(InstallerStatus.RUNNING)
        build.apply_installer_status(InstallerStatus.FAILED)
        assert build.installer_finished_at is not None

        build.apply_installer_status(InstallerStatus.QUEUED)
        assert build.installer_started_at is None
        assert build.installer_finished_at is None

    def test_log_chunks_sequence(self, session, build):
        """Log chunk IDs increase monotonically."""
        first = BuildLogChunk(build_id=build.id, content="a")
        second = BuildLogChunk(build_id=build.id, content="b")
        session.add_all([first, second])
        session.commit()
        assert first.id < second.id
        assert [c.content for c in build.log_chunks] == ["a", "b"]


class TestReleaseModels:
    """Test Release and Rollout models."""

    def test_release_and_rollout(self, session, profile, fleet):
        """Releases link builds and rollouts link releases to fleets."""
        build = Build(
            profile_revision_id=profile.revisions[0].id,
            fleet_id=fleet.id,
            version="v1.0.0",
        )
        session.add(build)
        session.flush()
        release = Release(build_id=build.id, version="v1.0.0")
        session.add(release)
        session.flush()
        rollout = Rollout(release_id=release.id, fleet_id=fleet.id)
        session.add(rollout)
        session.commit()

        assert release.channel == "stable"
        assert release.status == "active"
        assert release.build is build
        assert rollout.status == "planned"
        assert rollout.strategy == "all-at-once"
        assert rollout.stage_percent == 100
        assert release.rollouts == [rollout]

    def test_release_version_unique(self, session, profile, fleet):
        """Release versions are globally unique."""
        build = Build(
            profile_revision_id=profile.revisions[0].id,
            fleet_id=fleet.id,
            version="v1.0.0",
        )
        session.add(build)
        session.flush()
        session.add(Release(build_id=build.id, version="v1.0.0"))
        session.flush()
        session.add(Release(build_id=build.id, version="v1.0.0"))
        with pytest.raises(IntegrityError):
            session.flush()
