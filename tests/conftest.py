"""Shared fixtures: in-memory database, sample records, and build settings."""

from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fleet_imagegen.builds.models import Build
from fleet_imagegen.builds.overrides import BUILD_OVERRIDES_PATH
from fleet_imagegen.builds.store import BuildStore
from fleet_imagegen.config import Settings
from fleet_imagegen.db import create_all_tables
from fleet_imagegen.fleets.models import Fleet
from fleet_imagegen.fleets.service import create_fleet
from fleet_imagegen.profiles.models import Profile
from fleet_imagegen.profiles.service import create_profile, get_latest_revision
from fleet_imagegen.types import BuildStatus

ARTIFACT_NAMES = ("fleet_1.0.0.nix-store.raw", "fleet_1.0.0.efi")


@pytest.fixture
def engine():
    """Create an in-memory SQLite engine shared across threads."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_all_tables(engine)
    return engine


@pytest.fixture
def session_factory(engine):
    """Create a session factory for testing."""
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    """Create a session for testing."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def store(session_factory) -> BuildStore:
    """Create a BuildStore over the test database."""
    return BuildStore(session_factory)


@pytest.fixture
def fleet(session) -> Fleet:
    """Create a test fleet."""
    f = create_fleet(session, "lab", "Lab devices")
    session.commit()
    return f


@pytest.fixture
def profile(session, fleet) -> Profile:
    """Create a test profile assigned to the test fleet."""
    p = create_profile(
        session,
        "kiosk",
        [fleet.id],
        config={"packages": ["htop", "python3Packages.requests"]},
    )
    session.commit()
    return p


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Create settings pointing at a small build source tree in tmp_path."""
    source = tmp_path / "nixos"
    (source / "modules").mkdir(parents=True)
    (source / "flake.nix").write_text("{ outputs = _: { }; }\n")
    (source / "modules" / "build-overrides.nix").write_text("{ ... }: { }\n")
    workspaces = tmp_path / "workspaces"
    workspaces.mkdir()
    return Settings(
        source_dir=source,
        updates_dir=tmp_path / "updates",
        db_url=f"sqlite:///{tmp_path / 'test.db'}",
        tmp_dir=workspaces,
    )


def make_result_dir(workspace: Path, names=ARTIFACT_NAMES) -> Path:
    """Create a fake build result directory with the given artifact files."""
    result = workspace / "result"
    result.mkdir()
    for name in names:
        (result / name).write_bytes(f"content of {name}".encode())
    return result


def make_succeeded_build(session, profile, fleet, version="v1.0.0") -> Build:
    """Insert a build that already succeeded."""
    build = Build(
        profile_revision_id=get_latest_revision(session, profile.id).id,
        fleet_id=fleet.id,
        version=version,
    )
    build.apply_status(BuildStatus.RUNNING)
    session.add(build)
    session.flush()
    build.apply_status(
        BuildStatus.SUCCEEDED,
        f"/update/artifacts/{build.id}/{ARTIFACT_NAMES[0]}",
    )
    session.commit()
    return build


def publish_fake_artifacts(updates_dir: Path, build_id: str, names=ARTIFACT_NAMES):
    """Place published artifacts for a build under the updates root."""
    directory = updates_dir / "artifacts" / build_id
    directory.mkdir(parents=True)
    for name in names:
        (directory / name).write_bytes(f"{build_id}:{name}".encode())
    return directory


def inline_spawn(target, name):
    """Run a background job synchronously."""
    target()


class FakeRunner:
    """Stands in for the build tool and records what it was given."""

    def __init__(self, output=b"building system\n", produce=make_result_dir):
        self.output = output
        self.produce = produce
        self.calls = []
        self.overrides = []

    def __call__(self, workspace: Path, target, sink, command):
        self.calls.append((workspace, target, command))
        self.overrides.append((workspace / BUILD_OVERRIDES_PATH).read_text())
        sink.write(self.output)
        self.produce(workspace)
        return workspace / "result"
