"""Tests for builds/artifacts.py module.

Tests artifact recognition, publishing, URL selection and checksum
manifest rendering.
"""

import hashlib
import os
import stat

import pytest

from fleet_imagegen.builds.artifacts import (
    ArtifactPublishError,
    choose_installer_artifact_url,
    choose_primary_artifact_url,
    collect_installer_artifacts,
    collect_update_artifacts,
    compute_file_hash,
    is_installer_artifact_name,
    is_update_artifact_name,
    publish_build_artifacts,
    publish_installer_artifacts,
    render_update_checksums,
)

BUILD_ID = "3f8a6c1e-0b7d-4e52-9a41-1c2d3e4f5a6b"


class TestArtifactNames:
    """Tests for artifact name recognition."""

    def test_update_artifacts(self):
        """Store and boot images are update artifacts."""
        assert is_update_artifact_name("fleet_1.2.0.nix-store.raw") is True
        assert is_update_artifact_name("fleet_1.2.0.efi") is True

    def test_non_update_artifacts(self):
        """Other names are not update artifacts."""
        assert is_update_artifact_name("fleet.efi") is False
        assert is_update_artifact_name("SHA256SUMS") is False
        assert is_update_artifact_name("disk.raw") is False

    def test_installer_artifacts(self):
        """ISO images, plain or compressed, are installer artifacts."""
        assert is_installer_artifact_name("installer.iso") is True
        assert is_installer_artifact_name("installer.ISO.zst") is True
        assert is_installer_artifact_name("installer.img") is False
        assert is_installer_artifact_name("a/b.iso") is False


class TestComputeFileHash:
    """Tests for compute_file_hash function."""

    def test_hash(self, tmp_path):
        """Should compute the SHA-256 of file content."""
        path = tmp_path / "f"
        path.write_bytes(b"hello")
        assert compute_file_hash(path, chunk_size=2) == hashlib.sha256(
            b"hello"
        ).hexdigest()


class TestCollectUpdateArtifacts:
    """Tests for collect_update_artifacts function."""

    def test_filters_entries(self, tmp_path):
        """Only top-level regular files with update names are collected."""
        (tmp_path / "fleet_1.0.0.efi").write_bytes(b"efi")
        (tmp_path / "fleet_1.0.0.nix-store.raw").write_bytes(b"store")
        (tmp_path / "SHA256SUMS").write_text("stale")
        (tmp_path / "notes.txt").write_text("x")
        (tmp_path / "dir_1.0.0.efi").mkdir()
        os.symlink(tmp_path / "fleet_1.0.0.efi", tmp_path / "link_1.0.0.efi")

        names = [a.name for a in collect_update_artifacts(tmp_path)]
        assert names == ["fleet_1.0.0.efi", "fleet_1.0.0.nix-store.raw"]


class TestChooseArtifactUrls:
    """Tests for canonical URL selection."""

    def test_prefers_store_image(self):
        """The store image wins over the boot image."""
        url = choose_primary_artifact_url(
            BUILD_ID, ["fleet_1.0.0.efi", "fleet_1.0.0.nix-store.raw"]
        )
        assert url == f"/update/artifacts/{BUILD_ID}/fleet_1.0.0.nix-store.raw"

    def test_boot_image_fallback(self):
        """The boot image is used when there is no store image."""
        url = choose_primary_artifact_url(BUILD_ID, ["b_1.efi", "a_1.efi"])
        assert url.endswith("/a_1.efi")

    def test_manifest_then_first_name(self):
        """Without images the manifest, then the first name, is used."""
        assert choose_primary_artifact_url(BUILD_ID, ["z", "SHA256SUMS"]).endswith(
            "/SHA256SUMS"
        )
        assert choose_primary_artifact_url(BUILD_ID, ["z", "a"]).endswith("/a")

    def test_escapes_names(self):
        """Path segments are percent-escaped."""
        url = choose_primary_artifact_url(BUILD_ID, ["my fleet_1.efi"])
        assert url.endswith("/my%20fleet_1.efi")

    def test_installer_prefers_plain_iso(self):
        """An uncompressed ISO wins over a compressed one."""
        url = choose_installer_artifact_url(BUILD_ID, ["a.iso.zst", "b.iso"])
        assert url == f"/update/artifacts/{BUILD_ID}/installer/b.iso"


class TestPublishBuildArtifacts:
    """Tests for publish_build_artifacts function."""

    def test_publishes_matching_files(self, tmp_path):
        """Matching files are copied with their modes and the URL returned."""
        result = tmp_path / "result"
        result.mkdir()
        (result / "fleet_1.0.0.nix-store.raw").write_bytes(b"store")
        (result / "fleet_1.0.0.efi").write_bytes(b"efi")
        (result / "fleet_1.0.0.efi").chmod(0o600)
        (result / "README").write_text("skip me")
        updates = tmp_path / "updates"

        url = publish_build_artifacts(result, updates, BUILD_ID)

        published = updates / "artifacts" / BUILD_ID
        assert sorted(p.name for p in published.iterdir()) == [
            "fleet_1.0.0.efi",
            "fleet_1.0.0.nix-store.raw",
        ]
        assert (published / "fleet_1.0.0.nix-store.raw").read_bytes() == b"store"
        assert stat.S_IMODE((published / "fleet_1.0.0.efi").stat().st_mode) == 0o600
        assert url == f"/update/artifacts/{BUILD_ID}/fleet_1.0.0.nix-store.raw"

    def test_no_matching_artifacts(self, tmp_path):
        """A result without update artifacts fails."""
        result = tmp_path / "result"
        result.mkdir()
        (result / "disk.img").write_bytes(b"x")

        with pytest.raises(ArtifactPublishError) as exc_info:
            publish_build_artifacts(result, tmp_path / "updates", BUILD_ID)
        assert exc_info.value.code == "no_artifacts"

    def test_missing_result(self, tmp_path):
        """A missing result directory fails."""
        with pytest.raises(ArtifactPublishError):
            publish_build_artifacts(tmp_path / "none", tmp_path / "updates", BUILD_ID)

    def test_blank_build_id(self, tmp_path):
        """A build ID is required."""
        with pytest.raises(ArtifactPublishError):
            publish_build_artifacts(tmp_path, tmp_path, "  ")


class TestInstallerArtifacts:
    """Tests for installer collection and publishing."""

    def test_single_file_result(self, tmp_path):
        """A result link pointing at one ISO is accepted."""
        image = tmp_path / "store" / "nixos-installer.iso"
        image.parent.mkdir()
        image.write_bytes(b"iso")
        link = tmp_path / "result"
        os.symlink(image, link)

        artifacts = collect_installer_artifacts(link)
        assert [a.name for a in artifacts] == ["nixos-installer.iso"]

    def test_single_file_wrong_type(self, tmp_path):
        """A single non-ISO file is rejected."""
        path = tmp_path / "disk.img"
        path.write_bytes(b"x")
        with pytest.raises(ArtifactPublishError):
            collect_installer_artifacts(path)

    def test_tree_result(self, tmp_path):
        """ISO images are found anywhere in a result tree."""
        (tmp_path / "result" / "iso").mkdir(parents=True)
        (tmp_path / "result" / "iso" / "installer.iso").write_bytes(b"iso")
        (tmp_path / "result" / "nix-support").mkdir()
        (tmp_path / "result" / "nix-support" / "hydra-build-products").write_text("")

        artifacts = collect_installer_artifacts(tmp_path / "result")
        assert [a.name for a in artifacts] == ["installer.iso"]

    def test_empty_tree(self, tmp_path):
        """A tree without images is rejected."""
        (tmp_path / "result").mkdir()
        with pytest.raises(ArtifactPublishError) as exc_info:
            collect_installer_artifacts(tmp_path / "result")
        assert exc_info.value.code == "no_artifacts"

    def test_duplicate_names_copy_nothing(self, tmp_path):
        """Two images with the same name fail before anything is copied."""
        result = tmp_path / "result"
        (result / "a").mkdir(parents=True)
        (result / "b").mkdir()
        (result / "a" / "installer.iso").write_bytes(b"a")
        (result / "b" / "installer.iso").write_bytes(b"b")
        (result / "a" / "extra.iso").write_bytes(b"c")
        updates = tmp_path / "updates"

        with pytest.raises(ArtifactPublishError) as exc_info:
            publish_installer_artifacts(result, updates, BUILD_ID)

        assert exc_info.value.code == "duplicate_artifact"
        assert not (updates / "artifacts" / BUILD_ID / "installer").exists()

    def test_publish_installer(self, tmp_path):
        """Installer images are published under the build's installer dir."""
        result = tmp_path / "result"
        (result / "iso").mkdir(parents=True)
        (result / "iso" / "installer.iso").write_bytes(b"iso")
        updates = tmp_path / "updates"

        url = publish_installer_artifacts(result, updates, BUILD_ID)

        copied = updates / "artifacts" / BUILD_ID / "installer" / "installer.iso"
        assert copied.read_bytes() == b"iso"
        assert url == f"/update/artifacts/{BUILD_ID}/installer/installer.iso"


class TestRenderUpdateChecksums:
    """Tests for render_update_checksums function."""

    def test_manifest_format(self, tmp_path):
        """One sorted '<sha256>  <name>' line per update artifact."""
        (tmp_path / "fleet_1.0.0.nix-store.raw").write_bytes(b"store")
        (tmp_path / "fleet_1.0.0.efi").write_bytes(b"efi")
        (tmp_path / "SHA256SUMS").write_text("stale\n")

        manifest = render_update_checksums(tmp_path)

        assert manifest == (
            f"{hashlib.sha256(b'efi').hexdigest()}  fleet_1.0.0.efi\n"
            f"{hashlib.sha256(b'store').hexdigest()}  fleet_1.0.0.nix-store.raw\n"
        )

    def test_reflects_current_files(self, tmp_path):
        """The manifest is recomputed on every call."""
        artifact = tmp_path / "fleet_1.0.0.efi"
        artifact.write_bytes(b"one")
        first = render_update_checksums(tmp_path)
        artifact.write_bytes(b"two")
        assert render_update_checksums(tmp_path) != first

    def test_empty_directory(self, tmp_path):
        """A directory without artifacts yields an empty manifest."""
        assert render_update_checksums(tmp_path) == ""

    def test_missing_directory(self, tmp_path):
        """A missing directory raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            render_update_checksums(tmp_path / "missing")
