"""Tests for profile schema validation.

These tests verify the Pydantic schema models for profile configuration.
"""

import pytest
from pydantic import ValidationError

from fleet_imagegen.profiles.schema import (
    KernelConfigSchema,
    KernelSourceOverrideSchema,
    ProfileConfigSchema,
    normalize_package_list,
)


class TestNormalizePackageList:
    """Test normalize_package_list helper."""

    def test_trims_and_deduplicates(self):
        """Should trim, drop blanks and keep first occurrence order."""
        assert normalize_package_list(["vim ", " htop", "", "  ", "vim"]) == [
            "vim",
            "htop",
        ]

    def test_empty(self):
        """Should return an empty list for empty input."""
        assert normalize_package_list([]) == []


class TestKernelConfigSchema:
    """Test KernelConfigSchema validation."""

    def test_defaults(self):
        """Should default to the stock kernel without an override."""
        config = KernelConfigSchema()
        assert config.attr == ""
        assert config.source_override.enabled is False
        assert config.source_override.patches == []

    def test_nested_override(self):
        """Should parse a nested source override."""
        config = KernelConfigSchema.model_validate(
            {
                "attr": "linux_6_6",
                "source_override": {
                    "enabled": True,
                    "url": "https://git.example.com/linux.git",
                    "rev": "abc123",
                },
            }
        )
        assert config.source_override.enabled is True
        assert config.source_override.ref == ""

    def test_unknown_field_rejected(self):
        """Should reject unknown kernel fields."""
        with pytest.raises(ValidationError):
            KernelConfigSchema.model_validate({"attr": "linux_6_6", "extra": 1})

    def test_unknown_override_field_rejected(self):
        """Should reject unknown source override fields."""
        with pytest.raises(ValidationError):
            KernelSourceOverrideSchema.model_validate({"enabled": True, "branch": "x"})


class TestProfileConfigSchema:
    """Test ProfileConfigSchema validation."""

    def test_empty_document(self):
        """Should accept an empty document."""
        config = ProfileConfigSchema.model_validate({})
        assert config.packages == []
        assert config.kernel == KernelConfigSchema()

    def test_packages_normalized(self):
        """Should normalize the package list."""
        config = ProfileConfigSchema(packages=["htop", " htop ", "", "git"])
        assert config.packages == ["htop", "git"]

    def test_null_fields_default(self):
        """Should treat explicit nulls as defaults."""
        config = ProfileConfigSchema.model_validate({"packages": None, "kernel": None})
        assert config.packages == []
        assert config.kernel.attr == ""

    def test_packages_must_be_strings(self):
        """Should reject non-string package entries."""
        with pytest.raises(ValidationError):
            ProfileConfigSchema.model_validate({"packages": [{"name": "htop"}]})

    def test_extra_keys_preserved(self):
        """Should keep unknown top-level keys for round trips."""
        config = ProfileConfigSchema.model_validate(
            {"packages": ["htop"], "services": {"sshd": True}}
        )
        dumped = config.model_dump()
        assert dumped["services"] == {"sshd": True}
        assert dumped["packages"] == ["htop"]
