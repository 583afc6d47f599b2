"""Pydantic models for profile configuration documents.

A profile revision stores its configuration as a JSON document. These
models validate the shape of that document before it is persisted and
parse it again when a build needs the package list and kernel selection.
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator


def normalize_package_list(packages: list[str]) -> list[str]:
    """Trim package names, drop blanks, de-duplicate preserving order.

    Args:
        packages: Raw package names.

    Returns:
        Normalized package names.
    """
    normalized: list[str] = []
    seen: set[str] = set()
    for item in packages:
        trimmed = item.strip()
        if not trimmed or trimmed in seen:
            continue
        seen.add(trimmed)
        normalized.append(trimmed)
    return normalized


class KernelPatchSchema(BaseModel):
    """Schema for one kernel source patch.

    Attributes:
        name: Filename of the patch (no path separators).
        sha256: Lowercase hex SHA-256 digest of the decoded content.
        content_base64: Standard base64 encoding of the patch bytes.
    """

    model_config = ConfigDict(extra="forbid")

    name: str = ""
    sha256: str = ""
    content_base64: str = ""


class KernelSourceOverrideSchema(BaseModel):
    """Schema for building the kernel from a custom git source.

    Attributes:
        enabled: Whether the override applies.
        url: Git repository URL (http or https).
        ref: Optional branch or tag name.
        rev: Commit revision to fetch.
        patches: Ordered patches applied on top of the source.
    """

    model_config = ConfigDict(extra="forbid")

    enabled: bool = False
    url: str = ""
    ref: str = ""
    rev: str = ""
    patches: list[KernelPatchSchema] = Field(default_factory=list)


class KernelConfigSchema(BaseModel):
    """Schema for the kernel selection of a profile.

    Attributes:
        attr: Kernel attribute name (e.g. 'linux_6_6'); empty keeps the default.
        source_override: Optional custom kernel source.
    """

    model_config = ConfigDict(extra="forbid")

    attr: str = ""
    source_override: KernelSourceOverrideSchema = Field(
        default_factory=KernelSourceOverrideSchema
    )


class ProfileConfigSchema(BaseModel):
    """Schema for a profile revision configuration document.

    Unknown top-level keys are preserved so raw config overlays survive
    a round trip through the API.
    """

    model_config = ConfigDict(extra="allow")

    packages: list[str] = Field(default_factory=list)
    kernel: KernelConfigSchema = Field(default_factory=KernelConfigSchema)

    @field_validator("packages", mode="before")
    @classmethod
    def default_packages(cls, v: object) -> object:
        """Treat an explicit null package list as empty."""
        return [] if v is None else v

    @field_validator("kernel", mode="before")
    @classmethod
    def default_kernel(cls, v: object) -> object:
        """Treat an explicit null kernel selection as the default kernel."""
        return {} if v is None else v

    @field_validator("packages")
    @classmethod
    def validate_packages(cls, v: list[str]) -> list[str]:
        """Normalize the package list."""
        return normalize_package_list(v)


__all__ = [
    "KernelConfigSchema",
    "KernelPatchSchema",
    "KernelSourceOverrideSchema",
    "ProfileConfigSchema",
    "normalize_package_list",
]
