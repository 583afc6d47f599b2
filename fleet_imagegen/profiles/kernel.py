"""Kernel selection normalization, validation, and discovery.

Validation runs before any build work begins and is also used when a
profile revision is saved, so a bad kernel selection is reported to the
submitting user instead of surfacing as a failed build later.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
import re
import subprocess
from collections.abc import Collection
from dataclasses import dataclass
from urllib.parse import urlsplit

from fleet_imagegen.profiles.schema import (
    KernelConfigSchema,
    KernelPatchSchema,
    KernelSourceOverrideSchema,
)

logger = logging.getLogger(__name__)

KERNEL_ATTR_PATTERN = re.compile(r"^linux_[0-9]+_[0-9]+(_hardened)?$")
KERNEL_PATCH_SHA256_PATTERN = re.compile(r"^[0-9a-f]{64}$")

MAX_KERNEL_PATCH_COUNT = 32
MAX_KERNEL_PATCH_SIZE_BYTES = 512 * 1024
MAX_KERNEL_PATCH_TOTAL_SIZE_BYTES = 4 * 1024 * 1024
MAX_KERNEL_PATCH_NAME_LENGTH = 128

KERNEL_OPTIONS_APPLY_EXPR = (
    "kernels: let names = builtins.filter "
    '(n: builtins.match "^linux_[0-9]+_[0-9]+(_hardened)?$" n != null) '
    "(builtins.attrNames kernels); rows = builtins.map (n: let v = "
    "builtins.tryEval (kernels.${n}.version); in if v.success then "
    "{ attr = n; version = v.value; } else null) names; in "
    "builtins.filter (x: x != null) rows"
)


class KernelConfigError(Exception):
    """Raised when a kernel selection is invalid."""

    def __init__(self, message: str, code: str = "invalid_kernel_config") -> None:
        super().__init__(message)
        self.code = code


class KernelQueryError(Exception):
    """Raised when kernel option discovery fails."""

    def __init__(self, message: str, code: str = "kernel_query_failed") -> None:
        super().__init__(message)
        self.code = code


@dataclass
class KernelOption:
    """A kernel attribute available for selection.

    Attributes:
        attr: Kernel attribute name.
        version: Upstream kernel version string.
    """

    attr: str
    version: str


def normalize_kernel_config(config: KernelConfigSchema) -> KernelConfigSchema:
    """Return a trimmed copy of a kernel selection.

    Patch digests are lower-cased. When the source override is disabled its
    URL, ref, revision and patches are cleared.

    Args:
        config: Kernel selection as stored.

    Returns:
        Normalized kernel selection.
    """
    override = config.source_override
    patches = [
        KernelPatchSchema(
            name=patch.name.strip(),
            sha256=patch.sha256.strip().lower(),
            content_base64=patch.content_base64.strip(),
        )
        for patch in override.patches
    ]
    if override.enabled:
        normalized_override = KernelSourceOverrideSchema(
            enabled=True,
            url=override.url.strip(),
            ref=override.ref.strip(),
            rev=override.rev.strip(),
            patches=patches,
        )
    else:
        normalized_override = KernelSourceOverrideSchema()

    return KernelConfigSchema(
        attr=config.attr.strip(), source_override=normalized_override
    )


def is_valid_patch_name(name: str) -> bool:
    """Check that a patch name is safe to use as a filename.

    Args:
        name: Patch filename.

    Returns:
        True if the name is printable ASCII without path separators.
    """
    trimmed = name.strip()
    if not trimmed or len(trimmed) > MAX_KERNEL_PATCH_NAME_LENGTH:
        return False
    if "/" in trimmed or "\\" in trimmed:
        return False
    if trimmed in (".", ".."):
        return False
    return all(32 <= ord(ch) <= 126 for ch in trimmed)


def decode_patch_content(patch: KernelPatchSchema) -> bytes:
    """Decode and verify the content of a single patch.

    Args:
        patch: Normalized patch.

    Returns:
        Decoded patch bytes.

    Raises:
        KernelConfigError: If the patch is malformed or its digest mismatches.
    """
    if not is_valid_patch_name(patch.name):
        raise KernelConfigError("kernel patch filename is invalid")
    if not KERNEL_PATCH_SHA256_PATTERN.fullmatch(patch.sha256):
        raise KernelConfigError("kernel patch checksum is invalid")

    try:
        content = base64.b64decode(patch.content_base64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise KernelConfigError("kernel patch payload is invalid") from e

    if not content:
        raise KernelConfigError("kernel patch payload cannot be empty")
    if len(content) > MAX_KERNEL_PATCH_SIZE_BYTES:
        raise KernelConfigError("kernel patch file is too large")
    if hashlib.sha256(content).hexdigest() != patch.sha256:
        raise KernelConfigError(f"kernel patch {patch.name} checksum mismatch")
    return content


def validate_kernel_config(
    config: KernelConfigSchema,
    allowed_attrs: Collection[str] | None = None,
) -> KernelConfigSchema:
    """Validate a kernel selection.

    Args:
        config: Kernel selection to validate.
        allowed_attrs: Optional allow-list of known kernel attributes; an
            empty or missing list disables the availability check.

    Returns:
        The normalized kernel selection.

    Raises:
        KernelConfigError: On the first invalid field.
    """
    if not config.source_override.enabled and config.source_override.patches:
        raise KernelConfigError(
            "kernel patches require source override to be enabled"
        )

    normalized = normalize_kernel_config(config)

    if normalized.attr:
        if not KERNEL_ATTR_PATTERN.fullmatch(normalized.attr):
            raise KernelConfigError("selected kernel is invalid")
        if allowed_attrs and normalized.attr not in allowed_attrs:
            raise KernelConfigError(
                "selected kernel is not available in pinned nixpkgs"
            )

    override = normalized.source_override
    if not override.enabled:
        return normalized

    if not normalized.attr:
        raise KernelConfigError(
            "kernel source override requires selecting a kernel version"
        )
    if not override.url:
        raise KernelConfigError("kernel source override URL is required")
    if not override.rev:
        raise KernelConfigError("kernel source override revision is required")

    try:
        parsed = urlsplit(override.url)
    except ValueError as e:
        raise KernelConfigError(
            "kernel source override URL must be a valid absolute URL"
        ) from e
    if not parsed.scheme or not parsed.netloc:
        raise KernelConfigError(
            "kernel source override URL must be a valid absolute URL"
        )
    if parsed.scheme not in ("http", "https"):
        raise KernelConfigError("kernel source override URL must use http or https")

    if len(override.patches) > MAX_KERNEL_PATCH_COUNT:
        raise KernelConfigError("kernel patch count exceeds limit")

    total_size = 0
    seen_names: set[str] = set()
    for patch in override.patches:
        if patch.name in seen_names:
            raise KernelConfigError(
                f"kernel patch {patch.name} is duplicated",
                code="duplicate_kernel_patch",
            )
        seen_names.add(patch.name)
        total_size += len(decode_patch_content(patch))
        if total_size > MAX_KERNEL_PATCH_TOTAL_SIZE_BYTES:
            raise KernelConfigError("kernel patch payload is too large")

    return normalized


def list_available_kernel_options(
    flake_ref: str,
    build_command: str = "nix",
    timeout: int = 20,
) -> list[KernelOption]:
    """Query the pinned package set for selectable kernels.

    Args:
        flake_ref: Flake reference to the kernel attribute set.
        build_command: Build tool executable.
        timeout: Query timeout in seconds.

    Returns:
        Kernel options sorted by attribute, de-duplicated.

    Raises:
        KernelQueryError: If the tool is missing, too slow, or fails.
    """
    cmd = [
        build_command,
        "eval",
        "--json",
        flake_ref,
        "--apply",
        KERNEL_OPTIONS_APPLY_EXPR,
    ]
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=True,
        )
    except FileNotFoundError as e:
        raise KernelQueryError(
            f"{build_command} is not installed", code="tool_not_found"
        ) from e
    except subprocess.TimeoutExpired as e:
        raise KernelQueryError(
            f"kernel query timed out after {timeout}s", code="timeout"
        ) from e
    except subprocess.CalledProcessError as e:
        raise KernelQueryError(
            f"failed to evaluate available kernels: {e.stderr.strip()}"
        ) from e
    except OSError as e:
        raise KernelQueryError(f"failed to evaluate available kernels: {e}") from e

    try:
        rows = json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise KernelQueryError(
            "failed to parse kernel query output", code="invalid_output"
        ) from e
    if not isinstance(rows, list):
        raise KernelQueryError(
            "failed to parse kernel query output", code="invalid_output"
        )

    options: dict[str, KernelOption] = {}
    for row in rows:
        if not isinstance(row, dict):
            continue
        attr = str(row.get("attr") or "").strip()
        if not attr or not KERNEL_ATTR_PATTERN.fullmatch(attr) or attr in options:
            continue
        options[attr] = KernelOption(
            attr=attr, version=str(row.get("version") or "").strip()
        )

    logger.debug("Discovered %d kernel options", len(options))
    return [options[attr] for attr in sorted(options)]


__all__ = [
    "KERNEL_ATTR_PATTERN",
    "MAX_KERNEL_PATCH_COUNT",
    "MAX_KERNEL_PATCH_SIZE_BYTES",
    "MAX_KERNEL_PATCH_TOTAL_SIZE_BYTES",
    "KernelConfigError",
    "KernelOption",
    "KernelQueryError",
    "decode_patch_content",
    "is_valid_patch_name",
    "list_available_kernel_options",
    "normalize_kernel_config",
    "validate_kernel_config",
]
