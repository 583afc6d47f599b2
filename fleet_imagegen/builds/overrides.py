"""Build override module generation.

Each build attempt writes a Nix module into its workspace that pins the
image version, points the device updater at the fleet's update directory,
selects the kernel, and adds the profile's packages. The module is
rewritten from scratch on every call, never appended to.
"""

from __future__ import annotations

import logging
import re
import shutil
from collections.abc import Sequence
from pathlib import Path

from fleet_imagegen.profiles.kernel import (
    decode_patch_content,
    validate_kernel_config,
)
from fleet_imagegen.profiles.schema import KernelConfigSchema, normalize_package_list

logger = logging.getLogger(__name__)

BUILD_OVERRIDES_PATH = Path("modules") / "build-overrides.nix"
KERNEL_PATCHES_DIR = Path("modules") / "kernel-patches"

OVERRIDES_FILE_MODE = 0o640

NIX_IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_']*$")
NIX_PACKAGE_SEGMENT_PATTERN = re.compile(r"^[A-Za-z0-9_+'-]+$")

_NIX_ESCAPES = {
    "\\": "\\\\",
    '"': '\\"',
    "$": "\\$",
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
}

OVERRIDES_TEMPLATE = """{{ lib, pkgs, ... }}:
{{
  system.image.version = "{version}";

  systemd.sysupdate.transfers."10-nix-store".Source.Path = lib.mkForce "{source}";
  systemd.sysupdate.transfers."20-boot-image".Source.Path = lib.mkForce "{source}";

{kernel}
  environment.systemPackages = with pkgs; [
{packages}  ];
}}
"""

KERNEL_OVERLAY_TEMPLATE = """nixpkgs.overlays = [
  (final: prev: {{
    fleetKernel = let
      baseKernel = prev.linuxKernel.kernels.{attr};
      sourceOverride = builtins.fetchGit {{
        url = "{url}";
        rev = "{rev}";
{ref_line}      }};
    in
    baseKernel.override {{
      argsOverride = {{
        src = sourceOverride;
        version = baseKernel.version;
        modDirVersion = baseKernel.version;
      }};
    }};

    fleetKernelPackages = final.linuxPackagesFor final.fleetKernel;
  }})
];

boot.kernelPackages = lib.mkForce pkgs.fleetKernelPackages;"""


class BuildOverridesError(Exception):
    """Raised when the build override module cannot be generated."""

    def __init__(self, message: str, code: str = "overrides_error") -> None:
        super().__init__(message)
        self.code = code


class PackageExpressionError(BuildOverridesError):
    """Raised when a package name cannot be rendered as a Nix expression."""

    def __init__(self, package: str, reason: str) -> None:
        super().__init__(f'package "{package}": {reason}', code="invalid_package")
        self.package = package


def escape_nix_string(value: str) -> str:
    """Escape a value for use inside a double-quoted Nix string."""
    return "".join(_NIX_ESCAPES.get(ch, ch) for ch in value)


def package_name_to_expression(package_name: str) -> str:
    """Render a dotted package name as a Nix attribute expression.

    Names made only of bare identifiers render as a dotted path evaluated
    inside ``with pkgs;``. If any segment needs quoting, the whole path is
    rooted at ``pkgs`` and that segment is quoted.

    Args:
        package_name: Package name such as 'python3Packages.requests'.

    Returns:
        Nix expression for the package.

    Raises:
        PackageExpressionError: If the name is empty or has invalid segments.
    """
    trimmed = package_name.strip()
    if not trimmed:
        raise PackageExpressionError(package_name, "package name is empty")

    segments = trimmed.split(".")
    for segment in segments:
        if not segment:
            raise PackageExpressionError(
                trimmed, "package name contains empty segment"
            )
        if not NIX_PACKAGE_SEGMENT_PATTERN.fullmatch(segment):
            raise PackageExpressionError(
                trimmed, "package name contains unsupported characters"
            )

    needs_prefix = False
    parts: list[str] = []
    for segment in segments:
        if NIX_IDENTIFIER_PATTERN.fullmatch(segment):
            parts.append(segment)
        else:
            needs_prefix = True
            parts.append(f'"{escape_nix_string(segment)}"')

    expression = ".".join(parts)
    return f"pkgs.{expression}" if needs_prefix else expression


def build_package_expressions(packages: Sequence[str]) -> list[str]:
    """Normalize a package list and render each entry.

    Raises:
        PackageExpressionError: On the first invalid package name.
    """
    return [
        package_name_to_expression(pkg)
        for pkg in normalize_package_list(list(packages))
    ]


def build_kernel_overrides_block(
    kernel: KernelConfigSchema,
    patch_files: Sequence[str] = (),
) -> str:
    """Render the kernel selection part of the override module.

    Args:
        kernel: Validated, normalized kernel selection.
        patch_files: Patch filenames written under the kernel patches
            directory, in application order.

    Returns:
        Nix statements (may be empty when the default kernel is kept).
    """
    if not kernel.attr:
        return ""

    override = kernel.source_override
    if not override.enabled:
        return (
            "boot.kernelPackages = lib.mkForce "
            f"(pkgs.linuxPackagesFor pkgs.linuxKernel.kernels.{kernel.attr});"
        )

    ref_line = ""
    if override.ref:
        ref_line = f'        ref = "{escape_nix_string(override.ref)}";\n'

    block = KERNEL_OVERLAY_TEMPLATE.format(
        attr=kernel.attr,
        url=escape_nix_string(override.url),
        rev=escape_nix_string(override.rev),
        ref_line=ref_line,
    )
    if patch_files:
        entries = "\n".join(
            f'  {{ name = "{escape_nix_string(Path(name).stem)}"; '
            f'patch = ./{KERNEL_PATCHES_DIR.name} + "/{escape_nix_string(name)}"; }}'
            for name in patch_files
        )
        block += f"\n\nboot.kernelPatches = [\n{entries}\n];"
    return block


def _indent(block: str, prefix: str = "  ") -> str:
    return "".join(
        prefix + line if line.strip() else line
        for line in block.splitlines(keepends=True)
    )


def write_kernel_patches(workspace_dir: Path, kernel: KernelConfigSchema) -> list[str]:
    """Write the kernel patches of a selection into the workspace.

    The patches directory is recreated on every call.

    Args:
        workspace_dir: Materialized build source tree.
        kernel: Validated, normalized kernel selection.

    Returns:
        Written patch filenames in application order.
    """
    patches_dir = workspace_dir / KERNEL_PATCHES_DIR
    if patches_dir.exists():
        shutil.rmtree(patches_dir)

    patches = kernel.source_override.patches if kernel.source_override.enabled else []
    if not patches:
        return []

    patches_dir.mkdir(parents=True)
    names: list[str] = []
    for patch in patches:
        (patches_dir / patch.name).write_bytes(decode_patch_content(patch))
        names.append(patch.name)
    return names


def render_build_overrides(
    version: str,
    fleet_id: str,
    packages: Sequence[str],
    kernel: KernelConfigSchema,
    update_base_url: str,
    patch_files: Sequence[str] = (),
) -> str:
    """Render the full override module text.

    Args:
        version: Image version label.
        fleet_id: Target fleet ID.
        packages: Package names from the profile.
        kernel: Kernel selection from the profile.
        update_base_url: Scheme and host of the update endpoint.
        patch_files: Kernel patch filenames already written.

    Returns:
        Nix module text.

    Raises:
        BuildOverridesError: If the fleet ID is empty.
        PackageExpressionError: If a package name is invalid.
        KernelConfigError: If the kernel selection is invalid.
    """
    fleet_id = fleet_id.strip()
    if not fleet_id:
        raise BuildOverridesError(
            "fleet ID is required for build override generation"
        )

    expressions = build_package_expressions(packages)
    normalized_kernel = validate_kernel_config(kernel)
    kernel_block = build_kernel_overrides_block(normalized_kernel, patch_files)

    update_source = f"{update_base_url.rstrip('/')}/update/{fleet_id}/"
    package_lines = "".join(f"    {expr}\n" for expr in expressions)

    return OVERRIDES_TEMPLATE.format(
        version=escape_nix_string(version),
        source=escape_nix_string(update_source),
        kernel=_indent(kernel_block) + "\n" if kernel_block else "",
        packages=package_lines,
    )


def write_build_overrides(
    workspace_dir: Path,
    version: str,
    fleet_id: str,
    packages: Sequence[str],
    kernel: KernelConfigSchema,
    update_base_url: str,
) -> Path:
    """Generate and write the override module into a workspace.

    Args:
        workspace_dir: Materialized build source tree.
        version: Image version label.
        fleet_id: Target fleet ID.
        packages: Package names from the profile.
        kernel: Kernel selection from the profile.
        update_base_url: Scheme and host of the update endpoint.

    Returns:
        Path of the written module.

    Raises:
        BuildOverridesError: If generation or writing fails.
        KernelConfigError: If the kernel selection is invalid.
    """
    normalized_kernel = validate_kernel_config(kernel)
    # Render before touching the workspace so invalid input writes nothing
    render_build_overrides(
        version, fleet_id, packages, normalized_kernel, update_base_url
    )

    overrides_path = workspace_dir / BUILD_OVERRIDES_PATH
    try:
        patch_files = write_kernel_patches(workspace_dir, normalized_kernel)
        body = render_build_overrides(
            version,
            fleet_id,
            packages,
            normalized_kernel,
            update_base_url,
            patch_files,
        )
        overrides_path.parent.mkdir(parents=True, exist_ok=True)
        # The copied module may be read-only
        overrides_path.unlink(missing_ok=True)
        overrides_path.write_text(body, encoding="utf-8")
        overrides_path.chmod(OVERRIDES_FILE_MODE)
    except OSError as e:
        raise BuildOverridesError(
            f"failed to write build overrides module: {e}"
        ) from e

    logger.debug("Wrote build overrides to %s", overrides_path)
    return overrides_path


__all__ = [
    "BUILD_OVERRIDES_PATH",
    "KERNEL_PATCHES_DIR",
    "BuildOverridesError",
    "PackageExpressionError",
    "build_kernel_overrides_block",
    "build_package_expressions",
    "escape_nix_string",
    "package_name_to_expression",
    "render_build_overrides",
    "write_build_overrides",
    "write_kernel_patches",
]
