"""Configuration settings for fleet_imagegen.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_KERNEL_OPTIONS_FLAKE_REF = (
    "github:humaidq/fleeti#nixosConfigurations.fleeti.pkgs.linuxKernel.kernels"
)


def _default_source_dir() -> Path:
    """Return the default build source directory."""
    return Path.cwd() / "nixos"


def _default_updates_dir() -> Path:
    """Return the default update artifacts directory."""
    return Path.cwd() / "updates"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "fleet-imagegen" / "db.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the FLEET_IMG_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="FLEET_IMG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    source_dir: Path = Field(
        default_factory=_default_source_dir,
        description="Reference build source tree copied into every workspace",
    )
    updates_dir: Path = Field(
        default_factory=_default_updates_dir,
        description="Root directory for per-build and per-fleet update artifacts",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL",
    )
    tmp_dir: Path | None = Field(
        default=None,
        description="Parent directory for build workspaces (system default if unset)",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Build toolchain
    update_base_url: str = Field(
        default="http://localhost:8080",
        description="Scheme and host devices use to reach the update endpoint",
    )
    build_command: str = Field(
        default="nix",
        description="External image build tool executable",
    )
    update_build_target: str = Field(
        default=".#fleet-update",
        description="Build target producing the system update artifacts",
    )
    installer_build_target: str = Field(
        default=".#fleet-installer",
        description="Build target producing the installer image",
    )
    kernel_options_flake_ref: str = Field(
        default=DEFAULT_KERNEL_OPTIONS_FLAKE_REF,
        description="Flake reference listing the kernels available for profiles",
    )

    # Timeouts (in seconds)
    kernel_query_timeout: int = Field(
        default=20,
        ge=1,
        description="Timeout for kernel option discovery",
    )

    # HTTP listener
    host: str = Field(default="127.0.0.1", description="HTTP listen address")
    port: int = Field(default=8080, ge=1, le=65535, description="HTTP listen port")


def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = [
    "DEFAULT_KERNEL_OPTIONS_FLAKE_REF",
    "Settings",
    "get_settings",
    "print_settings_json",
]
