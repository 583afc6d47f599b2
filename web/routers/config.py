"""Configuration endpoints."""

from typing import Any

from fastapi import APIRouter, Depends

from fleet_imagegen.config import Settings
from web.deps import get_app_settings

router = APIRouter()


@router.get("")
def get_config(settings: Settings = Depends(get_app_settings)) -> dict[str, Any]:
    """Get effective configuration.

    Returns:
        Current configuration as JSON.
    """
    return {
        "source_dir": str(settings.source_dir),
        "updates_dir": str(settings.updates_dir),
        "db_url": settings.db_url,
        "tmp_dir": str(settings.tmp_dir) if settings.tmp_dir else None,
        "log_level": settings.log_level,
        "update_base_url": settings.update_base_url,
        "build_command": settings.build_command,
        "update_build_target": settings.update_build_target,
        "installer_build_target": settings.installer_build_target,
        "kernel_query_timeout": settings.kernel_query_timeout,
    }
