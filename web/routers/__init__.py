"""Router modules for FastAPI web API."""

from web.routers import (
    builds,
    config,
    fleets,
    health,
    profiles,
    releases,
    rollouts,
    update,
)

__all__ = [
    "builds",
    "config",
    "fleets",
    "health",
    "profiles",
    "releases",
    "rollouts",
    "update",
]
