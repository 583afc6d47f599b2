"""Update endpoints polled by devices.

- GET|HEAD /update/{fleet_id}/SHA256SUMS - Checksum manifest of the live
  artifacts of a fleet, computed on every request
- /update/SHA256SUMS - Always 404; manifests are only served per fleet

Every other path under /update is served as a static file from the
updates directory (mounted in web.app).
"""

import logging
import uuid

from fastapi import APIRouter, Depends, Request, Response
from fastapi import status as http_status

from fleet_imagegen.builds.artifacts import render_update_checksums
from fleet_imagegen.config import Settings
from web.deps import get_app_settings

logger = logging.getLogger(__name__)

router = APIRouter()

ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
MANIFEST_ALLOWED_METHODS = "GET, HEAD"
MANIFEST_HEADERS = {
    "Cache-Control": "no-store, max-age=0",
    "Pragma": "no-cache",
    "Expires": "0",
}
MANIFEST_MEDIA_TYPE = "text/plain; charset=utf-8"


def _is_fleet_id(value: str) -> bool:
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    # Reject the braced and URN forms uuid.UUID also accepts
    return len(value) == 36


@router.api_route("/SHA256SUMS", methods=ALL_METHODS, include_in_schema=False)
def global_checksums() -> Response:
    """Reject the unscoped manifest path."""
    return Response(status_code=http_status.HTTP_404_NOT_FOUND)


@router.api_route("/{fleet_id}/SHA256SUMS", methods=ALL_METHODS)
def fleet_checksums(
    fleet_id: str,
    request: Request,
    settings: Settings = Depends(get_app_settings),
) -> Response:
    """Serve the checksum manifest of a fleet's live artifacts.

    Args:
        fleet_id: Fleet ID (UUID).
        request: Incoming request.
        settings: Application settings.

    Returns:
        Manifest as plain text, never cached.
    """
    if not _is_fleet_id(fleet_id):
        return Response(status_code=http_status.HTTP_404_NOT_FOUND)

    if request.method not in ("GET", "HEAD"):
        return Response(
            status_code=http_status.HTTP_405_METHOD_NOT_ALLOWED,
            headers={"Allow": MANIFEST_ALLOWED_METHODS},
        )

    directory = settings.updates_dir / fleet_id
    try:
        content = render_update_checksums(directory)
    except FileNotFoundError:
        return Response(status_code=http_status.HTTP_404_NOT_FOUND)
    except OSError as e:
        logger.error(
            "Failed to generate update checksums for fleet %s in %s: %s",
            fleet_id,
            directory,
            e,
        )
        return Response(status_code=http_status.HTTP_500_INTERNAL_SERVER_ERROR)

    body = content.encode("utf-8")
    headers = {**MANIFEST_HEADERS, "Content-Length": str(len(body))}
    if request.method == "HEAD":
        body = b""
    return Response(
        content=body,
        media_type=MANIFEST_MEDIA_TYPE,
        headers=headers,
    )
