from __future__ import annotations

from fastapi import APIRouter, Query, Request

from app.core.errors import UnsupportedVersionError
from app.core.governance import versioned_response
from app.services.version_resolver import VersionResolver

router = APIRouter(prefix="/api/version", tags=["Version"])


def _resolver(request: Request) -> VersionResolver:
    return request.app.state.version_resolver


@router.get("")
async def get_version_info(request: Request):
    """Return supported, current and default versions plus active deprecations."""
    resolver = _resolver(request)
    info = resolver.get_version_info()
    info["examples"] = {
        "urlPath": "/api/v1/users",
        "acceptHeader": f"Accept: application/vnd.{resolver.vendor}.v1+json",
        "customHeader": "X-API-Version: v1",
        "queryParameter": "?version=v1",
    }
    return versioned_response(request, info)


@router.get("/compatibility")
async def check_compatibility(
    request: Request,
    requested: str = Query(..., description="Requested API version"),
    target: str = Query(..., description="Version to check compatibility against"),
):
    """Check whether ``requested`` satisfies features introduced in ``target``.

    Both versions must be supported; otherwise 400 UNSUPPORTED_API_VERSION.
    """
    resolver = _resolver(request)
    requested = requested.lower()
    target = target.lower()

    for version in (requested, target):
        if not resolver.validate(version):
            raise UnsupportedVersionError(
                requested_version=version,
                supported_versions=list(resolver.supported_versions),
                current_version=resolver.current_version,
            )

    compatible = resolver.is_compatible(requested, target)
    message = (
        f"Version {requested} is compatible with {target}"
        if compatible
        else f"Version {requested} is not compatible with {target}. Please upgrade to {target} or higher."
    )
    return versioned_response(
        request,
        {
            "compatible": compatible,
            "requestedVersion": requested,
            "targetVersion": target,
            "message": message,
        },
    )
