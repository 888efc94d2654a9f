"""Administrative endpoints for rate limit inspection and version lifecycle.

All routes require an identity with the ``admin`` role.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from app.core.auth import Identity, require_admin
from app.core.config import PolicyName
from app.core.governance import versioned_response
from app.schemas.governance import DeprecateVersionRequest, RateLimitStatusResponse
from app.services.rate_governor import RateGovernor
from app.services.version_resolver import VersionResolver

router = APIRouter(prefix="/api/admin", tags=["Admin"], dependencies=[Depends(require_admin)])


def _governor(request: Request) -> RateGovernor:
    return request.app.state.rate_governor


@router.get("/rate-limits/policies")
async def list_policies(request: Request):
    """Sanitized policy table: window length and max per policy."""
    return versioned_response(request, _governor(request).policy_table())


@router.get("/rate-limits/{policy}/users/{user_id}")
async def get_rate_limit_status(request: Request, policy: PolicyName, user_id: str):
    """Current counter state for a user under one policy. Never mutates it."""
    status = _governor(request).get_status(user_id, policy)
    body = RateLimitStatusResponse(
        user_id=user_id,
        policy=policy.value,
        available=status.available,
        limit=status.limit,
        remaining=status.remaining,
        reset_time=status.reset_time,
        window_ms=status.window_ms,
        message=status.message,
    )
    return versioned_response(request, body.model_dump(mode="json", by_alias=True))


@router.delete("/rate-limits/{policy}/users/{user_id}")
async def clear_rate_limit(
    request: Request,
    policy: PolicyName,
    user_id: str,
    admin: Identity = Depends(require_admin),
):
    """Delete a user's counter, restoring full quota immediately."""
    cleared = _governor(request).clear(user_id, policy)
    return versioned_response(
        request,
        {
            "cleared": cleared,
            "userId": user_id,
            "policy": policy.value,
            "clearedBy": admin.user_id,
            "message": "Rate limit cleared" if cleared else "Rate limit store unavailable",
        },
        status_code=200 if cleared else 503,
    )


@router.post("/versions/{version}/deprecation")
async def deprecate_version(
    request: Request,
    version: str,
    body: DeprecateVersionRequest | None = None,
):
    """Mark a supported API version deprecated with an optional sunset date."""
    resolver: VersionResolver = request.app.state.version_resolver
    body = body or DeprecateVersionRequest()
    record = resolver.deprecate(version, body.sunset_date, body.message)
    return versioned_response(request, {"version": version.lower(), **record.to_dict()})
