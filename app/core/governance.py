"""HTTP middleware wiring version negotiation and rate limiting.

For every request the middleware:
- resolves the caller identity from ``X-API-Key``
- negotiates the API version (400 on unsupported versions)
- classifies and checks the request against its rate limit policy (429 when
  the key is saturated)
- stores ``identity``, ``api_version``, ``version_context`` and
  ``rate_limit`` on ``request.state`` for downstream handlers
- runs the post-response counting hook for policies that only count some
  outcomes
- sets version and X-RateLimit-* response headers

Usage:
    app.middleware("http")(governance_middleware)
"""

from __future__ import annotations

from typing import Any

from fastapi import Request, Response
from fastapi.responses import JSONResponse

from app.core.exception_handlers import error_response
from app.core.errors import UnsupportedVersionError
from app.core.logging import get_request_id
from app.services.rate_governor import Decision, RateGovernor
from app.services.version_resolver import VersionResolver


def _rate_limit_headers(decision: Decision) -> dict[str, str]:
    if decision.limit is None:
        return {}
    headers = {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
    }
    if decision.reset_at is not None:
        headers["X-RateLimit-Reset"] = str(int(decision.reset_at))
    if not decision.allowed and decision.retry_after_seconds is not None:
        headers["Retry-After"] = str(decision.retry_after_seconds)
    return headers


async def governance_middleware(request: Request, call_next) -> Response:
    """Apply version negotiation and rate limiting ahead of route handlers."""

    resolver: VersionResolver = request.app.state.version_resolver
    governor: RateGovernor = request.app.state.rate_governor
    include_headers: bool = request.app.state.rate_limit_headers

    identity = governor.identities.identify(request)
    request.state.identity = identity

    try:
        resolved = resolver.resolve(request)
    except UnsupportedVersionError as exc:
        return error_response(exc, status_code=400)

    request.state.api_version = resolved.version
    request.state.version_context = resolved.context

    decision = governor.evaluate(request, identity)
    request.state.rate_limit = decision.context()
    limit_headers = _rate_limit_headers(decision) if include_headers else {}

    if not decision.allowed:
        response = error_response(governor.exceeded_error(decision), status_code=429)
        response.headers.update(resolved.headers)
        response.headers.update(limit_headers)
        return response

    try:
        response = await call_next(request)
    except Exception:
        governor.record_outcome(decision, 500)
        raise

    governor.record_outcome(decision, response.status_code)
    response.headers.update(resolved.headers)
    response.headers.update(limit_headers)
    return response


def versioned_response(request: Request, payload: Any, *, status_code: int = 200) -> JSONResponse:
    """Render payload in the envelope of the request's API version.

    v1-style success envelopes also carry the request's ``rateLimit`` block
    when the request was subject to a limit.
    """
    resolver: VersionResolver = request.app.state.version_resolver
    version = getattr(request.state, "api_version", resolver.default_version)
    body = resolver.format_response(payload, version, request_id=get_request_id())

    rate_limit = getattr(request.state, "rate_limit", None)
    if rate_limit and isinstance(body, dict) and body.get("success") is True:
        body["rateLimit"] = rate_limit

    return JSONResponse(status_code=status_code, content=body)


def rate_limit_action(action: str, *, window_ms: int, max_attempts: int):
    """Build a dependency limiting one action per user (or per address).

    Runs in addition to the policy check done by the middleware.

    Usage:
        @router.post("/export", dependencies=[Depends(rate_limit_action("export", window_ms=3_600_000, max_attempts=5))])

    Raises:
        RateLimitExceededError: When the action budget is exhausted (429).
    """

    async def dependency(request: Request) -> Decision:
        governor: RateGovernor = request.app.state.rate_governor
        identity = getattr(request.state, "identity", None)
        decision = governor.check_action(
            request,
            identity,
            action,
            window_ms=window_ms,
            max_attempts=max_attempts,
        )
        if not decision.allowed:
            raise governor.exceeded_error(decision)
        return decision

    return dependency
