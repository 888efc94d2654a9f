"""API key identity resolution.

Callers authenticate with an ``X-API-Key`` header. Configured keys map to a
user identity (id, role, subscription tier) which the governance layer uses
for per-user limiting, role exemptions and admin authorization. Requests
without a recognised key are anonymous and are limited by network address.

Keys are configured in ``APP_API_KEYS`` as comma-separated entries of the
form ``key:user_id[:role[:tier]]``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import Request

from app.core.config import AppSettings
from app.core.errors import AuthenticationAppError
from app.core.logging import hash_identifier

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"


@dataclass(frozen=True)
class Identity:
    """Authenticated caller."""

    user_id: str
    role: str = "user"
    tier: str = "free"


def parse_api_keys(keys_string: str | None) -> dict[str, Identity]:
    """Parse comma-separated ``key:user_id[:role[:tier]]`` entries.

    Args:
        keys_string: Raw configuration value, or None.

    Returns:
        Mapping of API key to identity. Malformed entries are skipped.

    Examples:
        >>> parse_api_keys("k1:u1:admin, k2:u2")
        {'k1': Identity(user_id='u1', role='admin', tier='free'), 'k2': Identity(user_id='u2', role='user', tier='free')}
        >>> parse_api_keys(None)
        {}
    """
    if not keys_string:
        return {}

    identities: dict[str, Identity] = {}
    for raw_entry in keys_string.split(","):
        parts = [p.strip() for p in raw_entry.strip().split(":")]
        if len(parts) < 2 or not parts[0] or not parts[1]:
            if raw_entry.strip():
                logger.warning("auth.malformed_key_entry", extra={"parts": len(parts)})
            continue
        key, user_id, *rest = parts
        role = rest[0] if len(rest) > 0 and rest[0] else "user"
        tier = rest[1] if len(rest) > 1 and rest[1] else "free"
        identities[key] = Identity(user_id=user_id, role=role, tier=tier)
    return identities


class IdentityResolver:
    """Map request credentials and transport details to a caller identity."""

    def __init__(self, app_settings: AppSettings) -> None:
        self._identities = parse_api_keys(app_settings.api_keys)
        self._trust_forwarded_for = app_settings.trust_forwarded_for

    def identify(self, request: Request) -> Identity | None:
        api_key = request.headers.get(API_KEY_HEADER)
        if not api_key:
            return None

        identity = self._identities.get(api_key)
        if identity is None:
            logger.info(
                "auth.unknown_api_key",
                extra={"api_key_hash": hash_identifier(api_key)},
            )
        return identity

    def client_address(self, request: Request) -> str:
        """Return the caller's network address.

        Uses the first ``X-Forwarded-For`` hop only when proxies are trusted.
        """
        if self._trust_forwarded_for:
            forwarded = request.headers.get("X-Forwarded-For", "")
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop
        return request.client.host if request.client else "unknown"


async def require_admin(request: Request) -> Identity:
    """FastAPI dependency restricting a route to admin identities.

    The governance middleware stores the resolved identity on
    ``request.state.identity``.

    Raises:
        AuthenticationAppError: When the caller is anonymous or not an admin.
    """
    identity: Identity | None = getattr(request.state, "identity", None)
    if identity is None:
        raise AuthenticationAppError(
            code="AUTHENTICATION_REQUIRED",
            message="Missing or invalid API key. Provide X-API-Key header.",
        )
    if identity.role != "admin":
        logger.warning(
            "auth.admin_denied",
            extra={"user_id": identity.user_id, "role": identity.role},
        )
        raise AuthenticationAppError(
            code="ADMIN_REQUIRED",
            message="This operation requires an administrator.",
        )
    return identity
