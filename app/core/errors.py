"""Application-level exception types.

This module defines domain errors used across services/adapters, enabling
consistent error handling, logging, and API responses.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class AppError(Exception):
    """Base error for application/domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details returned to clients.
    """

    code: str
    message: str
    details: dict[str, Any] | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class ValidationAppError(AppError):
    """Raised when input/config validation fails."""


class AuthenticationAppError(AppError):
    """Raised when authentication/authorization fails."""


class ConfigurationAppError(AppError):
    """Raised at startup when governance configuration is invalid."""


class UnsupportedVersionError(AppError):
    """Raised when a request targets an API version that is not supported."""

    def __init__(
        self,
        requested_version: str,
        supported_versions: list[str],
        current_version: str,
    ) -> None:
        super().__init__(
            code="UNSUPPORTED_API_VERSION",
            message=(
                f"API version '{requested_version}' is not supported. "
                f"Supported versions: {', '.join(supported_versions)}"
            ),
            details={
                "requestedVersion": requested_version,
                "supportedVersions": list(supported_versions),
                "currentVersion": current_version,
            },
        )


class VersionHandlerNotFoundError(AppError):
    """Raised when an endpoint has no handler for the negotiated API version."""

    def __init__(self, requested_version: str, available_versions: list[str]) -> None:
        super().__init__(
            code="VERSION_HANDLER_NOT_FOUND",
            message=f"No handler available for API version '{requested_version}' on this endpoint",
            details={
                "availableVersions": list(available_versions),
                "requestedVersion": requested_version,
            },
        )


class VersionTooLowError(AppError):
    """Raised when an endpoint requires a newer API version than requested."""

    def __init__(self, requested_version: str, minimum_version: str, current_version: str) -> None:
        super().__init__(
            code="VERSION_TOO_LOW",
            message=(
                f"This endpoint requires API version {minimum_version} or higher. "
                f"You are using {requested_version}."
            ),
            details={
                "requestedVersion": requested_version,
                "minimumVersion": minimum_version,
                "currentVersion": current_version,
            },
        )


class RateLimitExceededError(AppError):
    """Raised when a limiting key has exhausted its window budget."""

    def __init__(self, code: str, message: str, *, retry_after: int, limit: int, window_ms: int) -> None:
        super().__init__(
            code=code,
            message=message,
            details={
                "retryAfter": retry_after,
                "limit": limit,
                "windowMs": window_ms,
            },
        )


class StoreUnavailableError(AppError):
    """Raised by counter store adapters when the backing store cannot be reached."""
