"""API version negotiation.

Determines which API version a request targets, rejects unsupported
versions, computes the version response headers, and shapes outbound
payloads per version.

Extraction strategies are plain functions tried in a fixed order; the first
one that returns a value wins:

1. URL path: ``/api/v1/users``
2. Accept header: ``Accept: application/vnd.<vendor>.v1+json``
3. Custom header: ``X-API-Version: v1``
4. Query parameter: ``?version=v1``

If none match, the configured default version is used.
"""

from __future__ import annotations

import inspect
import logging
import re
import threading
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from types import MappingProxyType
from typing import Any, Callable, Mapping

from fastapi import Request

from app.core.config import VersioningSettings
from app.core.errors import (
    UnsupportedVersionError,
    ValidationAppError,
    VersionHandlerNotFoundError,
    VersionTooLowError,
)

logger = logging.getLogger(__name__)

VERSION_HEADER = "X-API-Version"

_PATH_VERSION_RE = re.compile(r"^/api/v(\d+)/")
_VERSION_SUFFIX_RE = re.compile(r"^v(\d+)$")

VERSIONING_METHODS = (
    "URL path (/api/v1/endpoint)",
    "Accept header (Accept: application/vnd.{vendor}.v1+json)",
    "X-API-Version header (X-API-Version: v1)",
    "Query parameter (?version=v1)",
)

Extractor = Callable[[Request], "str | None"]


def from_path(request: Request) -> str | None:
    match = _PATH_VERSION_RE.match(request.url.path)
    return f"v{match.group(1)}" if match else None


def accept_header_extractor(vendor: str) -> Extractor:
    """Build an extractor for ``application/vnd.<vendor>.vN+json``."""
    pattern = re.compile(rf"application/vnd\.{re.escape(vendor)}\.v(\d+)\+json")

    def from_accept(request: Request) -> str | None:
        accept = request.headers.get("Accept")
        if not accept:
            return None
        match = pattern.search(accept)
        return f"v{match.group(1)}" if match else None

    return from_accept


def from_version_header(request: Request) -> str | None:
    value = request.headers.get(VERSION_HEADER)
    return value.lower() if value else None


def from_query(request: Request) -> str | None:
    value = request.query_params.get("version")
    return value.lower() if value else None


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def version_number(version: str) -> int:
    """Return the numeric suffix of a ``vN`` identifier.

    Raises:
        ValidationAppError: If the identifier is not of the form ``v<digits>``.
    """
    match = _VERSION_SUFFIX_RE.match(version or "")
    if not match:
        raise ValidationAppError(
            code="MALFORMED_API_VERSION",
            message=f"API version '{version}' is not of the form v<number>",
            details={"version": version},
        )
    return int(match.group(1))


@dataclass(frozen=True)
class DeprecationRecord:
    deprecated: bool = False
    sunset_date: date | None = None
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "deprecated": self.deprecated,
            "sunsetDate": self.sunset_date.isoformat() if self.sunset_date else None,
            "message": self.message,
        }


class DeprecationRegistry:
    """Process-wide deprecation records keyed by version.

    Reads go through an immutable snapshot without locking; writes replace
    the snapshot under a lock (copy-on-write).
    """

    def __init__(self, initial: Mapping[str, DeprecationRecord] | None = None) -> None:
        self._lock = threading.Lock()
        self._records: Mapping[str, DeprecationRecord] = MappingProxyType(dict(initial or {}))

    def get(self, version: str) -> DeprecationRecord | None:
        return self._records.get(version)

    def set(self, version: str, record: DeprecationRecord) -> None:
        with self._lock:
            updated = dict(self._records)
            updated[version] = record
            self._records = MappingProxyType(updated)

    def snapshot(self) -> Mapping[str, DeprecationRecord]:
        return self._records


@dataclass(frozen=True)
class VersionContext:
    """Per-request version state."""

    requested: str
    resolved: bool


@dataclass(frozen=True)
class ResolvedVersion:
    context: VersionContext
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def version(self) -> str:
        return self.context.requested


class VersionResolver:
    """Negotiates the API version for each request."""

    def __init__(self, config: VersioningSettings) -> None:
        self.supported_versions: tuple[str, ...] = tuple(config.supported)
        self.default_version = config.default
        self.current_version = config.current
        self.vendor = config.vendor
        self.extractors: tuple[Extractor, ...] = (
            from_path,
            accept_header_extractor(config.vendor),
            from_version_header,
            from_query,
        )
        self.deprecations = DeprecationRegistry(
            {
                version: DeprecationRecord(
                    deprecated=item.deprecated,
                    sunset_date=item.sunset_date,
                    message=item.message,
                )
                for version, item in config.deprecations.items()
            }
        )

    def extract_version(self, request: Request) -> str:
        for extractor in self.extractors:
            version = extractor(request)
            if version:
                return version
        return self.default_version

    def validate(self, version: str) -> bool:
        return version in self.supported_versions

    def _unsupported(self, version: str) -> UnsupportedVersionError:
        return UnsupportedVersionError(
            requested_version=version,
            supported_versions=list(self.supported_versions),
            current_version=self.current_version,
        )

    def resolve(self, request: Request) -> ResolvedVersion:
        """Extract and validate the request version and build response headers.

        Args:
            request: Incoming request.

        Returns:
            ResolvedVersion with the version context and headers to set.

        Raises:
            UnsupportedVersionError: If the extracted version is not supported.
        """
        requested = self.extract_version(request)
        if not self.validate(requested):
            raise self._unsupported(requested)

        headers = {
            "X-API-Version": requested,
            "X-API-Current-Version": self.current_version,
            "X-API-Supported-Versions": ", ".join(self.supported_versions),
        }

        deprecation = self.deprecations.get(requested)
        if deprecation and deprecation.deprecated:
            if deprecation.message:
                headers["X-API-Deprecation-Warning"] = deprecation.message
            if deprecation.sunset_date:
                headers["X-API-Sunset-Date"] = deprecation.sunset_date.isoformat()
            logger.warning(
                "api_version.deprecated_used",
                extra={
                    "version": requested,
                    "path": request.url.path,
                    "method": request.method,
                    "user_agent": request.headers.get("User-Agent"),
                    "client_host": request.client.host if request.client else None,
                    "sunset_date": deprecation.sunset_date,
                },
            )

        return ResolvedVersion(
            context=VersionContext(requested=requested, resolved=True),
            headers=headers,
        )

    def format_response(
        self,
        payload: Any,
        version: str,
        *,
        request_id: str | None = None,
    ) -> Any:
        """Wrap payload in the envelope for version.

        Unknown versions get the v1 envelope shape. Error envelopes
        (``success`` is False) are returned unchanged.
        """
        if isinstance(payload, Mapping) and payload.get("success") is False:
            return payload

        if version == "v2":
            return {
                "status": "success",
                "result": payload,
                "meta": {
                    "timestamp": _utc_timestamp(),
                    "version": "v2",
                    "requestId": request_id or uuid.uuid4().hex[:9],
                },
            }

        return {
            "success": True,
            "data": payload,
            "timestamp": _utc_timestamp(),
            "version": version,
        }

    def is_compatible(self, requested: str, target: str) -> bool:
        """Whether requested is at least as new as target.

        Raises:
            ValidationAppError: If either identifier is malformed.
        """
        return version_number(requested) >= version_number(target)

    def deprecate(
        self,
        version: str,
        sunset_date: date | None,
        message: str | None = None,
    ) -> DeprecationRecord:
        """Mark a supported version deprecated.

        Raises:
            UnsupportedVersionError: If version is not supported.
        """
        version = version.lower()
        if not self.validate(version):
            raise self._unsupported(version)

        when = sunset_date.isoformat() if sunset_date else "a future date"
        record = DeprecationRecord(
            deprecated=True,
            sunset_date=sunset_date,
            message=message or f"API {version} is deprecated and will be removed on {when}",
        )
        self.deprecations.set(version, record)
        logger.info(
            "api_version.deprecated",
            extra={"version": version, "sunset_date": sunset_date},
        )
        return record

    def get_version_info(self) -> dict[str, Any]:
        return {
            "supportedVersions": list(self.supported_versions),
            "currentVersion": self.current_version,
            "defaultVersion": self.default_version,
            "deprecationWarnings": {
                version: record.to_dict()
                for version, record in self.deprecations.snapshot().items()
                if record.deprecated
            },
            "versioningMethods": [m.format(vendor=self.vendor) for m in VERSIONING_METHODS],
        }

    def ensure_minimum(self, requested: str, minimum: str) -> None:
        """Raise VersionTooLowError when requested is older than minimum."""
        if not self.is_compatible(requested, minimum):
            raise VersionTooLowError(
                requested_version=requested,
                minimum_version=minimum,
                current_version=self.current_version,
            )


def require_version(minimum: str):
    """Build a FastAPI dependency rejecting requests older than ``minimum``.

    Usage:
        @router.get("/reports", dependencies=[Depends(require_version("v2"))])
    """

    async def dependency(request: Request) -> str:
        resolver: VersionResolver = request.app.state.version_resolver
        requested = getattr(request.state, "api_version", resolver.default_version)
        resolver.ensure_minimum(requested, minimum)
        return requested

    return dependency


def versioned_route(handlers: Mapping[str, Callable[[Request], Any]]):
    """Build an endpoint that dispatches on the negotiated API version.

    Handlers receive the request and may be plain or async callables.

    Usage:
        router.add_api_route("/contacts", versioned_route({"v1": list_v1, "v2": list_v2}))

    Raises:
        VersionHandlerNotFoundError: When no handler is registered for the
            request's version (404).
    """
    table = {version.lower(): handler for version, handler in handlers.items()}

    async def endpoint(request: Request) -> Any:
        resolver: VersionResolver = request.app.state.version_resolver
        version = getattr(request.state, "api_version", resolver.default_version)
        handler = table.get(version)
        if handler is None:
            raise VersionHandlerNotFoundError(version, list(table))

        result = handler(request)
        if inspect.isawaitable(result):
            result = await result
        return result

    return endpoint
