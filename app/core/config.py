"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file
"""

from __future__ import annotations

import os
from datetime import date
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Determine which environment to load (default: development)
APP_ENV = os.getenv("APP_ENV", "development")

# Project root (so .env resolution doesn't depend on current working directory)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

# Map environments to their respective .env files (relative to PROJECT_ROOT)
ENV_FILE_MAP = {
    "development": ".env.development",
    "testing": ".env.testing",
    "staging": ".env.staging",
    "production": ".env.production",
}

# Select the .env file for the current environment
_env_filename = ENV_FILE_MAP.get(APP_ENV, ".env.development")
_env_path = PROJECT_ROOT / _env_filename

# Only load from file if it exists (production might inject via env vars only)
_env_file = str(_env_path) if _env_path.is_file() else None


# Load .env file early to populate os.environ before creating nested settings
# This is necessary because Pydantic nested BaseSettings don't inherit env_file
if _env_file and os.getenv("TESTING") != "true":
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


class PolicyName(str, Enum):
    """Named rate limiting tiers.

    The policy table must define every member; unknown names are rejected
    when settings are loaded.
    """

    AUTH = "auth"
    PASSWORD_RESET = "passwordReset"
    EMAIL = "email"
    UPLOAD = "upload"
    API = "api"
    PUBLIC = "public"
    CHAT = "chat"
    SEARCH = "search"


class LimitPolicy(BaseModel):
    """Static configuration for one rate limiting tier."""

    window_ms: int = Field(..., gt=0, description="Fixed window length in milliseconds")
    max: int = Field(..., gt=0, description="Requests allowed per window")
    message: str = Field(..., description="Human-readable denial message")
    error_code: str = Field(..., description="Machine-readable denial code")
    skip_successful_requests: bool = Field(
        False,
        description="Do not count requests whose response status is < 400",
    )
    skip_failed_requests: bool = Field(
        False,
        description="Do not count requests whose response status is >= 400",
    )
    scale_by_tier: bool = Field(
        False,
        description="Multiply max by the caller's subscription tier multiplier",
    )

    model_config = {"frozen": True}

    @property
    def defers_counting(self) -> bool:
        """Whether counting must wait for the response outcome."""
        return self.skip_successful_requests or self.skip_failed_requests


_MINUTE_MS = 60 * 1000
_HOUR_MS = 60 * _MINUTE_MS


def default_policies() -> dict[PolicyName, LimitPolicy]:
    """Return the built-in policy table."""

    return {
        PolicyName.AUTH: LimitPolicy(
            window_ms=15 * _MINUTE_MS,
            max=5,
            message="Too many authentication attempts. Please try again in 15 minutes.",
            error_code="RATE_LIMIT_AUTH",
            skip_successful_requests=True,
        ),
        PolicyName.PASSWORD_RESET: LimitPolicy(
            window_ms=_HOUR_MS,
            max=3,
            message="Too many password reset attempts. Please try again in 1 hour.",
            error_code="RATE_LIMIT_PASSWORD_RESET",
        ),
        PolicyName.EMAIL: LimitPolicy(
            window_ms=5 * _MINUTE_MS,
            max=3,
            message="Too many email requests. Please wait 5 minutes before requesting another email.",
            error_code="RATE_LIMIT_EMAIL",
        ),
        PolicyName.UPLOAD: LimitPolicy(
            window_ms=_HOUR_MS,
            max=50,
            message="Upload limit exceeded. You can upload up to 50 files per hour.",
            error_code="RATE_LIMIT_UPLOAD",
        ),
        PolicyName.API: LimitPolicy(
            window_ms=15 * _MINUTE_MS,
            max=1000,
            message="API rate limit exceeded. Please slow down your requests.",
            error_code="RATE_LIMIT_API",
        ),
        PolicyName.PUBLIC: LimitPolicy(
            window_ms=15 * _MINUTE_MS,
            max=100,
            message="Rate limit exceeded. Please register or login for higher limits.",
            error_code="RATE_LIMIT_PUBLIC",
        ),
        PolicyName.CHAT: LimitPolicy(
            window_ms=_MINUTE_MS,
            max=60,
            message="Message rate limit exceeded. Please slow down.",
            error_code="RATE_LIMIT_CHAT",
        ),
        PolicyName.SEARCH: LimitPolicy(
            window_ms=_MINUTE_MS,
            max=30,
            message="Search rate limit exceeded. Please wait before searching again.",
            error_code="RATE_LIMIT_SEARCH",
        ),
    }


class DeprecationSetting(BaseModel):
    """Initial deprecation state for a version, loaded at startup."""

    deprecated: bool = False
    sunset_date: date | None = None
    message: str | None = None


def _build_app_settings() -> "AppSettings":
    """Build app settings from environment.

    Pydantic Settings (v2) can populate values from environment variables.
    However, static type checkers often treat required fields as required
    constructor arguments, which is not how BaseSettings is intended to be used.
    """

    return AppSettings()  # type: ignore[call-arg]


def _build_log_settings() -> "LogSettings":
    return LogSettings()  # type: ignore[call-arg]


def _build_versioning_settings() -> "VersioningSettings":
    return VersioningSettings()  # type: ignore[call-arg]


def _build_rate_limit_settings() -> "RateLimitSettings":
    return RateLimitSettings()  # type: ignore[call-arg]


def _build_redis_settings() -> "RedisSettings":
    return RedisSettings()  # type: ignore[call-arg]


class AppSettings(BaseSettings):
    """Application-wide configuration."""

    debug: bool = Field(
        False,
        description="Run FastAPI in debug mode (tracebacks in unhandled 500 responses)",
    )
    api_keys: str | None = Field(
        None,
        description=(
            "Comma-separated identities in the form key:user_id[:role[:tier]]. "
            "Requests without a matching X-API-Key are anonymous."
        ),
    )
    trust_forwarded_for: bool = Field(
        False,
        description="Use the first X-Forwarded-For hop as the client address",
    )

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        case_sensitive=False,
    )


class LogSettings(BaseSettings):
    """Logging output configuration."""

    level: str = Field("INFO", description="Root log level")
    format: str = Field("json", description="Either 'json' or 'plain'")
    output: str = Field("stdout", description="Either 'stdout' or 'file'")
    file_path: str | None = Field(None, description="Log file path when output=file")
    max_bytes: int = Field(
        10 * 1024 * 1024,
        description="Rotate the log file after this many bytes (0 disables rotation)",
    )
    backup_count: int = Field(5, description="Rotated log files to keep")
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header used to read and echo the request correlation id",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class VersioningSettings(BaseSettings):
    """API version negotiation configuration."""

    supported: list[str] = Field(
        default_factory=lambda: ["v1", "v2"],
        description="Exact version identifiers accepted by the API",
    )
    default: str = Field("v1", description="Version used when the request names none")
    current: str = Field("v1", description="Latest stable version advertised to clients")
    vendor: str = Field(
        "fuse19",
        description="Vendor token in Accept: application/vnd.<vendor>.vN+json",
    )
    deprecations: dict[str, DeprecationSetting] = Field(
        default_factory=lambda: {"v1": DeprecationSetting()},
        description="Initial deprecation records keyed by version",
    )

    model_config = SettingsConfigDict(
        env_prefix="API_VERSION_",
        case_sensitive=False,
    )

    @field_validator("supported")
    @classmethod
    def _normalize_supported(cls, value: list[str]) -> list[str]:
        normalized = [v.strip().lower() for v in value if v.strip()]
        if not normalized:
            raise ValueError("at least one supported version is required")
        return normalized

    @model_validator(mode="after")
    def _check_defaults_supported(self) -> "VersioningSettings":
        self.default = self.default.lower()
        self.current = self.current.lower()
        for name, value in (("default", self.default), ("current", self.current)):
            if value not in self.supported:
                raise ValueError(
                    f"{name} version '{value}' is not in supported versions {self.supported}"
                )
        return self


class RateLimitSettings(BaseSettings):
    """Multi-tier rate limiting configuration."""

    enabled: bool = Field(True, description="Enable request rate limiting")
    include_headers: bool = Field(
        True,
        description="Include X-RateLimit-* and Retry-After headers on responses",
    )
    backend: str = Field(
        "memory",
        description="Counter store backend: 'memory' or 'redis'",
    )
    exempt_paths: list[str] = Field(
        default_factory=lambda: ["/health", "/api/health"],
        description="Request paths never subject to rate limiting",
    )
    exempt_roles: list[str] = Field(
        default_factory=lambda: ["admin"],
        description="Identity roles never subject to rate limiting",
    )
    tier_multipliers: dict[str, int] = Field(
        default_factory=lambda: {
            "admin": 10,
            "premium": 5,
            "pro": 3,
            "basic": 2,
            "free": 1,
        },
        description="Limit multipliers for policies with scale_by_tier enabled",
    )
    policies: dict[PolicyName, LimitPolicy] = Field(
        default_factory=default_policies,
        description="Policy table; must define every PolicyName",
    )

    model_config = SettingsConfigDict(
        env_prefix="RATE_LIMIT_",
        case_sensitive=False,
    )

    @field_validator("backend")
    @classmethod
    def _check_backend(cls, value: str) -> str:
        value = value.lower()
        if value not in {"memory", "redis"}:
            raise ValueError("backend must be 'memory' or 'redis'")
        return value

    @model_validator(mode="after")
    def _check_policies_exhaustive(self) -> "RateLimitSettings":
        missing = [p.value for p in PolicyName if p not in self.policies]
        if missing:
            raise ValueError(f"rate limit policies missing: {', '.join(missing)}")
        return self


class RedisSettings(BaseSettings):
    """Redis connection configuration for the shared counter store."""

    url: str | None = Field(None, description="Redis URL, e.g. redis://localhost:6379/0")
    timeout_ms: int = Field(
        100,
        ge=1,
        description="Socket connect/read timeout for counter store calls",
    )
    key_prefix: str = Field("rl:", description="Prefix applied to every counter key")

    model_config = SettingsConfigDict(
        env_prefix="REDIS_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.
    Raises validation errors on startup if required settings are missing.

    Environments:
    - development: Local development (DEBUG=true)
    - testing: Automated tests (uses .env.testing)
    - staging: Pre-production (uses .env.staging)
    - production: Production deployment (uses .env.production)
    """

    app_env: str = APP_ENV
    app: AppSettings = Field(default_factory=_build_app_settings)
    log: LogSettings = Field(default_factory=_build_log_settings)
    versioning: VersioningSettings = Field(default_factory=_build_versioning_settings)
    rate_limit: RateLimitSettings = Field(default_factory=_build_rate_limit_settings)
    redis: RedisSettings = Field(default_factory=_build_redis_settings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


# Global settings instance - composed from domain-specific settings
# Nested settings are created via default_factory so env loading works.
settings = Settings()
