"""Pydantic schemas for version and rate limit administration payloads."""

from datetime import date, datetime

from pydantic import BaseModel, Field


class DeprecateVersionRequest(BaseModel):
    """Body for marking an API version deprecated."""

    sunset_date: date | None = Field(
        None,
        alias="sunsetDate",
        description="Date after which the version will be removed.",
    )
    message: str | None = Field(
        None,
        max_length=500,
        description="Warning returned in X-API-Deprecation-Warning. Defaults to a generated message.",
    )

    model_config = {"populate_by_name": True}


class RateLimitStatusResponse(BaseModel):
    """Read-only view of a user's counter for one policy."""

    user_id: str = Field(..., serialization_alias="userId")
    policy: str
    available: bool
    limit: int | None = None
    remaining: int | None = None
    reset_time: datetime | None = Field(None, serialization_alias="resetTime")
    window_ms: int | None = Field(None, serialization_alias="windowMs")
    message: str | None = None
