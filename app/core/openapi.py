"""OpenAPI metadata and customization utilities.

Provides a helper to enrich the generated OpenAPI schema with:
- Tags metadata
- API Key security scheme (``X-API-Key``) required on admin operations
- The optional ``X-API-Version`` request header on every operation
- The 429 response shared by every rate limited operation

This keeps documentation concerns decoupled from the app factory.
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import FastAPI

_VERSION_HEADER_PARAM = {
    "name": "X-API-Version",
    "in": "header",
    "required": False,
    "schema": {"type": "string", "example": "v1"},
    "description": "Requested API version. Path, Accept header and ?version= are also accepted.",
}

_RATE_LIMITED_RESPONSE = {
    "description": "Rate limit exceeded for the request's policy.",
    "content": {
        "application/json": {
            "example": {
                "success": False,
                "message": "Too many authentication attempts. Please try again in 15 minutes.",
                "error": "RATE_LIMIT_AUTH",
                "details": {"retryAfter": 900, "limit": 5, "windowMs": 900000},
            }
        }
    },
}


def apply_openapi_customizations(app: FastAPI) -> None:
    """Patch FastAPI's OpenAPI generation to add metadata and security.

    - Injects components.securitySchemes for API Key auth (header ``X-API-Key``)
    - Requires the API key on ``/api/admin`` operations only
    - Documents the version header and 429 response on every non-health operation
    - Adds tags metadata if not present
    """

    original_openapi = app.openapi

    def custom_openapi() -> Dict[str, Any]:
        if app.openapi_schema:
            return app.openapi_schema

        schema = original_openapi()

        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes.setdefault(
            "ApiKeyAuth",
            {
                "type": "apiKey",
                "in": "header",
                "name": "X-API-Key",
                "description": "Provide your API key via the X-API-Key header.",
            },
        )

        tags = schema.setdefault("tags", [])
        existing_tag_names = {t.get("name") for t in tags}
        desired_tags = [
            {"name": "Version", "description": "API version discovery and compatibility."},
            {"name": "Admin", "description": "Rate limit inspection and version lifecycle."},
            {"name": "Health", "description": "Liveness checks, exempt from rate limiting."},
        ]
        for tag in desired_tags:
            if tag["name"] not in existing_tag_names:
                tags.append(tag)

        for path, methods in schema.get("paths", {}).items():
            if path.endswith("/health"):
                continue
            for method_obj in methods.values():
                if not isinstance(method_obj, dict):
                    continue
                params = method_obj.setdefault("parameters", [])
                if not any(p.get("name") == "X-API-Version" for p in params):
                    params.append(dict(_VERSION_HEADER_PARAM))
                method_obj.setdefault("responses", {}).setdefault("429", _RATE_LIMITED_RESPONSE)
                if path.startswith("/api/admin"):
                    method_obj["security"] = [{"ApiKeyAuth": []}]

        app.openapi_schema = schema
        return schema

    app.openapi = custom_openapi  # type: ignore[assignment]
