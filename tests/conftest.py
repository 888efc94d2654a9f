"""Pytest configuration and fixtures shared across all test modules.

This file is automatically loaded by pytest before running any tests.
It sets the TESTING environment variable to prevent loading the .env file
during tests, and provides isolated apps built with a mocked clock and an
in-memory counter store.
"""

import os

# CRITICAL: Set this before any imports that might load settings
# This prevents Pydantic from loading the .env file in tests
os.environ["TESTING"] = "true"

os.environ.setdefault("APP_API_KEYS", "admin-key:admin-1:admin,user-key:u1:user")
os.environ.setdefault("RATE_LIMIT_BACKEND", "memory")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from typing import Callable
from unittest.mock import Mock
from urllib.parse import urlencode

import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from app.adapters.counter_store.in_memory import InMemoryCounterStore
from app.core.app_factory import create_app
from app.core.auth import IdentityResolver
from app.core.config import (
    AppSettings,
    LimitPolicy,
    PolicyName,
    RateLimitSettings,
    Settings,
    VersioningSettings,
    default_policies,
)
from app.services.rate_governor import RateGovernor

ADMIN_HEADERS = {"X-API-Key": "admin-key"}
USER_HEADERS = {"X-API-Key": "user-key"}
API_KEYS = "admin-key:admin-1:admin,user-key:u1:user,user2-key:u2:user,pro-key:u3:user:pro"


def make_request(
    path: str = "/api/contacts",
    *,
    method: str = "GET",
    headers: dict[str, str] | None = None,
    query: dict[str, str] | None = None,
    client_host: str = "1.2.3.4",
) -> Request:
    """Build a Starlette request from a raw ASGI scope."""
    raw_headers = [
        (name.lower().encode("latin-1"), value.encode("latin-1"))
        for name, value in (headers or {}).items()
    ]
    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "raw_path": path.encode(),
        "query_string": urlencode(query or {}).encode(),
        "headers": raw_headers,
        "client": (client_host, 50000),
        "server": ("testserver", 80),
        "scheme": "http",
        "root_path": "",
    }
    return Request(scope)


def small_policies(**overrides: LimitPolicy) -> dict[PolicyName, LimitPolicy]:
    """Default policy table with tiny limits for the api and public tiers."""
    policies = default_policies()
    policies[PolicyName.API] = policies[PolicyName.API].model_copy(update={"max": 3, "window_ms": 60_000})
    policies[PolicyName.PUBLIC] = policies[PolicyName.PUBLIC].model_copy(update={"max": 2, "window_ms": 60_000})
    for name, policy in overrides.items():
        policies[PolicyName(name)] = policy
    return policies


def build_settings(**rate_limit_overrides) -> Settings:
    rate_limit_kwargs = {"policies": small_policies()}
    rate_limit_kwargs.update(rate_limit_overrides)
    return Settings(
        app=AppSettings(api_keys=API_KEYS),
        versioning=VersioningSettings(),
        rate_limit=RateLimitSettings(**rate_limit_kwargs),
    )


@pytest.fixture
def clock() -> Mock:
    return Mock(return_value=1000.0)


@pytest.fixture
def store(clock: Mock) -> InMemoryCounterStore:
    return InMemoryCounterStore(clock=clock)


@pytest.fixture
def test_settings() -> Settings:
    return build_settings()


@pytest.fixture
def governor(test_settings: Settings, store: InMemoryCounterStore, clock: Mock) -> RateGovernor:
    return RateGovernor(
        test_settings.rate_limit,
        store,
        IdentityResolver(test_settings.app),
        clock=clock,
    )


@pytest.fixture
def app_factory(store: InMemoryCounterStore, clock: Mock) -> Callable[..., FastAPI]:
    """Build isolated apps sharing the test store and clock."""

    def factory(config: Settings | None = None) -> FastAPI:
        return create_app(
            config or build_settings(),
            store=store,
            clock=clock,
            configure_logs=False,
        )

    return factory


@pytest.fixture
def app(app_factory: Callable[..., FastAPI]) -> FastAPI:
    return app_factory()


@pytest.fixture
def client(app: FastAPI) -> TestClient:
    """Create FastAPI test client."""
    return TestClient(app)
