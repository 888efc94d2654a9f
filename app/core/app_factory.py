"""Application factory for FastAPI app.

Centralizes app construction (metadata, governance components, middleware,
handlers, routers) so tests can build isolated apps with their own settings,
counter store and clock.
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import FastAPI

from app.adapters.counter_store.base import AbstractCounterStore
from app.adapters.counter_store.factory import create_counter_store
from app.api.routes import admin_router, health_router, version_router
from app.core.auth import IdentityResolver
from app.core.config import Settings, settings as default_settings
from app.core.exception_handlers import setup_exception_handlers
from app.core.governance import governance_middleware
from app.core.logging import configure_logging
from app.core.middleware import request_id_middleware
from app.core.openapi import apply_openapi_customizations
from app.services.rate_governor import RateGovernor
from app.services.version_resolver import VersionResolver


def create_app(
    config: Settings | None = None,
    *,
    store: AbstractCounterStore | None = None,
    clock: Callable[[], float] = time.time,
    configure_logs: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        config: Settings to use; defaults to the global settings.
        store: Counter store; built from settings when omitted. A store passed
            in is not closed on shutdown.
        clock: Time source for rate limit reset times.
        configure_logs: Install the root log handler.

    Returns:
        Configured FastAPI app with middleware, handlers, routers and docs.

    Raises:
        ConfigurationAppError: If the rate limit policy table is incomplete.
    """
    cfg = config or default_settings

    # Logging first so subsequent init logs are formatted as desired
    if configure_logs:
        configure_logging(cfg.log)

    owns_store = store is None
    counter_store = store or create_counter_store(cfg)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if owns_store:
            counter_store.close()

    app = FastAPI(
        title="Request Governance API",
        description=(
            "API version negotiation and multi-tier rate limiting for the admin "
            "dashboard backend. Versions are selected by URL path, Accept header, "
            "X-API-Version header or ?version= query parameter. Requests are "
            "limited per policy (auth, passwordReset, email, upload, api, public, "
            "chat, search) per user or per IP."
        ),
        version="0.1.0",
        debug=cfg.app.debug,
        license_info={
            "name": "MIT License",
            "url": "https://opensource.org/licenses/MIT",
        },
        lifespan=lifespan,
    )

    identity_resolver = IdentityResolver(cfg.app)
    app.state.version_resolver = VersionResolver(cfg.versioning)
    app.state.rate_governor = RateGovernor(
        cfg.rate_limit,
        counter_store,
        identity_resolver,
        clock=clock,
    )
    app.state.rate_limit_headers = cfg.rate_limit.include_headers
    app.state.request_id_header = cfg.log.request_id_header

    # Middleware: the last registered runs outermost
    app.middleware("http")(governance_middleware)
    app.middleware("http")(request_id_middleware)

    # Exception handlers
    setup_exception_handlers(app)

    # Routers
    app.include_router(health_router)
    app.include_router(version_router)
    app.include_router(admin_router)

    # OpenAPI customizations (security scheme, tags, version header)
    apply_openapi_customizations(app)

    return app
