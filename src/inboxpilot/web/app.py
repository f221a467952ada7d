"""FastAPI application for the InboxPilot webhook and management API.

Creates the FastAPI app with:
- Lifespan context manager that builds the shared Services
- Correlation-id middleware so every log line of a request shares a request_id
- Webhook, queue-callback and rule management routers

Usage:
    from inboxpilot.web.app import create_app

    app = create_app()
    # Run with: uvicorn.run(app, host="127.0.0.1", port=8000)
"""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request

from inboxpilot.core.logging import get_logger, set_correlation_id

if TYPE_CHECKING:
    from inboxpilot.engine.context import Services

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build dependencies on startup, release them on shutdown.

    Services passed to ``create_app`` (tests) are used as-is and not closed.
    """
    from inboxpilot.config import get_config
    from inboxpilot.engine.context import create_services

    services = getattr(app.state, "services", None)
    owned = services is None
    if owned:
        config = get_config()
        services = await create_services(config)
        app.state.services = services
        if config.llm_logging.enabled:
            await services.store.prune_llm_logs(config.llm_logging.retention_days)
        logger.info(
            "services_started",
            queue_enabled=services.queue is not None,
            database=config.database.path,
        )

    yield

    if owned:
        await services.close()
        logger.info("services_stopped")


def _refresh_config(app: FastAPI) -> None:
    """Swap in the config file's new contents if it changed since the last request."""
    from inboxpilot.config import get_config, reload_config_if_changed

    services = getattr(app.state, "services", None)
    if services is not None and reload_config_if_changed():
        services.config = get_config()


def create_app(services: Services | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        services: Prebuilt services; when None they are created from config
            during startup

    Returns:
        Configured FastAPI instance
    """
    from inboxpilot.web.routes import api_router

    app = FastAPI(
        title="InboxPilot",
        description="AI rule engine for Gmail and Outlook mailboxes",
        version="0.1.0",
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    @app.middleware("http")
    async def correlation_id(request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:12]
        set_correlation_id(request_id)
        _refresh_config(request.app)
        try:
            response = await call_next(request)
        finally:
            set_correlation_id(None)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    app.include_router(api_router)

    return app
