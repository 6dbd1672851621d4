"""FastAPI application factory with role-based route mounting."""

import os
from typing import Literal

from fastapi import FastAPI, Request, Response

from tezeus.observability.correlation import (
    CORRELATION_ID_HEADER,
    generate_correlation_id,
    reset_correlation_id,
    set_correlation_id,
)

from .routers import public, worker
from .routes import (
    campaigns,
    connections,
    conversations,
    google_calendar,
    me,
    n8n_callbacks,
    pipeline_cards,
    tasks_conversations,
    tasks_messages,
    webhooks_evolution,
    webhooks_zapi,
)

AppRole = Literal["public", "worker"]


def create_app(role: AppRole | None = None) -> FastAPI:
    """Create FastAPI app with routes based on APP_ROLE.

    Args:
        role: Explicit role override. If None, reads from APP_ROLE env var.
              Defaults to "public" if env var is not set.

    Returns:
        Configured FastAPI application.
    """
    if role is None:
        role = os.environ.get("APP_ROLE", "public")  # type: ignore[assignment]

    app = FastAPI(
        title="Tezeus",
        docs_url=None,
        redoc_url=None,
    )

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next) -> Response:
        cid = request.headers.get(CORRELATION_ID_HEADER) or generate_correlation_id()
        token = set_correlation_id(cid)
        try:
            response = await call_next(request)
            response.headers[CORRELATION_ID_HEADER] = cid
            return response
        finally:
            reset_correlation_id(token)

    # Public routes (always)
    app.include_router(public.router)
    app.include_router(me.router)
    app.include_router(webhooks_evolution.router)
    app.include_router(webhooks_zapi.router)
    app.include_router(n8n_callbacks.router)
    app.include_router(conversations.router)
    app.include_router(pipeline_cards.router)
    app.include_router(campaigns.router)
    app.include_router(google_calendar.router)
    app.include_router(connections.router)

    # Worker routes only for worker role
    if role == "worker":
        app.include_router(worker.router)
        app.include_router(tasks_messages.router)
        app.include_router(tasks_conversations.router)

    return app
