# parsekit/api.py
from __future__ import annotations

from typing import Optional

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from parsekit.config.settings import ClientSettings, get_settings
from parsekit.logging_utils import RequestLoggingMiddleware, setup_logging
from parsekit.routers import webhooks as webhooks_router
from parsekit.webhooks.registry import WebhookRegistry, webhooks

VERSION = "0.3.0"


def create_app(
    registry: Optional[WebhookRegistry] = None,
    settings: Optional[ClientSettings] = None,
) -> FastAPI:
    """
    Webhook receiver. Mount your handlers on `registry` (or the module-level
    `parsekit.webhooks.registry.webhooks`) and serve with any ASGI server:

        uvicorn parsekit.api:app
    """
    setup_logging()
    settings = settings or get_settings()

    app = FastAPI(title="parsekit webhooks", version=VERSION)
    app.state.webhooks = registry or webhooks
    app.state.webhook_key = settings.webhook_key

    app.add_middleware(RequestLoggingMiddleware)

    @app.get("/health", response_class=PlainTextResponse)
    async def health() -> str:
        return "ok"

    app.include_router(webhooks_router.router)
    return app


app = create_app()
