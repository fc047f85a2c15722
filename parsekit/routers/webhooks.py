# parsekit/routers/webhooks.py
from __future__ import annotations

import hmac
import json
import logging
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from parsekit.config.settings import get_settings
from parsekit.http.protocol import WEBHOOK_KEY
from parsekit.webhooks.payload import WebhookPayload
from parsekit.webhooks.registry import WebhookRegistry, webhooks

logger = logging.getLogger("parse.webhooks")

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _registry(request: Request) -> WebhookRegistry:
    return getattr(request.app.state, "webhooks", None) or webhooks


def _webhook_key(request: Request) -> Optional[str]:
    if hasattr(request.app.state, "webhook_key"):
        return request.app.state.webhook_key
    return get_settings().webhook_key


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


@router.post("")
async def http_receive_webhook(request: Request):
    expected = _webhook_key(request)
    received = request.headers.get(WEBHOOK_KEY) or ""
    if expected and not hmac.compare_digest(received, expected):
        logger.warning("webhooks.bad_key path=%s", request.url.path)
        return _error("Invalid Parse-Webhook Key", 401)

    content_type = request.headers.get("content-type", "")
    if not content_type.lower().startswith("application/json"):
        return _error("Invalid content-type format. Should be application/json.", 415)

    raw = await request.body()
    try:
        body = json.loads(raw or b"null")
        if not isinstance(body, dict):
            raise ValueError("payload must be a JSON object")
        payload = WebhookPayload.model_validate(body)
    except (ValueError, ValidationError) as e:
        logger.info("webhooks.invalid_payload err=%s", e)
        return _error("Invalid payload format. Should be valid JSON.", 400)

    result = await run_in_threadpool(_registry(request).dispatch, payload)
    return JSONResponse(result.as_json(), status_code=result.status_code)
