from __future__ import annotations
import json
import logging
import os
import time
import uuid
from contextvars import ContextVar
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# Per-request correlation ID (webhook requests, or set by callers around client work)
correlation_id_ctx: ContextVar[str] = ContextVar("correlation_id", default="-")

LOG_FORMAT = "%(asctime)s %(levelname)s [%(correlation_id)s] %(name)s: %(message)s"

# headers that must never reach a log line
_SECRET_HEADERS = {"x-parse-master-key", "x-parse-session-token", "x-parse-webhook-key"}


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_ctx.get()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", "-"),
        }
        # logger.info("cache.store", extra={"event": {...}})
        evt = getattr(record, "event", None)
        if isinstance(evt, dict):
            payload.update(evt)
        return json.dumps(payload, ensure_ascii=True, default=str)


_CONFIGURED = False


def _env_truthy(name: str, default: str = "true") -> bool:
    val = os.getenv(name, default)
    return str(val or default).strip().lower() in {"true", "1", "t", "yes", "y", "on"}


def redact_headers(headers: dict) -> dict:
    return {
        k: ("***" if k.lower() in _SECRET_HEADERS else v)
        for k, v in (headers or {}).items()
    }


def setup_logging(level: Optional[int] = None) -> None:
    """
    Idempotent logging setup that ensures %(correlation_id)s is available in all log lines.
    LOG_JSON=1 switches every root handler to JSON lines.
    """
    global _CONFIGURED
    if _CONFIGURED:
        return

    filt = CorrelationIdFilter()
    root = logging.getLogger()
    root.addFilter(filt)

    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler.addFilter(filt)
        root.addHandler(handler)
        root.setLevel(level or logging.INFO)
    else:
        for h in list(root.handlers):
            fmt = getattr(h.formatter, "_fmt", "") if h.formatter else ""
            if "%(correlation_id)" not in fmt:
                h.setFormatter(logging.Formatter(LOG_FORMAT))
            h.addFilter(filt)

    if _env_truthy("LOG_JSON", "false"):
        for h in root.handlers:
            h.setFormatter(JsonFormatter())

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi"):
        logging.getLogger(name).addFilter(filt)

    _CONFIGURED = True


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    - Generates UUID correlation ID per request (also in request.state.correlation_id)
    - Logs start/end/errors (gated by LOG_REQUESTS, default true)
    - Adds X-Correlation-ID response header
    """

    def __init__(self, app):
        super().__init__(app)
        self._logger = logging.getLogger("request")
        self._log_requests = _env_truthy("LOG_REQUESTS", "true")

    async def dispatch(self, request: Request, call_next):
        cid = request.headers.get("X-Correlation-ID") or uuid.uuid4().hex
        token = correlation_id_ctx.set(cid)
        request.state.correlation_id = cid

        method = request.method
        path = request.url.path
        client = request.client.host if request.client else "-"
        start = time.perf_counter()

        if self._log_requests:
            self._logger.info(">> %s %s client=%s", method, path, client)

        try:
            response: Response = await call_next(request)
            dur_ms = int((time.perf_counter() - start) * 1000)
            response.headers["X-Correlation-ID"] = cid
            if self._log_requests:
                self._logger.info(
                    "<< %s %s %d %dms", method, path, response.status_code, dur_ms
                )
            return response
        except Exception as e:
            dur_ms = int((time.perf_counter() - start) * 1000)
            self._logger.exception(
                "!! %s %s error after %dms: %s", method, path, dur_ms, e
            )
            raise
        finally:
            correlation_id_ctx.reset(token)
