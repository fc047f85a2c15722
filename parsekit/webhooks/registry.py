# parsekit/webhooks/registry.py
from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from parsekit.errors import WebhookResponseError
from parsekit.models.record import Record
from parsekit.webhooks.payload import WebhookPayload

logger = logging.getLogger("parse.webhooks")

Handler = Callable[[WebhookPayload], Any]

KINDS = (
    "before_save",
    "after_save",
    "before_delete",
    "after_delete",
    "before_find",
    "after_find",
    "function",
)
# after-hooks fan out to every registered handler
_MULTI = {"after_save", "after_delete", "after_find"}

WILDCARD = "*"

_SERVER_OWNED = ("__type", "className", "objectId", "createdAt", "updatedAt")


def normalize_kind(kind: Any) -> str:
    """beforeSave / before_save / BEFORE_SAVE -> before_save"""
    s = str(kind).strip()
    if "_" not in s:
        s = re.sub(r"(?<!^)(?=[A-Z])", "_", s)
    s = s.lower()
    if s not in KINDS:
        raise ValueError(f"unknown webhook kind {kind!r}; expected one of {', '.join(KINDS)}")
    return s


def _route_name(target: Any) -> str:
    name = getattr(target, "parse_class", None) or target
    if not isinstance(name, str) or not name:
        raise ValueError("webhook route needs a class name, a Record class or '*'")
    return name


@dataclass
class WebhookResult:
    ok: bool
    result: Any = None
    error: Optional[str] = None
    status_code: int = 200
    latency_ms: int = 0

    def as_json(self) -> Dict[str, Any]:
        if self.ok:
            return {"success": self.result}
        return {"error": self.error}


class WebhookRegistry:
    """
    Routes inbound trigger and function calls to handlers.

        hooks = WebhookRegistry()

        @hooks.route("before_save", Song)
        def check_song(payload):
            song = payload.domain_object()
            if not song.title:
                payload.error("title is required")
            return song

    Handlers returning None answer {"success": true}. A handler returning a
    record answers with that record's fields, which is how a beforeSave hook
    rewrites the incoming object.
    """

    def __init__(self) -> None:
        self._routes: Dict[str, Dict[str, Any]] = {k: {} for k in KINDS}

    def route(self, kind: Any, target: Any = WILDCARD, handler: Optional[Handler] = None):
        k = normalize_kind(kind)
        name = _route_name(target)

        def register(fn: Handler) -> Handler:
            if k in _MULTI:
                self._routes[k].setdefault(name, []).append(fn)
            else:
                self._routes[k][name] = fn
            logger.debug("webhooks.route kind=%s name=%s", k, name)
            return fn

        if handler is not None:
            return register(handler)
        return register

    def function(self, name: str, handler: Optional[Handler] = None):
        return self.route("function", name, handler)

    def has(self, kind: Any, name: Any) -> bool:
        return _route_name(name) in self._routes[normalize_kind(kind)]

    def call_route(self, kind: Any, name: Any, payload: WebhookPayload) -> Any:
        """Run the handler(s) for kind/name; None when nothing is registered."""
        k = normalize_kind(kind)
        entry = self._routes[k].get(_route_name(name))
        if entry is None:
            return None
        if k in _MULTI:
            result = None
            for fn in entry:
                result = fn(payload)
            return result
        return entry(payload)

    # ---- dispatch ----

    def _render(self, payload: WebhookPayload, result: Any) -> Any:
        if result is None:
            return True
        if isinstance(result, Record):
            body = result.as_json()
            if payload.before_save:
                # the server replaces the incoming object's fields with these
                for key in _SERVER_OWNED:
                    body.pop(key, None)
            return body
        return result

    def dispatch(self, payload: WebhookPayload) -> WebhookResult:
        t0 = time.perf_counter()
        try:
            if payload.is_function:
                if not self.has("function", payload.function_name):
                    raise WebhookResponseError(f"unknown function {payload.function_name}")
                result = self.call_route("function", payload.function_name, payload)
            elif payload.is_trigger and payload.parse_class:
                kind = normalize_kind(payload.trigger_name)
                result = self.call_route(kind, payload.parse_class, payload)
                generic = self.call_route(kind, WILDCARD, payload)
                if result is None:
                    result = generic
            else:
                logger.warning("webhooks.unroutable payload=%s", payload.describe())
                result = None
            out = WebhookResult(True, result=self._render(payload, result))
        except WebhookResponseError as e:
            logger.info("webhooks.rejected %s: %s", payload.describe(), e.message)
            out = WebhookResult(False, error=e.message, status_code=400)
        except Exception:
            logger.exception("webhooks.handler_failed %s", payload.describe())
            out = WebhookResult(False, error="Internal webhook error", status_code=500)
        out.latency_ms = int((time.perf_counter() - t0) * 1000)
        logger.info(
            "webhooks.dispatch",
            extra={
                "event": {
                    "webhook": payload.describe(),
                    "ok": out.ok,
                    "latency_ms": out.latency_ms,
                }
            },
        )
        return out

    def run_function(self, name: str, params: Optional[Dict[str, Any]] = None, **extra: Any) -> WebhookResult:
        """Invoke a registered function locally, as if the server had called it."""
        payload = WebhookPayload(function_name=name, params=params or {}, **extra)
        return self.dispatch(payload)


# default registry used by the webhook router
webhooks = WebhookRegistry()
