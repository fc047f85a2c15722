# parsekit/http/client.py
from __future__ import annotations

import json
import logging
import time
import urllib.parse
from typing import Any, Dict, List, Optional, Union

import requests

from parsekit.config.settings import ClientSettings, get_settings
from parsekit.errors import AuthenticationError, ConfigurationError, ParseConnectionError
from parsekit.http import protocol
from parsekit.http.batch import BatchExecutor, BatchRequest
from parsekit.http.caching import CacheMiddleware, CacheRequest, CacheStore
from parsekit.http.response import ERROR_INVALID_SESSION_TOKEN, Response
from parsekit.http.retry import RetryPolicy
from parsekit.logging_utils import redact_headers
from parsekit.query.formatting import FieldFormatter

logger = logging.getLogger("parse.request")

_METHODS = ("GET", "POST", "PUT", "DELETE")


# ---- small helpers ----


def _encode_params(params: Optional[Dict[str, Any]]) -> str:
    if not params:
        return ""
    flat = {}
    for k, v in params.items():
        if v is None:
            continue
        if isinstance(v, (dict, list)):
            v = json.dumps(v, separators=(",", ":"))
        elif isinstance(v, bool):
            v = "1" if v else "0"
        flat[k] = v
    return urllib.parse.urlencode(flat)


def _with_query(url: str, params: Optional[Dict[str, Any]]) -> str:
    qs = _encode_params(params)
    if not qs:
        return url
    return url + ("&" if "?" in url else "?") + qs


class ParseClient:
    """
    REST client for a Parse-compatible server.

        client = ParseClient(app_id="...", api_key="...")
        client.find_objects("Song", {"where": {"plays": {"$gt": 10}}})

    Explicit keyword arguments override values from ClientSettings (env /.env).
    Requests go through: auth headers -> cache lookup -> retry policy ->
    requests.Session; responses are wrapped in Response.
    """

    def __init__(
        self,
        server_url: Optional[str] = None,
        app_id: Optional[str] = None,
        api_key: Optional[str] = None,
        master_key: Optional[str] = None,
        *,
        settings: Optional[ClientSettings] = None,
        cache_store: Optional[CacheStore] = None,
        cache_ttl: Optional[int] = None,
        retry_limit: Optional[int] = None,
        formatter: Optional[FieldFormatter] = None,
        session: Optional[requests.Session] = None,
        timeout: Optional[float] = None,
    ) -> None:
        base = settings or get_settings()
        overrides = {
            "server_url": server_url,
            "app_id": app_id,
            "api_key": api_key,
            "master_key": master_key,
            "cache_ttl": cache_ttl,
            "retry_limit": retry_limit,
            "request_timeout": timeout,
        }
        merged = {**base.model_dump(), **{k: v for k, v in overrides.items() if v is not None}}
        self.settings = ClientSettings(**merged)

        if not self.settings.app_id:
            raise ConfigurationError("app_id is required (PARSE_APP_ID)")
        if not (self.settings.api_key or self.settings.master_key):
            raise ConfigurationError("api_key or master_key is required (PARSE_API_KEY / PARSE_MASTER_KEY)")

        self.server_url: str = self.settings.server_url
        self.mount = protocol.mount_path(self.server_url)
        self.formatter = formatter or FieldFormatter.from_settings(self.settings)
        self.retry_policy = RetryPolicy.from_settings(self.settings)
        self.session = session or requests.Session()
        self.cache: Optional[CacheMiddleware] = None
        if cache_store is not None:
            self.cache = CacheMiddleware(
                cache_store,
                default_ttl=self.settings.cache_ttl,
                enabled=self.settings.cache_enabled,
                min_body_bytes=self.settings.cache_min_body_bytes,
                mount=self.mount,
            )

    @property
    def application_id(self) -> Optional[str]:
        return self.settings.app_id

    @property
    def master_key(self) -> Optional[str]:
        return self.settings.master_key

    def __repr__(self) -> str:
        return f"<ParseClient {self.server_url} app={self.settings.app_id}>"

    # ------------------------------------------------------------------
    # transport
    # ------------------------------------------------------------------

    def _headers(
        self,
        use_master_key: bool,
        session_token: Optional[str],
        extra: Optional[Dict[str, str]],
    ) -> Dict[str, str]:
        h = {
            protocol.APP_ID: self.settings.app_id,
            protocol.CONTENT_TYPE: protocol.CONTENT_TYPE_FORMAT,
            "User-Agent": protocol.USER_AGENT,
        }
        if self.settings.api_key:
            h[protocol.API_KEY] = self.settings.api_key
        if use_master_key and self.settings.master_key:
            h[protocol.MASTER_KEY] = self.settings.master_key
        if session_token:
            h[protocol.SESSION_TOKEN] = session_token
        h.update(extra or {})
        return h

    def url_for(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        if path.startswith(self.mount):
            path = path[len(self.mount):]
        return self.server_url + path.lstrip("/")

    def _send(
        self,
        method: str,
        url: str,
        data: Optional[bytes],
        headers: Dict[str, str],
        remaining: Optional[float],
    ) -> Response:
        timeout = self.settings.request_timeout
        if remaining is not None:
            timeout = max(0.001, min(timeout, remaining))
        t0 = time.time()
        path = urllib.parse.urlsplit(url).path
        logger.debug("%s %s headers=%s", method, path, redact_headers(headers))
        resp = self.session.request(method, url, data=data, headers=headers, timeout=timeout)
        r = Response.from_http(resp.status_code, resp.content, method, path)
        r.headers = dict(resp.headers or {})
        logger.info(
            "%s %s -> %d (%dms)", method, path, resp.status_code,
            int((time.time() - t0) * 1000),
        )
        return r

    def request(
        self,
        method: str,
        path: str,
        *,
        query: Optional[Dict[str, Any]] = None,
        body: Any = None,
        headers: Optional[Dict[str, str]] = None,
        session_token: Optional[str] = None,
        use_master_key: bool = True,
        cache: Union[int, bool, None] = None,
        deadline: Optional[float] = None,
    ) -> Response:
        method = str(method).upper()
        if method not in _METHODS:
            raise ValueError(f"Unsupported HTTP method: {method}")
        hdrs = self._headers(use_master_key, session_token, headers)
        url = self.url_for(path)

        data: Optional[bytes] = None
        send_method = method
        if method == "GET":
            url = _with_query(url, query)
        elif body is not None:
            data = json.dumps(body, ensure_ascii=False, default=str).encode("utf-8")
        cache_req = CacheRequest(method, url, data, hdrs, ttl=cache)

        send_url = url
        if method == "GET" and len(url) > self.settings.get_url_limit:
            # long GETs travel as form-encoded POSTs with a method override
            send_method = "POST"
            send_url = self.url_for(path)
            hdrs = dict(hdrs)
            hdrs[protocol.METHOD_OVERRIDE] = "GET"
            hdrs[protocol.CONTENT_TYPE] = "application/x-www-form-urlencoded"
            data = _encode_params(query).encode("utf-8")

        if self.cache is not None:
            entry = self.cache.before(cache_req)
            if entry is not None:
                r = Response.from_http(entry.status, entry.body, method, url)
                r.headers = dict(entry.headers)
                r.from_cache = True
                return r

        def attempt(remaining: Optional[float]) -> Response:
            try:
                return self._send(send_method, send_url, data, hdrs, remaining)
            except (requests.ConnectionError, requests.Timeout) as e:
                raise ParseConnectionError(str(e)) from e

        response = self.retry_policy.execute(attempt, deadline=deadline, label=f"{method} {path}")

        if response.http_status in (401, 403) or response.code == ERROR_INVALID_SESSION_TOKEN:
            raise AuthenticationError(
                response.error or "unauthorized", code=response.code, http_status=response.http_status
            )

        if self.cache is not None and response.success:
            self.cache.after(cache_req, response.http_status, response.raw, response.headers)
        return response

    def get(self, path: str, query: Optional[Dict[str, Any]] = None, **opts: Any) -> Response:
        return self.request("GET", path, query=query, **opts)

    def post(self, path: str, body: Any = None, **opts: Any) -> Response:
        return self.request("POST", path, body=body, **opts)

    def put(self, path: str, body: Any = None, **opts: Any) -> Response:
        return self.request("PUT", path, body=body, **opts)

    def delete(self, path: str, body: Any = None, **opts: Any) -> Response:
        return self.request("DELETE", path, body=body, **opts)

    def clear_cache(self) -> None:
        if self.cache is not None:
            self.cache.clear()

    # ------------------------------------------------------------------
    # objects
    # ------------------------------------------------------------------

    def _tagged(self, response: Response, class_name: str) -> Response:
        response.parse_class = class_name
        return response

    def find_objects(self, class_name: str, query: Any = None, **opts: Any) -> Response:
        if callable(getattr(query, "prepared", None)):
            query = query.prepared()
        r = self.request("GET", protocol.uri_path(class_name), query=query or {}, **opts)
        return self._tagged(r, class_name)

    def fetch_object(self, class_name: str, object_id: str, **opts: Any) -> Response:
        r = self.request("GET", protocol.uri_path(class_name, object_id), **opts)
        return self._tagged(r, class_name)

    def create_object(self, class_name: str, data: Optional[Dict[str, Any]] = None, **opts: Any) -> Response:
        r = self.request("POST", protocol.uri_path(class_name), body=data or {}, **opts)
        return self._tagged(r, class_name)

    def update_object(self, class_name: str, object_id: str, data: Optional[Dict[str, Any]] = None, **opts: Any) -> Response:
        r = self.request("PUT", protocol.uri_path(class_name, object_id), body=data or {}, **opts)
        return self._tagged(r, class_name)

    def delete_object(self, class_name: str, object_id: str, **opts: Any) -> Response:
        r = self.request("DELETE", protocol.uri_path(class_name, object_id), **opts)
        return self._tagged(r, class_name)

    def query(self, class_name: Any, *constraints: Any, **filters: Any):
        from parsekit.query.query import Query

        return Query(class_name, *constraints, client=self, **filters)

    # ------------------------------------------------------------------
    # users / sessions
    # ------------------------------------------------------------------

    def login(self, username: str, password: str) -> Response:
        r = self.request(
            "GET",
            "login",
            query={"username": username, "password": password},
            headers={protocol.REVOCABLE_SESSION: "1"},
            use_master_key=False,
            cache=False,
        )
        return self._tagged(r, "_User")

    def logout(self, session_token: str) -> Response:
        return self.request("POST", "logout", session_token=session_token, use_master_key=False)

    def signup(self, username: str, password: str, email: Optional[str] = None, **fields: Any) -> Response:
        body = {"username": username, "password": password, **fields}
        if email:
            body["email"] = email
        r = self.request(
            "POST", "users", body=body, headers={protocol.REVOCABLE_SESSION: "1"}, use_master_key=False
        )
        return self._tagged(r, "_User")

    def current_user(self, session_token: str) -> Response:
        r = self.request("GET", "users/me", session_token=session_token, use_master_key=False, cache=False)
        return self._tagged(r, "_User")

    def reset_password(self, email: str) -> Response:
        return self.request("POST", "requestPasswordReset", body={"email": email}, use_master_key=False)

    # ------------------------------------------------------------------
    # cloud code
    # ------------------------------------------------------------------

    def call_function(self, name: str, params: Optional[Dict[str, Any]] = None, **opts: Any) -> Response:
        return self.request("POST", f"functions/{name}", body=params or {}, **opts)

    def trigger_job(self, name: str, params: Optional[Dict[str, Any]] = None, **opts: Any) -> Response:
        return self.request("POST", f"jobs/{name}", body=params or {}, **opts)

    # ------------------------------------------------------------------
    # batch
    # ------------------------------------------------------------------

    def batch_request(
        self, requests_: List[BatchRequest], deadline: Optional[float] = None
    ) -> List[Response]:
        """
        One POST /batch for up to batch_size sub-requests. Sub-request paths
        carry the server mount point (/1/classes/Song). Returns one Response per
        sub-request, positionally; a failed batch call fails every slot.
        """
        ops = []
        for r in requests_:
            op = r.as_json()
            op["path"] = protocol.mounted(self.server_url, r.path)
            ops.append(op)
        response = self.request("POST", "batch", body={"requests": ops}, deadline=deadline)

        if self.cache is not None:
            for r in requests_:
                if r.method != "GET":
                    self.cache.invalidate(self.url_for(r.path))

        if response.success and response.is_batch:
            return response.batch_responses()
        return [response] * len(requests_)

    def batch(self, requests_: List[BatchRequest], timeout: Optional[float] = None):
        """Run any number of sub-requests through the chunked, parallel executor."""
        return BatchExecutor(self).execute(requests_, timeout=timeout)
