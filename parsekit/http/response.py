# parsekit/http/response.py
from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

# Parse server error codes
ERROR_INTERNAL = 1
ERROR_SERVICE_UNAVAILABLE = 2
ERROR_OBJECT_NOT_FOUND = 101
ERROR_TIMEOUT = 124
ERROR_EMAIL_INVALID = 125
ERROR_EXCEEDED_BURST_LIMIT = 155
ERROR_USERNAME_MISSING = 200
ERROR_PASSWORD_MISSING = 201
ERROR_USERNAME_TAKEN = 202
ERROR_EMAIL_TAKEN = 203
ERROR_EMAIL_MISSING = 204
ERROR_EMAIL_NOT_FOUND = 205
ERROR_INVALID_SESSION_TOKEN = 209


class Response:
    """
    Decoded API response.

    - {"results": [...], "count": n} -> results/count
    - {"code": c, "error": msg}      -> error response
    - [ {"success": ...} | {"error": ...}, ... ] -> batch response
    - any other object               -> single result
    """

    def __init__(self, body: Any = None, http_status: int = 0) -> None:
        self.http_status = http_status
        self.code: Optional[int] = None
        self.error: Optional[str] = None
        self.result: Any = None
        self.count = 0
        self.is_batch = False
        self.parse_class: Optional[str] = None
        self.headers: Dict[str, str] = {}
        self.raw: bytes = b""
        self.from_cache = False

        if isinstance(body, (bytes, bytearray)):
            body = body.decode("utf-8", errors="replace")
        if isinstance(body, str) and body and body != "OK":
            body = json.loads(body)

        if isinstance(body, dict):
            self._parse_result(body)
        elif isinstance(body, list):
            self.is_batch = True
            self.result = body
            self.count = len(body)
        else:
            self.result = body

    @classmethod
    def from_http(cls, status: int, raw: bytes, method: str = "", url: str = "") -> "Response":
        """Build from a raw HTTP exchange; undecodable bodies become error responses."""
        try:
            r = cls(raw, http_status=status)
        except ValueError as e:
            r = cls(http_status=status)
            r.code = status
            r.error = f"Invalid response for {method} {url}: {e}"
        if r.error is not None and r.code is None:
            r.code = status
        if r.error is None and status >= 400:
            r.code = r.code if r.code is not None else status
            r.error = f"HTTP {status}"
        r.raw = bytes(raw or b"")
        return r

    def _parse_result(self, h: Dict[str, Any]) -> None:
        self.code = h.get("code")
        self.error = h.get("error")
        if isinstance(h.get("results"), list):
            self.result = h["results"]
            self.count = h.get("count", len(self.result))
        else:
            self.result = h
            self.count = h.get("count", 1) if isinstance(h.get("count"), int) else 1

    @property
    def success(self) -> bool:
        return self.code is None and self.error is None

    @property
    def is_error(self) -> bool:
        return not self.success

    @property
    def object_not_found(self) -> bool:
        return self.code == ERROR_OBJECT_NOT_FOUND

    @property
    def results(self) -> List[Any]:
        if self.result is None:
            return []
        return self.result if isinstance(self.result, list) else [self.result]

    def first(self) -> Any:
        items = self.results
        return items[0] if items else None

    def batch_responses(self) -> List["Response"]:
        """One Response per sub-request, in request order."""
        if not self.is_batch:
            return [self]
        out: List[Response] = []
        for item in self.result:
            if isinstance(item, dict) and "success" in item:
                out.append(Response(item["success"], http_status=self.http_status))
            elif isinstance(item, dict) and "error" in item:
                out.append(Response(item["error"], http_status=self.http_status))
            else:
                out.append(Response(item, http_status=self.http_status))
        return out

    def __repr__(self) -> str:
        if self.is_error:
            return f"<Response code={self.code} error={self.error!r} status={self.http_status}>"
        return f"<Response status={self.http_status} count={self.count}>"
