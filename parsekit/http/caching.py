# parsekit/http/caching.py
from __future__ import annotations

import base64
import hashlib
import json
import logging
import math
import threading
import time
import urllib.parse
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Union

from parsekit.http.protocol import SESSION_TOKEN, MASTER_KEY, collection_of

logger = logging.getLogger("parse.cache")

CACHEABLE_STATUSES = {200, 203}
NEVER_CACHE_STATUSES = {404, 410}
INDEX_PREFIX = "parsekit:index:"
ENTRY_PREFIX = "parsekit:entry:"


class CacheStore(Protocol):
    """Key/value backend. set() must replace the value atomically."""

    def get(self, key: str) -> Optional[bytes]: ...

    def set(self, key: str, value: bytes, ttl: Optional[int] = None) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryStore:
    """Process-local store with per-key expiry."""

    def __init__(self) -> None:
        self._data: Dict[str, tuple] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            item = self._data.get(key)
            if item is None:
                return None
            value, expires_at = item
            if expires_at is not None and expires_at <= time.time():
                del self._data[key]
                return None
            return value

    def set(self, key: str, value: bytes, ttl: Optional[int] = None) -> None:
        expires_at = time.time() + ttl if ttl else None
        # tuple swap under the lock: readers never see a partial value
        with self._lock:
            self._data[key] = (bytes(value), expires_at)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


class RedisStore:
    """
    Store on a redis-py client, shared by every process pointed at the same
    server. Values are written with SET (EX ttl) so replacement is atomic.
    """

    def __init__(self, client: Any, namespace: str = "") -> None:
        self._client = client
        self.namespace = namespace

    @classmethod
    def from_url(cls, url: str, namespace: str = "", **kwargs: Any) -> "RedisStore":
        from redis import Redis

        kwargs.setdefault("socket_timeout", 5.0)
        kwargs.setdefault("socket_connect_timeout", 2.0)
        return cls(Redis.from_url(url, **kwargs), namespace=namespace)

    def _key(self, key: str) -> str:
        return self.namespace + key

    def get(self, key: str) -> Optional[bytes]:
        value = self._client.get(self._key(key))
        if value is None:
            return None
        return value.encode("utf-8") if isinstance(value, str) else bytes(value)

    def set(self, key: str, value: bytes, ttl: Optional[int] = None) -> None:
        if ttl:
            self._client.set(self._key(key), bytes(value), ex=int(ttl))
        else:
            self._client.set(self._key(key), bytes(value))

    def delete(self, key: str) -> None:
        self._client.delete(self._key(key))

    def clear(self) -> None:
        """Drop every parsekit key under this namespace."""
        keys = list(self._client.scan_iter(match=self._key("parsekit:*")))
        if keys:
            self._client.delete(*keys)


# ---- request / entry models ----


@dataclass
class CacheRequest:
    method: str
    url: str
    body: Optional[bytes] = None
    headers: Dict[str, str] = field(default_factory=dict)
    ttl: Union[int, bool, None] = None  # per-request override


@dataclass
class CacheEntry:
    key: str
    status: int
    body: bytes
    headers: Dict[str, str]
    expires_at: float

    def dump(self) -> bytes:
        return json.dumps(
            {
                "key": self.key,
                "status": self.status,
                "body": base64.b64encode(self.body).decode("ascii"),
                "headers": self.headers,
                "expires_at": self.expires_at,
            }
        ).encode("utf-8")

    @classmethod
    def load(cls, raw: bytes) -> "CacheEntry":
        d = json.loads(raw.decode("utf-8"))
        return cls(
            key=d["key"],
            status=int(d["status"]),
            body=base64.b64decode(d["body"]),
            headers=dict(d.get("headers") or {}),
            expires_at=float(d["expires_at"]),
        )


def normalize_url(url: str) -> str:
    """Lowercase scheme/host, drop fragments, sort query parameters."""
    p = urllib.parse.urlsplit(url)
    q = sorted(urllib.parse.parse_qsl(p.query, keep_blank_values=True))
    return urllib.parse.urlunsplit(
        (p.scheme.lower(), p.netloc.lower(), p.path, urllib.parse.urlencode(q), "")
    )


def fingerprint(request: CacheRequest) -> str:
    """
    Stable key for method + normalized URL (+ body for non-GET). The session
    token and master-key flag participate so responses never leak across
    credentials.
    """
    h = hashlib.sha256()
    h.update(request.method.upper().encode())
    h.update(b"\n")
    h.update(normalize_url(request.url).encode())
    h.update(b"\n")
    if request.method.upper() != "GET" and request.body:
        h.update(request.body)
    h.update(b"\n")
    hdrs = {k.lower(): v for k, v in (request.headers or {}).items()}
    h.update((hdrs.get(SESSION_TOKEN.lower()) or "").encode())
    h.update(b"M" if hdrs.get(MASTER_KEY.lower()) else b"-")
    return ENTRY_PREFIX + h.hexdigest()


class CacheMiddleware:
    """
    Read-through cache for GET responses.

    before(request) -> CacheEntry | None
    after(request, status, body, headers)

    Entries are indexed per collection (classes/Song, users, ...) so any
    POST/PUT/DELETE against a collection drops every cached GET for it.
    Store failures disable caching for that call and are logged, never raised.
    """

    def __init__(
        self,
        store: CacheStore,
        default_ttl: int = 0,
        enabled: bool = True,
        min_body_bytes: int = 20,
        mount: str = "/",
    ) -> None:
        self.store = store
        self.default_ttl = int(default_ttl or 0)
        self.enabled = enabled
        self.min_body_bytes = int(min_body_bytes)
        self.mount = mount

    # ---- policy ----

    def resolve_ttl(self, override: Union[int, bool, None]) -> int:
        """per-request seconds > global default > 0 (do not cache)"""
        if not self.enabled or override is False:
            return 0
        if isinstance(override, int) and not isinstance(override, bool):
            return max(0, override)
        return self.default_ttl

    def cacheable(self, status: int, body: bytes) -> bool:
        if status in NEVER_CACHE_STATUSES or status not in CACHEABLE_STATUSES:
            return False
        return body is not None and len(body) >= self.min_body_bytes

    def _collection(self, url: str) -> str:
        return collection_of(url, self.mount)

    # ---- middleware hooks ----

    def before(self, request: CacheRequest) -> Optional[CacheEntry]:
        method = request.method.upper()
        if method != "GET":
            self.invalidate(request.url)
            return None
        if self.resolve_ttl(request.ttl) <= 0:
            return None
        key = fingerprint(request)
        try:
            raw = self.store.get(key)
        except Exception as e:
            logger.warning("cache.store_error op=get err=%s", e)
            return None
        if raw is None:
            return None
        try:
            entry = CacheEntry.load(raw)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("cache.corrupt_entry key=%s err=%s", key, e)
            self._safe_delete(key)
            return None
        if entry.expires_at <= time.time() or not entry.body:
            self._safe_delete(key)
            return None
        logger.debug("cache.hit %s", request.url)
        return entry

    def after(
        self,
        request: CacheRequest,
        status: int,
        body: bytes,
        headers: Optional[Dict[str, str]] = None,
    ) -> bool:
        if request.method.upper() != "GET":
            return False
        ttl = self.resolve_ttl(request.ttl)
        if ttl <= 0 or not self.cacheable(status, body):
            return False
        key = fingerprint(request)
        entry = CacheEntry(
            key=key,
            status=status,
            body=bytes(body),
            headers={k: v for k, v in (headers or {}).items() if k.lower() == "content-type"},
            expires_at=time.time() + ttl,
        )
        try:
            self.store.set(key, entry.dump(), ttl)
            self._index_add(self._collection(request.url), key, ttl)
        except Exception as e:
            logger.warning("cache.store_error op=set err=%s", e)
            return False
        logger.info("cache.store", extra={"event": {"url": request.url, "ttl": ttl, "bytes": len(body)}})
        return True

    # ---- invalidation ----

    def _index_key(self, collection: str) -> str:
        return INDEX_PREFIX + collection

    def _index_add(self, collection: str, key: str, ttl: int) -> None:
        if not collection:
            return
        ikey = self._index_key(collection)
        now = time.time()
        index = {k: exp for k, exp in self._index_entries(ikey).items() if exp > now}
        index[key] = max(index.get(key, 0.0), now + ttl)
        # the index outlives every entry it lists; it is never shortened
        remaining = int(math.ceil(max(index.values()) - now))
        self.store.set(ikey, json.dumps(index).encode("utf-8"), max(remaining, 1))

    def _index_entries(self, ikey: str) -> Dict[str, float]:
        """cache key -> expiry timestamp"""
        raw = self.store.get(ikey)
        if not raw:
            return {}
        try:
            data = json.loads(raw.decode("utf-8"))
        except ValueError:
            return {}
        if not isinstance(data, dict):
            return {}
        out: Dict[str, float] = {}
        for k, exp in data.items():
            if isinstance(exp, (int, float)) and not isinstance(exp, bool):
                out[str(k)] = float(exp)
        return out

    def _index_keys(self, ikey: str) -> List[str]:
        return list(self._index_entries(ikey))

    def invalidate(self, url: str) -> int:
        """Drop every cached GET for the collection `url` belongs to."""
        collection = self._collection(url)
        if not collection:
            return 0
        ikey = self._index_key(collection)
        try:
            keys = self._index_keys(ikey)
            for k in keys:
                self.store.delete(k)
            self.store.delete(ikey)
        except Exception as e:
            logger.warning("cache.store_error op=invalidate err=%s", e)
            return 0
        if keys:
            logger.info("cache.invalidate", extra={"event": {"collection": collection, "entries": len(keys)}})
        return len(keys)

    def _safe_delete(self, key: str) -> None:
        try:
            self.store.delete(key)
        except Exception as e:
            logger.warning("cache.store_error op=delete err=%s", e)

    def clear(self) -> None:
        clear = getattr(self.store, "clear", None)
        if callable(clear):
            clear()
