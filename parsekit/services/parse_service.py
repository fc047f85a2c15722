# parsekit/services/parse_service.py
from __future__ import annotations

import threading
from typing import Any, Optional

from parsekit.config.settings import get_settings
from parsekit.http.caching import CacheStore, MemoryStore, RedisStore

# Lazy default client: created on first access so imports don't need credentials
_client = None
_lock = threading.Lock()


def build_cache_store(settings: Any) -> Optional[CacheStore]:
    """Redis when cache_url is set, else a process-local store when a TTL is configured."""
    if not settings.cache_enabled:
        return None
    if settings.cache_url:
        return RedisStore.from_url(settings.cache_url)
    if settings.cache_ttl > 0:
        return MemoryStore()
    return None


def _create_client():
    """
    Create and cache the default ParseClient on first use.
    Raises ConfigurationError at call-time (not import-time) if credentials are missing.
    """
    global _client
    if _client is not None:
        return _client
    with _lock:
        if _client is None:
            from parsekit.http.client import ParseClient

            settings = get_settings()
            _client = ParseClient(settings=settings, cache_store=build_cache_store(settings))
    return _client


def setup(client: Any = None, **kwargs: Any):
    """
    Install the default client, either a ready one or ParseClient(**kwargs).
    Call once at startup; records and queries without an explicit client use it.
    """
    global _client
    if client is None:
        from parsekit.http.client import ParseClient

        client = ParseClient(**kwargs)
    with _lock:
        _client = client
    return client


def reset() -> None:
    global _client
    with _lock:
        _client = None


def get_client():
    """Return the default client (initializing it if needed)."""
    return _create_client()


class _ParseProxy:
    """
    Transparent proxy so callers can do:
        from parsekit.services.parse_service import parse
        parse.find_objects("Song")
    """

    def __getattr__(self, name: str) -> Any:
        return getattr(_create_client(), name)


parse = _ParseProxy()
