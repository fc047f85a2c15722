# parsekit/http/protocol.py
from __future__ import annotations

import urllib.parse
from typing import Any, Optional

# ---- headers ----
APP_ID = "X-Parse-Application-Id"
API_KEY = "X-Parse-REST-API-Key"
MASTER_KEY = "X-Parse-Master-Key"
SESSION_TOKEN = "X-Parse-Session-Token"
REVOCABLE_SESSION = "X-Parse-Revocable-Session"
WEBHOOK_KEY = "X-Parse-Webhook-Key"
METHOD_OVERRIDE = "X-Http-Method-Override"
CONTENT_TYPE = "Content-Type"
CONTENT_TYPE_FORMAT = "application/json; charset=utf-8"
USER_AGENT = "parsekit/0.3 (+requests)"

# ---- paths ----
CLASS_PATH_PREFIX = "classes/"
PREFIX_MAP = {
    "installation": "installations",
    "_installation": "installations",
    "user": "users",
    "_user": "users",
    "role": "roles",
    "_role": "roles",
    "session": "sessions",
    "_session": "sessions",
}


def uri_path(class_name: Any, object_id: Optional[str] = None) -> str:
    """classes/Song, classes/Song/<id>, users/<id>, roles, ..."""
    if not isinstance(class_name, str):
        # Pointer or record
        object_id = object_id or getattr(class_name, "id", None)
        class_name = getattr(class_name, "parse_class")
    uri = PREFIX_MAP.get(class_name.lower(), f"{CLASS_PATH_PREFIX}{class_name}")
    return f"{uri}/{object_id}" if object_id else uri


def mount_path(server_url: str) -> str:
    """'/1/' for https://api.parse.com/1/, '/parse/' for http://host:1337/parse"""
    path = urllib.parse.urlparse(server_url).path or "/"
    if not path.startswith("/"):
        path = "/" + path
    return path if path.endswith("/") else path + "/"


def mounted(server_url: str, path: str) -> str:
    """Prefix a client-relative path with the server mount point (batch sub-requests)."""
    mount = mount_path(server_url)
    if path.startswith(mount):
        return path
    return mount + path.lstrip("/")


def collection_of(path: str, mount: str = "/") -> str:
    """
    Resource collection a path belongs to:
      /1/classes/Song/abc -> classes/Song
      /1/users/xyz        -> users
    """
    p = urllib.parse.urlparse(path).path or path
    if mount != "/" and p.startswith(mount):
        p = p[len(mount):]
    parts = [x for x in p.split("/") if x]
    if not parts:
        return ""
    if parts[0] == "classes" and len(parts) > 1:
        return "/".join(parts[:2])
    return parts[0]
