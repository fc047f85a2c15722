# parsekit/models/record.py
from __future__ import annotations

import logging
import types
from datetime import datetime
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Type

from parsekit.errors import RecordNotSaved
from parsekit.http.batch import BatchRequest
from parsekit.http.protocol import uri_path
from parsekit.models.acl import ACL, DefaultACLRules, Permission, PUBLIC
from parsekit.models.types import (
    TYPE_KEY,
    TYPE_OBJECT,
    Pointer,
    decode_value,
    encode_value,
    format_date,
    parse_date,
)

logger = logging.getLogger(__name__)

_ID_KEYS = ("objectId", "id")
_CREATED_KEYS = ("createdAt", "created_at")
_UPDATED_KEYS = ("updatedAt", "updated_at")
_ACL_KEYS = ("ACL", "acl")
_SKIP_KEYS = ("className", TYPE_KEY)

_MISSING = object()


def _default_rules() -> DefaultACLRules:
    # public read-only unless the class declares otherwise
    return DefaultACLRules([(PUBLIC, Permission(read=True, write=False))])


def _client_or_default(client: Any) -> Any:
    if client is not None:
        return client
    from parsekit.services.parse_service import get_client

    return get_client()


class Record:
    """
    A row of a remote collection with per-field dirty tracking.

    Subclasses register themselves by their remote class name:

        class Song(Record, parse_class="Song"):
            pass

    Field values are stored under their remote (wire) names; `field_map` lets a
    subclass expose snake_case names for camelCase columns.
    """

    parse_class: ClassVar[str] = ""
    field_map: ClassVar[Dict[str, str]] = {}
    _registry: ClassVar[Dict[str, Type["Record"]]] = {}

    def __init_subclass__(cls, parse_class: Optional[str] = None, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        cls.parse_class = parse_class or cls.__dict__.get("parse_class") or cls.__name__
        Record._registry[cls.parse_class] = cls

    # ---- class registry ----

    @classmethod
    def find_class(cls, name: Optional[str]) -> Optional[Type["Record"]]:
        if not name:
            return None
        return Record._registry.get(name)

    @classmethod
    def class_for(cls, name: str) -> Type["Record"]:
        """Registered class for `name`, generating a plain subclass for unknown names."""
        found = cls.find_class(name)
        if found is not None:
            return found
        generated = types.new_class(name, (Record,), {"parse_class": name})
        logger.debug("record.class_generated %s", name)
        return generated

    @classmethod
    def build(cls, data: Any, class_name: Optional[str] = None) -> Optional["Record"]:
        if not isinstance(data, dict):
            return None
        name = class_name or data.get("className")
        if not name:
            return None
        if "error" in data and "code" in data:
            logger.warning("record.build called with an error payload: %s", data)
        return cls.class_for(name)(data)

    # ---- default ACLs ----

    @classmethod
    def default_acl_rules(cls) -> DefaultACLRules:
        rules = cls.__dict__.get("_acl_rules")
        if rules is None:
            rules = _default_rules()
            cls._acl_rules = rules
        return rules

    @classmethod
    def set_default_acl(
        cls, subject: Any, read: bool = False, write: bool = False, role: bool = False
    ) -> DefaultACLRules:
        rules = cls.default_acl_rules()
        rules.declare(subject, read=read, write=write, role=role)
        return rules

    # ---- construction ----

    def __init__(self, data: Any = None, **fields: Any) -> None:
        self._fields: Dict[str, Any] = {}
        self._changes: Dict[str, Any] = {}
        self._operations: Dict[str, Dict[str, Any]] = {}
        self._acl_snapshot: Any = _MISSING
        self.id: Optional[str] = None
        self.created_at: Optional[datetime] = None
        self.updated_at: Optional[datetime] = None
        self._acl: Optional[ACL] = None

        if isinstance(data, str):
            self.id = data
        elif isinstance(data, dict) or fields:
            merged = {**(data or {}), **fields}
            imported = any(merged.get(k) for k in _ID_KEYS)
            self.apply_attributes(merged, dirty_track=not imported)

        if self._acl is None:
            self._acl = type(self).default_acl_rules().to_acl(on_change=self._acl_changed)
            if self.id is None:
                self._acl_snapshot = None  # new records send their default ACL
        if self.id is not None:
            self.clear_changes()

    # ---- field access ----

    @classmethod
    def remote_field(cls, name: str) -> str:
        return cls.field_map.get(name, name)

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        fields = self.__dict__.get("_fields")
        if fields is not None:
            remote = type(self).remote_field(name)
            if remote in fields:
                return fields[remote]
        raise AttributeError(f"{type(self).__name__} has no field {name!r}")

    def __getitem__(self, name: str) -> Any:
        return self._fields.get(self.remote_field(name))

    def __setitem__(self, name: str, value: Any) -> None:
        self.set(name, value)

    def get(self, name: str, default: Any = None) -> Any:
        return self._fields.get(self.remote_field(name), default)

    def set(self, name: str, value: Any, dirty_track: bool = True) -> None:
        remote = self.remote_field(name)
        old = self._fields.get(remote)
        if dirty_track and old != value:
            if remote not in self._changes:
                self._changes[remote] = old
            elif self._changes[remote] == value:
                # reverted to the persisted value
                del self._changes[remote]
        self._operations.pop(remote, None)
        self._fields[remote] = value

    @property
    def fields(self) -> Dict[str, Any]:
        return dict(self._fields)

    @property
    def acl(self) -> Optional[ACL]:
        return self._acl

    @acl.setter
    def acl(self, value: Any) -> None:
        self._acl_changed()
        acl = value if isinstance(value, ACL) else ACL.from_json(value)
        acl.on_change = self._acl_changed
        self._acl = acl

    def _acl_changed(self) -> None:
        if self._acl_snapshot is _MISSING:
            self._acl_snapshot = self._acl.as_json() if self._acl is not None else None

    def apply_attributes(self, data: Dict[str, Any], dirty_track: bool = False) -> None:
        for key, value in (data or {}).items():
            if key in _ID_KEYS:
                self.id = value or self.id
            elif key in _CREATED_KEYS:
                self.created_at = parse_date(value)
            elif key in _UPDATED_KEYS:
                self.updated_at = parse_date(value)
            elif key in _ACL_KEYS:
                # an explicit ACL (even an empty one) is kept exactly
                acl = ACL.from_json(value.as_json() if isinstance(value, ACL) else value)
                if dirty_track:
                    if self._acl is None or self._acl != acl:
                        self.acl = acl
                else:
                    acl.on_change = self._acl_changed
                    self._acl = acl
            elif key in _SKIP_KEYS:
                continue
            else:
                self.set(key, decode_value(value), dirty_track=dirty_track)

    # ---- dirty tracking ----

    @property
    def changed(self) -> List[str]:
        keys = list(self._changes)
        keys += [k for k in self._operations if k not in self._changes]
        if self._acl_snapshot is not _MISSING:
            keys.append("ACL")
        return keys

    def is_dirty(self) -> bool:
        return bool(self.changed)

    def field_changed(self, name: str) -> bool:
        return self.remote_field(name) in self.changed

    def changes(self) -> Dict[str, Tuple[Any, Any]]:
        """remote field -> (persisted value, current value)"""
        out = {k: (old, self._fields.get(k)) for k, old in self._changes.items()}
        for k in self._operations:
            out.setdefault(k, (self._fields.get(k), self._fields.get(k)))
        if self._acl_snapshot is not _MISSING:
            out["ACL"] = (self._acl_snapshot, self._acl.as_json() if self._acl else None)
        return out

    def clear_changes(self) -> None:
        self._changes.clear()
        self._operations.clear()
        self._acl_snapshot = _MISSING

    def rollback(self) -> None:
        for key, old in self._changes.items():
            if old is None:
                self._fields.pop(key, None)
            else:
                self._fields[key] = old
        if self._acl_snapshot is not _MISSING:
            self._acl = ACL.from_json(self._acl_snapshot, on_change=self._acl_changed)
        self.clear_changes()

    def updates(self) -> Dict[str, Any]:
        """Wire body for the pending changes."""
        h: Dict[str, Any] = {}
        for key in self._changes:
            h[key] = encode_value(self._fields.get(key))
        h.update(self._operations)
        if self._acl_snapshot is not _MISSING and self._acl is not None:
            h["ACL"] = self._acl.as_json()
        return h

    # ---- field operations ----

    def _operation(self, name: str, op: Dict[str, Any]) -> None:
        remote = self.remote_field(name)
        self._changes.pop(remote, None)
        self._operations[remote] = op

    def increment(self, name: str, amount: int = 1) -> None:
        current = self.get(name) or 0
        self._fields[self.remote_field(name)] = current + amount
        self._operation(name, {"__op": "Increment", "amount": amount})

    def add(self, name: str, *objects: Any) -> None:
        self._operation(name, {"__op": "Add", "objects": encode_value(list(objects))})
        self._fields[self.remote_field(name)] = list(self.get(name) or []) + list(objects)

    def add_unique(self, name: str, *objects: Any) -> None:
        self._operation(name, {"__op": "AddUnique", "objects": encode_value(list(objects))})
        current = list(self.get(name) or [])
        for o in objects:
            if o not in current:
                current.append(o)
        self._fields[self.remote_field(name)] = current

    def remove(self, name: str, *objects: Any) -> None:
        self._operation(name, {"__op": "Remove", "objects": encode_value(list(objects))})
        current = [o for o in (self.get(name) or []) if o not in objects]
        self._fields[self.remote_field(name)] = current

    def unset(self, name: str) -> None:
        self._operation(name, {"__op": "Delete"})
        self._fields[self.remote_field(name)] = None

    # ---- identity / state ----

    @property
    def is_new(self) -> bool:
        return not self.id

    @property
    def is_pointer(self) -> bool:
        return bool(self.id) and self.created_at is None and self.updated_at is None and not self._fields

    @property
    def existed(self) -> bool:
        if not self.id or self.created_at is None or self.updated_at is None:
            return False
        return self.created_at != self.updated_at

    def pointer(self) -> Pointer:
        if not self.id:
            raise ValueError(f"{self.parse_class} record has no objectId yet")
        return Pointer(self.parse_class, self.id)

    def as_json(self) -> Dict[str, Any]:
        h: Dict[str, Any] = {TYPE_KEY: TYPE_OBJECT, "className": self.parse_class}
        if self.id:
            h["objectId"] = self.id
        if self.created_at:
            h["createdAt"] = format_date(self.created_at)
        if self.updated_at:
            h["updatedAt"] = format_date(self.updated_at)
        if self._acl is not None:
            h["ACL"] = self._acl.as_json()
        for key, value in self._fields.items():
            h[key] = encode_value(value)
        return h

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, Record):
            return NotImplemented
        if self.id and other.id:
            return self.parse_class == other.parse_class and self.id == other.id
        return self is other

    def __hash__(self) -> int:
        return hash((self.parse_class, self.id)) if self.id else id(self)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.parse_class}:{self.id or 'new'} {self._fields!r}>"

    # ---- persistence ----

    def before_save(self) -> None:
        """Hook run by change_requests()/save(); subclasses may adjust fields."""

    def change_requests(self, force: bool = False) -> List[BatchRequest]:
        self.before_save()
        body = self.updates()
        if self.is_new:
            return [BatchRequest("POST", uri_path(self.parse_class), body, tag=self)]
        if body or force:
            return [BatchRequest("PUT", uri_path(self.parse_class, self.id), body, tag=self)]
        return []

    def destroy_request(self) -> Optional[BatchRequest]:
        if self.is_new:
            return None
        return BatchRequest("DELETE", uri_path(self.parse_class, self.id), tag=self)

    def apply_saved(self, result: Dict[str, Any]) -> None:
        """Merge a create/update response and mark the record clean."""
        if isinstance(result, dict):
            self.apply_attributes(result, dirty_track=False)
        if self.updated_at is None and self.created_at is not None:
            self.updated_at = self.created_at
        self.clear_changes()

    def save(self, client: Any = None, raise_on_error: bool = False) -> bool:
        client = _client_or_default(client)
        requests = self.change_requests()
        if not requests:
            return True
        req = requests[0]
        if req.method == "POST":
            response = client.create_object(self.parse_class, req.body)
        else:
            response = client.update_object(self.parse_class, self.id, req.body)
        if response.success:
            self.apply_saved(response.result)
            return True
        logger.warning(
            "record.save_failed", extra={"event": {"class": self.parse_class, "id": self.id, "error": response.error}}
        )
        if raise_on_error:
            raise RecordNotSaved(self, response)
        return False

    def destroy(self, client: Any = None) -> bool:
        if self.is_new:
            return False
        client = _client_or_default(client)
        response = client.delete_object(self.parse_class, self.id)
        return bool(response.success)

    def fetch(self, client: Any = None) -> "Record":
        if self.is_new:
            raise ValueError("cannot fetch a record without an objectId")
        client = _client_or_default(client)
        response = client.fetch_object(self.parse_class, self.id)
        if response.success:
            self.apply_attributes(response.result, dirty_track=False)
            self.clear_changes()
        return self


# ---- built-in classes ----


class User(Record, parse_class="_User"):
    field_map = {"auth_data": "authData", "session_token": "sessionToken"}

    @property
    def auth_data(self) -> Optional[Dict[str, Any]]:
        return self.get("authData")

    @auth_data.setter
    def auth_data(self, value: Optional[Dict[str, Any]]) -> None:
        self.set("authData", value)

    @property
    def session_token(self) -> Optional[str]:
        return self.get("sessionToken")

    @property
    def is_anonymous(self) -> bool:
        return bool((self.auth_data or {}).get("anonymous"))

    def updates(self) -> Dict[str, Any]:
        h = super().updates()
        h.pop("sessionToken", None)
        return h


class Role(Record, parse_class="_Role"):
    @property
    def name(self) -> Optional[str]:
        return self.get("name")

    def before_save(self) -> None:
        # roles are publicly readable and only writable with the master key
        if self._acl is not None:
            self._acl.everyone(True, False)


class Installation(Record, parse_class="_Installation"):
    field_map = {
        "gcm_sender_id": "GCMSenderId",
        "app_identifier": "appIdentifier",
        "app_name": "appName",
        "app_version": "appVersion",
        "device_token": "deviceToken",
        "device_type": "deviceType",
        "installation_id": "installationId",
        "time_zone": "timeZone",
    }


class Session(Record, parse_class="_Session"):
    field_map = {
        "session_token": "sessionToken",
        "expires_at": "expiresAt",
        "installation_id": "installationId",
        "created_with": "createdWith",
    }

    @property
    def session_token(self) -> Optional[str]:
        return self.get("sessionToken")
