# parsekit/models/types.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional

TYPE_KEY = "__type"
TYPE_POINTER = "Pointer"
TYPE_OBJECT = "Object"
TYPE_DATE = "Date"
TYPE_GEOPOINT = "GeoPoint"


# ---- dates ----


def format_date(value: Any) -> str:
    """ISO-8601 in UTC with millisecond precision: 2017-01-31T18:02:47.123Z"""
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        dt = dt.astimezone(timezone.utc)
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    else:
        raise TypeError(f"cannot format {type(value).__name__} as a date")
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def parse_date(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, dict):
        value = value.get("iso")
    if not isinstance(value, str) or not value:
        return None
    s = value.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    return datetime.fromisoformat(s)


def date_json(value: Any) -> Dict[str, str]:
    return {TYPE_KEY: TYPE_DATE, "iso": format_date(value)}


# ---- pointers / geo ----


@dataclass(frozen=True)
class Pointer:
    """Reference to a record by class name and objectId."""

    parse_class: str
    id: str

    @property
    def class_name(self) -> str:
        return self.parse_class

    def pointer(self) -> "Pointer":
        return self

    def as_json(self) -> Dict[str, str]:
        return {TYPE_KEY: TYPE_POINTER, "className": self.parse_class, "objectId": self.id}

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "Pointer":
        return cls(str(data.get("className")), str(data.get("objectId")))


@dataclass(frozen=True)
class GeoPoint:
    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        if not -90.0 <= float(self.latitude) <= 90.0:
            raise ValueError(f"latitude out of range: {self.latitude}")
        if not -180.0 <= float(self.longitude) <= 180.0:
            raise ValueError(f"longitude out of range: {self.longitude}")

    def as_json(self) -> Dict[str, Any]:
        return {
            TYPE_KEY: TYPE_GEOPOINT,
            "latitude": float(self.latitude),
            "longitude": float(self.longitude),
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "GeoPoint":
        return cls(float(data.get("latitude", 0.0)), float(data.get("longitude", 0.0)))


def is_pointer_like(value: Any) -> bool:
    """True for Pointer and for anything exposing pointer() (records)."""
    return isinstance(value, Pointer) or callable(getattr(value, "pointer", None))


# ---- wire decode / encode ----


def decode_value(value: Any) -> Any:
    """Server JSON -> python values (dates, pointers, geopoints, nested records)."""
    if isinstance(value, list):
        return [decode_value(v) for v in value]
    if not isinstance(value, dict):
        return value
    kind = value.get(TYPE_KEY)
    if kind == TYPE_DATE:
        return parse_date(value)
    if kind == TYPE_POINTER:
        return Pointer.from_json(value)
    if kind == TYPE_GEOPOINT:
        return GeoPoint.from_json(value)
    if kind == TYPE_OBJECT and value.get("className"):
        # avoid the import cycle: records import this module
        from parsekit.models.record import Record

        return Record.build(value)
    return {k: decode_value(v) for k, v in value.items()}


def encode_value(value: Any) -> Any:
    """Python values -> wire JSON. Records are sent as pointers."""
    if isinstance(value, (datetime, date)):
        return date_json(value)
    if isinstance(value, (Pointer, GeoPoint)):
        return value.as_json()
    if callable(getattr(value, "pointer", None)):
        return value.pointer().as_json()
    if callable(getattr(value, "as_json", None)):
        return value.as_json()
    if isinstance(value, (list, tuple, set)):
        return [encode_value(v) for v in value]
    if isinstance(value, dict):
        return {k: encode_value(v) for k, v in value.items()}
    return value
