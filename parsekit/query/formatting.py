# parsekit/query/formatting.py
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional

from parsekit.models.types import encode_value

_SPECIAL_FIELDS = {"id": "objectId", "object_id": "objectId", "acl": "ACL"}


def _lower_first(s: str) -> str:
    return s[:1].lower() + s[1:]


def _upper_first(s: str) -> str:
    return s[:1].upper() + s[1:]


def columnize(name: str) -> str:
    """my_column_field / MyColumnField -> myColumnField"""
    parts = [p for p in name.split("_") if p]
    if not parts:
        return name
    return _lower_first(parts[0]) + "".join(_upper_first(p) for p in parts[1:])


def camelize(name: str) -> str:
    """my_column_field -> MyColumnField"""
    return "".join(_upper_first(p) for p in name.split("_") if p) or name


@dataclass(frozen=True)
class FieldFormatter:
    """
    Maps local field names to remote column names. One instance is shared by a
    client and the queries it builds; there is no process-wide formatter.
    style: columnize | camelize | identity
    """

    style: str = "columnize"

    def __post_init__(self) -> None:
        if self.style not in ("columnize", "camelize", "identity"):
            raise ValueError(f"unknown field format: {self.style!r}")

    @classmethod
    def from_settings(cls, settings: Any) -> "FieldFormatter":
        return cls(getattr(settings, "field_format", "columnize"))

    def _segment(self, name: str) -> str:
        if name in _SPECIAL_FIELDS:
            return _SPECIAL_FIELDS[name]
        # server-internal columns (_rperm, _User) and $-keys pass through
        if name.startswith(("_", "$")) or self.style == "identity":
            return name
        if self.style == "camelize":
            return camelize(name)
        return columnize(name)

    def format_field(self, name: Any) -> str:
        s = str(name).strip()
        if not s:
            raise ValueError("field name must be a non-empty string")
        # dotted paths (author.first_name) are formatted per segment
        return ".".join(self._segment(part) for part in s.split("."))

    def format_fields(self, names: Iterable[Any]) -> List[str]:
        out: List[str] = []
        for n in names:
            f = self.format_field(n)
            if f not in out:
                out.append(f)
        return out

    def join_fields(self, names: Any) -> Optional[str]:
        """scalar-or-list -> deduplicated comma-joined string (keys/include)"""
        if names is None:
            return None
        if isinstance(names, str):
            names = [x for x in names.split(",") if x.strip()]
        elif not isinstance(names, (list, tuple, set)):
            names = [names]
        fields = self.format_fields(names)
        return ",".join(fields) if fields else None


IDENTITY = FieldFormatter("identity")


def format_value(value: Any) -> Any:
    """
    Wire form of a constraint value:
    dates -> {"__type": "Date", "iso": ...}, records/pointers -> pointer,
    compiled regex -> pattern source, sub-queries -> {"where", "className"}.
    """
    if isinstance(value, re.Pattern):
        return value.pattern
    compile_subquery = getattr(value, "compile_subquery", None)
    if callable(compile_subquery):
        return compile_subquery()
    if isinstance(value, (list, tuple)):
        return [format_value(v) for v in value]
    return encode_value(value)
