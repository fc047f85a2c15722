# parsekit/query/constraints.py
from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from parsekit.models.types import GeoPoint, Pointer, is_pointer_like
from parsekit.query.formatting import FieldFormatter, camelize, format_value


class Operator(Enum):
    """Closed set of constraint kinds."""

    EQ = "eq"
    NE = "ne"
    LT = "lt"
    LTE = "lte"
    GT = "gt"
    GTE = "gte"
    IN = "in"
    NIN = "nin"
    ALL = "all"
    EXISTS = "exists"
    NULL = "null"
    IN_QUERY = "in_query"
    NOT_IN_QUERY = "not_in_query"
    SELECT = "select"
    DONT_SELECT = "dont_select"
    REGEX = "regex"
    RELATED_TO = "related_to"
    NEAR = "near"
    WITHIN_BOX = "within_box"
    WITHIN_POLYGON = "within_polygon"
    TEXT = "text_search"
    ID = "id"

    @property
    def key(self) -> Optional[str]:
        """Wire key; None for equality and for the id operator."""
        return _WIRE_KEYS.get(self)


_WIRE_KEYS: Dict[Operator, str] = {
    Operator.NE: "$ne",
    Operator.LT: "$lt",
    Operator.LTE: "$lte",
    Operator.GT: "$gt",
    Operator.GTE: "$gte",
    Operator.IN: "$in",
    Operator.NIN: "$nin",
    Operator.ALL: "$all",
    Operator.EXISTS: "$exists",
    Operator.NULL: "$exists",
    Operator.IN_QUERY: "$inQuery",
    Operator.NOT_IN_QUERY: "$notInQuery",
    Operator.SELECT: "$select",
    Operator.DONT_SELECT: "$dontSelect",
    Operator.REGEX: "$regex",
    Operator.RELATED_TO: "$relatedTo",
    Operator.NEAR: "$nearSphere",
    Operator.WITHIN_BOX: "$geoWithin",
    Operator.WITHIN_POLYGON: "$geoWithin",
    Operator.TEXT: "$text",
}


# alias -> operator; every user-facing spelling lives here
ALIASES: Dict[str, Operator] = {
    "eq": Operator.EQ,
    "eql": Operator.EQ,
    "ne": Operator.NE,
    "not": Operator.NE,
    "lt": Operator.LT,
    "before": Operator.LT,
    "lte": Operator.LTE,
    "on_or_before": Operator.LTE,
    "gt": Operator.GT,
    "after": Operator.GT,
    "gte": Operator.GTE,
    "on_or_after": Operator.GTE,
    "in": Operator.IN,
    "contained_in": Operator.IN,
    "nin": Operator.NIN,
    "not_in": Operator.NIN,
    "not_contained_in": Operator.NIN,
    "all": Operator.ALL,
    "contains_all": Operator.ALL,
    "exists": Operator.EXISTS,
    "null": Operator.NULL,
    "matches": Operator.IN_QUERY,
    "in_query": Operator.IN_QUERY,
    "excludes": Operator.NOT_IN_QUERY,
    "not_in_query": Operator.NOT_IN_QUERY,
    "select": Operator.SELECT,
    "reject": Operator.DONT_SELECT,
    "dont_select": Operator.DONT_SELECT,
    "like": Operator.REGEX,
    "regex": Operator.REGEX,
    "related_to": Operator.RELATED_TO,
    "rel": Operator.RELATED_TO,
    "near": Operator.NEAR,
    "within_box": Operator.WITHIN_BOX,
    "within_polygon": Operator.WITHIN_POLYGON,
    "text_search": Operator.TEXT,
    "id": Operator.ID,
}


def resolve_operator(alias: Any) -> Operator:
    if isinstance(alias, Operator):
        return alias
    op = ALIASES.get(str(alias).strip().lower())
    if op is None:
        raise ValueError(f"Unknown query operator: {alias!r}")
    return op


@dataclass(frozen=True)
class Constraint:
    field: str
    operator: Operator
    value: Any

    @classmethod
    def create(cls, field: str, alias: Any, value: Any) -> "Constraint":
        if not isinstance(field, str) or not field.strip():
            raise ValueError("constraint field must be a non-empty string")
        return cls(field.strip(), resolve_operator(alias), value)

    @classmethod
    def from_filter(cls, key: str, value: Any) -> "Constraint":
        """'score__gte' -> (score, $gte); a bare 'score' is equality."""
        field, sep, alias = key.rpartition("__")
        if not sep or alias.lower() not in ALIASES:
            return cls.create(key, Operator.EQ, value)
        return cls.create(field, alias, value)

    def build(self, formatter: Optional[FieldFormatter] = None) -> Dict[str, Any]:
        """Wire fragment for this constraint. Raises ValueError on bad arguments."""
        formatter = formatter or FieldFormatter()
        return _COMPILERS.get(self.operator, _compile_keyed)(
            self, formatter.format_field(self.field)
        )


class Field:
    """
    Small builder: Field("score").gte(10) -> Constraint.
    `Field("song").op("in_query", q)` reaches every registered alias.
    """

    def __init__(self, name: str) -> None:
        self.name = name

    def op(self, alias: Any, value: Any) -> Constraint:
        return Constraint.create(self.name, alias, value)

    def eq(self, value: Any) -> Constraint:
        return self.op(Operator.EQ, value)

    def ne(self, value: Any) -> Constraint:
        return self.op(Operator.NE, value)

    def lt(self, value: Any) -> Constraint:
        return self.op(Operator.LT, value)

    def lte(self, value: Any) -> Constraint:
        return self.op(Operator.LTE, value)

    def gt(self, value: Any) -> Constraint:
        return self.op(Operator.GT, value)

    def gte(self, value: Any) -> Constraint:
        return self.op(Operator.GTE, value)

    def in_(self, value: Any) -> Constraint:
        return self.op(Operator.IN, value)

    def not_in(self, value: Any) -> Constraint:
        return self.op(Operator.NIN, value)

    def exists(self, value: bool = True) -> Constraint:
        return self.op(Operator.EXISTS, value)


# ---- small helpers ----


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return list(value)
    return [value]


def _strict_bool(c: Constraint) -> bool:
    if not isinstance(c.value, bool):
        raise ValueError(
            f"{c.field}: {c.operator.name.lower()} constraint requires True or False, got {c.value!r}"
        )
    return c.value


def _geopoint(value: Any, what: str) -> GeoPoint:
    if isinstance(value, GeoPoint):
        return value
    if isinstance(value, (list, tuple)) and len(value) == 2:
        return GeoPoint(float(value[0]), float(value[1]))
    raise ValueError(f"{what} requires GeoPoint values, got {value!r}")


def _singular(word: str) -> str:
    if word.endswith("ies") and len(word) > 3:
        return word[:-3] + "y"
    if word.endswith(("sses", "ches", "shes", "xes")):
        return word[:-2]
    if word.endswith("s") and not word.endswith("ss"):
        return word[:-1]
    return word


def infer_class_name(field: str) -> str:
    """
    artist -> Artist, songs -> Song, my_song -> MySong; a registered record
    class whose parse_class or python name matches wins (user -> _User).
    """
    from parsekit.models.record import Record

    candidate = camelize(_singular(field.split(".")[-1]))
    found = Record.find_class(candidate)
    if found is not None:
        return found.parse_class
    for klass in list(Record._registry.values()):
        if klass.__name__ == candidate:
            return klass.parse_class
    return candidate


# ---- compilers: one per operator ----


def _compile_eq(c: Constraint, field: str) -> Dict[str, Any]:
    return {field: format_value(c.value)}


def _compile_keyed(c: Constraint, field: str) -> Dict[str, Any]:
    return {field: {c.operator.key: format_value(c.value)}}


def _compile_list(c: Constraint, field: str) -> Dict[str, Any]:
    return {field: {c.operator.key: format_value(_as_list(c.value))}}


def _compile_exists(c: Constraint, field: str) -> Dict[str, Any]:
    return {field: {"$exists": _strict_bool(c)}}


def _compile_null(c: Constraint, field: str) -> Dict[str, Any]:
    # null=True: column absent. null=False: "not equal to null", which unlike
    # $exists:true also combines with geo queries.
    if _strict_bool(c):
        return {field: {"$exists": False}}
    return {field: {"$ne": None}}


def _compile_subquery(c: Constraint, field: str) -> Dict[str, Any]:
    if not callable(getattr(c.value, "compile_subquery", None)):
        raise ValueError(f"{field}: {c.operator.key} requires a Query value")
    return {field: {c.operator.key: c.value.compile_subquery()}}


def _compile_select(c: Constraint, field: str) -> Dict[str, Any]:
    v = c.value
    if not isinstance(v, dict) or "key" not in v or "query" not in v:
        raise ValueError(f"{field}: {c.operator.key} requires {{'key': ..., 'query': Query}}")
    query = v["query"]
    if not callable(getattr(query, "compile_subquery", None)):
        raise ValueError(f"{field}: {c.operator.key} 'query' must be a Query")
    return {field: {c.operator.key: {"key": str(v["key"]), "query": query.compile_subquery()}}}


def _compile_regex(c: Constraint, field: str) -> Dict[str, Any]:
    v = c.value
    if isinstance(v, re.Pattern):
        out: Dict[str, Any] = {"$regex": v.pattern}
        if v.flags & re.IGNORECASE:
            out["$options"] = "i"
        return {field: out}
    if not isinstance(v, str):
        raise ValueError(f"{field}: regex constraint requires a pattern or string")
    return {field: {"$regex": v}}


def _compile_related_to(c: Constraint, field: str) -> Dict[str, Any]:
    if not is_pointer_like(c.value):
        raise ValueError(f"{field}: related_to requires a record or pointer")
    return {"$relatedTo": {"object": format_value(c.value), "key": field}}


def _compile_near(c: Constraint, field: str) -> Dict[str, Any]:
    v = c.value
    max_miles = None
    if isinstance(v, (list, tuple)) and len(v) in (2, 3):
        if len(v) == 3:
            max_miles = v[2]
        point = GeoPoint(float(v[0]), float(v[1]))
    elif isinstance(v, GeoPoint):
        point = v
    else:
        raise ValueError(f"{field}: near requires a GeoPoint or [lat, lng(, miles)]")
    out: Dict[str, Any] = {"$nearSphere": point.as_json()}
    if max_miles is not None and float(max_miles) > 0:
        out["$maxDistanceInMiles"] = float(max_miles)
    return {field: out}


def _compile_box(c: Constraint, field: str) -> Dict[str, Any]:
    v = c.value
    if not isinstance(v, (list, tuple)) or len(v) != 2:
        raise ValueError(f"{field}: within_box requires [southwest, northeast] GeoPoints")
    box = [_geopoint(p, "within_box").as_json() for p in v]
    return {field: {"$geoWithin": {"$box": box}}}


def _compile_polygon(c: Constraint, field: str) -> Dict[str, Any]:
    v = c.value
    if not isinstance(v, (list, tuple)) or len(v) < 3:
        raise ValueError(f"{field}: within_polygon requires at least 3 GeoPoints")
    if not all(isinstance(p, GeoPoint) for p in v):
        raise ValueError(f"{field}: within_polygon points must all be GeoPoints")
    return {field: {"$geoWithin": {"$polygon": [p.as_json() for p in v]}}}


_TEXT_KEYS: Tuple[Tuple[str, str], ...] = (
    ("term", "$term"),
    ("$term", "$term"),
    ("case_sensitive", "$caseSensitive"),
    ("caseSensitive", "$caseSensitive"),
    ("$caseSensitive", "$caseSensitive"),
    ("language", "$language"),
    ("$language", "$language"),
    ("diacritic_sensitive", "$diacriticSensitive"),
    ("diacriticSensitive", "$diacriticSensitive"),
    ("$diacriticSensitive", "$diacriticSensitive"),
)


def _compile_text(c: Constraint, field: str) -> Dict[str, Any]:
    v = c.value
    if isinstance(v, str):
        v = {"$term": v}
    if not isinstance(v, dict) or not v:
        raise ValueError(f"{field}: text_search requires a term string or options dict")
    search: Dict[str, Any] = {}
    for src, dst in _TEXT_KEYS:
        if src in v:
            search[dst] = v[src]
    term = search.get("$term")
    if not isinstance(term, str) or not term.strip():
        raise ValueError(f"{field}: text_search requires a non-empty term")
    return {field: {"$text": {"$search": search}}}


def _compile_id(c: Constraint, field: str) -> Dict[str, Any]:
    v = c.value
    if isinstance(v, str) and v:
        return {field: Pointer(infer_class_name(c.field), v).as_json()}
    if isinstance(v, Pointer) or (is_pointer_like(v) and getattr(v, "id", None)):
        return {field: format_value(v)}
    raise ValueError(f"{field}: id constraint requires an objectId string or pointer, got {v!r}")


_COMPILERS: Dict[Operator, Callable[[Constraint, str], Dict[str, Any]]] = {
    Operator.EQ: _compile_eq,
    Operator.IN: _compile_list,
    Operator.NIN: _compile_list,
    Operator.ALL: _compile_list,
    Operator.EXISTS: _compile_exists,
    Operator.NULL: _compile_null,
    Operator.IN_QUERY: _compile_subquery,
    Operator.NOT_IN_QUERY: _compile_subquery,
    Operator.SELECT: _compile_select,
    Operator.DONT_SELECT: _compile_select,
    Operator.REGEX: _compile_regex,
    Operator.RELATED_TO: _compile_related_to,
    Operator.NEAR: _compile_near,
    Operator.WITHIN_BOX: _compile_box,
    Operator.WITHIN_POLYGON: _compile_polygon,
    Operator.TEXT: _compile_text,
    Operator.ID: _compile_id,
}
