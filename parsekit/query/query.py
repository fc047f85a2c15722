# parsekit/query/query.py
from __future__ import annotations

import copy
import json
import logging
import re
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

from parsekit.query.constraints import Constraint, Operator
from parsekit.query.formatting import IDENTITY, FieldFormatter

logger = logging.getLogger(__name__)

# fields the cursor iteration (each/save_all) owns
RESERVED_CURSOR_FIELDS = {"created_at", "createdAt", "updated_at", "updatedAt"}

DEFAULT_MAX_LIMIT = 11000

Limit = Union[int, str, None]


def _is_operator_dict(v: Any) -> bool:
    return isinstance(v, dict) and bool(v) and all(str(k).startswith("$") for k in v)


def _parse_order(spec: Any) -> Tuple[str, str]:
    """'-name' / 'name desc' / ('name', 'desc') -> (name, 'asc'|'desc')"""
    if isinstance(spec, (tuple, list)) and len(spec) == 2:
        field, direction = str(spec[0]), str(spec[1]).lower()
    else:
        s = str(spec).strip()
        direction = "asc"
        if s.startswith("-"):
            s, direction = s[1:], "desc"
        elif s.startswith("+"):
            s = s[1:]
        parts = s.split()
        if len(parts) == 2:
            s, direction = parts[0], parts[1].lower()
        field = s
    if direction not in ("asc", "desc"):
        raise ValueError(f"order direction must be asc or desc, got {direction!r}")
    if not field:
        raise ValueError("order field is required")
    return field, direction


class Query:
    """
    Filter + paging + projection over one remote collection.

        q = Query("Song", artist="Beatles", plays__gte=100).order("-plays").limit(10)
        q.compile()   # {'where': {...}, 'order': '-plays', 'limit': 10}
        q.results()   # executes through the client

    Every mutator returns the query so calls can be chained. Constraint
    arguments are validated when they are added, not at request time.
    """

    def __init__(
        self,
        class_name: Any,
        *constraints: Any,
        client: Any = None,
        formatter: Optional[FieldFormatter] = None,
        max_limit: Optional[int] = None,
        **filters: Any,
    ) -> None:
        self.table: str = getattr(class_name, "parse_class", None) or str(class_name or "")
        if not self.table:
            raise ValueError("Query requires a class name")
        self.client = client
        if formatter is None:
            formatter = getattr(client, "formatter", None) or FieldFormatter()
        self.formatter: FieldFormatter = formatter
        if max_limit is None:
            max_limit = getattr(getattr(client, "settings", None), "max_limit", DEFAULT_MAX_LIMIT)
        self.max_limit: int = max_limit

        self._where: List[Constraint] = []
        self._or_groups: List[List[Constraint]] = []
        self._order: List[Tuple[str, str]] = []
        self._keys: List[str] = []
        self._includes: List[str] = []
        self._limit: Optional[int] = None
        self._skip: int = 0
        self._count = False
        self._session_token: Optional[str] = None
        self.use_master_key: bool = True
        self.cache_ttl: Union[int, bool, None] = None

        self.where(*constraints, **filters)

    # ------------------------------------------------------------------
    # filters
    # ------------------------------------------------------------------

    def _coerce(self, item: Any) -> List[Constraint]:
        if isinstance(item, Constraint):
            return [item]
        if isinstance(item, dict):
            return [Constraint.from_filter(str(k), v) for k, v in item.items()]
        raise TypeError(f"where() expects Constraint or dict arguments, got {type(item).__name__}")

    def where(self, *constraints: Any, **filters: Any) -> "Query":
        added: List[Constraint] = []
        for item in constraints:
            added.extend(self._coerce(item))
        added.extend(Constraint.from_filter(k, v) for k, v in filters.items())
        for c in added:
            c.build(self.formatter)  # raises ValueError on bad arguments
        self._where.extend(added)
        return self

    def or_where(self, *constraints: Any, **filters: Any) -> "Query":
        """Close the current filter group and start an alternative one ($or)."""
        if self._where:
            self._or_groups.append(self._where)
        self._where = []
        return self.where(*constraints, **filters)

    def __or__(self, other: "Query") -> "Query":
        if not isinstance(other, Query):
            return NotImplemented
        if other.table != self.table:
            raise ValueError(f"cannot combine queries on {self.table} and {other.table}")
        q = self.clone()
        q._or_groups = [g for g in self._groups() + other._groups() if g]
        q._where = []
        return q

    def _groups(self) -> List[List[Constraint]]:
        return self._or_groups + [self._where]

    def _constrain_all(self, constraints: List[Constraint]) -> None:
        """AND `constraints` into every $or branch (or the single group)."""
        groups = [g for g in self._groups() if g] or [self._where]
        for g in groups:
            g.extend(constraints)

    @property
    def constraints(self) -> List[Constraint]:
        out: List[Constraint] = []
        for g in self._groups():
            out.extend(g)
        return out

    # ------------------------------------------------------------------
    # ordering / paging / projection
    # ------------------------------------------------------------------

    def order(self, *fields: Any) -> "Query":
        for f in fields:
            parsed = _parse_order(f)
            # re-ordering a field replaces its direction
            self._order = [o for o in self._order if o[0] != parsed[0]]
            self._order.append(parsed)
        return self

    def limit(self, n: Limit) -> "Query":
        if self._count:
            logger.debug("query.limit_ignored table=%s (count mode)", self.table)
            return self
        if n is None:
            self._limit = None
        elif n == "max":
            self._limit = int(self.max_limit)
        elif isinstance(n, int) and not isinstance(n, bool) and n >= 0:
            # not clamped; the server enforces its own ceiling
            self._limit = n
        else:
            raise ValueError(f"limit must be a non-negative int, 'max' or None, got {n!r}")
        return self

    def skip(self, n: int) -> "Query":
        if not isinstance(n, int) or isinstance(n, bool) or n < 0:
            raise ValueError(f"skip must be a non-negative int, got {n!r}")
        self._skip = n
        return self

    def keys(self, *fields: Any) -> "Query":
        self._keys.extend(self._flatten(fields))
        return self

    select_keys = keys

    def includes(self, *fields: Any) -> "Query":
        self._includes.extend(self._flatten(fields))
        return self

    @staticmethod
    def _flatten(fields: Tuple[Any, ...]) -> List[Any]:
        out: List[Any] = []
        for f in fields:
            if isinstance(f, (list, tuple, set)):
                out.extend(f)
            elif f is not None:
                out.append(f)
        return out

    def as_count(self) -> "Query":
        """Count mode: limit is pinned to 0 and later limit() calls are ignored."""
        self._count = True
        self._limit = 0
        return self

    @property
    def is_count(self) -> bool:
        return self._count

    def cache(self, ttl: Union[int, bool, None]) -> "Query":
        """Per-query cache TTL: seconds, True (client default) or False (never)."""
        if ttl is not None and not isinstance(ttl, (bool, int)):
            raise ValueError("cache() takes seconds, True, False or None")
        self.cache_ttl = ttl
        return self

    # ------------------------------------------------------------------
    # credentials
    # ------------------------------------------------------------------

    @property
    def session_token(self) -> Optional[str]:
        return self._session_token

    @session_token.setter
    def session_token(self, value: Any) -> None:
        self._session_token = resolve_session_token(value)

    def with_session(self, value: Any) -> "Query":
        self.session_token = value
        return self

    # ------------------------------------------------------------------
    # compilation
    # ------------------------------------------------------------------

    def _build_group(self, constraints: List[Constraint]) -> Dict[str, Any]:
        where: Dict[str, Any] = {}
        for c in constraints:
            for field, value in c.build(self.formatter).items():
                existing = where.get(field)
                if _is_operator_dict(existing) and _is_operator_dict(value):
                    merged = dict(existing)
                    merged.update(value)  # same operator: last write wins
                    where[field] = merged
                else:
                    where[field] = value
        return where

    def compile_where(self) -> Dict[str, Any]:
        if self._or_groups:
            groups = [self._build_group(g) for g in self._groups() if g]
            return {"$or": groups} if len(groups) > 1 else (groups[0] if groups else {})
        return self._build_group(self._where)

    def compile_subquery(self) -> Dict[str, Any]:
        return {"where": self.compile_where(), "className": self.table}

    def compile(self, encode: bool = False) -> Dict[str, Any]:
        """Wire parameters. encode=True JSON-encodes `where` for GET query strings."""
        q: Dict[str, Any] = {}
        where = self.compile_where()
        if where:
            q["where"] = json.dumps(where, separators=(",", ":")) if encode else where
        if self._order:
            q["order"] = ",".join(
                ("-" if d == "desc" else "") + self.formatter.format_field(f)
                for f, d in self._order
            )
        if self._count:
            q["limit"] = 0
            q["count"] = 1
        elif self._limit is not None:
            q["limit"] = self._limit
        if self._skip > 0:
            q["skip"] = self._skip
        keys = self.formatter.join_fields(self._keys) if self._keys else None
        if keys:
            q["keys"] = keys
        include = self.formatter.join_fields(self._includes) if self._includes else None
        if include:
            q["include"] = include
        return q

    def prepared(self) -> Dict[str, Any]:
        return self.compile(encode=True)

    def clone(self) -> "Query":
        q = copy.copy(self)
        q._where = list(self._where)
        q._or_groups = [list(g) for g in self._or_groups]
        q._order = list(self._order)
        q._keys = list(self._keys)
        q._includes = list(self._includes)
        return q

    def __repr__(self) -> str:
        return f"<Query {self.table} {self.compile()!r}>"

    @classmethod
    def from_params(cls, class_name: Any, params: Dict[str, Any], client: Any = None) -> "Query":
        """
        Rebuild a query from wire parameters (a beforeFind payload's `query`).
        Field names are taken as-is; operators outside the plain comparison
        set raise ValueError.
        """
        q = cls(class_name, client=client, formatter=IDENTITY)
        where = params.get("where") or {}
        if isinstance(where, str):
            where = json.loads(where)
        groups = where.get("$or") if isinstance(where.get("$or"), list) else [where]
        for i, group in enumerate(groups):
            if i:
                q.or_where()
            q.where(*_constraints_from_wire(group))
        if params.get("order"):
            q.order(*str(params["order"]).split(","))
        if params.get("keys"):
            q.keys(str(params["keys"]).split(","))
        if params.get("include"):
            q.includes(str(params["include"]).split(","))
        if params.get("skip"):
            q.skip(int(params["skip"]))
        if params.get("count"):
            q.as_count()
        elif params.get("limit") is not None:
            q.limit(int(params["limit"]))
        return q

    # ------------------------------------------------------------------
    # execution
    # ------------------------------------------------------------------

    def _client(self) -> Any:
        if self.client is not None:
            return self.client
        from parsekit.services.parse_service import get_client

        return get_client()

    def fetch(self) -> Any:
        """Run the query and return the raw Response."""
        return self._client().find_objects(
            self.table,
            self.prepared(),
            session_token=self._session_token,
            use_master_key=self.use_master_key,
            cache=self.cache_ttl,
        )

    def results(self, raw: bool = False) -> List[Any]:
        from parsekit.models.record import Record

        response = self.fetch()
        if not response.success:
            logger.warning(
                "query.error", extra={"event": {"table": self.table, "code": response.code, "error": response.error}}
            )
            return []
        if raw:
            return list(response.results)
        return [r for r in (Record.build(x, self.table) for x in response.results) if r is not None]

    all = results

    def first(self, n: int = 1) -> Any:
        items = self.clone().limit(n).results()
        if n == 1:
            return items[0] if items else None
        return items

    def count(self) -> int:
        response = self.clone().as_count().fetch()
        if not response.success:
            logger.warning(
                "query.count_error", extra={"event": {"table": self.table, "code": response.code}}
            )
            return 0
        return int(response.count)

    def _check_cursor_fields(self) -> None:
        bad = sorted({c.field for c in self.constraints if c.field in RESERVED_CURSOR_FIELDS})
        if bad:
            raise ValueError(
                f"{', '.join(bad)} cannot be used as a filter when iterating; "
                "created_at/updated_at drive the iteration cursor"
            )

    def pages(self, batch_size: int = 100) -> Iterator[List[Any]]:
        """
        Walk the whole collection in updatedAt order. Each page continues from
        the last timestamp seen, excluding ids already returned at that instant.
        """
        self._check_cursor_fields()
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        last_ts = None
        seen_at_ts: List[str] = []
        while True:
            q = self.clone()
            q._order = [("updatedAt", "asc")]
            q._limit = batch_size
            q._skip = 0
            if last_ts is not None:
                cursor = [Constraint.create("updatedAt", Operator.GTE, last_ts)]
                if seen_at_ts:
                    cursor.append(Constraint.create("objectId", Operator.NIN, list(seen_at_ts)))
                q._constrain_all(cursor)
            page = q.results()
            if not page:
                return
            yield page
            tail = page[-1].updated_at
            if tail is None:
                logger.warning("query.cursor_stopped table=%s (no updatedAt in results)", self.table)
                return
            if tail != last_ts:
                seen_at_ts = []
            last_ts = tail
            seen_at_ts.extend(r.id for r in page if r.updated_at == tail and r.id not in seen_at_ts)

    def each(self, callback: Callable[[Any], Any], batch_size: int = 100) -> int:
        n = 0
        for page in self.pages(batch_size):
            for record in page:
                callback(record)
                n += 1
        return n

    def save_all(
        self, callback: Optional[Callable[[Any], Any]] = None, batch_size: int = 100
    ) -> bool:
        """Run `callback` on every record and batch-save the ones it changed."""
        from parsekit.http.batch import BatchExecutor

        ok = True
        client = self._client()
        executor = BatchExecutor(client)
        for page in self.pages(batch_size):
            if callback is not None:
                for record in page:
                    callback(record)
            dirty = [r for r in page if r.is_dirty()]
            if dirty:
                ok = executor.save(dirty) and ok
        return ok


_FROM_WIRE: Dict[str, Operator] = {
    "$ne": Operator.NE,
    "$lt": Operator.LT,
    "$lte": Operator.LTE,
    "$gt": Operator.GT,
    "$gte": Operator.GTE,
    "$in": Operator.IN,
    "$nin": Operator.NIN,
    "$all": Operator.ALL,
    "$exists": Operator.EXISTS,
}


def _constraints_from_wire(where: Dict[str, Any]) -> List[Constraint]:
    out: List[Constraint] = []
    for field, value in where.items():
        if str(field).startswith("$"):
            raise ValueError(f"unsupported top-level operator {field}")
        if not _is_operator_dict(value):
            out.append(Constraint.create(field, Operator.EQ, value))
            continue
        for key, arg in value.items():
            if key == "$options":
                continue
            if key == "$regex":
                flags = re.IGNORECASE if "i" in str(value.get("$options", "")) else 0
                out.append(Constraint.create(field, Operator.REGEX, re.compile(arg, flags)))
            elif key in _FROM_WIRE:
                out.append(Constraint.create(field, _FROM_WIRE[key], arg))
            else:
                raise ValueError(f"unsupported operator {key} on {field}")
    return out


def resolve_session_token(value: Any) -> Optional[str]:
    """
    A token string, or any value exposing a `session_token` string
    (a logged-in user, a session record). Anything else is a TypeError.
    """
    if value is None:
        return None
    if isinstance(value, str):
        if not value.strip():
            raise TypeError("session token must be a non-empty string")
        return value
    token = getattr(value, "session_token", None)
    if isinstance(token, str) and token.strip():
        return token
    raise TypeError(
        f"session token must be a string or expose .session_token, got {type(value).__name__}"
    )
