# parsekit/models/acl.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

PUBLIC = "*"
ROLE_PREFIX = "role:"


@dataclass
class Permission:
    """Read/write rights for one ACL subject. Compared by value."""

    read: bool = False
    write: bool = False

    def __post_init__(self) -> None:
        self.read = bool(self.read)
        self.write = bool(self.write)

    @classmethod
    def from_json(cls, data: Any) -> "Permission":
        if isinstance(data, Permission):
            return cls(data.read, data.write)
        if isinstance(data, dict):
            return cls(bool(data.get("read")), bool(data.get("write")))
        return cls()

    @property
    def present(self) -> bool:
        return self.read or self.write

    def as_json(self) -> Optional[Dict[str, bool]]:
        h: Dict[str, bool] = {}
        if self.read:
            h["read"] = True
        if self.write:
            h["write"] = True
        return h or None


def role_subject(name: Any) -> str:
    """Admin, role:Admin or a Role record -> role:Admin"""
    name = str(getattr(name, "name", name)).strip()
    if name.startswith(ROLE_PREFIX):
        name = name[len(ROLE_PREFIX):]
    if not name:
        raise ValueError("role name must be a non-empty string")
    return ROLE_PREFIX + name


def normalize_subject(subject: Any) -> str:
    """
    Accepts "*", "public", an objectId string, "role:<name>", a Role record
    (anything with parse_class == "_Role" and a name) or any pointer-like value
    exposing `.id`.
    """
    if getattr(subject, "parse_class", None) == "_Role" and getattr(subject, "name", None):
        return ROLE_PREFIX + str(subject.name)
    if not isinstance(subject, str) and getattr(subject, "id", None):
        return str(subject.id)
    if isinstance(subject, str):
        s = subject.strip()
        if s.lower() == "public":
            return PUBLIC
        if s:
            return s
    raise ValueError(
        "Invalid argument applying ACLs: must be either objectId, role or 'public'"
    )


class ACL:
    """
    Ordered subject -> Permission map. A subject that is absent has no access
    (only the master key bypasses ACLs). `on_change` is called whenever the map
    is mutated so the owning record can mark its ACL field dirty.
    """

    def __init__(
        self,
        permissions: Any = None,
        on_change: Optional[Callable[[], None]] = None,
    ) -> None:
        self.permissions: Dict[str, Permission] = {}
        self.on_change = on_change
        if isinstance(permissions, ACL):
            permissions = permissions.permissions
        if isinstance(permissions, dict):
            for subject, perm in permissions.items():
                p = Permission.from_json(perm)
                if p.present:
                    self.permissions[str(subject)] = p

    # ---- constructors ----

    @classmethod
    def from_json(cls, data: Any, on_change: Optional[Callable[[], None]] = None) -> "ACL":
        return cls(data if isinstance(data, dict) else {}, on_change=on_change)

    @classmethod
    def everyone_acl(cls, read: bool = True, write: bool = True) -> "ACL":
        acl = cls()
        acl.everyone(read, write)
        return acl

    # ---- mutation ----

    def _will_change(self) -> None:
        # called before every mutation so owners can snapshot the prior state
        if self.on_change is not None:
            self.on_change()

    def apply(self, subject: Any, read: Any = False, write: bool = False) -> Optional[Permission]:
        """Set the subject's rights; read=False and write=False removes the subject."""
        key = normalize_subject(subject)
        perm = read if isinstance(read, Permission) else Permission(read, write)
        if not perm.present:
            self.delete(key)
            return None
        if self.permissions.get(key) != perm:
            self._will_change()
            self.permissions[key] = Permission(perm.read, perm.write)
        return self.permissions[key]

    add = apply

    def apply_role(self, name: Any, read: Any = False, write: bool = False) -> Optional[Permission]:
        return self.apply(role_subject(name), read, write)

    add_role = apply_role

    def everyone(self, read: bool, write: bool) -> Optional[Permission]:
        return self.apply(PUBLIC, read, write)

    def delete(self, subject: Any) -> bool:
        key = normalize_subject(subject)
        if key in self.permissions:
            self._will_change()
            del self.permissions[key]
            return True
        return False

    def master_key_only(self) -> None:
        self._will_change()
        self.permissions = {}

    clear = master_key_only

    def _set_all(self, attr: str, value: bool) -> None:
        self._will_change()
        for key, perm in list(self.permissions.items()):
            setattr(perm, attr, value)
            if not perm.present:
                del self.permissions[key]

    def all_read(self) -> None:
        self._set_all("read", True)

    def all_write(self) -> None:
        self._set_all("write", True)

    def no_read(self) -> None:
        self._set_all("read", False)

    def no_write(self) -> None:
        self._set_all("write", False)

    # ---- read access ----

    def __getitem__(self, subject: Any) -> Optional[Permission]:
        return self.permissions.get(normalize_subject(subject))

    def __contains__(self, subject: Any) -> bool:
        return normalize_subject(subject) in self.permissions

    def __iter__(self) -> Iterator[Tuple[str, Permission]]:
        return iter(self.permissions.items())

    @property
    def present(self) -> bool:
        return any(p.present for p in self.permissions.values())

    def as_json(self) -> Dict[str, Dict[str, bool]]:
        return {k: v.as_json() for k, v in self.permissions.items() if v.present}

    def __eq__(self, other: Any) -> bool:
        if isinstance(other, ACL):
            return self.as_json() == other.as_json()
        if isinstance(other, dict):
            return self.as_json() == ACL(other).as_json()
        return NotImplemented

    def __repr__(self) -> str:
        return f"ACL({self.as_json()!r})"


class DefaultACLRules:
    """
    Ordered per-class default ACL declarations.

    - re-declaring a subject (including public) replaces the rule in place
    - a rule with read=False and write=False removes the subject's rule
    """

    def __init__(self, rules: Optional[List[Tuple[str, Permission]]] = None) -> None:
        self._rules: List[Tuple[str, Permission]] = list(rules or [])

    @staticmethod
    def _key(subject: Any, role: bool) -> str:
        if role:
            return role_subject(subject)
        return normalize_subject(subject)

    def declare(
        self, subject: Any, read: bool = False, write: bool = False, role: bool = False
    ) -> None:
        key = self._key(subject, role)
        perm = Permission(read, write)
        idx = next((i for i, (k, _) in enumerate(self._rules) if k == key), None)
        if not perm.present:
            if idx is not None:
                del self._rules[idx]
            return
        if idx is None:
            self._rules.append((key, perm))
        else:
            self._rules[idx] = (key, perm)

    @property
    def rules(self) -> List[Tuple[str, Permission]]:
        return [(k, Permission(p.read, p.write)) for k, p in self._rules]

    def copy(self) -> "DefaultACLRules":
        return DefaultACLRules(self.rules)

    def to_acl(self, on_change: Optional[Callable[[], None]] = None) -> ACL:
        return ACL({k: p for k, p in self._rules}, on_change=on_change)

    def __repr__(self) -> str:
        return f"DefaultACLRules({[(k, p.as_json()) for k, p in self._rules]!r})"
