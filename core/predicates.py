"""
Typed Row-Filter Predicates
===========================

Row filters are never built by string concatenation. A predicate is one
of a fixed set of shapes whose field names come from static policy
configuration and whose values are bound parameters:

- MatchAll: no restriction
- MatchNone: zero rows (fail-closed result)
- FieldIn: row[field] is one of a bound set of values
- FieldEquals: row[field] equals a bound value

Predicates can be evaluated against a row mapping, rendered as a
SQLAlchemy boolean clause (values travel as bind parameters), or
described for audit and display purposes.

Templates are the configuration-time counterpart: they are bound to an
Identity at evaluation time to produce a Predicate.
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, FrozenSet, Hashable, Iterable, Mapping

from sqlalchemy import false, true
from sqlalchemy.sql.elements import ColumnElement

from models.domain import Identity
from .errors import PredicateBindingFailure

logger = logging.getLogger(__name__)

_FIELD_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _check_field(field: str) -> str:
    if not _FIELD_NAME.match(field):
        raise ValueError(f"Invalid field name for predicate: {field!r}")
    return field


def _row_value(row: Mapping[str, Any], field: str) -> Any:
    if field in row:
        return row[field]
    # Records coming from SQL tooling are often upper-cased
    lowered = {str(k).lower(): v for k, v in row.items()}
    return lowered.get(field.lower())


class Predicate(ABC):
    """Boolean condition over a single record."""

    @abstractmethod
    def matches(self, row: Mapping[str, Any]) -> bool:
        ...

    @abstractmethod
    def to_clause(self, table) -> ColumnElement:
        """Render as a SQLAlchemy clause against a Table or mapped class."""
        ...

    @abstractmethod
    def describe(self) -> str:
        ...


@dataclass(frozen=True)
class MatchAll(Predicate):
    def matches(self, row: Mapping[str, Any]) -> bool:
        return True

    def to_clause(self, table) -> ColumnElement:
        return true()

    def describe(self) -> str:
        return "TRUE"


@dataclass(frozen=True)
class MatchNone(Predicate):
    reason: str = ""

    def matches(self, row: Mapping[str, Any]) -> bool:
        return False

    def to_clause(self, table) -> ColumnElement:
        return false()

    def describe(self) -> str:
        return "FALSE"


def _column(table, field: str):
    columns = getattr(table, "c", None)
    if columns is not None:
        return columns[field]
    return getattr(table, field)


@dataclass(frozen=True)
class FieldIn(Predicate):
    field: str
    values: FrozenSet[Hashable]

    def __post_init__(self):
        _check_field(self.field)

    def matches(self, row: Mapping[str, Any]) -> bool:
        return _row_value(row, self.field) in self.values

    def to_clause(self, table) -> ColumnElement:
        if not self.values:
            return false()
        return _column(table, self.field).in_(sorted(self.values, key=str))

    def describe(self) -> str:
        rendered = ", ".join(repr(v) for v in sorted(self.values, key=str))
        return f"{self.field} IN ({rendered})"


@dataclass(frozen=True)
class FieldEquals(Predicate):
    field: str
    value: Hashable

    def __post_init__(self):
        _check_field(self.field)

    def matches(self, row: Mapping[str, Any]) -> bool:
        return _row_value(row, self.field) == self.value

    def to_clause(self, table) -> ColumnElement:
        return _column(table, self.field) == self.value

    def describe(self) -> str:
        return f"{self.field} = {self.value!r}"


# ============================================================================
# Collaborator port: ownership lookup
# ============================================================================

class OwnershipLookup(ABC):
    """
    External lookup of the resource ids an identity owns
    (e.g. "find courses taught by this teacher"), and of the members
    attached to owned ids (e.g. "students enrolled in those courses").
    """

    @abstractmethod
    def owned_resource_ids(self, identity: Identity) -> FrozenSet[Hashable]:
        ...

    def member_ids(self, owned_ids: FrozenSet[Hashable]) -> FrozenSet[Hashable]:
        raise PredicateBindingFailure(f"{type(self).__name__} holds no membership data")


class StaticOwnershipLookup(OwnershipLookup):
    """
    Ownership mapping held in memory.

    Args:
        mapping: identity id -> owned ids
        members: owned id -> member ids (e.g. course id -> enrolled student ids)
    """

    def __init__(self, mapping: Mapping[str, Iterable[Hashable]] = None,
                 members: Mapping[Hashable, Iterable[Hashable]] = None):
        self._mapping = {k: frozenset(v) for k, v in (mapping or {}).items()}
        self._members = {k: frozenset(v) for k, v in (members or {}).items()}

    def owned_resource_ids(self, identity: Identity) -> FrozenSet[Hashable]:
        return self._mapping.get(identity.id, frozenset())

    def member_ids(self, owned_ids: FrozenSet[Hashable]) -> FrozenSet[Hashable]:
        found = set()
        for owned in owned_ids:
            found.update(self._members.get(owned, ()))
        return frozenset(found)


# ============================================================================
# Templates
# ============================================================================

class PredicateTemplate(ABC):
    """Configuration-time predicate shape, bound per identity."""

    @abstractmethod
    def bind(self, identity: Identity, ownership: OwnershipLookup) -> Predicate:
        """
        Bind identity attributes into a concrete predicate.

        Raises:
            PredicateBindingFailure: If the identity lacks the data needed
        """
        ...

    @abstractmethod
    def describe(self) -> str:
        ...


@dataclass(frozen=True)
class OwnedRows(PredicateTemplate):
    """Rows whose ``field`` is one of the ids the identity owns."""
    field: str

    def __post_init__(self):
        _check_field(self.field)

    def bind(self, identity: Identity, ownership: OwnershipLookup) -> Predicate:
        owned = _lookup(identity, ownership, lambda: ownership.owned_resource_ids(identity))
        if not owned:
            raise PredicateBindingFailure(f"Identity {identity.id} owns no {self.field} values")
        return FieldIn(self.field, frozenset(owned))

    def describe(self) -> str:
        return f"{self.field} IN owned(identity)"


@dataclass(frozen=True)
class MembersOfOwned(PredicateTemplate):
    """
    Rows whose ``field`` is a member of something the identity owns.

    Used for student records: a teacher owns courses, and the visible
    students are those enrolled in any of them. A student enrolled in
    several owned courses is still matched once.
    """
    field: str

    def __post_init__(self):
        _check_field(self.field)

    def bind(self, identity: Identity, ownership: OwnershipLookup) -> Predicate:
        owned = _lookup(identity, ownership, lambda: ownership.owned_resource_ids(identity))
        if not owned:
            raise PredicateBindingFailure(f"Identity {identity.id} owns nothing")
        members = _lookup(identity, ownership, lambda: ownership.member_ids(frozenset(owned)))
        if not members:
            raise PredicateBindingFailure(f"No {self.field} values attached to {identity.id}'s holdings")
        return FieldIn(self.field, frozenset(members))

    def describe(self) -> str:
        return f"{self.field} IN members(owned(identity))"


def _lookup(identity: Identity, ownership: OwnershipLookup, fetch):
    if ownership is None:
        raise PredicateBindingFailure("No ownership lookup configured")
    try:
        return fetch()
    except PredicateBindingFailure:
        raise
    except Exception as e:
        raise PredicateBindingFailure(f"Ownership lookup failed for {identity.id}: {e}") from e


@dataclass(frozen=True)
class SameDepartment(PredicateTemplate):
    """Rows whose ``field`` equals the identity's department."""
    field: str

    def __post_init__(self):
        _check_field(self.field)

    def bind(self, identity: Identity, ownership: OwnershipLookup) -> Predicate:
        if identity.department is None:
            raise PredicateBindingFailure(f"Identity {identity.id} has no department")
        return FieldEquals(self.field, identity.department)

    def describe(self) -> str:
        return f"{self.field} = identity.department"
