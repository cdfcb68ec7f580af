"""Criteria model: select by primary key or by predicate, plus ordering."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar, Union

K = TypeVar("K")


class Operator(str, Enum):
    """Comparison operators allowed in a predicate condition."""

    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GE = "ge"
    LT = "lt"
    LE = "le"
    IN = "in"
    NOT_IN = "not_in"
    LIKE = "like"
    IS_NULL = "is_null"
    IS_NOT_NULL = "is_not_null"


@dataclass(frozen=True)
class Condition:
    """A single ``field <operator> value`` test."""

    field: str
    operator: Operator = Operator.EQ
    value: Any = None


@dataclass(frozen=True)
class PrimaryKey(Generic[K]):
    """Select the single row whose primary key equals ``value``."""

    value: K


@dataclass(frozen=True)
class Predicate:
    """Conjunction of conditions over entity fields. No conditions matches every row."""

    conditions: tuple[Condition, ...] = ()

    @classmethod
    def equals(cls, **values: Any) -> Predicate:
        """Build an equality predicate, e.g. ``Predicate.equals(name="A", active=True)``."""
        return cls(tuple(Condition(name, Operator.EQ, value) for name, value in values.items()))

    def where(self, field: str, operator: Operator | str, value: Any = None) -> Predicate:
        """Return a new predicate with one more condition ANDed on."""
        return Predicate((*self.conditions, Condition(field, Operator(operator), value)))

    @property
    def is_empty(self) -> bool:
        return not self.conditions


Criteria = Union[PrimaryKey[Any], Predicate]

ALL = Predicate()


class Direction(str, Enum):
    ASC = "asc"
    DESC = "desc"


@dataclass(frozen=True)
class OrderField:
    """A field name and sort direction.

    Rows that compare equal on every order field come back in no particular order.
    """

    name: str
    direction: Direction = Direction.ASC

    @classmethod
    def ascending(cls, name: str) -> OrderField:
        return cls(name, Direction.ASC)

    @classmethod
    def descending(cls, name: str) -> OrderField:
        return cls(name, Direction.DESC)

    @classmethod
    def parse(cls, text: str) -> OrderField:
        """Parse ``"name"`` (ascending) or ``"-name"`` (descending)."""
        if text.startswith("-"):
            return cls.descending(text[1:])
        return cls.ascending(text)


@dataclass(frozen=True)
class Field:
    """Qualifier field used to test row existence during a merge."""

    name: str

    @classmethod
    def parse(cls, *names: str) -> tuple[Field, ...]:
        return tuple(cls(n) for n in names)


def as_criteria(value: Any, key_type: type) -> Criteria:
    """Classify a caller-supplied value as a primary key or a predicate.

    * A ``PrimaryKey`` or ``Predicate`` is returned unchanged.
    * A mapping becomes an equality predicate; an empty mapping matches all rows.
    * A value whose runtime type is *key_type* becomes a ``PrimaryKey``.
      ``bool`` is never accepted as an integer key.

    Raises:
        TypeError: For anything else, including ``None``.
    """
    if isinstance(value, (PrimaryKey, Predicate)):
        return value
    if isinstance(value, Mapping):
        return Predicate.equals(**value)
    if isinstance(value, key_type) and not isinstance(value, bool):
        return PrimaryKey(value)
    raise TypeError(
        f"Cannot use {value!r} as criteria: expected a {key_type.__name__} primary key, "
        "a mapping of field values, or a PrimaryKey/Predicate instance"
    )


def qualifier_names(qualifiers: Any) -> list[str]:
    """Normalise an iterable of ``Field`` or plain names to a list of names."""
    return [q.name if isinstance(q, Field) else str(q) for q in qualifiers]
