"""Filter expressions for the circles_query event index.

Predicates serialize to the JSON shape the index expects and can also be
evaluated locally against a row dict, which keeps the cursor predicate
testable without a transport.

    tuple_greater_than(("blockNumber", "transactionIndex", "logIndex"), (100, 2, 7))

expands to

    blockNumber > 100
    OR (blockNumber = 100 AND transactionIndex > 2)
    OR (blockNumber = 100 AND transactionIndex = 2 AND logIndex > 7)
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union


class FilterType(Enum):
    EQUALS = "Equals"
    GREATER_THAN = "GreaterThan"


class ConjunctionType(Enum):
    AND = "And"
    OR = "Or"


@dataclass(frozen=True)
class FilterPredicate:
    """Single column comparison."""

    filter_type: FilterType
    column: str
    value: Any

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "FilterPredicate",
            "filterType": self.filter_type.value,
            "column": self.column,
            "value": self.value,
        }

    def matches(self, row: Mapping[str, Any]) -> bool:
        actual = row.get(self.column)
        if actual is None:
            return False
        if self.filter_type is FilterType.EQUALS:
            return actual == self.value
        return actual > self.value


@dataclass(frozen=True)
class Conjunction:
    """AND/OR group of predicates."""

    conjunction_type: ConjunctionType
    predicates: tuple[Predicate, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "Conjunction",
            "conjunctionType": self.conjunction_type.value,
            "predicates": [p.to_dict() for p in self.predicates],
        }

    def matches(self, row: Mapping[str, Any]) -> bool:
        if self.conjunction_type is ConjunctionType.AND:
            return all(p.matches(row) for p in self.predicates)
        return any(p.matches(row) for p in self.predicates)


Predicate = Union[FilterPredicate, Conjunction]


def equals(column: str, value: Any) -> FilterPredicate:
    return FilterPredicate(FilterType.EQUALS, column, value)


def greater_than(column: str, value: Any) -> FilterPredicate:
    return FilterPredicate(FilterType.GREATER_THAN, column, value)


def all_of(*predicates: Predicate) -> Conjunction:
    return Conjunction(ConjunctionType.AND, tuple(predicates))


def any_of(*predicates: Predicate) -> Conjunction:
    return Conjunction(ConjunctionType.OR, tuple(predicates))


def lexicographic_greater(
    lhs: Sequence[Any],
    rhs: Sequence[Any],
    *,
    eq: Callable[[Any, Any], Any],
    gt: Callable[[Any, Any], Any],
    all_: Callable[..., Any],
    any_: Callable[..., Any],
    or_equal: bool = False,
) -> Any:
    """Lexicographic ``lhs > rhs`` (or ``>=``) built from pluggable operators.

    The same expansion serves the index filter (``equals``/``greater_than``/
    ``all_of``/``any_of``) and SQL guards (``operator.eq``/``operator.gt``/
    ``and_``/``or_``).

    Raises:
        ValueError: If lhs and rhs differ in length or are empty.
    """
    if not lhs or len(lhs) != len(rhs):
        raise ValueError("columns and values must be non-empty and of equal length")

    branches = []
    for i in range(len(lhs)):
        prefix = [eq(lhs[j], rhs[j]) for j in range(i)]
        compare = gt(lhs[i], rhs[i])
        branches.append(all_(*prefix, compare) if prefix else compare)
    if or_equal:
        branches.append(all_(*(eq(a, b) for a, b in zip(lhs, rhs))))
    return any_(*branches)


def tuple_greater_than(columns: Sequence[str], values: Sequence[Any]) -> Conjunction:
    """Strict lexicographic ``(columns) > (values)`` as a disjunction of conjuncts.

    Raises:
        ValueError: If columns and values differ in length or are empty.
    """
    return lexicographic_greater(
        columns, values, eq=equals, gt=greater_than, all_=all_of, any_=any_of
    )


def any_equals(column: str, values: Sequence[Any]) -> Conjunction | None:
    """OR group of equality predicates, or None when values is empty."""
    if not values:
        return None
    return any_of(*(equals(column, v) for v in values))
