"""Predicate trees and orderings for remote queries.

Expressions are immutable. Leaves compare a field path against a literal,
combinators group other expressions. Nothing here knows the remote filter
syntax; see ``compiler`` for that.
"""

from dataclasses import dataclass
from typing import Any, Iterable, Sequence, Union

FieldPath = tuple[str, ...]


def to_field_path(field: str | Sequence[str]) -> FieldPath:
    """Normalize a field given as a string or a sequence of segments."""
    if isinstance(field, str):
        return (field,)
    return tuple(field)


@dataclass(frozen=True)
class Comparison:
    """A leaf comparing one field against a value."""

    operator: str
    field: FieldPath
    value: Any = None


@dataclass(frozen=True)
class Combinator:
    """A boolean combination of other expressions."""

    operator: str
    terms: tuple["Expression", ...]


Expression = Union[Comparison, Combinator]


@dataclass(frozen=True)
class OrderBy:
    """One sort key."""

    field: FieldPath
    direction: str = "asc"


def eq(field: str | Sequence[str], value: Any) -> Comparison:
    return Comparison("eq", to_field_path(field), value)


def gt(field: str | Sequence[str], value: Any) -> Comparison:
    return Comparison("gt", to_field_path(field), value)


def gte(field: str | Sequence[str], value: Any) -> Comparison:
    return Comparison("gte", to_field_path(field), value)


def lt(field: str | Sequence[str], value: Any) -> Comparison:
    return Comparison("lt", to_field_path(field), value)


def lte(field: str | Sequence[str], value: Any) -> Comparison:
    return Comparison("lte", to_field_path(field), value)


def like(field: str | Sequence[str], value: Any) -> Comparison:
    return Comparison("like", to_field_path(field), value)


def in_(field: str | Sequence[str], values: Any) -> Comparison:
    if isinstance(values, list):
        values = tuple(values)
    return Comparison("in", to_field_path(field), values)


def is_null(field: str | Sequence[str]) -> Comparison:
    return Comparison("isNull", to_field_path(field))


def is_undefined(field: str | Sequence[str]) -> Comparison:
    return Comparison("isUndefined", to_field_path(field))


def and_(*terms: Expression) -> Combinator:
    return Combinator("and", tuple(terms))


def or_(*terms: Expression) -> Combinator:
    return Combinator("or", tuple(terms))


def not_(term: Expression) -> Combinator:
    return Combinator("not", (term,))


def asc(field: str | Sequence[str]) -> OrderBy:
    return OrderBy(to_field_path(field), "asc")


def desc(field: str | Sequence[str]) -> OrderBy:
    return OrderBy(to_field_path(field), "desc")


COMBINATORS = frozenset({"and", "or", "not"})


def expression_from_dict(data: dict[str, Any]) -> Expression:
    """Build an expression from its JSON form.

    Leaves look like ``{"op": "eq", "field": "genre", "value": "Fantasy"}``,
    ``field`` being either a string or a list of path segments.
    Combinators carry ``args`` (``and``/``or``) or ``arg`` (``not``).

    Unknown operators are kept as-is; they are rejected at compile time.

    Raises:
        ValueError: If the dict has no ``op`` or is missing its operands.
    """
    if not isinstance(data, dict) or "op" not in data:
        raise ValueError(f"Expression must be an object with an 'op' key: {data!r}")

    op = data["op"]
    if op in COMBINATORS:
        if op == "not":
            if "arg" in data:
                raw_terms = [data["arg"]]
            else:
                raw_terms = data.get("args", [])
        else:
            raw_terms = data.get("args", [])
        return Combinator(op, tuple(expression_from_dict(t) for t in raw_terms))

    if "field" not in data:
        raise ValueError(f"Comparison '{op}' requires a 'field'")

    value = data.get("value")
    if isinstance(value, list):
        value = tuple(value)
    return Comparison(op, to_field_path(data["field"]), value)


def order_from_list(items: Iterable[Any]) -> list[OrderBy]:
    """Build an ordering from JSON-ish items.

    Each item is either ``{"field": ..., "direction": "asc"|"desc"}`` or a
    string, where a leading ``-`` means descending.
    """
    order: list[OrderBy] = []
    for item in items:
        if isinstance(item, OrderBy):
            order.append(item)
        elif isinstance(item, str):
            if item.startswith("-"):
                order.append(desc(item[1:]))
            else:
                order.append(asc(item))
        else:
            order.append(
                OrderBy(
                    field=to_field_path(item["field"]),
                    direction=item.get("direction", "asc"),
                )
            )
    return order
