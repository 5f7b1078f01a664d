"""Compile predicate trees and orderings into remote filter/sort strings.

The remote filter grammar looks like::

    (genre = "Fantasy" && page_count > 100) || !(author = null)

Only a fixed set of operators is translated. Anything else raises
``UnsupportedOperatorError`` rather than producing a filter with a
different meaning.
"""

import math
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Any, Iterable

from .expressions import Combinator, Comparison, Expression, FieldPath, OrderBy

COMPARISON_OPERATORS = {
    "eq": "=",
    "gt": ">",
    "gte": ">=",
    "lt": "<",
    "lte": "<=",
    "like": "~",
}

SUPPORTED_OPERATORS = (
    "eq", "gt", "gte", "lt", "lte", "in", "like",
    "and", "or", "not", "isNull", "isUndefined",
)


class QueryCompileError(ValueError):
    """A query cannot be expressed in the remote filter syntax."""


class UnsupportedOperatorError(QueryCompileError):
    """The expression uses an operator outside the supported set."""

    def __init__(self, operator: str):
        self.operator = operator
        super().__init__(
            f"Unsupported operator '{operator}' for filter conversion. "
            f"Supported operators: {', '.join(SUPPORTED_OPERATORS)}"
        )


def _format_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def escape_value(value: Any) -> str:
    """Render a literal in filter syntax."""
    if value is None:
        return "null"
    # bool first: it is an int subclass
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            raise QueryCompileError(f"Cannot compare against non-finite number {value!r}")
        if value.is_integer():
            return str(int(value))
        # Plain decimal notation, never exponent form
        return format(Decimal(repr(value)), "f")
    if isinstance(value, str):
        return '"' + value.replace('"', '\\"') + '"'
    if isinstance(value, datetime):
        return f'"{_format_datetime(value)}"'
    if isinstance(value, date):
        return f'"{_format_datetime(datetime.combine(value, time.min))}"'
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(escape_value(v) for v in value) + "]"
    return f'"{value}"'


def field_path_to_string(path: FieldPath) -> str:
    return ".".join(path)


def _join(terms: list[str], separator: str) -> str:
    terms = [t for t in terms if t]
    if not terms:
        return ""
    if len(terms) == 1:
        return terms[0]
    return "(" + separator.join(terms) + ")"


def _compile_comparison(expr: Comparison) -> str:
    field = field_path_to_string(expr.field)

    if expr.operator in COMPARISON_OPERATORS:
        return f"{field} {COMPARISON_OPERATORS[expr.operator]} {escape_value(expr.value)}"

    if expr.operator in ("isNull", "isUndefined"):
        return f"{field} = null"

    if expr.operator == "in":
        values = expr.value
        if not isinstance(values, (list, tuple)):
            values = [values]
        if not values:
            raise QueryCompileError(f"'in' on '{field}' requires at least one value")
        return _join([f"{field} = {escape_value(v)}" for v in values], " || ")

    raise UnsupportedOperatorError(expr.operator)


def _compile(expr: Expression) -> str:
    if isinstance(expr, Comparison):
        return _compile_comparison(expr)

    if isinstance(expr, Combinator):
        if expr.operator == "and":
            return _join([_compile(t) for t in expr.terms], " && ")
        if expr.operator == "or":
            return _join([_compile(t) for t in expr.terms], " || ")
        if expr.operator == "not":
            if len(expr.terms) != 1:
                raise QueryCompileError(
                    f"'not' takes exactly one term, got {len(expr.terms)}"
                )
            inner = _compile(expr.terms[0])
            return f"!({inner})" if inner else ""
        raise UnsupportedOperatorError(expr.operator)

    raise UnsupportedOperatorError(type(expr).__name__)


def compile_filter(where: Expression | None) -> str | None:
    """Compile a predicate tree into a filter string.

    Args:
        where: Expression to compile, or None.

    Returns:
        The filter string, or None when there is nothing to filter on. Callers
        should omit the filter parameter entirely in that case.

    Raises:
        UnsupportedOperatorError: If the tree uses an unknown operator.
        QueryCompileError: If the tree cannot be expressed faithfully.
    """
    if where is None:
        return None
    return _compile(where) or None


def compile_sort(order_by: Iterable[OrderBy] | None) -> str | None:
    """Compile an ordering into a sort string like ``-created,title``.

    Returns:
        The sort string, or None for an empty ordering.
    """
    if order_by is None:
        return None

    parts = []
    for item in order_by:
        field = field_path_to_string(item.field)
        if item.direction == "desc":
            parts.append(f"-{field}")
        elif item.direction == "asc":
            parts.append(field)
        else:
            raise QueryCompileError(
                f"Unknown sort direction '{item.direction}' for '{field}'"
            )

    return ",".join(parts) or None
