"""Query expressions and their compilation to remote filter/sort strings."""

from .compiler import (
    QueryCompileError,
    SUPPORTED_OPERATORS,
    UnsupportedOperatorError,
    compile_filter,
    compile_sort,
    escape_value,
)
from .expressions import (
    Combinator,
    Comparison,
    Expression,
    OrderBy,
    and_,
    asc,
    desc,
    eq,
    expression_from_dict,
    gt,
    gte,
    in_,
    is_null,
    is_undefined,
    like,
    lt,
    lte,
    not_,
    or_,
    order_from_list,
)

__all__ = [
    "Combinator",
    "Comparison",
    "Expression",
    "OrderBy",
    "QueryCompileError",
    "SUPPORTED_OPERATORS",
    "UnsupportedOperatorError",
    "and_",
    "asc",
    "compile_filter",
    "compile_sort",
    "desc",
    "eq",
    "escape_value",
    "expression_from_dict",
    "gt",
    "gte",
    "in_",
    "is_null",
    "is_undefined",
    "like",
    "lt",
    "lte",
    "not_",
    "or_",
    "order_from_list",
]
