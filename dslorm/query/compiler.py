"""
COMPILER MODULE - Nested filter mappings → SQLAlchemy boolean clauses

Filter shape:
    {"name": "a"}                          equality (None → IS NULL)
    {"age": [1, 2]}                        membership (IN)
    {"age": {"gt": 5, "lte": 9}}           operator object
    {"AND": [{...}, {...}]}                conjunction
    {"OR": [{...}, {...}]}                 disjunction, always grouped
    {"OR": {"a": 1, "b": 2}}               one branch per entry (a = 1 OR b = 2)
    {"NOT": {"role": ["a", "b"]}}          negation (NOT IN / NOT (...) / !=)

Every step builds new clause objects; the input mapping is never modified.
"""

import operator
from collections.abc import Mapping, Set
from typing import Any, Callable, Dict, List

from sqlalchemy import Select, Table, and_, false, not_, or_, true
from sqlalchemy.sql.elements import ColumnElement

from dslorm.core.errors import ValidationError

AND, OR, NOT = "AND", "OR", "NOT"
COMBINATORS = (AND, OR, NOT)

OPERATORS: Dict[str, Callable[[Any, Any], ColumnElement]] = {
    "gt": operator.gt,
    "gte": operator.ge,
    "lt": operator.lt,
    "lte": operator.le,
    "equals": operator.eq,
    "not": operator.ne,
}


def compile_filter(table: Table, where: Mapping) -> ColumnElement:
    """
    Compile a filter mapping into one boolean clause over `table`.

    Sibling keys are conjoined. An empty filter compiles to TRUE.

    Raises:
        ValidationError: For unknown fields or operators, or malformed
            combinator values.
    """
    if not isinstance(where, Mapping):
        raise ValidationError(f"Filter must be a mapping, got {type(where).__name__}")

    clauses = []
    for key, value in where.items():
        if key == AND:
            clauses.append(_conjoin([compile_filter(table, branch) for branch in _branches(key, value)]))
        elif key == OR:
            clauses.append(_disjoin([compile_filter(table, branch) for branch in _branches(key, value)]))
        elif key == NOT:
            clauses.append(_compile_not(table, value))
        else:
            clauses.append(_compile_field(_column(table, key), value))
    return _conjoin(clauses)


def apply_filter(query: Select, table: Table, where: Mapping) -> Select:
    """Return a new query narrowed by `where`; `query` itself is left untouched."""
    if not where:
        return query
    return query.where(compile_filter(table, where))


# =========================
# Helpers
# =========================
def _conjoin(clauses: List[ColumnElement]) -> ColumnElement:
    if not clauses:
        return true()
    if len(clauses) == 1:
        return clauses[0]
    return and_(*clauses)


def _disjoin(clauses: List[ColumnElement]) -> ColumnElement:
    # An empty OR matches nothing
    if not clauses:
        return false()
    if len(clauses) == 1:
        return clauses[0]
    # or_() is parenthesised when nested in and_(), keeping OR out of sibling terms
    return or_(*clauses).self_group()


def _is_sequence(value: Any) -> bool:
    return isinstance(value, (list, tuple, Set))


def _branches(key: str, value: Any) -> List[Mapping]:
    if isinstance(value, Mapping):
        # {"OR": {"a": 1, "b": 2}} means a = 1 OR b = 2, one branch per entry
        if key == OR:
            return [{name: operand} for name, operand in value.items()]
        return [value]
    if _is_sequence(value) and all(isinstance(branch, Mapping) for branch in value):
        return list(value)
    raise ValidationError(f"{key} expects a filter or a list of filters")


def _column(table: Table, key: str):
    if key in table.c:
        return table.c[key]
    raise ValidationError(f"Unknown field '{key}' on {table.name}")


def _operator(name: str) -> Callable[[Any, Any], ColumnElement]:
    try:
        return OPERATORS[name]
    except KeyError:
        raise ValidationError(
            f"Unknown operator '{name}', expected one of {', '.join(OPERATORS)}"
        )


def _compile_field(column, value: Any) -> ColumnElement:
    if isinstance(value, Mapping):
        return _conjoin([_operator(name)(column, operand) for name, operand in value.items()])
    if _is_sequence(value):
        return column.in_(list(value))
    return column == value


def _compile_not(table: Table, value: Any) -> ColumnElement:
    """
    Negate a field→value(s) mapping entry by entry.

    - sequence → NOT IN
    - operator object → NOT (column <op> value) for each operator; for
      non-NULL values this is the algebraic inverse (NOT (age > 5) ≡ age <= 5)
    - scalar → != (IS NOT NULL for None)
    - nested combinator → NOT (compiled combinator)
    """
    if _is_sequence(value):
        return _conjoin([_compile_not(table, branch) for branch in _branches(NOT, value)])
    if not isinstance(value, Mapping):
        raise ValidationError("NOT expects a filter or a list of filters")

    clauses = []
    for key, operand in value.items():
        if key in COMBINATORS:
            clauses.append(not_(compile_filter(table, {key: operand})))
            continue

        column = _column(table, key)
        if isinstance(operand, Mapping):
            clauses.extend(
                not_(_operator(name)(column, item)) for name, item in operand.items()
            )
        elif _is_sequence(operand):
            clauses.append(column.not_in(list(operand)))
        else:
            clauses.append(column != operand)
    return _conjoin(clauses)
