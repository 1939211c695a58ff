"""
Criteria language for retention policies and partial deletions.

A criteria mapping is a conjunction of per-column conditions::

    {"status": "closed"}                                   # equality
    {"status": {"operator": "in", "value": ["a", "b"]}}    # eq, ne, lt, gt, in

Expressions are always built from the ``Table`` columns, never from text.
"""

from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import Table
from sqlalchemy.sql import ColumnElement

from ..exceptions import InvalidCriteriaError

OPERATORS = ("eq", "ne", "lt", "gt", "in")


def build_conditions(
    table: Table, criteria: Optional[Mapping[str, Any]]
) -> List[ColumnElement]:
    """
    Translate criteria into SQLAlchemy expressions.

    Args:
        table: Table the criteria apply to
        criteria: Criteria mapping, may be empty or None

    Returns:
        Expressions to AND together

    Raises:
        InvalidCriteriaError: Unknown column or operator, or malformed condition
    """
    if not criteria:
        return []
    if not isinstance(criteria, Mapping):
        raise InvalidCriteriaError("Criteria must be a mapping", table_name=table.name)

    conditions: List[ColumnElement] = []
    for column_name, condition in criteria.items():
        if column_name not in table.c:
            raise InvalidCriteriaError(
                f"Unknown column '{column_name}' in criteria for table '{table.name}'",
                table_name=table.name,
            )
        column = table.c[column_name]

        if not isinstance(condition, Mapping):
            conditions.append(column.is_(None) if condition is None else column == condition)
            continue

        if "operator" not in condition:
            raise InvalidCriteriaError(
                f"Condition on '{column_name}' needs an 'operator'",
                table_name=table.name,
            )
        operator = condition["operator"]
        value = condition.get("value")

        if operator == "eq":
            conditions.append(column.is_(None) if value is None else column == value)
        elif operator == "ne":
            conditions.append(column.is_not(None) if value is None else column != value)
        elif operator == "lt":
            conditions.append(column < value)
        elif operator == "gt":
            conditions.append(column > value)
        elif operator == "in":
            if not isinstance(value, (list, tuple)):
                raise InvalidCriteriaError(
                    f"Operator 'in' on '{column_name}' requires a list",
                    table_name=table.name,
                )
            conditions.append(column.in_(list(value)))
        else:
            raise InvalidCriteriaError(
                f"Unsupported operator '{operator}' on '{column_name}'",
                table_name=table.name,
            )

    return conditions


def validate_criteria(table: Table, criteria: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Validate criteria against a table and return them as a plain dict."""
    build_conditions(table, criteria)
    return dict(criteria or {})
