"""
Query building helpers shared by the analytic engine and the data facade.

Identifiers are always SQLAlchemy ``Column`` objects resolved through the
``IdentifierValidator``; values are always bound parameters.
"""

import asyncio
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from sqlalchemy import Table, asc, desc, func, literal_column
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.sql.expression import ColumnElement

from capgate.services.capabilities.errors import QueryError
from capgate.services.capabilities.identifiers import IdentifierValidator, is_numeric_column

AGGREGATE_FUNCTIONS = {
    "count": func.count,
    "sum": func.sum,
    "avg": func.avg,
    "min": func.min,
    "max": func.max,
}

# Aggregates that only make sense over numbers
NUMERIC_AGGREGATES = {"sum", "avg"}

TIME_BUCKETS = ("hour", "day", "week", "month", "year")

ORDER_DIRECTIONS = ("asc", "desc")


def build_filter_conditions(
    validator: IdentifierValidator,
    table: Table,
    filters: Optional[Mapping[str, Any]],
) -> List[ColumnElement]:
    """
    Flat equality filters: ``{"status": "active"}``.

    ``None`` becomes ``IS NULL``, a list becomes ``IN``.
    """
    if not filters:
        return []
    if not isinstance(filters, Mapping):
        raise QueryError("Filters must be an object of column/value pairs")

    conditions = []
    for field, value in filters.items():
        column = validator.validate_column(table, field)
        if value is None:
            conditions.append(column.is_(None))
        elif isinstance(value, (list, tuple)):
            conditions.append(column.in_(list(value)))
        elif isinstance(value, dict):
            raise QueryError(f"Filter value for '{field}' must be a scalar or a list")
        else:
            conditions.append(column == value)
    return conditions


def parse_direction(direction: Optional[str], default: str = "asc") -> str:
    value = (direction or default).lower()
    if value not in ORDER_DIRECTIONS:
        raise QueryError(f"Invalid sort direction: {direction!r}")
    return value


def order_clause(column: ColumnElement, direction: Optional[str]):
    return desc(column) if parse_direction(direction) == "desc" else asc(column)


def clamp_limit(limit: Any, default: int, maximum: int) -> int:
    if limit is None:
        return default
    if isinstance(limit, bool) or not isinstance(limit, int):
        raise QueryError(f"Limit must be an integer, got {limit!r}")
    if limit < 1:
        raise QueryError("Limit must be at least 1")
    return min(limit, maximum)


def parse_offset(offset: Any) -> int:
    if offset is None:
        return 0
    if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0:
        raise QueryError(f"Offset must be a non-negative integer, got {offset!r}")
    return offset


def aggregate_expression(function: Any, column: Optional[ColumnElement], field: str):
    """Build ``fn(column)``; ``count`` with no column (or ``*``) is ``count(*)``."""
    name = str(function or "").lower()
    if name not in AGGREGATE_FUNCTIONS:
        raise QueryError(
            f"Unsupported aggregate function: {function!r}. Use one of: {', '.join(AGGREGATE_FUNCTIONS)}"
        )
    if column is None:
        if name != "count":
            raise QueryError(f"Aggregate '{name}' needs a field")
        return func.count()
    if name in NUMERIC_AGGREGATES and not is_numeric_column(column):
        raise QueryError(f"Aggregate '{name}' needs a numeric column, '{field}' is {column.type}")
    return AGGREGATE_FUNCTIONS[name](column)


def time_bucket(interval: Any, column: ColumnElement):
    """``date_trunc('<interval>', column)``

    The interval comes from a closed set and is rendered as a literal so
    that the same expression can be used in SELECT and GROUP BY.
    """
    value = str(interval or "").lower()
    if value not in TIME_BUCKETS:
        raise QueryError(f"Invalid interval: {interval!r}. Use one of: {', '.join(TIME_BUCKETS)}")
    return func.date_trunc(literal_column(f"'{value}'"), column)


def parse_timestamp(value: Any, name: str) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as exc:
            raise QueryError(f"Invalid {name}: {value!r}") from exc
    raise QueryError(f"Invalid {name}: {value!r}")


def align_timezone(value: Optional[datetime], column: ColumnElement) -> Optional[datetime]:
    """Match the awareness of ``value`` to the column: naive UTC for
    ``timestamp without time zone``, UTC-aware for ``timestamptz``"""
    if value is None:
        return None
    if getattr(column.type, "timezone", False):
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def require_numeric(column: ColumnElement, field: str) -> None:
    if not is_numeric_column(column):
        raise QueryError(f"Column '{field}' is not numeric ({column.type})")


def unordered_pairs(items: List[Any]) -> Iterable[Tuple[int, int]]:
    for i in range(len(items)):
        for j in range(i + 1, len(items)):
            yield i, j


def to_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    return float(value)


def normalize_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    return value


def normalize_row(row: Mapping[str, Any]) -> Dict[str, Any]:
    return {key: normalize_value(value) for key, value in row.items()}


TRANSIENT_ERRORS = (OperationalError, InterfaceError, ConnectionError, asyncio.TimeoutError)


def is_transient(exc: BaseException) -> bool:
    """Connection hiccups worth retrying; never permission or validation failures"""
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return isinstance(exc, TRANSIENT_ERRORS)


def query_error_from(exc: SQLAlchemyError) -> QueryError:
    error = QueryError(f"Query failed: {getattr(exc, 'orig', None) or exc}")
    error.retryable = is_transient(exc)
    return error
