"""
Analytic Query Engine

Parameterized selection, aggregation, time-bucketed series, correlation,
z-score anomaly detection, descriptive statistics and schema introspection
over allow-listed tables.

Every operation resolves its table through the ``IdentifierValidator`` and
then checks read permission for the caller role before any SQL is built.
A rejected identifier therefore never reaches the database.
"""

import logging
import math
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from sqlalchemy import Table, and_, desc, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import Select

from capgate.services.capabilities import query_builder as qb
from capgate.services.capabilities.access_control import AccessControlEvaluator
from capgate.services.capabilities.errors import QueryError
from capgate.services.capabilities.identifiers import (
    ColumnInfo,
    IdentifierValidator,
    camel_alias,
    is_numeric_column,
    is_temporal_column,
)
from capgate.services.capabilities.schema import TableOperation

logger = logging.getLogger(__name__)

FieldList = Union[str, Sequence[str], None]


def _option(options: Optional[Mapping[str, Any]], name: str, default: Any = None) -> Any:
    """Options accept ``order_by`` and ``orderBy`` spellings alike"""
    if not options:
        return default
    if name in options:
        return options[name]
    return options.get(camel_alias(name), default)


def _as_list(fields: FieldList) -> List[str]:
    if fields is None:
        return []
    if isinstance(fields, str):
        return [fields]
    return list(fields)


class AnalyticQueryEngine:
    """
    Builds and runs analytic queries for one caller role at a time.

    The engine holds no session; each call receives the session of the
    invocation it belongs to.
    """

    def __init__(
        self,
        identifiers: IdentifierValidator,
        evaluator: AccessControlEvaluator,
        default_limit: int = 100,
        max_limit: int = 1000,
        anomaly_threshold: float = 2.0,
    ):
        self.identifiers = identifiers
        self.evaluator = evaluator
        self.default_limit = default_limit
        self.max_limit = max_limit
        self.anomaly_threshold = anomaly_threshold

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def resolve_table(self, table_name: Any, role: Any, operation: TableOperation = TableOperation.READ) -> Table:
        """Identifier check first, permission second"""
        table = self.identifiers.validate_table(table_name)
        self.evaluator.require_table_permission(table.name, role, operation)
        return table

    def _where(self, stmt: Select, table: Table, filters: Optional[Mapping[str, Any]], *extra) -> Select:
        conditions = qb.build_filter_conditions(self.identifiers, table, filters) + list(extra)
        if conditions:
            stmt = stmt.where(and_(*conditions))
        return stmt

    def _date_range(self, table: Table, date_field: Optional[str], start: Any, end: Any) -> list:
        if date_field is None:
            if start is not None or end is not None:
                raise QueryError("A date range needs a date field")
            return []
        column = self.identifiers.validate_column(table, date_field)
        if not is_temporal_column(column):
            raise QueryError(f"Column '{date_field}' is not a date/time column")
        conditions = []
        start_at = qb.align_timezone(qb.parse_timestamp(start, "start date"), column)
        end_at = qb.align_timezone(qb.parse_timestamp(end, "end date"), column)
        if start_at is not None:
            conditions.append(column >= start_at)
        if end_at is not None:
            conditions.append(column <= end_at)
        return conditions

    async def _fetch_all(self, session: AsyncSession, stmt: Select) -> List[Dict[str, Any]]:
        try:
            result = await session.execute(stmt)
        except SQLAlchemyError as exc:
            logger.warning(f"Analytic query failed: {exc}")
            raise qb.query_error_from(exc) from exc
        return [qb.normalize_row(row) for row in result.mappings().all()]

    async def _fetch_one(self, session: AsyncSession, stmt: Select) -> Dict[str, Any]:
        rows = await self._fetch_all(session, stmt)
        return rows[0] if rows else {}

    def _metric_columns(self, table: Table, metrics: Any) -> list:
        """``[{"function": "avg", "field": "solarOutput"}]`` -> labelled expressions"""
        if not metrics or not isinstance(metrics, (list, tuple)):
            raise QueryError("At least one metric is required")

        expressions = []
        labels = set()
        for metric in metrics:
            if not isinstance(metric, Mapping):
                raise QueryError(f"Metric must be an object with 'function' and 'field', got {metric!r}")
            function = str(metric.get("function") or "").lower()
            field = metric.get("field")

            if field in (None, "*"):
                column = None
                label = metric.get("alias") or function
            else:
                column = self.identifiers.validate_column(table, field)
                label = metric.get("alias") or f"{function}_{field}"

            expression = qb.aggregate_expression(function, column, str(field))
            label = self.identifiers.validate_alias(label)
            if label in labels:
                raise QueryError(f"Duplicate metric label: {label}")
            labels.add(label)
            expressions.append(expression.label(label))
        return expressions

    # ------------------------------------------------------------------
    # Row access
    # ------------------------------------------------------------------

    async def select(
        self,
        session: AsyncSession,
        role: Any,
        table_name: str,
        fields: FieldList = None,
        filters: Optional[Mapping[str, Any]] = None,
        options: Optional[Mapping[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Rows of a table, optionally projected, filtered, ordered and paged.

        Options: ``limit``, ``offset``, ``order_by``, ``order_direction``.
        """
        table = self.resolve_table(table_name, role)

        names = _as_list(fields)
        if names:
            columns = [
                column.label(name)
                for name, column in zip(names, self.identifiers.validate_columns(table, names))
            ]
        else:
            columns = list(table.columns)

        stmt = self._where(select(*columns).select_from(table), table, filters)

        order_field = _option(options, "order_by")
        if order_field:
            order_column = self.identifiers.validate_column(table, order_field)
            stmt = stmt.order_by(qb.order_clause(order_column, _option(options, "order_direction")))

        stmt = stmt.limit(qb.clamp_limit(_option(options, "limit"), self.default_limit, self.max_limit))
        offset = qb.parse_offset(_option(options, "offset"))
        if offset:
            stmt = stmt.offset(offset)

        return await self._fetch_all(session, stmt)

    async def count(
        self,
        session: AsyncSession,
        role: Any,
        table_name: str,
        filters: Optional[Mapping[str, Any]] = None,
    ) -> int:
        table = self.resolve_table(table_name, role)
        stmt = self._where(select(func.count().label("count")).select_from(table), table, filters)
        row = await self._fetch_one(session, stmt)
        return int(row.get("count") or 0)

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    async def aggregate(
        self,
        session: AsyncSession,
        role: Any,
        table_name: str,
        metrics: Sequence[Mapping[str, Any]],
        group_by: FieldList = None,
        filters: Optional[Mapping[str, Any]] = None,
        options: Optional[Mapping[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """
        ``count|sum|avg|min|max`` per metric, optionally grouped.

        Result labels are ``<function>_<field>`` with the field spelled as
        the caller spelled it, e.g. ``avg_solarOutput``.
        """
        table = self.resolve_table(table_name, role)
        aggregates = self._metric_columns(table, metrics)

        group_names = _as_list(group_by)
        group_columns = self.identifiers.validate_columns(table, group_names)

        stmt = select(
            *[column.label(name) for name, column in zip(group_names, group_columns)],
            *aggregates,
        ).select_from(table)
        stmt = self._where(stmt, table, filters)

        if group_columns:
            stmt = stmt.group_by(*group_columns)
            order_field = _option(options, "order_by")
            if order_field:
                order_column = self.identifiers.validate_column(table, order_field)
                stmt = stmt.order_by(qb.order_clause(order_column, _option(options, "order_direction")))
            else:
                stmt = stmt.order_by(*group_columns)
            stmt = stmt.limit(qb.clamp_limit(_option(options, "limit"), self.max_limit, self.max_limit))

        return await self._fetch_all(session, stmt)

    async def time_series(
        self,
        session: AsyncSession,
        role: Any,
        table_name: str,
        time_field: str,
        metrics: Sequence[Mapping[str, Any]],
        interval: str = "day",
        filters: Optional[Mapping[str, Any]] = None,
        options: Optional[Mapping[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Metrics grouped by ``date_trunc(interval, time_field)``.

        Options: ``order_direction`` (by bucket), ``limit``, ``start_date``,
        ``end_date``.
        """
        table = self.resolve_table(table_name, role)
        time_column = self.identifiers.validate_column(table, time_field)
        if not is_temporal_column(time_column):
            raise QueryError(f"Column '{time_field}' is not a date/time column")

        bucket = qb.time_bucket(interval, time_column)
        aggregates = self._metric_columns(table, metrics)
        date_range = self._date_range(
            table, time_field, _option(options, "start_date"), _option(options, "end_date")
        )

        stmt = select(bucket.label("bucket"), *aggregates).select_from(table)
        stmt = self._where(stmt, table, filters, *date_range)
        stmt = (
            stmt.group_by(bucket)
            .order_by(qb.order_clause(bucket, _option(options, "order_direction")))
            .limit(qb.clamp_limit(_option(options, "limit"), self.max_limit, self.max_limit))
        )

        return await self._fetch_all(session, stmt)

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    async def correlations(
        self,
        session: AsyncSession,
        role: Any,
        table_name: str,
        fields: Sequence[str],
        filters: Optional[Mapping[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Pearson correlation for every unordered pair of ``fields``.

        Pairs whose coefficient is undefined (e.g. zero variance) are left out.
        """
        table = self.resolve_table(table_name, role)
        names = _as_list(fields)
        if len(names) < 2:
            raise QueryError("Correlation needs at least two fields")
        if len(set(names)) != len(names):
            raise QueryError("Correlation fields must be distinct")

        columns = self.identifiers.validate_columns(table, names)
        for name, column in zip(names, columns):
            qb.require_numeric(column, name)

        pairs = list(qb.unordered_pairs(names))
        stmt = select(
            *[func.corr(columns[i], columns[j]).label(f"pair_{i}_{j}") for i, j in pairs]
        ).select_from(table)
        stmt = self._where(stmt, table, filters)

        row = await self._fetch_one(session, stmt)

        results = []
        for i, j in pairs:
            value = qb.to_float(row.get(f"pair_{i}_{j}"))
            if value is None or math.isnan(value):
                continue
            results.append({"column1": names[i], "column2": names[j], "correlation": value})
        return results

    async def detect_anomalies(
        self,
        session: AsyncSession,
        role: Any,
        table_name: str,
        field: str,
        threshold: Optional[float] = None,
        filters: Optional[Mapping[str, Any]] = None,
        date_field: Optional[str] = None,
        start_date: Any = None,
        end_date: Any = None,
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Rows whose ``|value - mean| / stddev`` exceeds ``threshold``.

        With a zero or undefined standard deviation nothing is anomalous
        and the row query is skipped. ``anomalyCount`` is the total number of
        anomalous rows; the rows themselves are capped only when ``limit`` is
        given, and ``truncated`` tells whether that cap dropped any.
        """
        table = self.resolve_table(table_name, role)
        column = self.identifiers.validate_column(table, field)
        qb.require_numeric(column, field)

        if threshold is None:
            threshold = self.anomaly_threshold
        if isinstance(threshold, bool) or not isinstance(threshold, (int, float)) or threshold <= 0:
            raise QueryError(f"Threshold must be a positive number, got {threshold!r}")

        date_range = self._date_range(table, date_field, start_date, end_date)
        not_null = column.isnot(None)

        stats_stmt = select(
            func.avg(column).label("mean"),
            func.stddev_samp(column).label("stddev"),
            func.count(column).label("count"),
        ).select_from(table)
        stats_stmt = self._where(stats_stmt, table, filters, not_null, *date_range)
        stats = await self._fetch_one(session, stats_stmt)

        mean = qb.to_float(stats.get("mean"))
        stddev = qb.to_float(stats.get("stddev"))
        summary = {
            "field": field,
            "mean": mean,
            "stddev": stddev,
            "threshold": float(threshold),
            "count": int(stats.get("count") or 0),
            "anomalyCount": 0,
            "truncated": False,
            "anomalies": [],
        }

        if mean is None or not stddev or math.isnan(stddev):
            return summary

        deviation = func.abs(column - mean)
        conditions = [not_null, deviation > threshold * stddev, *date_range]

        count_stmt = select(func.count().label("total")).select_from(table)
        count_stmt = self._where(count_stmt, table, filters, *conditions)
        total = int((await self._fetch_one(session, count_stmt)).get("total") or 0)
        summary["anomalyCount"] = total
        if total == 0:
            return summary

        rows_stmt = select(*table.columns).select_from(table)
        rows_stmt = self._where(rows_stmt, table, filters, *conditions)
        rows_stmt = rows_stmt.order_by(desc(deviation))
        if limit is not None:
            rows_stmt = rows_stmt.limit(qb.clamp_limit(limit, self.default_limit, self.max_limit))

        for row in await self._fetch_all(session, rows_stmt):
            value = row.get(column.name)
            if value is None:
                continue
            z_score = (float(value) - mean) / stddev
            if abs(z_score) > threshold:
                summary["anomalies"].append({**row, "zScore": round(z_score, 4)})

        summary["truncated"] = len(summary["anomalies"]) < total
        return summary

    async def describe(
        self,
        session: AsyncSession,
        role: Any,
        table_name: str,
        fields: FieldList = None,
        filters: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Dict[str, Any]]:
        """
        count, mean, stddev, min, max and quartiles per numeric column.

        Without ``fields`` every numeric column of the table is described.
        """
        table = self.resolve_table(table_name, role)
        names = _as_list(fields)
        if names:
            columns = self.identifiers.validate_columns(table, names)
            for name, column in zip(names, columns):
                qb.require_numeric(column, name)
        else:
            columns = [
                column for column in table.columns
                if is_numeric_column(column) and not column.primary_key
            ]
            names = [column.name for column in columns]
        if not columns:
            raise QueryError(f"Table '{table.name}' has no numeric columns to describe")

        expressions = []
        for index, column in enumerate(columns):
            prefix = f"c{index}"
            expressions.extend([
                func.count(column).label(f"{prefix}_count"),
                func.avg(column).label(f"{prefix}_mean"),
                func.stddev_samp(column).label(f"{prefix}_stddev"),
                func.min(column).label(f"{prefix}_min"),
                func.max(column).label(f"{prefix}_max"),
                func.percentile_cont(0.25).within_group(column).label(f"{prefix}_p25"),
                func.percentile_cont(0.5).within_group(column).label(f"{prefix}_p50"),
                func.percentile_cont(0.75).within_group(column).label(f"{prefix}_p75"),
            ])

        stmt = self._where(select(*expressions).select_from(table), table, filters)
        row = await self._fetch_one(session, stmt)

        stats = {}
        for index, name in enumerate(names):
            prefix = f"c{index}"
            stats[name] = {
                "count": int(row.get(f"{prefix}_count") or 0),
                "mean": qb.to_float(row.get(f"{prefix}_mean")),
                "stddev": qb.to_float(row.get(f"{prefix}_stddev")),
                "min": qb.to_float(row.get(f"{prefix}_min")),
                "max": qb.to_float(row.get(f"{prefix}_max")),
                "p25": qb.to_float(row.get(f"{prefix}_p25")),
                "median": qb.to_float(row.get(f"{prefix}_p50")),
                "p75": qb.to_float(row.get(f"{prefix}_p75")),
            }
        return stats

    # ------------------------------------------------------------------
    # Schema introspection
    # ------------------------------------------------------------------

    def list_tables(self, role: Any) -> List[Dict[str, Any]]:
        """Allow-listed tables the role may read"""
        allow_list = self.identifiers.allow_list
        return [
            {"name": name, "columnCount": len(allow_list.columns(name))}
            for name in self.evaluator.readable_tables(allow_list.table_names(), role)
        ]

    def table_schema(self, role: Any, table_name: str) -> Dict[str, Any]:
        table = self.resolve_table(table_name, role)
        infos: Dict[str, ColumnInfo] = self.identifiers.allow_list.columns(table.name)

        return {
            "table": table.name,
            "columns": [
                {
                    "name": info.name,
                    "alias": camel_alias(info.name),
                    "type": info.type,
                    "nullable": info.nullable,
                    "primaryKey": info.primary_key,
                    "numeric": info.numeric,
                    "temporal": info.temporal,
                }
                for info in infos.values()
            ],
            "primaryKey": [column.name for column in table.primary_key.columns],
            "foreignKeys": self._outgoing(table),
            "indexes": sorted(
                (
                    {
                        "name": index.name,
                        "columns": [column.name for column in index.columns],
                        "unique": bool(index.unique),
                    }
                    for index in table.indexes
                ),
                key=lambda item: item["name"] or "",
            ),
        }

    def table_relationships(self, role: Any, table_name: str) -> Dict[str, Any]:
        """Foreign keys out of the table and, among readable tables, into it"""
        table = self.resolve_table(table_name, role)
        allow_list = self.identifiers.allow_list

        incoming = []
        for other_name in self.evaluator.readable_tables(allow_list.table_names(), role):
            other = allow_list.get_table(other_name)
            for fk in sorted(other.foreign_keys, key=lambda fk: fk.parent.name):
                if fk.column.table.name == table.name:
                    incoming.append({
                        "table": other.name,
                        "column": fk.parent.name,
                        "referencesColumn": fk.column.name,
                    })

        return {"table": table.name, "outgoing": self._outgoing(table), "incoming": incoming}

    @staticmethod
    def _outgoing(table: Table) -> List[Dict[str, Any]]:
        return [
            {
                "column": fk.parent.name,
                "referencesTable": fk.column.table.name,
                "referencesColumn": fk.column.name,
            }
            for fk in sorted(table.foreign_keys, key=lambda fk: fk.parent.name)
        ]
