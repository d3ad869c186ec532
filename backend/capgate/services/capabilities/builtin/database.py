"""
Database Tools - generic table access for the agent

These capabilities let the agent discover the allow-listed schema and run
parameterized reads against it:
- List tables and describe one
- Query, count and fetch the latest rows
- Aggregate, bucket by time, correlate, flag anomalies, describe columns

Every handler goes through the data facade, so table and column names are
checked against the allow-list and the caller's table permissions.
"""

from typing import Any, Dict

from capgate.services.capabilities.catalog import builtin_catalog
from capgate.services.capabilities.errors import QueryError
from capgate.services.capabilities.schema import AccessLevel, CapabilitySpec

MODULE = "database"

_TABLE_NAME = {"type": "string", "description": "Name of the table (see listTables)"}
_FILTERS = {
    "type": "object",
    "description": "Equality filters as column/value pairs; a list value matches any of its items",
}


# =============================================================================
# Tool Definitions
# =============================================================================

LIST_TABLES_SPEC = CapabilitySpec(
    name="listTables",
    description="List the database tables you are allowed to read, with their column counts.",
    module=MODULE,
    return_type_hint="array",
    implementation="database.list_tables",
    access_level=AccessLevel.USER,
    tags={"database", "schema"},
)

DESCRIBE_TABLE_SPEC = CapabilitySpec(
    name="describeTable",
    description="""Describe a table: columns with types and nullability, primary key,
indexes and foreign-key relationships. Use this before querying an unfamiliar table.""",
    module=MODULE,
    parameter_schema={
        "type": "object",
        "properties": {"tableName": _TABLE_NAME},
        "required": ["tableName"],
    },
    implementation="database.describe_table",
    access_level=AccessLevel.USER,
    tags={"database", "schema"},
)

QUERY_TABLE_SPEC = CapabilitySpec(
    name="queryTable",
    description="Query a specific table with optional filters, sorting and limits",
    module=MODULE,
    parameter_schema={
        "type": "object",
        "properties": {
            "tableName": _TABLE_NAME,
            "fields": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Columns to return (default: all)",
            },
            "filters": _FILTERS,
            "limit": {"type": "integer", "description": "Maximum number of records to return (default 100)"},
            "offset": {"type": "integer", "description": "Number of records to skip"},
            "orderBy": {"type": "string", "description": "Column to sort results by"},
            "orderDirection": {
                "type": "string",
                "enum": ["asc", "desc"],
                "default": "desc",
                "description": "Sort direction",
            },
        },
        "required": ["tableName"],
    },
    return_type_hint="array",
    implementation="database.query_table",
    access_level=AccessLevel.USER,
    tags={"database", "query"},
)

COUNT_RECORDS_SPEC = CapabilitySpec(
    name="countRecords",
    description="Count records in a table with optional filters",
    module=MODULE,
    parameter_schema={
        "type": "object",
        "properties": {"tableName": _TABLE_NAME, "filters": _FILTERS},
        "required": ["tableName"],
    },
    implementation="database.count_records",
    access_level=AccessLevel.USER,
    tags={"database", "query"},
)

LATEST_RECORDS_SPEC = CapabilitySpec(
    name="getLatestRecords",
    description="Get the latest records from a table based on a timestamp column",
    module=MODULE,
    parameter_schema={
        "type": "object",
        "properties": {
            "tableName": _TABLE_NAME,
            "timestampColumn": {
                "type": "string",
                "description": "Timestamp column to sort by (default: the table's first date/time column)",
            },
            "limit": {"type": "integer", "default": 10, "description": "Maximum number of records (default 10)"},
        },
        "required": ["tableName"],
    },
    return_type_hint="array",
    implementation="database.latest_records",
    access_level=AccessLevel.USER,
    tags={"database", "query"},
)

AGGREGATE_DATA_SPEC = CapabilitySpec(
    name="aggregateData",
    description="""Perform an aggregate operation (sum, avg, min, max, count) on a table column.
Optionally group the result by one or more columns.""",
    module=MODULE,
    parameter_schema={
        "type": "object",
        "properties": {
            "tableName": _TABLE_NAME,
            "column": {"type": "string", "description": "Column to aggregate (use '*' with count)"},
            "operation": {
                "type": "string",
                "enum": ["sum", "avg", "min", "max", "count"],
                "description": "Aggregate operation to perform",
            },
            "groupBy": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Columns to group by",
            },
            "filters": _FILTERS,
        },
        "required": ["tableName", "column", "operation"],
    },
    implementation="database.aggregate_data",
    access_level=AccessLevel.USER,
    tags={"database", "aggregation", "analytics"},
)

TIME_SERIES_SPEC = CapabilitySpec(
    name="timeSeriesAnalysis",
    description="""Bucket a table by hour, day, week, month or year on a timestamp column and
compute aggregates per bucket. Use for trends such as "daily average solar output last week".""",
    module=MODULE,
    parameter_schema={
        "type": "object",
        "properties": {
            "tableName": _TABLE_NAME,
            "timestampColumn": {"type": "string", "default": "timestamp"},
            "metrics": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "function": {"type": "string", "enum": ["count", "sum", "avg", "min", "max"]},
                        "field": {"type": "string"},
                    },
                    "required": ["function"],
                },
                "description": "Aggregates to compute per bucket, e.g. [{\"function\": \"avg\", \"field\": \"solarOutput\"}]",
            },
            "interval": {
                "type": "string",
                "enum": ["hour", "day", "week", "month", "year"],
                "default": "day",
            },
            "startDate": {"type": "string", "description": "ISO start of the range (inclusive)"},
            "endDate": {"type": "string", "description": "ISO end of the range (inclusive)"},
            "orderDirection": {"type": "string", "enum": ["asc", "desc"], "default": "asc"},
            "filters": _FILTERS,
        },
        "required": ["tableName", "metrics"],
    },
    return_type_hint="array",
    implementation="database.time_series",
    access_level=AccessLevel.USER,
    tags={"database", "analytics", "timeseries"},
)

CORRELATIONS_SPEC = CapabilitySpec(
    name="calculateCorrelations",
    description="""Pearson correlation between every pair of the given numeric columns of a table.
Pairs with an undefined coefficient (e.g. a constant column) are omitted.""",
    module=MODULE,
    parameter_schema={
        "type": "object",
        "properties": {
            "tableName": _TABLE_NAME,
            "columns": {"type": "array", "items": {"type": "string"}, "description": "At least two numeric columns"},
            "filters": _FILTERS,
        },
        "required": ["tableName", "columns"],
    },
    return_type_hint="array",
    implementation="database.correlations",
    access_level=AccessLevel.USER,
    tags={"database", "analytics", "statistics"},
)

ANOMALIES_SPEC = CapabilitySpec(
    name="detectAnomalies",
    description="""Flag rows whose value in a numeric column lies more than `threshold` standard
deviations from the mean (z-score). Returns the mean, standard deviation and the flagged rows.""",
    module=MODULE,
    parameter_schema={
        "type": "object",
        "properties": {
            "tableName": _TABLE_NAME,
            "column": {"type": "string", "description": "Numeric column to analyze"},
            "threshold": {"type": "number", "description": "z-score threshold (default 2.0)"},
            "dateColumn": {"type": "string", "description": "Date/time column for startDate/endDate"},
            "startDate": {"type": "string"},
            "endDate": {"type": "string"},
            "limit": {"type": "integer", "description": "Maximum anomalies to return"},
            "filters": _FILTERS,
        },
        "required": ["tableName", "column"],
    },
    implementation="database.detect_anomalies",
    access_level=AccessLevel.USER,
    tags={"database", "analytics", "statistics"},
)

STATISTICS_SPEC = CapabilitySpec(
    name="calculateStatistics",
    description="""Descriptive statistics per numeric column: count, mean, standard deviation,
min, max and the 25th/50th/75th percentiles.""",
    module=MODULE,
    parameter_schema={
        "type": "object",
        "properties": {
            "tableName": _TABLE_NAME,
            "columns": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Numeric columns (default: all numeric columns)",
            },
            "filters": _FILTERS,
        },
        "required": ["tableName"],
    },
    implementation="database.statistics",
    access_level=AccessLevel.USER,
    tags={"database", "analytics", "statistics"},
)


# =============================================================================
# Tool Handlers
# =============================================================================

@builtin_catalog.register("database.list_tables", spec=LIST_TABLES_SPEC)
async def list_tables(facade, args: Dict[str, Any], context) -> list:
    return facade.list_tables()


@builtin_catalog.register("database.describe_table", spec=DESCRIBE_TABLE_SPEC)
async def describe_table(facade, args: Dict[str, Any], context) -> Dict[str, Any]:
    schema = facade.table_schema(args["tableName"])
    schema["relationships"] = facade.table_relationships(args["tableName"])
    return schema


@builtin_catalog.register("database.query_table", spec=QUERY_TABLE_SPEC)
async def query_table(facade, args: Dict[str, Any], context) -> list:
    return await facade.select(
        args["tableName"],
        fields=args.get("fields"),
        filters=args.get("filters"),
        options={
            "limit": args.get("limit"),
            "offset": args.get("offset"),
            "order_by": args.get("orderBy"),
            "order_direction": args.get("orderDirection"),
        },
    )


@builtin_catalog.register("database.count_records", spec=COUNT_RECORDS_SPEC)
async def count_records(facade, args: Dict[str, Any], context) -> Dict[str, Any]:
    filters = args.get("filters") or {}
    count = await facade.count(args["tableName"], filters)
    return {"table": args["tableName"], "count": count, "filters": filters or "none"}


@builtin_catalog.register("database.latest_records", spec=LATEST_RECORDS_SPEC)
async def latest_records(facade, args: Dict[str, Any], context) -> list:
    table_name = args["tableName"]
    timestamp_column = args.get("timestampColumn")

    if not timestamp_column:
        temporal = [info.name for info in facade.table_metadata(table_name).values() if info.temporal]
        if not temporal:
            raise QueryError(f"Table '{table_name}' has no date/time column to sort by")
        timestamp_column = "timestamp" if "timestamp" in temporal else temporal[0]

    return await facade.select(
        table_name,
        options={"order_by": timestamp_column, "order_direction": "desc", "limit": args.get("limit")},
    )


@builtin_catalog.register("database.aggregate_data", spec=AGGREGATE_DATA_SPEC)
async def aggregate_data(facade, args: Dict[str, Any], context) -> Dict[str, Any]:
    operation = args["operation"].lower()
    column = args["column"]
    label = "result"
    group_by = args.get("groupBy") or []
    filters = args.get("filters") or {}

    rows = await facade.aggregate(
        args["tableName"],
        [{"function": operation, "field": column, "alias": label}],
        group_by=group_by,
        filters=filters,
    )

    response = {
        "table": args["tableName"],
        "column": column,
        "operation": operation,
        "filters": filters or "none",
    }
    if group_by:
        response["groups"] = rows
    else:
        response["result"] = rows[0][label] if rows else None
    return response


@builtin_catalog.register("database.time_series", spec=TIME_SERIES_SPEC)
async def time_series(facade, args: Dict[str, Any], context) -> list:
    return await facade.time_series(
        args["tableName"],
        args.get("timestampColumn") or "timestamp",
        args["metrics"],
        interval=args.get("interval") or "day",
        filters=args.get("filters"),
        options={
            "start_date": args.get("startDate"),
            "end_date": args.get("endDate"),
            "order_direction": args.get("orderDirection"),
        },
    )


@builtin_catalog.register("database.correlations", spec=CORRELATIONS_SPEC)
async def correlations(facade, args: Dict[str, Any], context) -> list:
    return await facade.correlations(args["tableName"], args["columns"], filters=args.get("filters"))


@builtin_catalog.register("database.detect_anomalies", spec=ANOMALIES_SPEC)
async def detect_anomalies(facade, args: Dict[str, Any], context) -> Dict[str, Any]:
    return await facade.detect_anomalies(
        args["tableName"],
        args["column"],
        threshold=args.get("threshold"),
        filters=args.get("filters"),
        date_field=args.get("dateColumn"),
        start_date=args.get("startDate"),
        end_date=args.get("endDate"),
        limit=args.get("limit"),
    )


@builtin_catalog.register("database.statistics", spec=STATISTICS_SPEC)
async def statistics(facade, args: Dict[str, Any], context) -> Dict[str, Any]:
    return await facade.describe(args["tableName"], args.get("columns"), filters=args.get("filters"))
