"""
Admin Tools

- systemDiagnostics: row counts, data freshness or relationship map of the
  tables the caller can read. Admin only; no free-form SQL.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from capgate.services.capabilities.catalog import builtin_catalog
from capgate.services.capabilities.schema import AccessLevel, CapabilitySpec

logger = logging.getLogger(__name__)

DIAGNOSTIC_TYPES = ["database", "freshness", "schema"]


SYSTEM_DIAGNOSTICS_SPEC = CapabilitySpec(
    name="systemDiagnostics",
    description="""Run system diagnostics (admin only).
- database: row counts per table
- freshness: latest timestamp and row count of every time-stamped table
- schema: foreign-key relationships between tables""",
    module="admin",
    parameter_schema={
        "type": "object",
        "properties": {
            "diagnosticType": {
                "type": "string",
                "enum": DIAGNOSTIC_TYPES,
                "default": "database",
                "description": "Which diagnostic to run",
            },
        },
        "required": [],
    },
    return_type_hint="DiagnosticsReport",
    implementation="admin.diagnostics",
    access_level=AccessLevel.ADMIN,
    tags={"admin", "diagnostics"},
)


async def _database_report(facade) -> Dict[str, Any]:
    tables = {}
    for entry in facade.list_tables():
        tables[entry["name"]] = await facade.count(entry["name"])
    return {"tables": tables, "totalRows": sum(tables.values())}


async def _freshness_report(facade) -> Dict[str, Any]:
    tables = {}
    for entry in facade.list_tables():
        name = entry["name"]
        columns = facade.table_metadata(name)
        if "timestamp" not in columns or not columns["timestamp"].temporal:
            continue
        rows = await facade.aggregate(
            name,
            [
                {"function": "max", "field": "timestamp", "alias": "latest"},
                {"function": "count", "alias": "rows"},
            ],
        )
        row = rows[0] if rows else {}
        tables[name] = {"latest": row.get("latest"), "rows": row.get("rows") or 0}
    return {"tables": tables}


def _schema_report(facade) -> Dict[str, Any]:
    return {
        "relationships": {
            entry["name"]: facade.table_relationships(entry["name"])
            for entry in facade.list_tables()
        }
    }


@builtin_catalog.register("admin.diagnostics", spec=SYSTEM_DIAGNOSTICS_SPEC)
async def system_diagnostics(facade, args: Dict[str, Any], context) -> Dict[str, Any]:
    diagnostic_type = args.get("diagnosticType") or "database"
    logger.info(f"Running {diagnostic_type} diagnostics for caller {context.caller_id}")

    if diagnostic_type == "freshness":
        report = await _freshness_report(facade)
    elif diagnostic_type == "schema":
        report = _schema_report(facade)
    else:
        report = await _database_report(facade)

    return {
        "diagnosticType": diagnostic_type,
        "requestedBy": context.caller_id,
        "generatedAt": datetime.now(timezone.utc).isoformat(),
        **report,
    }
