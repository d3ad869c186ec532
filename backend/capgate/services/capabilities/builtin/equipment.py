"""
Equipment Tools

- getEquipmentList: equipment inventory with optional status/type filters
- manageEquipment: read, update settings, or schedule maintenance
"""

import logging
from datetime import timezone
from typing import Any, Dict

from capgate.services.capabilities.catalog import builtin_catalog
from capgate.services.capabilities.errors import NotFoundError, QueryError, ValidationError
from capgate.services.capabilities.query_builder import parse_timestamp
from capgate.services.capabilities.schema import AccessLevel, CapabilitySpec

logger = logging.getLogger(__name__)

# Columns the agent may never change through manageEquipment
PROTECTED_EQUIPMENT_FIELDS = {"id"}


# =============================================================================
# Tool Definitions
# =============================================================================

EQUIPMENT_LIST_SPEC = CapabilitySpec(
    name="getEquipmentList",
    description="Get a list of equipment in the system, optionally only operational units or one type",
    module="equipment",
    parameter_schema={
        "type": "object",
        "properties": {
            "active": {"type": "boolean", "description": "Only equipment whose status is operational"},
            "type": {"type": "string", "description": "Equipment type, e.g. Refrigeration"},
            "limit": {"type": "integer", "description": "Maximum number of items (default 100)"},
        },
        "required": [],
    },
    return_type_hint="array",
    implementation="equipment.list",
    access_level=AccessLevel.PUBLIC,
    tags={"equipment", "inventory"},
)

MANAGE_EQUIPMENT_SPEC = CapabilitySpec(
    name="manageEquipment",
    description="Manage equipment settings and maintenance schedules",
    module="equipment",
    parameter_schema={
        "type": "object",
        "properties": {
            "action": {
                "type": "string",
                "description": "Action to perform (get, update, schedule)",
                "enum": ["get", "update", "schedule"],
            },
            "equipmentId": {"type": "integer", "description": "ID of the equipment to manage"},
            "settings": {"type": "object", "description": "New settings for the equipment (for update action)"},
            "maintenanceDate": {
                "type": "string",
                "description": "Date for scheduled maintenance, ISO format (for schedule action)",
            },
        },
        "required": ["action", "equipmentId"],
    },
    return_type_hint="EquipmentManagementResult",
    implementation="equipment.manage",
    access_level=AccessLevel.MANAGER,
    tags={"equipment", "maintenance", "management"},
)


# =============================================================================
# Tool Handlers
# =============================================================================

@builtin_catalog.register("equipment.list", spec=EQUIPMENT_LIST_SPEC)
async def get_equipment_list(facade, args: Dict[str, Any], context) -> list:
    filters = {}
    if args.get("active"):
        filters["status"] = "operational"
    if args.get("type"):
        filters["type"] = args["type"]

    return await facade.select(
        "equipment",
        filters=filters,
        options={"order_by": "name", "order_direction": "asc", "limit": args.get("limit")},
    )


async def _get_equipment(facade, equipment_id: int) -> Dict[str, Any]:
    rows = await facade.select("equipment", filters={"id": equipment_id}, options={"limit": 1})
    if not rows:
        raise NotFoundError(f"Equipment with ID {equipment_id} not found")
    return rows[0]


@builtin_catalog.register("equipment.manage", spec=MANAGE_EQUIPMENT_SPEC)
async def manage_equipment(facade, args: Dict[str, Any], context) -> Dict[str, Any]:
    action = args["action"]
    equipment_id = args["equipmentId"]
    item = await _get_equipment(facade, equipment_id)

    if action == "get":
        return {"action": "get", "equipment": item}

    if action == "update":
        settings = args.get("settings")
        if not settings:
            raise ValidationError("Settings are required for update action")
        protected = PROTECTED_EQUIPMENT_FIELDS.intersection(settings)
        if protected:
            raise ValidationError(f"Cannot change protected fields: {', '.join(sorted(protected))}")

        await facade.update("equipment", settings, {"id": equipment_id})
        updated = await _get_equipment(facade, equipment_id)
        logger.info(f"Equipment {equipment_id} updated by caller {context.caller_id}")
        return {"action": "update", "previousSettings": item, "newSettings": updated}

    # schedule
    if not args.get("maintenanceDate"):
        raise ValidationError("Maintenance date is required for schedule action")
    try:
        maintenance_at = parse_timestamp(args["maintenanceDate"], "maintenance date")
    except QueryError as exc:
        raise ValidationError(exc.message) from exc
    if maintenance_at.tzinfo is None:
        maintenance_at = maintenance_at.replace(tzinfo=timezone.utc)

    # equipment.next_maintenance is stored as naive UTC
    next_maintenance = maintenance_at.astimezone(timezone.utc).replace(tzinfo=None)

    async with facade.transaction():
        await facade.update("equipment", {"next_maintenance": next_maintenance}, {"id": equipment_id})
        task = await facade.insert(
            "langchain_agent_tasks",
            {
                "user_id": context.caller_id,
                "task": f"Maintenance for {item['name']}",
                "status": "scheduled",
                "scheduled_for": maintenance_at,
                "data": {
                    "type": "maintenance",
                    "equipmentId": item["id"],
                    "equipmentName": item["name"],
                    "equipmentType": item["type"],
                    "conversationId": context.conversation_id,
                },
            },
        )

    logger.info(f"Maintenance for equipment {equipment_id} scheduled at {maintenance_at.isoformat()}")
    return {"action": "schedule", "equipment": item, "maintenanceTask": task}
