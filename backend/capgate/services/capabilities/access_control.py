"""
Access Control Evaluator

Maps a caller role to the capability access levels it may execute and to
per-table read/write/delete permissions. Roles and levels are closed enums;
anything that does not parse to a known role gets the empty permission set.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from capgate.services.capabilities.errors import PermissionDeniedError
from capgate.services.capabilities.schema import AccessLevel, Role, TableOperation

logger = logging.getLogger(__name__)

WILDCARD = "*"


def _freeze_levels(levels: Mapping[Role, Iterable[AccessLevel]]) -> Mapping[Role, Tuple[AccessLevel, ...]]:
    return MappingProxyType({role: tuple(values) for role, values in levels.items()})


def _freeze_tables(
    tables: Mapping[Role, Mapping[TableOperation, Iterable[str]]],
) -> Mapping[Role, Mapping[TableOperation, Tuple[str, ...]]]:
    return MappingProxyType({
        role: MappingProxyType({op: tuple(patterns) for op, patterns in ops.items()})
        for role, ops in tables.items()
    })


@dataclass(frozen=True)
class RoleAccessMap:
    """
    Static role -> privileges mapping.

    ``levels`` lists the capability access levels each role may execute,
    lowest first. ``tables`` lists, per role and operation, exact table
    names, ``prefix*`` wildcards or ``*``.
    """
    levels: Mapping[Role, Tuple[AccessLevel, ...]] = field(default_factory=dict)
    tables: Mapping[Role, Mapping[TableOperation, Tuple[str, ...]]] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "levels", _freeze_levels(self.levels))
        object.__setattr__(self, "tables", _freeze_tables(self.tables))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RoleAccessMap":
        """
        Build from a plain mapping, e.g. a JSON document::

            {"levels": {"user": ["public", "user"]},
             "tables": {"user": {"read": ["power_data"], "write": [], "delete": []}}}

        Unknown roles, levels or operations raise ``ValueError``.
        """
        levels: Dict[Role, Tuple[AccessLevel, ...]] = {}
        for role_name, level_names in (data.get("levels") or {}).items():
            role = Role.parse(role_name)
            if role is None:
                raise ValueError(f"Unknown role in access map: {role_name}")
            levels[role] = tuple(AccessLevel(str(name).lower()) for name in level_names)

        tables: Dict[Role, Dict[TableOperation, Tuple[str, ...]]] = {}
        for role_name, operations in (data.get("tables") or {}).items():
            role = Role.parse(role_name)
            if role is None:
                raise ValueError(f"Unknown role in access map: {role_name}")
            tables[role] = {
                TableOperation(str(op).lower()): tuple(str(p) for p in patterns)
                for op, patterns in operations.items()
            }

        return cls(levels=levels, tables=tables)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "RoleAccessMap":
        with open(path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
        logger.info(f"Loaded role access map from {path}")
        return cls.from_dict(data)


DEFAULT_ROLE_ACCESS_MAP = RoleAccessMap(
    levels={
        Role.PUBLIC: (AccessLevel.PUBLIC,),
        Role.USER: (AccessLevel.PUBLIC, AccessLevel.USER),
        Role.MANAGER: (AccessLevel.PUBLIC, AccessLevel.USER, AccessLevel.MANAGER),
        Role.ADMIN: (
            AccessLevel.PUBLIC,
            AccessLevel.USER,
            AccessLevel.MANAGER,
            AccessLevel.ADMIN,
            AccessLevel.RESTRICTED,
        ),
    },
    tables={
        Role.PUBLIC: {
            TableOperation.READ: ("power_data", "environmental_data", "equipment"),
            TableOperation.WRITE: (),
            TableOperation.DELETE: (),
        },
        Role.USER: {
            TableOperation.READ: (
                "power_data",
                "environmental_data",
                "equipment",
                "equipment_efficiency",
                "maintenance_log",
                "langchain_agent_conversations",
                "langchain_agent_messages",
                "langchain_agent_tasks",
            ),
            TableOperation.WRITE: (
                "langchain_agent_conversations",
                "langchain_agent_messages",
                "langchain_agent_tasks",
            ),
            TableOperation.DELETE: ("langchain_agent_messages",),
        },
        Role.MANAGER: {
            TableOperation.READ: (WILDCARD,),
            TableOperation.WRITE: (
                "power_data",
                "environmental_data",
                "equipment",
                "maintenance_log",
                "langchain_*",
            ),
            TableOperation.DELETE: ("langchain_agent_messages", "langchain_agent_tasks"),
        },
        Role.ADMIN: {
            TableOperation.READ: (WILDCARD,),
            TableOperation.WRITE: (WILDCARD,),
            TableOperation.DELETE: (WILDCARD,),
        },
    },
)


class AccessControlEvaluator:
    """Answers "may this role do that" questions against a ``RoleAccessMap``."""

    def __init__(self, access_map: Optional[RoleAccessMap] = None):
        self.access_map = access_map or DEFAULT_ROLE_ACCESS_MAP

    def accessible_levels(self, role: Any) -> Tuple[AccessLevel, ...]:
        parsed = Role.parse(role)
        if parsed is None:
            return ()
        return self.access_map.levels.get(parsed, ())

    def can_execute(self, access_level: Any, role: Any) -> bool:
        try:
            level = AccessLevel(access_level)
        except ValueError:
            return False
        return level in self.accessible_levels(role)

    def match_rule(self, table_name: str, role: Any, operation: Any) -> Optional[str]:
        """
        Return the pattern that grants the operation, or ``None``.

        Precedence: exact name, then the longest matching ``prefix*``, then
        ``*``.
        """
        parsed = Role.parse(role)
        if parsed is None:
            return None
        try:
            op = TableOperation(operation)
        except ValueError:
            return None

        patterns = self.access_map.tables.get(parsed, {}).get(op, ())

        if table_name in patterns:
            return table_name

        prefixes = [
            p for p in patterns
            if p != WILDCARD and p.endswith(WILDCARD) and table_name.startswith(p[:-1])
        ]
        if prefixes:
            return max(prefixes, key=len)

        if WILDCARD in patterns:
            return WILDCARD

        return None

    def has_table_permission(self, table_name: str, role: Any, operation: Any) -> bool:
        return self.match_rule(table_name, role, operation) is not None

    def require_table_permission(self, table_name: str, role: Any, operation: Any) -> None:
        if not self.has_table_permission(table_name, role, operation):
            op = operation.value if isinstance(operation, TableOperation) else operation
            role_name = role.value if isinstance(role, Role) else str(role)
            raise PermissionDeniedError(
                f"Role '{role_name}' is not allowed to {op} table '{table_name}'",
                role=role_name,
            )

    def readable_tables(self, table_names: Iterable[str], role: Any) -> List[str]:
        return [name for name in table_names if self.has_table_permission(name, role, TableOperation.READ)]
