"""
Tests for capgate/services/capabilities/access_control.py - role evaluation.
"""
import json

import pytest

from capgate.services.capabilities.access_control import (
    AccessControlEvaluator,
    DEFAULT_ROLE_ACCESS_MAP,
    RoleAccessMap,
)
from capgate.services.capabilities.errors import PermissionDeniedError
from capgate.services.capabilities.schema import AccessLevel, Role, TableOperation


class TestCapabilityAccess:
    """Test the access level hierarchy."""

    @pytest.mark.parametrize("role,level,allowed", [
        ("public", "public", True),
        ("public", "user", False),
        ("user", "public", True),
        ("user", "user", True),
        ("user", "manager", False),
        ("user", "admin", False),
        ("manager", "manager", True),
        ("manager", "admin", False),
        ("manager", "restricted", False),
        ("admin", "admin", True),
        ("admin", "restricted", True),
    ])
    def test_hierarchy(self, evaluator, role, level, allowed):
        assert evaluator.can_execute(level, role) is allowed

    def test_role_is_case_insensitive(self, evaluator):
        assert evaluator.can_execute(AccessLevel.USER, "  USER ") is True

    def test_unknown_role_has_no_access(self, evaluator):
        """An unknown role yields an empty permission set, not an exception."""
        assert evaluator.accessible_levels("superuser") == ()
        assert evaluator.can_execute("public", "superuser") is False
        assert evaluator.can_execute("public", None) is False

    def test_unknown_level_denied(self, evaluator):
        assert evaluator.can_execute("godmode", "admin") is False

    def test_levels_are_ordered_lowest_first(self, evaluator):
        assert evaluator.accessible_levels(Role.MANAGER) == (
            AccessLevel.PUBLIC,
            AccessLevel.USER,
            AccessLevel.MANAGER,
        )


class TestTablePermissions:
    """Test table rule precedence."""

    def test_exact_match(self, evaluator):
        assert evaluator.match_rule("power_data", "public", "read") == "power_data"

    def test_prefix_wildcard(self, evaluator):
        assert evaluator.match_rule("langchain_agent_tasks", "manager", "write") == "langchain_*"

    def test_global_wildcard(self, evaluator):
        assert evaluator.match_rule("maintenance_log", "manager", "read") == "*"

    def test_exact_beats_prefix_beats_wildcard(self):
        evaluator = AccessControlEvaluator(RoleAccessMap(
            levels={Role.USER: (AccessLevel.USER,)},
            tables={Role.USER: {TableOperation.READ: ("*", "log_*", "log_a*", "log_audit")}},
        ))

        assert evaluator.match_rule("log_audit", "user", "read") == "log_audit"
        assert evaluator.match_rule("log_alpha", "user", "read") == "log_a*"
        assert evaluator.match_rule("log_beta", "user", "read") == "log_*"
        assert evaluator.match_rule("other", "user", "read") == "*"

    def test_deny_when_nothing_matches(self, evaluator):
        assert evaluator.has_table_permission("equipment", "public", "write") is False
        assert evaluator.has_table_permission("maintenance_log", "public", "read") is False

    def test_unknown_role_or_operation_denied(self, evaluator):
        assert evaluator.has_table_permission("power_data", "guest", "read") is False
        assert evaluator.has_table_permission("power_data", "admin", "truncate") is False

    def test_require_table_permission_raises(self, evaluator):
        with pytest.raises(PermissionDeniedError) as exc_info:
            evaluator.require_table_permission("equipment", Role.USER, TableOperation.WRITE)

        assert exc_info.value.kind == "PermissionError"
        assert exc_info.value.message == "Role 'user' is not allowed to write table 'equipment'"

    def test_readable_tables_filters(self, evaluator):
        readable = evaluator.readable_tables(["power_data", "maintenance_log", "equipment"], "public")

        assert readable == ["power_data", "equipment"]


class TestRoleAccessMap:
    """Test access map loading."""

    def test_default_map_is_read_only(self):
        with pytest.raises(TypeError):
            DEFAULT_ROLE_ACCESS_MAP.levels[Role.PUBLIC] = (AccessLevel.ADMIN,)

    def test_from_dict(self):
        access_map = RoleAccessMap.from_dict({
            "levels": {"User": ["public", "USER"]},
            "tables": {"user": {"read": ["power_data"], "write": []}},
        })

        assert access_map.levels[Role.USER] == (AccessLevel.PUBLIC, AccessLevel.USER)
        assert access_map.tables[Role.USER][TableOperation.READ] == ("power_data",)

    def test_from_dict_rejects_unknown_role(self):
        with pytest.raises(ValueError):
            RoleAccessMap.from_dict({"levels": {"root": ["admin"]}})

    def test_from_dict_rejects_unknown_operation(self):
        with pytest.raises(ValueError):
            RoleAccessMap.from_dict({"tables": {"user": {"drop": ["power_data"]}}})

    def test_from_file(self, tmp_path):
        path = tmp_path / "roles.json"
        path.write_text(json.dumps({
            "levels": {"public": ["public"]},
            "tables": {"public": {"read": ["equipment"]}},
        }))

        evaluator = AccessControlEvaluator(RoleAccessMap.from_file(path))

        assert evaluator.has_table_permission("equipment", "public", "read") is True
        assert evaluator.has_table_permission("power_data", "public", "read") is False
