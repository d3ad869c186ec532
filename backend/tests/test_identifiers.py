"""
Tests for capgate/services/capabilities/identifiers.py - identifier allow-list.
"""
import pytest
from sqlalchemy import Column, Float, Integer, MetaData, Numeric, String, Table

from capgate.models.power import EnvironmentalData, PowerData
from capgate.services.capabilities.errors import IdentifierError, NotFoundError, QueryError
from capgate.services.capabilities.identifiers import (
    IdentifierValidator,
    TableAllowList,
    camel_alias,
    is_numeric_column,
)


class TestCamelAlias:
    """Test snake_case to camelCase aliasing."""

    def test_multi_part_name(self):
        assert camel_alias("main_grid_power") == "mainGridPower"

    def test_single_part_name_unchanged(self):
        assert camel_alias("ghi") == "ghi"


class TestNumericColumns:
    """Test is_numeric_column()."""

    def test_float_model_columns(self):
        assert is_numeric_column(PowerData.__table__.c.solar_output)
        assert is_numeric_column(EnvironmentalData.__table__.c.air_temp)

    @pytest.mark.parametrize("column_type", [Integer(), Float(), Numeric(10, 2)])
    def test_numeric_types(self, column_type):
        assert is_numeric_column(Column("value", column_type))

    def test_text_and_timestamp_are_not_numeric(self):
        assert not is_numeric_column(EnvironmentalData.__table__.c.weather)
        assert not is_numeric_column(PowerData.__table__.c.timestamp)


class TestTableAllowList:
    """Test allow-list construction from metadata."""

    def test_excluded_tables_are_absent(self, allow_list):
        """users and the audit table must never be reachable."""
        assert "users" not in allow_list
        assert "capability_audit_logs" not in allow_list
        assert "power_data" in allow_list

    def test_table_names_sorted(self, allow_list):
        names = allow_list.table_names()
        assert names == sorted(names)
        assert "equipment" in names

    def test_column_resolves_by_sql_name_and_alias(self, allow_list):
        assert allow_list.resolve_column_name("power_data", "solar_output") == "solar_output"
        assert allow_list.resolve_column_name("power_data", "solarOutput") == "solar_output"

    def test_unknown_column_resolves_to_none(self, allow_list):
        assert allow_list.resolve_column_name("power_data", "nope") is None
        assert allow_list.resolve_column_name("no_table", "id") is None

    def test_sql_name_wins_over_alias_collision(self):
        """A real column named like another column's alias keeps its own name."""
        metadata = MetaData()
        Table(
            "odd",
            metadata,
            Column("id", Integer, primary_key=True),
            Column("a_b", Integer),
            Column("aB", Integer),
        )
        allow_list = TableAllowList.from_metadata(metadata)

        assert allow_list.resolve_column_name("odd", "aB") == "aB"
        assert allow_list.resolve_column_name("odd", "a_b") == "a_b"

    def test_column_info(self, allow_list):
        columns = allow_list.columns("power_data")

        assert columns["solar_output"].numeric is True
        assert columns["timestamp"].temporal is True
        assert columns["id"].primary_key is True
        assert allow_list.columns("missing") == {}


class TestIdentifierValidator:
    """Test identifier syntax and membership checks."""

    @pytest.mark.parametrize("bad", [
        "users; DROP TABLE users;",
        "power_data--",
        "power data",
        "",
        "a" * 64,
        None,
        42,
    ])
    def test_unsafe_identifiers_rejected(self, identifier_validator, bad):
        with pytest.raises(IdentifierError):
            identifier_validator.validate_table(bad)

    def test_identifier_error_is_query_error(self, identifier_validator):
        """Identifier rejection is reported with the QueryError kind."""
        with pytest.raises(QueryError) as exc_info:
            identifier_validator.validate_table("users; DROP TABLE users;")

        assert exc_info.value.kind == "QueryError"

    def test_unknown_table_not_found(self, identifier_validator):
        with pytest.raises(NotFoundError) as exc_info:
            identifier_validator.validate_table("missing_table")

        assert "missing_table" in exc_info.value.message

    def test_excluded_table_not_found(self, identifier_validator):
        with pytest.raises(NotFoundError):
            identifier_validator.validate_table("users")

    def test_validate_column_returns_table_column(self, identifier_validator):
        table = identifier_validator.validate_table("power_data")
        column = identifier_validator.validate_column(table, "solarOutput")

        assert column is table.c.solar_output

    def test_unknown_column_rejected(self, identifier_validator):
        table = identifier_validator.validate_table("power_data")

        with pytest.raises(IdentifierError) as exc_info:
            identifier_validator.validate_column(table, "password")

        assert "power_data" in exc_info.value.message

    def test_validate_alias_checks_syntax_only(self, identifier_validator):
        assert identifier_validator.validate_alias("avg_solarOutput") == "avg_solarOutput"
        with pytest.raises(IdentifierError):
            identifier_validator.validate_alias('x" FROM users --')

    def test_standalone_table(self):
        metadata = MetaData()
        Table("readings", metadata, Column("id", Integer, primary_key=True), Column("value", Float),
              Column("label", String))
        validator = IdentifierValidator(TableAllowList.from_metadata(metadata))

        table = validator.validate_table("readings")
        assert [c.name for c in validator.validate_columns(table, ["value", "label"])] == ["value", "label"]
