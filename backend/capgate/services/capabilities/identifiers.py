"""
Identifier allow-list and validation

Every table or column name that ends up in generated SQL is resolved through
the ``TableAllowList``. The list is built from SQLAlchemy ``MetaData`` (the
declarative models, or a reflection of the live database) and the resolved
``Table``/``Column`` objects are what the query builder renders, so caller
strings never reach the SQL text directly.
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional

from sqlalchemy import Column, MetaData, Table
from sqlalchemy.ext.asyncio import AsyncConnection
from sqlalchemy.sql import sqltypes

from capgate.services.capabilities.errors import IdentifierError, NotFoundError

logger = logging.getLogger(__name__)

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9_]+$")

# PostgreSQL truncates identifiers beyond this length
MAX_IDENTIFIER_LENGTH = 63


def camel_alias(name: str) -> str:
    """``solar_output`` -> ``solarOutput``"""
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


# SQLAlchemy 2.1 no longer derives Float from Numeric
NUMERIC_TYPES = (sqltypes.Integer, sqltypes.Numeric, sqltypes.Float)


def is_numeric_column(column: Column) -> bool:
    return isinstance(column.type, NUMERIC_TYPES)


def is_temporal_column(column: Column) -> bool:
    return isinstance(column.type, (sqltypes.DateTime, sqltypes.Date))


@dataclass(frozen=True)
class ColumnInfo:
    name: str
    type: str
    nullable: bool
    primary_key: bool
    numeric: bool
    temporal: bool

    @classmethod
    def from_column(cls, column: Column) -> "ColumnInfo":
        return cls(
            name=column.name,
            type=str(column.type),
            nullable=bool(column.nullable),
            primary_key=bool(column.primary_key),
            numeric=is_numeric_column(column),
            temporal=is_temporal_column(column),
        )


class TableAllowList:
    """
    The authoritative set of known-safe table and column identifiers.

    Columns can be addressed by their SQL name or by the camelCase alias of
    that name; the SQL name wins when both spellings collide.
    """

    def __init__(self, tables: Mapping[str, Table]):
        self._tables: Dict[str, Table] = dict(tables)
        self._columns: Dict[str, Dict[str, str]] = {}

        for table_name, table in self._tables.items():
            lookup: Dict[str, str] = {}
            for column in table.columns:
                lookup.setdefault(camel_alias(column.name), column.name)
            for column in table.columns:
                lookup[column.name] = column.name
            self._columns[table_name] = lookup

    @classmethod
    def from_metadata(cls, metadata: MetaData, exclude: Iterable[str] = ()) -> "TableAllowList":
        excluded = set(exclude)
        tables = {
            name: table
            for name, table in metadata.tables.items()
            if name not in excluded and table.schema is None
        }
        logger.info(f"Table allow-list built from metadata: {len(tables)} tables")
        return cls(tables)

    @classmethod
    async def reflect(cls, connection: AsyncConnection, exclude: Iterable[str] = ()) -> "TableAllowList":
        """Build the allow-list from the live database schema."""
        metadata = MetaData()
        await connection.run_sync(metadata.reflect)
        return cls.from_metadata(metadata, exclude=exclude)

    def table_names(self) -> List[str]:
        return sorted(self._tables)

    def get_table(self, name: str) -> Optional[Table]:
        return self._tables.get(name)

    def resolve_column_name(self, table_name: str, field: str) -> Optional[str]:
        return self._columns.get(table_name, {}).get(field)

    def columns(self, table_name: str) -> Dict[str, ColumnInfo]:
        table = self._tables.get(table_name)
        if table is None:
            return {}
        return {column.name: ColumnInfo.from_column(column) for column in table.columns}

    def tables(self) -> Dict[str, Table]:
        return dict(self._tables)

    def __contains__(self, name: object) -> bool:
        return name in self._tables

    def __len__(self) -> int:
        return len(self._tables)


class IdentifierValidator:
    """
    Checks identifiers before they are interpolated into SQL.

    Syntax is checked first (``[A-Za-z0-9_]`` only), then membership in the
    allow-list. An unsafe string raises ``IdentifierError``; a well-formed
    but unknown table raises ``NotFoundError``; an unknown column raises
    ``IdentifierError``.
    """

    def __init__(self, allow_list: TableAllowList):
        self.allow_list = allow_list

    @staticmethod
    def check_syntax(identifier: object, kind: str = "identifier") -> str:
        if not isinstance(identifier, str) or not identifier:
            raise IdentifierError(f"Invalid {kind}: {identifier!r}")
        if len(identifier) > MAX_IDENTIFIER_LENGTH or not IDENTIFIER_PATTERN.match(identifier):
            raise IdentifierError(f"Invalid {kind}: {identifier!r}")
        return identifier

    def validate_table(self, table_name: object) -> Table:
        name = self.check_syntax(table_name, "table name")
        table = self.allow_list.get_table(name)
        if table is None:
            raise NotFoundError(f"Table not found in schema: {name}")
        return table

    def validate_column(self, table: Table, field: object) -> Column:
        name = self.check_syntax(field, "column name")
        column_name = self.allow_list.resolve_column_name(table.name, name)
        if column_name is None:
            raise IdentifierError(f"Column '{name}' does not exist on table '{table.name}'")
        return table.c[column_name]

    def validate_columns(self, table: Table, fields: Iterable[object]) -> List[Column]:
        return [self.validate_column(table, field) for field in fields]

    def validate_alias(self, alias: object) -> str:
        """Result labels are not in the allow-list but must still be safe."""
        return self.check_syntax(alias, "alias")
