"""
Database-backed tools.

:func:`build_registry` turns a schema snapshot into a frozen :class:`CapabilityRegistry`: a fixed
set of utility tools plus one ``table_<name>`` tool per table.  Every handler closes over the
executor it is given; nothing here holds a connection of its own.
"""

import json
import logging
import re
from typing import (
    Any,
    Dict,
    List,
    Sequence,
)

from querybridge.core.schema import SchemaTable
from querybridge.db.executor import ResilientQueryExecutor
from querybridge.tools import (
    CapabilityRegistry,
    ToolHandler,
    ToolNameConflictError,
)

logger = logging.getLogger(__name__)

TABLE_TOOL_PREFIX = "table_"
_MAX_TOOL_NAME_LENGTH = 64
_UNSAFE_CHARS = re.compile(r"[^a-z0-9_]")


def table_tool_name(table: str) -> str:
    """Return the tool name for *table*: ``table_`` + the lower-cased name, ``[a-z0-9_]`` only."""
    name = TABLE_TOOL_PREFIX + _UNSAFE_CHARS.sub("_", table.lower())
    return name[:_MAX_TOOL_NAME_LENGTH]


def serialize_rows(rows: List[Dict[str, Any]]) -> str:
    """Serialise query rows as JSON text (dates, decimals and UUIDs become strings)."""
    return json.dumps(rows, default=str)


def describe_columns(table: SchemaTable) -> str:
    """Human-readable column list, e.g. ``"id" integer NOT NULL, "name" text``."""
    parts = []
    for column in table.columns:
        null = "" if column.nullable else " NOT NULL"
        parts.append(f'"{column.name}" {column.data_type}{null}')
    return ", ".join(parts) or "(no columns)"


def _format_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


# ---------------------------------------------------------------------------
# Handler factories
# ---------------------------------------------------------------------------
def _query_handler(executor: ResilientQueryExecutor) -> ToolHandler:
    async def query(sql: str) -> str:
        """Issue a PostgreSQL query to the database and return the rows as JSON."""
        logger.info("Received request to issue query: %s", sql)
        result = await executor.execute(sql)
        return serialize_rows(result.rows)

    return query


def _table_handler(executor: ResilientQueryExecutor, table: SchemaTable) -> ToolHandler:
    async def query_table(sql: str) -> str:
        logger.info("Received request to query table '%s': %s", table.name, sql)
        result = await executor.execute(sql)
        return serialize_rows(result.rows)

    query_table.__name__ = table_tool_name(table.name)
    return query_table


def _list_tables_handler(tables: Sequence[SchemaTable]) -> ToolHandler:
    names = [table.name for table in tables]

    async def list_tables() -> str:
        """Return the names of the tables in the database as a JSON list."""
        return json.dumps(names)

    return list_tables


def _describe_table_handler(tables: Sequence[SchemaTable]) -> ToolHandler:
    by_name = {table.name: table for table in tables}

    async def describe_table(table: str) -> str:
        """Return the columns of a table (name, data type, nullable) as JSON."""
        snapshot = by_name.get(table)
        if snapshot is None:
            raise ValueError(f"Unknown table '{table}'. Known tables: {sorted(by_name)}")
        return json.dumps([column.model_dump() for column in snapshot.columns])

    return describe_table


async def sum_numbers(a: float, b: float) -> str:
    """Add two numbers and return the sum as a sentence."""
    return f"The sum of {_format_number(a)} and {_format_number(b)} is {_format_number(a + b)}."


# ---------------------------------------------------------------------------
# Registry assembly
# ---------------------------------------------------------------------------
def build_registry(
    executor: ResilientQueryExecutor, tables: Sequence[SchemaTable]
) -> CapabilityRegistry:
    """
    Build and freeze the tool registry for a schema snapshot.

    Utility tools are registered first.  A table whose tool name is already taken (two tables that
    normalise to the same name, or a clash with a utility tool) is skipped with a warning and
    recorded in ``registry.conflicts``; the first registration always wins.
    """
    registry = CapabilityRegistry()
    registry.add("query", _query_handler(executor))
    registry.add("list_tables", _list_tables_handler(tables))
    registry.add("describe_table", _describe_table_handler(tables))
    registry.add("sum", sum_numbers)

    for table in sorted(tables, key=lambda t: t.name):
        name = table_tool_name(table.name)
        description = (
            f"Query the '{table.name}' table. Columns: {describe_columns(table)}. "
            "Pass one complete PostgreSQL statement as 'sql'; column names must be double "
            "quoted and text values single quoted. The rows are returned as JSON."
        )
        try:
            registry.add(name, _table_handler(executor, table), description)
        except ToolNameConflictError:
            logger.warning(
                "Skipping table '%s': tool name '%s' is already registered", table.name, name
            )
            registry.conflicts.append(table.name)

    return registry.freeze()
