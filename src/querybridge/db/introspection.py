"""Read the table layout of the database once, at startup."""

import logging
from typing import (
    Dict,
    List,
)

from querybridge.core.schema import (
    SchemaColumn,
    SchemaTable,
)
from querybridge.db.executor import ResilientQueryExecutor

logger = logging.getLogger(__name__)

_TABLES_SQL = (
    "SELECT table_name FROM information_schema.tables "
    "WHERE table_schema = $1 AND table_type = 'BASE TABLE' "
    "ORDER BY table_name"
)
_COLUMNS_SQL = (
    "SELECT table_name, column_name, data_type, is_nullable "
    "FROM information_schema.columns "
    "WHERE table_schema = $1 "
    "ORDER BY table_name, ordinal_position"
)


async def list_table_names(executor: ResilientQueryExecutor, schema: str = "public") -> List[str]:
    """Return the names of the base tables in *schema*."""
    result = await executor.execute(_TABLES_SQL, schema)
    tables = [row["table_name"] for row in result.rows]
    logger.debug("Database schema: %s", tables)
    return tables


async def reflect_schema(
    executor: ResilientQueryExecutor, schema: str = "public"
) -> List[SchemaTable]:
    """
    Snapshot every table of *schema* with its columns.

    Tables without columns are kept (with an empty column list) so the table set matches
    :func:`list_table_names`.
    """
    names = await list_table_names(executor, schema)
    columns: Dict[str, List[SchemaColumn]] = {name: [] for name in names}

    result = await executor.execute(_COLUMNS_SQL, schema)
    for row in result.rows:
        table = row["table_name"]
        if table not in columns:
            continue  # views and foreign tables are listed in information_schema.columns too
        columns[table].append(
            SchemaColumn(
                name=row["column_name"],
                data_type=row["data_type"],
                nullable=str(row["is_nullable"]).upper() == "YES",
            )
        )

    tables = [SchemaTable(name=name, columns=tuple(columns[name])) for name in names]
    logger.info("Reflected %d tables from schema '%s'", len(tables), schema)
    return tables
