"""
The capability host: a FastMCP server exposing the database.

Tools come from a frozen :class:`~querybridge.tools.CapabilityRegistry`.  On top of them the server
publishes the schema snapshot as resources and a ``query-database`` prompt that explains to the
model how to write queries against it.
"""

import json
import logging
from typing import (
    List,
    Sequence,
)

from fastmcp import FastMCP
from mcp.types import (
    PromptMessage,
    TextContent,
)

from querybridge.core.schema import SchemaTable
from querybridge.tools import CapabilityRegistry
from querybridge.tools.database_tools import describe_columns

logger = logging.getLogger(__name__)

SERVER_NAME = "querybridge"


def build_query_prompt(tables: Sequence[SchemaTable]) -> List[str]:
    """Instructions for a model that answers questions from the database."""
    table_lines = [f"- '{table.name}': {describe_columns(table)}" for table in tables]
    return [
        "The purpose of this chat is to respond to the user based on data from a PostgreSQL "
        "database. Help the user find what they are looking for using the tools provided.",
        "The database contains these tables:\n" + ("\n".join(table_lines) or "(none)"),
        "PostgreSQL requires column names to be double quoted when used as a filter, while "
        "the filter value has to be single quoted, "
        'e.g. SELECT * FROM "listing" WHERE "listing_id" = \'Some value\';',
        "To filter on a number column use the bare number, "
        'e.g. SELECT * FROM "listing" WHERE "price" = 100;',
        "To filter on a text column, check which values exist first, "
        'e.g. SELECT DISTINCT "buildType" FROM "listing"; '
        "then use one of the returned values in your query.",
    ]


def build_mcp_server(registry: CapabilityRegistry, tables: Sequence[SchemaTable]) -> FastMCP:
    """Create the FastMCP server for *registry* and the schema snapshot *tables*."""
    if not registry.frozen:
        raise RuntimeError("The tool registry must be frozen before it is served.")

    server = FastMCP(SERVER_NAME)
    registry.install(server)

    by_name = {table.name: table for table in tables}

    @server.resource(
        "schema://tables",
        name="tables",
        description="Names of the tables in the database",
        mime_type="application/json",
    )
    def table_names() -> str:
        return json.dumps(list(by_name))

    @server.resource(
        "schema://tables/{table_name}",
        name="table-columns",
        description="Columns of one table",
        mime_type="application/json",
    )
    def table_columns(table_name: str) -> str:
        table = by_name.get(table_name)
        if table is None:
            raise ValueError(f"Unknown table '{table_name}'")
        return json.dumps([column.model_dump() for column in table.columns])

    @server.prompt(name="query-database", description="About querying the database")
    def query_database() -> List[PromptMessage]:
        logger.info("Querying the database prompt requested.")
        return [
            PromptMessage(role="assistant", content=TextContent(type="text", text=text))
            for text in build_query_prompt(tables)
        ]

    logger.info("MCP server initialized.")
    return server
