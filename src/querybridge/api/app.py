"""
HTTP backend of the capability host.

A FastAPI application that serves the MCP SSE endpoints (mounted from FastMCP) together with a few
plain routes:
- **GET /health** - liveness probe for health checks.
- **GET /tools**  - the frozen tool set, as advertised over MCP.
- **GET /sse** + **POST /messages/** - the MCP transport.
"""

import asyncio
import logging

from fastapi import FastAPI
from fastmcp import FastMCP

from querybridge import __version__
from querybridge.api.models import (
    HealthResponse,
    ToolListResponse,
)
from querybridge.api.server import build_mcp_server
from querybridge.common import (
    AnsiColors,
    colored_print,
)
from querybridge.config import (
    Settings,
    settings as default_settings,
)
from querybridge.db.introspection import reflect_schema
from querybridge.db.pool import create_database_context
from querybridge.tools import CapabilityRegistry
from querybridge.tools.database_tools import build_registry

logger = logging.getLogger(__name__)


def create_app(registry: CapabilityRegistry, server: FastMCP) -> FastAPI:
    """Build the FastAPI app for a frozen *registry* and the MCP *server* serving it."""
    mcp_app = server.http_app(transport="sse")

    app = FastAPI(
        title="querybridge capability host",
        version=__version__,
        description="MCP server exposing a PostgreSQL database as tools",
        lifespan=mcp_app.router.lifespan_context,
    )

    # -----------------------------------------------------------------------
    # Routes
    # -----------------------------------------------------------------------
    @app.get("/health", response_model=HealthResponse, summary="Health check")
    async def health() -> HealthResponse:
        """Return a simple liveness payload."""
        return HealthResponse(status="ok", tools=len(registry))

    @app.get("/tools", response_model=ToolListResponse, summary="List served tools")
    async def list_tools() -> ToolListResponse:
        """Return the frozen tool set."""
        return ToolListResponse(
            tools=list(registry.descriptors()), skipped_tables=list(registry.conflicts)
        )

    # Mounted last so the routes above take precedence over the catch-all mount.
    app.mount("/", mcp_app)
    return app


async def serve(settings: Settings) -> None:
    """
    Start the capability host and serve until interrupted.

    Startup order: pool + connectivity check, schema snapshot, frozen registry, MCP server, HTTP.
    The pool is closed when serving stops, however it stops.
    """

    # Lazy import - keeps uvicorn an optional dependency at pkg-import time
    import uvicorn  # pylint: disable=import-outside-toplevel

    database = await create_database_context(settings)
    logger.info("Database connection established.")
    try:
        tables = await reflect_schema(database.executor, settings.DB_SCHEMA)
        registry = build_registry(database.executor, tables)
        if registry.conflicts:
            logger.warning("Tables without a tool due to name conflicts: %s", registry.conflicts)
        server = build_mcp_server(registry, tables)
        app = create_app(registry, server)

        colored_print(
            f"🔌 querybridge is listening on http://localhost:{settings.MCP_PORT}/sse",
            AnsiColors.GREEN,
        )
        config = uvicorn.Config(
            app,
            host=settings.MCP_HOST,
            port=settings.MCP_PORT,
            log_level=settings.LOG_LEVEL.lower(),
        )
        await uvicorn.Server(config).serve()
    finally:
        await database.close()


def run_api(settings: Settings | None = None) -> None:
    """Blocking entry point used by ``main.py``."""
    settings = settings or default_settings
    logger.info("Starting capability host at %s:%d", settings.MCP_HOST, settings.MCP_PORT)
    asyncio.run(serve(settings))
