"""
Shared fakes for the test-suite.

Nothing here talks to a real database, model or network:
- :class:`FakePool` / :class:`FakeConnection` stand in for an asyncpg pool,
- :func:`hosted_client` serves a registry from a real FastMCP server over the in-memory transport,
- :class:`HandlerSession` answers tool calls from plain coroutines (timing and cancellation tests),
- :class:`ScriptedGateway` replays canned model responses.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Sequence,
)

import pytest
from fastmcp import Client
from mcp.types import (
    CallToolResult,
    TextContent,
)

from querybridge.agent.capability_client import CapabilityClient
from querybridge.agent.gateway import BaseGateway
from querybridge.api.server import build_mcp_server
from querybridge.config import Settings
from querybridge.core.schema import (
    ConversationMessage,
    ModelChoice,
    ModelResponse,
    RetryPolicy,
    SchemaColumn,
    SchemaTable,
    ToolCall,
    ToolDescriptor,
)
from querybridge.db.executor import ResilientQueryExecutor
from querybridge.tools import CapabilityRegistry
from querybridge.tools.database_tools import build_registry


# ---------------------------------------------------------------------------
# Database fakes
# ---------------------------------------------------------------------------
class FakeDriverError(Exception):
    """Mimics an asyncpg error: carries a SQLSTATE."""

    def __init__(self, sqlstate: str, message: str = "driver error"):
        super().__init__(message)
        self.sqlstate = sqlstate


class _Transaction:
    def __init__(self, conn: "FakeConnection", readonly: bool):
        self._conn = conn
        self._readonly = readonly

    async def __aenter__(self) -> "_Transaction":
        self._conn.transactions.append(self._readonly)
        return self

    async def __aexit__(self, *exc: Any) -> None:
        return None


class FakeConnection:
    """
    Replays *outcomes* one per ``fetch`` call: a list of row dicts is returned, an exception is
    raised.  Once the script is exhausted the last outcome repeats.
    """

    def __init__(self, outcomes: Sequence[Any] = ()):
        self.outcomes = list(outcomes) or [[]]
        self.calls: List[tuple] = []
        self.transactions: List[bool] = []

    def transaction(self, readonly: bool = False) -> _Transaction:
        return _Transaction(self, readonly)

    async def fetch(self, sql: str, *params: Any) -> List[Dict[str, Any]]:
        self.calls.append((sql, params))
        index = min(len(self.calls) - 1, len(self.outcomes) - 1)
        outcome = self.outcomes[index]
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return await outcome(sql, params)
        return outcome


class FakePool:
    """Hands out one :class:`FakeConnection`; ``acquire_errors`` are raised by the first acquires."""

    def __init__(self, conn: FakeConnection, acquire_errors: Sequence[BaseException] = ()):
        self.conn = conn
        self.acquire_errors = list(acquire_errors)
        self.acquired = 0
        self.released: List[FakeConnection] = []
        self.closed = False

    async def acquire(self) -> FakeConnection:
        if self.acquire_errors:
            raise self.acquire_errors.pop(0)
        self.acquired += 1
        return self.conn

    async def release(self, conn: FakeConnection) -> None:
        self.released.append(conn)

    async def close(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Capability hosts
# ---------------------------------------------------------------------------
def database_registry(
    tables: Sequence[SchemaTable], conn: FakeConnection | None = None
) -> CapabilityRegistry:
    """The frozen tool registry for *tables*, backed by *conn* through a single-attempt executor."""
    executor = ResilientQueryExecutor(
        FakePool(conn or FakeConnection()), RetryPolicy(max_attempts=1, backoff_base=0.0)
    )
    return build_registry(executor, tables)


@asynccontextmanager
async def hosted_client(
    registry: CapabilityRegistry,
    tables: Sequence[SchemaTable] = (),
    tool_timeout: float | None = 60.0,
) -> AsyncIterator[CapabilityClient]:
    """Serve *registry* from the real MCP server and yield a client connected to it in memory."""
    server = build_mcp_server(registry, tables)
    async with Client(server) as mcp_client:
        yield CapabilityClient(mcp_client.session, tool_timeout=tool_timeout)


class HandlerSession:
    """
    Answers ``call_tool`` from a mapping of coroutines, for tests that control timing.

    Handler exceptions become ``isError`` results, as they do on the MCP server.
    """

    def __init__(self, handlers: Dict[str, Callable[..., Awaitable[Any]]]):
        self.handlers = handlers
        self.tool_calls: List[tuple] = []

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> CallToolResult:
        self.tool_calls.append((name, arguments))
        handler = self.handlers.get(name)
        if handler is None:
            return _error_result(f"Unknown tool: {name}")
        try:
            value = await handler(**arguments)
        except Exception as exc:  # noqa: BLE001
            return _error_result(f"Error calling tool '{name}': {exc}")
        return CallToolResult(content=[TextContent(type="text", text=str(value))])


def _error_result(text: str) -> CallToolResult:
    return CallToolResult(content=[TextContent(type="text", text=text)], isError=True)


# ---------------------------------------------------------------------------
# Model fake
# ---------------------------------------------------------------------------
def text_response(text: str) -> ModelResponse:
    """A response with plain text only."""
    return ModelResponse(choices=[ModelChoice(content=text)])


def tool_response(*calls: ToolCall, text: str | None = None) -> ModelResponse:
    """A response requesting *calls*, optionally with free text."""
    return ModelResponse(choices=[ModelChoice(content=text, tool_calls=list(calls))])


class ScriptedGateway(BaseGateway):
    """Returns the scripted responses in order and records every conversation it was sent."""

    def __init__(self, responses: Sequence[ModelResponse]):
        super().__init__(Settings())
        self.responses = list(responses)
        self.calls: List[List[ConversationMessage]] = []

    async def complete(
        self, messages: Sequence[ConversationMessage], tools: Sequence[ToolDescriptor]
    ) -> ModelResponse:
        self.calls.append(list(messages))
        await asyncio.sleep(0)
        if not self.responses:
            raise AssertionError("ScriptedGateway ran out of responses")
        return self.responses.pop(0)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def tables() -> List[SchemaTable]:
    """A two-table schema snapshot."""
    return [
        SchemaTable(
            name="listing",
            columns=(
                SchemaColumn(name="listing_id", data_type="integer", nullable=False),
                SchemaColumn(name="price", data_type="numeric"),
                SchemaColumn(name="buildType", data_type="text"),
            ),
        ),
        SchemaTable(
            name="bookings",
            columns=(
                SchemaColumn(name="booking_id", data_type="integer", nullable=False),
                SchemaColumn(name="listing_id", data_type="integer"),
            ),
        ),
    ]
