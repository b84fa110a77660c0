"""
Tests for the agent loop, driven by a scripted gateway against the MCP server.

Run with:
$ pytest -q
"""

import asyncio

import pytest

from conftest import (
    FakeConnection,
    FakeDriverError,
    HandlerSession,
    ScriptedGateway,
    database_registry,
    hosted_client,
    text_response,
    tool_response,
)
from querybridge.agent.agent_loop import (
    StopReason,
    TurnLimitExceededError,
    run_agent_loop,
)
from querybridge.agent.capability_client import CapabilityClient
from querybridge.common import TRUNCATION_MARKER
from querybridge.core.schema import (
    ConversationMessage,
    ToolCall,
    ToolResultContent,
)

pytestmark = pytest.mark.asyncio

SYSTEM = ConversationMessage(role="system", content="This is an agent for teaching kindergarten math.")


def _user(text: str) -> list:
    return [ConversationMessage(role="user", content=text)]


async def test_plain_answer_is_a_single_model_call(tables) -> None:
    """A response without tool calls ends the run after one call and invokes nothing."""
    conn = FakeConnection()
    gateway = ScriptedGateway([text_response("Hello!")])

    async with hosted_client(database_registry(tables, conn), tables) as client:
        tools = (await client.discover()).tools
        result = await run_agent_loop(gateway, client, [SYSTEM, *_user("Hi")], tools)

    assert result.turns == 1
    assert result.text == "Hello!"
    assert result.stop_reason is StopReason.NO_TOOL_CALLS
    assert len(gateway.calls) == 1
    assert result.results == []
    assert conn.calls == []
    assert result.messages[-1] == ConversationMessage(role="assistant", content="Hello!")


async def test_sum_question_runs_the_sum_tool(tables) -> None:
    """Asking for the sum of 2 and 3: one tool turn, the result is folded, then the answer."""
    gateway = ScriptedGateway(
        [
            tool_response(ToolCall(name="sum", args={"a": 2, "b": 3}, call_id="call_1")),
            text_response("2 + 3 = 5"),
        ]
    )

    async with hosted_client(database_registry(tables), tables) as client:
        tools = (await client.discover()).tools
        messages = [SYSTEM, *_user("What is the sum of 2 and 3?")]
        result = await run_agent_loop(gateway, client, messages, tools)

    assert result.turns == 2
    assert result.text == "2 + 3 = 5"
    assert [r.call.name for r in result.results] == ["sum"]

    folded = gateway.calls[1][-1]
    assert folded.role == "user"
    assert folded.content == ToolResultContent(
        tool_name="sum", call_id="call_1", text="The sum of 2 and 3 is 5."
    )


async def test_only_successful_results_are_folded(tables) -> None:
    """One success and one failure in a turn: the success is folded, the failure is recorded."""
    conn = FakeConnection([[{"listing_id": 1}]])
    gateway = ScriptedGateway(
        [
            tool_response(
                ToolCall(name="table_listing", args={"sql": 'SELECT "listing_id" FROM "listing"'}),
                ToolCall(name="describe_table", args={"table": "missing"}),
            ),
            text_response("There is one listing."),
        ]
    )

    async with hosted_client(database_registry(tables, conn), tables) as client:
        tools = (await client.discover()).tools
        result = await run_agent_loop(gateway, client, _user("How many?"), tools)

    assert result.stop_reason is StopReason.NO_TOOL_CALLS
    assert [r.call.name for r in result.failures] == ["describe_table"]
    folded = [m for m in gateway.calls[1] if isinstance(m.content, ToolResultContent)]
    assert [m.content.tool_name for m in folded] == ["table_listing"]
    assert '"listing_id": 1' in folded[0].content.text


async def test_failed_query_is_left_out_of_the_conversation(tables) -> None:
    """A table tool hitting a fatal query error fails alone; the sum next to it is folded."""
    conn = FakeConnection([FakeDriverError("42703", 'column "nope" does not exist')])
    gateway = ScriptedGateway(
        [
            tool_response(
                ToolCall(name="sum", args={"a": 2, "b": 3}),
                ToolCall(name="table_listing", args={"sql": 'SELECT "nope" FROM "listing"'}),
            ),
            text_response("5"),
        ]
    )

    async with hosted_client(database_registry(tables, conn), tables) as client:
        tools = (await client.discover()).tools
        result = await run_agent_loop(gateway, client, _user("Sum, then look"), tools)

    assert result.turns == 2
    assert [r.call.name for r in result.failures] == ["table_listing"]
    folded = [m for m in gateway.calls[1] if isinstance(m.content, ToolResultContent)]
    assert [m.content.tool_name for m in folded] == ["sum"]
    assert len(conn.calls) == 1


async def test_all_tools_failing_ends_the_run(tables) -> None:
    """When every invocation of a turn fails the run stops without another model call."""
    gateway = ScriptedGateway(
        [tool_response(ToolCall(name="no_such_tool"), ToolCall(name="sum", args={"a": 1}))]
    )

    async with hosted_client(database_registry(tables), tables) as client:
        tools = (await client.discover()).tools
        result = await run_agent_loop(gateway, client, _user("?"), tools)

    assert result.stop_reason is StopReason.ALL_TOOLS_FAILED
    assert result.turns == 1
    assert len(result.failures) == 2
    assert len(gateway.calls) == 1


async def test_text_is_kept_ahead_of_tool_results(tables) -> None:
    """Free text returned together with tool calls is preserved before the folded results."""
    gateway = ScriptedGateway(
        [
            tool_response(ToolCall(name="list_tables"), text="Let me look at the tables."),
            text_response("Two tables."),
        ]
    )

    async with hosted_client(database_registry(tables), tables) as client:
        tools = (await client.discover()).tools
        await run_agent_loop(gateway, client, _user("Tables?"), tools)

    tail = gateway.calls[1][-2:]
    assert tail[0] == ConversationMessage(role="assistant", content="Let me look at the tables.")
    assert tail[1].content.tool_name == "list_tables"
    assert tail[1].content.text == '["listing", "bookings"]'


async def test_caller_messages_are_not_mutated(tables) -> None:
    """The loop works on a copy of the conversation it was given."""
    gateway = ScriptedGateway(
        [tool_response(ToolCall(name="sum", args={"a": 1, "b": 1})), text_response("2")]
    )
    messages = _user("1 + 1?")

    async with hosted_client(database_registry(tables), tables) as client:
        tools = (await client.discover()).tools
        result = await run_agent_loop(gateway, client, messages, tools)

    assert len(messages) == 1
    assert len(result.messages) == 3


async def test_turn_limit_raises(tables) -> None:
    """A model that keeps requesting tools is stopped after max_turns model calls."""
    gateway = ScriptedGateway(
        [tool_response(ToolCall(name="sum", args={"a": 1, "b": 2})) for _ in range(3)]
    )

    async with hosted_client(database_registry(tables), tables) as client:
        tools = (await client.discover()).tools
        with pytest.raises(TurnLimitExceededError):
            await run_agent_loop(gateway, client, _user("loop"), tools, max_turns=3)

    assert len(gateway.calls) == 3


async def test_long_results_are_truncated() -> None:
    """Folded tool output is capped at the configured length."""

    async def dump() -> str:
        return "x" * 50_000

    gateway = ScriptedGateway([tool_response(ToolCall(name="dump")), text_response("done")])
    client = CapabilityClient(HandlerSession({"dump": dump}))

    await run_agent_loop(gateway, client, _user("dump"), [])

    folded = gateway.calls[1][-1].content.text
    assert len(folded) == 10_000
    assert folded.endswith(TRUNCATION_MARKER)


async def test_empty_results_end_the_run() -> None:
    """Tools that succeed without any text leave nothing to fold, so the run stops."""

    async def nothing() -> str:
        return ""

    gateway = ScriptedGateway([tool_response(ToolCall(name="nothing"), text="Checking.")])
    client = CapabilityClient(HandlerSession({"nothing": nothing}))

    result = await run_agent_loop(gateway, client, _user("anything?"), [])

    assert result.stop_reason is StopReason.EMPTY_TOOL_RESULTS
    assert result.failures == []
    assert len(gateway.calls) == 1
    assert result.messages[-1] == ConversationMessage(role="assistant", content="Checking.")


async def test_empty_results_are_not_folded() -> None:
    """Next to a result with text, an empty one adds no message."""

    async def nothing() -> str:
        return ""

    async def something() -> str:
        return "42"

    gateway = ScriptedGateway(
        [
            tool_response(ToolCall(name="nothing"), ToolCall(name="something")),
            text_response("42"),
        ]
    )
    client = CapabilityClient(HandlerSession({"nothing": nothing, "something": something}))

    await run_agent_loop(gateway, client, _user("?"), [])

    folded = [m for m in gateway.calls[1] if isinstance(m.content, ToolResultContent)]
    assert [m.content.tool_name for m in folded] == ["something"]


async def test_tool_calls_of_a_turn_run_concurrently() -> None:
    """Two tools that each wait for the other can only finish if they run at the same time."""
    arrived = []
    both = asyncio.Event()

    async def meet(name: str) -> str:
        arrived.append(name)
        if len(arrived) == 2:
            both.set()
        await both.wait()
        return name

    async def left() -> str:
        return await meet("left")

    async def right() -> str:
        return await meet("right")

    gateway = ScriptedGateway(
        [tool_response(ToolCall(name="left"), ToolCall(name="right")), text_response("met")]
    )
    client = CapabilityClient(HandlerSession({"left": left, "right": right}))

    result = await asyncio.wait_for(run_agent_loop(gateway, client, _user("go"), []), timeout=2)

    assert result.text == "met"
    assert sorted(arrived) == ["left", "right"]


async def test_cancellation_reaches_in_flight_tools() -> None:
    """Cancelling the run cancels the tool invocation it is waiting on."""
    started = asyncio.Event()
    cancelled = asyncio.Event()

    async def slow() -> str:
        started.set()
        try:
            await asyncio.sleep(60)
        except asyncio.CancelledError:
            cancelled.set()
            raise
        return "never"

    gateway = ScriptedGateway([tool_response(ToolCall(name="slow"))])
    client = CapabilityClient(HandlerSession({"slow": slow}), tool_timeout=None)

    task = asyncio.create_task(run_agent_loop(gateway, client, _user("wait"), []))
    await asyncio.wait_for(started.wait(), timeout=2)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert cancelled.is_set()
