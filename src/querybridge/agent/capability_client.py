"""
Client side of the capability protocol.

:class:`CapabilityClient` wraps an MCP ``ClientSession``: it discovers what the host offers (once)
and invokes tools.  A failed invocation never raises; it comes back as a :class:`ToolResult` with
``ok=False`` so the invocations of one turn stay independent of each other.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import (
    Any,
    AsyncIterator,
    Dict,
    List,
    Sequence,
)

from pydantic import AnyUrl

from querybridge.core.schema import (
    Capabilities,
    ContentChunk,
    ConversationMessage,
    PromptDescriptor,
    ResourceDescriptor,
    ToolCall,
    ToolDescriptor,
    ToolResult,
)

logger = logging.getLogger(__name__)


class ToolInvocationFailure(RuntimeError):
    """A single tool invocation failed (rejected by the host, or its handler raised)."""


def _to_chunk(item: Any) -> ContentChunk:
    kind = getattr(item, "type", "text")
    text = getattr(item, "text", None)
    if text is not None:
        return ContentChunk(type=kind, text=text)
    if hasattr(item, "model_dump"):
        return ContentChunk(type=kind, data=item.model_dump(mode="json"))
    return ContentChunk(type=kind, text=str(item))


class CapabilityClient:
    """
    Talks to one capability host through an initialised MCP session.

    Parameters
    ----------
    session:
        An initialised ``mcp.ClientSession`` (or anything with the same coroutines).
    tool_timeout:
        Seconds to wait for a single tool invocation; *None* waits indefinitely.
    """

    def __init__(self, session: Any, tool_timeout: float | None = 60.0):
        self._session = session
        self.tool_timeout = tool_timeout
        self._capabilities: Capabilities | None = None

    # ------------------------------------------------------------------ #
    # Connection
    # ------------------------------------------------------------------ #
    @classmethod
    @asynccontextmanager
    async def connect(
        cls, url: str, tool_timeout: float | None = 60.0
    ) -> AsyncIterator["CapabilityClient"]:
        """Open an SSE connection to the host at *url* and yield a ready client."""
        # pylint: disable=import-outside-toplevel
        from mcp import ClientSession
        from mcp.client.sse import sse_client

        async with sse_client(url) as (read_stream, write_stream):
            async with ClientSession(read_stream, write_stream) as session:
                await session.initialize()
                logger.info("Connected to capability host at %s", url)
                yield cls(session, tool_timeout=tool_timeout)
        logger.info("Disconnected from capability host.")

    # ------------------------------------------------------------------ #
    # Discovery
    # ------------------------------------------------------------------ #
    async def discover(self) -> Capabilities:
        """
        Return what the host advertises.  The first result is cached, so the tool set is frozen
        for the lifetime of this client.
        """
        if self._capabilities is not None:
            return self._capabilities

        tools_result = await self._session.list_tools()
        tools: List[ToolDescriptor] = []
        seen: set[str] = set()
        for tool in tools_result.tools:
            if tool.name in seen:
                logger.warning("Host advertised tool '%s' twice; keeping the first", tool.name)
                continue
            seen.add(tool.name)
            tools.append(
                ToolDescriptor(
                    name=tool.name,
                    description=tool.description or "",
                    input_schema=dict(tool.inputSchema or {}),
                )
            )

        resources = [
            ResourceDescriptor(
                uri=str(r.uri),
                name=r.name,
                description=r.description or "",
                mime_type=r.mimeType,
            )
            for r in (await self._session.list_resources()).resources
        ]
        templates = [
            ResourceDescriptor(
                uri=t.uriTemplate,
                name=t.name,
                description=t.description or "",
                mime_type=t.mimeType,
            )
            for t in (await self._session.list_resource_templates()).resourceTemplates
        ]
        prompts = [
            PromptDescriptor(
                name=p.name,
                description=p.description or "",
                arguments=tuple(a.name for a in (p.arguments or [])),
            )
            for p in (await self._session.list_prompts()).prompts
        ]

        self._capabilities = Capabilities(
            tools=tuple(tools),
            resources=tuple(resources),
            resource_templates=tuple(templates),
            prompts=tuple(prompts),
        )
        logger.info(
            "Discovered %d tools, %d resources, %d resource templates, %d prompts",
            len(tools),
            len(resources),
            len(templates),
            len(prompts),
        )
        return self._capabilities

    # ------------------------------------------------------------------ #
    # Tools
    # ------------------------------------------------------------------ #
    async def _call(self, call: ToolCall) -> ToolResult:
        if call.parse_error:
            raise ToolInvocationFailure(call.parse_error)

        coro = self._session.call_tool(call.name, call.args)
        if self.tool_timeout is not None:
            try:
                result = await asyncio.wait_for(coro, timeout=self.tool_timeout)
            except asyncio.TimeoutError as exc:
                raise ToolInvocationFailure(
                    f"Tool '{call.name}' timed out after {self.tool_timeout}s"
                ) from exc
        else:
            result = await coro

        chunks = [_to_chunk(item) for item in (result.content or [])]
        if getattr(result, "isError", False):
            reason = "\n".join(chunk.as_text() for chunk in chunks) or "tool reported an error"
            raise ToolInvocationFailure(reason)
        return ToolResult(call=call, ok=True, content=chunks)

    async def invoke(self, call: ToolCall) -> ToolResult:
        """Invoke one tool.  Never raises for a tool-level failure; see :attr:`ToolResult.ok`."""
        logger.debug("Invoking tool '%s' with args=%s", call.name, call.args)
        try:
            return await self._call(call)
        except ToolInvocationFailure as exc:
            logger.warning("Tool '%s' failed: %s", call.name, exc)
            return ToolResult(call=call, ok=False, error=str(exc))
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unhandled error invoking tool '%s'", call.name)
            return ToolResult(call=call, ok=False, error=f"{type(exc).__name__}: {exc}")

    async def invoke_all(self, calls: Sequence[ToolCall]) -> List[ToolResult]:
        """Invoke *calls* concurrently; results come back in request order."""
        results = await asyncio.gather(*(self.invoke(call) for call in calls))
        failed = sum(1 for result in results if not result.ok)
        if failed:
            logger.warning("%d of %d tool invocations failed", failed, len(results))
        return list(results)

    # ------------------------------------------------------------------ #
    # Resources & prompts
    # ------------------------------------------------------------------ #
    async def read_resource(self, uri: str) -> List[str]:
        """Return the text contents of the resource at *uri*."""
        result = await self._session.read_resource(AnyUrl(uri))
        return [getattr(item, "text", None) or str(item) for item in result.contents]

    async def get_prompt(
        self, name: str, arguments: Dict[str, str] | None = None
    ) -> List[ConversationMessage]:
        """Fetch prompt *name* and return its messages, ready to seed a conversation."""
        result = await self._session.get_prompt(name, arguments or {})
        messages = []
        for message in result.messages:
            text = getattr(message.content, "text", None)
            if text is None:
                text = str(message.content)
            messages.append(ConversationMessage(role=message.role, content=text))
        return messages
