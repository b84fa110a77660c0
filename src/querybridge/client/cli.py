"""CLI client: runs the orchestration loop against a capability host."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import (
    List,
    Tuple,
)

import httpx

from querybridge.agent.agent_loop import (
    LoopResult,
    StopReason,
    TurnLimitExceededError,
    run_agent_loop,
)
from querybridge.agent.capability_client import CapabilityClient
from querybridge.agent.gateway import (
    BaseGateway,
    UpstreamModelError,
    load_gateway,
)
from querybridge.common import (
    AnsiColors,
    colored_print,
)
from querybridge.config import (
    Settings,
    settings as default_settings,
)
from querybridge.core.schema import ConversationMessage

logger = logging.getLogger(__name__)

DEFAULT_MESSAGE = "What is the sum of 2 and 3?"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def health_url(server_url: str) -> str:
    """``http://host:port/sse`` -> ``http://host:port/health``."""
    return str(httpx.URL(server_url).copy_with(path="/health", query=None))


async def wait_for_host(server_url: str, max_retries: int = 5) -> bool:
    """Poll the host's health route until it answers, retrying connection errors with backoff."""
    url = health_url(server_url)
    async with httpx.AsyncClient(timeout=10.0) as client:
        for attempt in range(max_retries):
            try:
                response = await client.get(url)
                response.raise_for_status()
                return True
            except httpx.ConnectError:
                if attempt == max_retries - 1:
                    break
                retry_delay = 0.5 * (2**attempt)  # exponential backoff: 0.5s, 1s, 2s, 4s...
                logger.info(
                    "Capability host not ready yet, retrying in %.1f seconds (attempt %d/%d)...",
                    retry_delay,
                    attempt + 1,
                    max_retries,
                )
                await asyncio.sleep(retry_delay)
            except httpx.HTTPError as e:
                logger.error("Health check failed: %s", e)
                return False
    logger.error("Failed to reach capability host after %d attempts", max_retries)
    return False


def initial_messages(message: str, system_prompt: str) -> List[ConversationMessage]:
    """The system + user messages a run starts from."""
    return [
        ConversationMessage(role="system", content=system_prompt),
        ConversationMessage(role="user", content=message),
    ]


def print_result(result: LoopResult) -> None:
    """Show tool outcomes and the final answer."""
    for tool_result in result.results:
        if tool_result.ok:
            colored_print(f"[{tool_result.call.name}] {tool_result.text}", AnsiColors.GREEN)
        else:
            colored_print(f"⚠️ [{tool_result.call.name}] {tool_result.error}", AnsiColors.RED)
    if result.stop_reason is StopReason.ALL_TOOLS_FAILED:
        colored_print(
            f"⚠️ All tool calls of the last turn failed ({len(result.failures)} failures).",
            AnsiColors.RED,
        )
    colored_print(result.text or "(no answer)", AnsiColors.YELLOW)


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------
async def ask(
    message: str = DEFAULT_MESSAGE,
    settings: Settings | None = None,
    gateway: BaseGateway | None = None,
) -> LoopResult:
    """Connect to the host, run one conversation for *message* and return its result."""
    settings = settings or default_settings
    gateway = gateway or load_gateway(settings=settings)
    colored_print(f"Message: {message}", AnsiColors.BLUE)

    async with CapabilityClient.connect(
        settings.MCP_SERVER_URL, tool_timeout=settings.TOOL_TIMEOUT
    ) as client:
        capabilities = await client.discover()
        logger.info(
            "Tools: %s",
            json.dumps([tool.model_dump() for tool in capabilities.tools], indent=2),
        )
        result = await run_agent_loop(
            gateway,
            client,
            initial_messages(message, settings.SYSTEM_PROMPT),
            capabilities.tools,
            max_turns=settings.MAX_TURNS,
            max_result_length=settings.TOOL_RESULT_MAX_LENGTH,
        )
    print_result(result)
    return result


def get_user_message() -> Tuple[str, bool]:
    """
    Get a message from the user via standard input.

    Returns:
        Tuple of (user_input, success_flag)
        The success_flag is False if input couldn't be read (e.g., Ctrl+C)
    """
    try:
        user_input = input().strip()
        return user_input, True
    except (EOFError, KeyboardInterrupt):
        return "", False


async def run_shell(settings: Settings | None = None) -> None:
    """Interactive shell; the conversation is kept in memory until the process exits."""
    settings = settings or default_settings
    gateway = load_gateway(settings=settings)

    async with CapabilityClient.connect(
        settings.MCP_SERVER_URL, tool_timeout=settings.TOOL_TIMEOUT
    ) as client:
        tools = (await client.discover()).tools
        conversation = [ConversationMessage(role="system", content=settings.SYSTEM_PROMPT)]

        colored_print(
            "\n🔮 querybridge shell - type 'exit' or 'quit' (or Ctrl+C) to exit", AnsiColors.GREEN
        )
        while True:
            colored_print("\n🧑 You: ", AnsiColors.BLUE, end="")
            user_msg, ok = await asyncio.to_thread(get_user_message)
            if not ok:
                break  # Exit if user input couldn't be retrieved (e.g., Ctrl+C)
            if user_msg.lower() in {"exit", "quit"}:
                break
            if not user_msg:
                continue

            conversation.append(ConversationMessage(role="user", content=user_msg))
            try:
                result = await run_agent_loop(
                    gateway,
                    client,
                    conversation,
                    tools,
                    max_turns=settings.MAX_TURNS,
                    max_result_length=settings.TOOL_RESULT_MAX_LENGTH,
                )
            except (TurnLimitExceededError, UpstreamModelError) as exc:
                logger.error("Run failed: %s", exc)
                colored_print(f"⚠️ {exc}", AnsiColors.RED)
                continue
            conversation = result.messages
            print_result(result)


def run_cli(mode: str = "ask", message: str | None = None, settings: Settings | None = None) -> int:
    """Blocking wrapper used by ``main.py``.  Returns a process exit code."""
    settings = settings or default_settings
    if not asyncio.run(wait_for_host(settings.MCP_SERVER_URL)):
        colored_print("⚠️ Capability host is not reachable", AnsiColors.RED)
        return 1

    if mode == "shell":
        asyncio.run(run_shell(settings))
        return 0

    try:
        asyncio.run(ask(message or DEFAULT_MESSAGE, settings))
    except (TurnLimitExceededError, UpstreamModelError) as exc:
        logger.error("Run failed: %s", exc)
        colored_print(f"⚠️ {exc}", AnsiColors.RED)
        return 1
    return 0
