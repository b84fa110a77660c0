"""Main orchestration loop for querybridge."""

from __future__ import annotations

import logging
from enum import Enum
from typing import (
    List,
    Sequence,
)

from pydantic import (
    BaseModel,
    Field,
)

from querybridge.agent.capability_client import CapabilityClient
from querybridge.agent.gateway import BaseGateway
from querybridge.common import truncate_text
from querybridge.core.schema import (
    ConversationMessage,
    ModelResponse,
    ToolCall,
    ToolDescriptor,
    ToolResult,
    ToolResultContent,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_TURNS = 10
DEFAULT_TOOL_RESULT_MAX_LENGTH = 10_000


class TurnLimitExceededError(RuntimeError):
    """Raised when the model is still requesting tools after the maximum number of turns."""


class StopReason(str, Enum):
    """Why a run ended."""

    NO_TOOL_CALLS = "no_tool_calls"
    ALL_TOOLS_FAILED = "all_tools_failed"
    EMPTY_TOOL_RESULTS = "empty_tool_results"


class LoopResult(BaseModel):
    """Outcome of :func:`run_agent_loop`."""

    text: str = Field("", description="Latest plain-text content of the model")
    messages: List[ConversationMessage] = Field(default_factory=list)
    turns: int = Field(0, description="Number of model calls made")
    stop_reason: StopReason
    results: List[ToolResult] = Field(default_factory=list, description="Every tool outcome")

    @property
    def failures(self) -> List[ToolResult]:
        """Tool invocations that failed during the run."""
        return [result for result in self.results if not result.ok]


# ---------------------------------------------------------------------------
# Turn folding
# ---------------------------------------------------------------------------
def response_text(response: ModelResponse) -> str:
    """Free text of every choice, joined."""
    return "\n".join(choice.content for choice in response.choices if choice.content)


def requested_calls(response: ModelResponse) -> List[ToolCall]:
    """Tool calls of every choice, in order."""
    return [call for choice in response.choices for call in choice.tool_calls]


def fold_turn(
    text: str, results: Sequence[ToolResult], max_result_length: int
) -> List[ConversationMessage]:
    """
    Messages to append after a turn: the model's text (if any) first, then one message per
    successful tool result with non-empty text, each capped at *max_result_length* characters.
    """
    folded: List[ConversationMessage] = []
    if text:
        folded.append(ConversationMessage(role="assistant", content=text))
    for result in results:
        if not result.ok or not result.text:
            continue
        folded.append(
            ConversationMessage(
                role="user",
                content=ToolResultContent(
                    tool_name=result.call.name,
                    call_id=result.call.call_id,
                    text=truncate_text(result.text, max_result_length),
                ),
            )
        )
    return folded


# ---------------------------------------------------------------------------
# Agent Loop
# ---------------------------------------------------------------------------
async def run_agent_loop(
    gateway: BaseGateway,
    client: CapabilityClient,
    messages: Sequence[ConversationMessage],
    tools: Sequence[ToolDescriptor],
    *,
    max_turns: int = DEFAULT_MAX_TURNS,
    max_result_length: int = DEFAULT_TOOL_RESULT_MAX_LENGTH,
) -> LoopResult:
    """
    Drive the conversation until the model stops producing tool results.

    Each turn sends the conversation to *gateway*.  When the response requests tools they are
    invoked concurrently through *client* and the successful, non-empty results are folded back
    into the conversation.  The run stops when a turn yields nothing to fold: no tool was
    requested, every requested tool failed (logged, ``StopReason.ALL_TOOLS_FAILED``), or the
    tools that succeeded returned no text (``StopReason.EMPTY_TOOL_RESULTS``).

    The caller's *messages* are not modified.  Cancelling the task running this coroutine cancels
    the in-flight model call and tool invocations.

    Raises
    ------
    TurnLimitExceededError
        If the model still requests tools after *max_turns* model calls.
    UpstreamModelError
        Propagated from the gateway.
    """
    conversation = list(messages)
    all_results: List[ToolResult] = []

    for turn in range(1, max_turns + 1):
        response = await gateway.complete(conversation, tools)
        text = response_text(response)
        calls = requested_calls(response)

        if not calls:
            logger.info("Turn %d: no tool calls, run complete", turn)
            if text:
                conversation.append(ConversationMessage(role="assistant", content=text))
            return LoopResult(
                text=text,
                messages=conversation,
                turns=turn,
                stop_reason=StopReason.NO_TOOL_CALLS,
                results=all_results,
            )

        logger.info(
            "Turn %d: model requested %d tool calls: %s",
            turn,
            len(calls),
            [call.name for call in calls],
        )
        results = await client.invoke_all(calls)
        all_results.extend(results)
        usable = [result for result in results if result.ok and result.text]

        if not usable:
            if any(result.ok for result in results):
                stop_reason = StopReason.EMPTY_TOOL_RESULTS
                logger.info("Turn %d: tools returned no text, run complete", turn)
            else:
                stop_reason = StopReason.ALL_TOOLS_FAILED
                logger.warning(
                    "Turn %d: all %d tool invocations failed, ending the run", turn, len(results)
                )
            if text:
                conversation.append(ConversationMessage(role="assistant", content=text))
            return LoopResult(
                text=text,
                messages=conversation,
                turns=turn,
                stop_reason=stop_reason,
                results=all_results,
            )

        conversation.extend(fold_turn(text, usable, max_result_length))

    raise TurnLimitExceededError(f"Model still requested tools after {max_turns} turns")
