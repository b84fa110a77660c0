"""
Model gateway for querybridge.

This module is the only place that *directly* calls an LLM.  Everything else (orchestration loop,
capability client, tools) stays model-agnostic.

We support two back-ends out of the box:

1. **OpenAI Chat Completions**, against api.openai.com or an Azure OpenAI deployment.
2. **Anthropic Messages**.

Additional providers can be added by subclassing :class:`BaseGateway` and registering via
:func:`register_gateway`.  Gateways never retry: upstream errors are raised as
:class:`UpstreamModelError` and end the run.
"""

import json
import logging
from abc import (
    ABC,
    abstractmethod,
)
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Sequence,
    Type,
)

from querybridge.config import (
    Settings,
    settings as default_settings,
)
from querybridge.core.schema import (
    ConversationMessage,
    ModelChoice,
    ModelResponse,
    ToolCall,
    ToolDescriptor,
)

logger = logging.getLogger(__name__)


class UpstreamModelError(RuntimeError):
    """The text-generation service rejected the request or is unavailable."""


def parse_tool_arguments(name: str, raw: str | None, call_id: str | None = None) -> ToolCall:
    """
    Build a :class:`ToolCall` from JSON-encoded *raw* arguments.

    Arguments that are not a JSON object do not raise; the call is returned with ``parse_error``
    set so that only this invocation fails.
    """
    try:
        args = json.loads(raw) if raw else {}
    except json.JSONDecodeError as exc:
        logger.error("Failed to parse arguments for tool '%s': %s", name, str(raw)[:200])
        return ToolCall(name=name, call_id=call_id, parse_error=f"Invalid JSON arguments: {exc}")
    if not isinstance(args, dict):
        return ToolCall(
            name=name, call_id=call_id, parse_error="Tool arguments must be a JSON object"
        )
    return ToolCall(name=name, args=args, call_id=call_id)


# ---------------------------------------------------------------------------
# Registry helpers
# ---------------------------------------------------------------------------
_GATEWAY_REGISTRY: dict[str, Type["BaseGateway"]] = {}


def register_gateway(name: str) -> Callable:
    """Decorator to register a gateway class under *name*."""

    def wrapper(cls: Type["BaseGateway"]) -> Type["BaseGateway"]:
        _GATEWAY_REGISTRY[name] = cls
        return cls

    return wrapper


def load_gateway(name: str | None = None, settings: Settings | None = None) -> "BaseGateway":
    """
    Factory that returns an instantiated gateway.

    Fallback order:
    1. *name* arg
    2. ``settings.MODEL_PROVIDER`` env option
    """
    settings = settings or default_settings
    target = name or settings.MODEL_PROVIDER
    cls = _GATEWAY_REGISTRY.get(target.lower())
    if cls is None:
        raise ValueError(f"Model gateway '{target}' is not registered.")
    return cls(settings)


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------
class BaseGateway(ABC):
    """Abstract gateway that sends a conversation + tool set to a model."""

    def __init__(self, settings: Settings):
        self.settings = settings

    @abstractmethod
    async def complete(
        self, messages: Sequence[ConversationMessage], tools: Sequence[ToolDescriptor]
    ) -> ModelResponse:
        """Return the model's choices for *messages*, offering *tools*."""


# ---------------------------------------------------------------------------
# Concrete gateways
# ---------------------------------------------------------------------------
def to_openai_tool(tool: ToolDescriptor) -> Dict[str, Any]:
    """Convert a tool descriptor to the OpenAI function-calling format."""
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description,
            "parameters": tool.parameters,
        },
    }


def to_openai_messages(messages: Sequence[ConversationMessage]) -> List[Dict[str, Any]]:
    """Render the conversation as Chat Completions messages."""
    return [{"role": m.role, "content": m.text} for m in messages]


@register_gateway("openai")
class OpenAIGateway(BaseGateway):
    """OpenAI Chat Completions gateway.  Uses Azure OpenAI when an Azure endpoint is configured."""

    def __init__(self, settings: Settings, client: Any = None):
        super().__init__(settings)
        self._client = client

    @property
    def client(self) -> Any:
        """The SDK client, created on first use."""
        if self._client is None:
            import openai  # pylint: disable=import-outside-toplevel

            if self.settings.AZURE_OPENAI_ENDPOINT:
                logger.info("Using Azure OpenAI endpoint %s", self.settings.AZURE_OPENAI_ENDPOINT)
                self._client = openai.AsyncAzureOpenAI(
                    azure_endpoint=self.settings.AZURE_OPENAI_ENDPOINT,
                    api_key=self.settings.OPENAI_API_KEY,
                    api_version=self.settings.AZURE_OPENAI_API_VERSION,
                    azure_deployment=self.settings.OPENAI_MODEL,
                    timeout=self.settings.MODEL_TIMEOUT,
                    max_retries=0,
                )
            else:
                logger.info("Using OpenAI API Key")
                self._client = openai.AsyncOpenAI(
                    api_key=self.settings.OPENAI_API_KEY,
                    timeout=self.settings.MODEL_TIMEOUT,
                    max_retries=0,
                )
        return self._client

    async def complete(
        self, messages: Sequence[ConversationMessage], tools: Sequence[ToolDescriptor]
    ) -> ModelResponse:
        import openai  # pylint: disable=import-outside-toplevel

        request: Dict[str, Any] = {
            "model": self.settings.OPENAI_MODEL,
            "max_tokens": self.settings.MAX_OUTPUT_TOKENS,
            "messages": to_openai_messages(messages),
        }
        if tools:
            request["tools"] = [to_openai_tool(tool) for tool in tools]

        try:
            resp = await self.client.chat.completions.create(**request)
        except openai.APIError as exc:
            logger.error("OpenAI gateway error: %s", exc)
            raise UpstreamModelError(str(exc)) from exc

        choices = []
        for choice in resp.choices:
            message = choice.message
            calls = [
                parse_tool_arguments(tc.function.name, tc.function.arguments, tc.id)
                for tc in (message.tool_calls or [])
            ]
            choices.append(ModelChoice(content=message.content or None, tool_calls=calls))

        logger.debug("OpenAI gateway response: %s", choices)
        return ModelResponse(choices=choices, raw=resp.model_dump())


def to_anthropic_tool(tool: ToolDescriptor) -> Dict[str, Any]:
    """Convert a tool descriptor to the Anthropic tool format."""
    return {"name": tool.name, "description": tool.description, "input_schema": tool.parameters}


@register_gateway("anthropic")
class AnthropicGateway(BaseGateway):
    """Anthropic Claude gateway."""

    def __init__(self, settings: Settings, client: Any = None):
        super().__init__(settings)
        self._client = client

    @property
    def client(self) -> Any:
        """The SDK client, created on first use."""
        if self._client is None:
            import anthropic  # pylint: disable=import-outside-toplevel

            self._client = anthropic.AsyncAnthropic(
                api_key=self.settings.ANTHROPIC_API_KEY,
                timeout=self.settings.MODEL_TIMEOUT,
                max_retries=0,
            )
        return self._client

    async def complete(
        self, messages: Sequence[ConversationMessage], tools: Sequence[ToolDescriptor]
    ) -> ModelResponse:
        import anthropic  # pylint: disable=import-outside-toplevel

        # Anthropic takes the system prompt separately from the turns.
        system = "\n\n".join(m.text for m in messages if m.role == "system")
        request: Dict[str, Any] = {
            "model": self.settings.ANTHROPIC_MODEL,
            "max_tokens": self.settings.MAX_OUTPUT_TOKENS,
            "messages": [
                {"role": m.role, "content": m.text} for m in messages if m.role != "system"
            ],
        }
        if system:
            request["system"] = system
        if tools:
            request["tools"] = [to_anthropic_tool(tool) for tool in tools]

        try:
            response = await self.client.messages.create(**request)
        except anthropic.APIError as exc:
            logger.error("Anthropic gateway error: %s", exc)
            raise UpstreamModelError(str(exc)) from exc

        texts: List[str] = []
        calls: List[ToolCall] = []
        for block in response.content:
            if block.type == "text":
                texts.append(block.text)
            elif block.type == "tool_use":
                args = block.input if isinstance(block.input, dict) else {}
                calls.append(ToolCall(name=block.name, args=args, call_id=block.id))

        choice = ModelChoice(content="\n".join(texts) or None, tool_calls=calls)
        logger.debug("Anthropic gateway response: %s", choice)
        return ModelResponse(choices=[choice], raw=response.model_dump())
