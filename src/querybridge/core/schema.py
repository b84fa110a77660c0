"""
Schema definitions for model <-> loop <-> capability host messages.

These data models serve as the contract between the model gateway, the orchestration loop, the
capability client and the database layer.  We keep them separate from runtime logic so they can be
imported anywhere without side-effects.
"""

import json
from enum import Enum
from typing import (
    Any,
    Dict,
    List,
    Literal,
    Optional,
    Tuple,
    Union,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------
class ToolDescriptor(BaseModel):
    """A tool advertised by the capability host.  Immutable for the lifetime of a run."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Tool name, unique within a run")
    description: str = ""
    input_schema: Dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}},
        description="JSON schema of the tool arguments",
    )

    @property
    def parameters(self) -> Dict[str, Any]:
        """Return the argument schema normalised to an object schema."""
        return {
            "type": "object",
            "properties": self.input_schema.get("properties", {}),
            "required": list(self.input_schema.get("required", [])),
        }


class ToolCall(BaseModel):
    """A call that the model wants the loop to execute."""

    name: str = Field(..., description="Registered tool name")
    args: Dict[str, Any] = Field(default_factory=dict, description="Keyword arguments for the tool")
    call_id: Optional[str] = Field(None, description="Identifier assigned by the model backend")
    parse_error: Optional[str] = Field(
        None, description="Set when the backend sent arguments that are not a JSON object"
    )


class ContentChunk(BaseModel):
    """One piece of tool output, in the order the host returned it."""

    type: str = "text"
    text: Optional[str] = None
    data: Optional[Dict[str, Any]] = None

    def as_text(self) -> str:
        """Render the chunk as plain text."""
        if self.text is not None:
            return self.text
        return json.dumps(self.data or {}, default=str)


class ToolResult(BaseModel):
    """Outcome of a single :class:`ToolCall`."""

    call: ToolCall
    ok: bool
    content: List[ContentChunk] = Field(default_factory=list)
    error: Optional[str] = None

    @property
    def text(self) -> str:
        """All chunks joined into one block of text."""
        return "\n".join(chunk.as_text() for chunk in self.content)


class ResourceDescriptor(BaseModel):
    """A readable resource, or a resource template when ``uri`` holds ``{placeholders}``."""

    model_config = ConfigDict(frozen=True)

    uri: str
    name: str
    description: str = ""
    mime_type: Optional[str] = None


class PromptDescriptor(BaseModel):
    """A prompt template advertised by the capability host."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    arguments: Tuple[str, ...] = ()


class Capabilities(BaseModel):
    """Everything a capability host advertised at discovery time."""

    model_config = ConfigDict(frozen=True)

    tools: Tuple[ToolDescriptor, ...] = ()
    resources: Tuple[ResourceDescriptor, ...] = ()
    resource_templates: Tuple[ResourceDescriptor, ...] = ()
    prompts: Tuple[PromptDescriptor, ...] = ()


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------
class ToolResultContent(BaseModel):
    """Structured content of a message that carries a tool's output back to the model."""

    tool_name: str
    call_id: Optional[str] = None
    text: str

    def render(self) -> str:
        """Plain-text form used by backends that only accept string content."""
        return f"Result of tool '{self.tool_name}':\n{self.text}"


class ConversationMessage(BaseModel):
    """A single message of the conversation sent to the model."""

    role: Literal["system", "user", "assistant"]
    content: Union[str, ToolResultContent]

    @property
    def text(self) -> str:
        """Message content as plain text."""
        if isinstance(self.content, ToolResultContent):
            return self.content.render()
        return self.content


class ModelChoice(BaseModel):
    """One choice of a model response: free text, tool calls, or both."""

    content: Optional[str] = None
    tool_calls: List[ToolCall] = Field(default_factory=list)


class ModelResponse(BaseModel):
    """Normalised response of a text-generation backend."""

    choices: List[ModelChoice] = Field(default_factory=list)
    raw: Optional[Dict[str, Any]] = None


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------
class RetryPolicy(BaseModel):
    """Retry settings of a query executor."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(3, ge=1)
    backoff_base: float = Field(1.0, ge=0.0, description="Seconds, multiplied by the attempt number")


class AttemptOutcome(str, Enum):
    """How a single query attempt ended."""

    SUCCESS = "success"
    RETRYABLE = "retryable"
    FATAL = "fatal"


class QueryAttempt(BaseModel):
    """Record of one try of a query."""

    attempt: int
    sql: str
    outcome: AttemptOutcome
    error: Optional[str] = None
    code: Optional[str] = None


class QueryResult(BaseModel):
    """Rows returned by a query plus the attempts it took."""

    rows: List[Dict[str, Any]] = Field(default_factory=list)
    attempts: List[QueryAttempt] = Field(default_factory=list)


class SchemaColumn(BaseModel):
    """A column of a reflected table."""

    model_config = ConfigDict(frozen=True)

    name: str
    data_type: str
    nullable: bool = True


class SchemaTable(BaseModel):
    """A reflected table with its columns in ordinal order."""

    model_config = ConfigDict(frozen=True)

    name: str
    columns: Tuple[SchemaColumn, ...] = ()
