"""
Pydantic models for the querybridge HTTP API.
This module defines the response schemas of the plain HTTP routes served next to the MCP endpoints.
"""

from typing import List

from pydantic import (
    BaseModel,
    Field,
)

from querybridge.core.schema import ToolDescriptor


# ---------------------------------------------------------------------------
# Pydantic response schema
# ---------------------------------------------------------------------------
class HealthResponse(BaseModel):
    """Liveness payload."""

    status: str = "ok"
    tools: int = Field(0, description="Number of tools served")


class ToolListResponse(BaseModel):
    """The frozen tool set of the capability host."""

    tools: List[ToolDescriptor]
    skipped_tables: List[str] = Field(
        default_factory=list, description="Tables whose tool name collided with another tool"
    )
