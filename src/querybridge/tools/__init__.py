"""
Tool registry for querybridge.

A :class:`CapabilityRegistry` maps tool names to async handler functions.  It is filled once at
startup, frozen, and then installed on a FastMCP server, which validates arguments and turns
handler exceptions into error results.  Names are checked explicitly: adding a name twice raises
instead of overwriting the first handler.
"""

import inspect
import logging
from dataclasses import (
    dataclass,
    field,
)
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Tuple,
    get_type_hints,
)

from querybridge.core.schema import ToolDescriptor

logger = logging.getLogger(__name__)

ToolHandler = Callable[..., Awaitable[Any]]

_JSON_TYPES: Mapping[Any, str] = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    dict: "object",
    list: "array",
}


class ToolNameConflictError(ValueError):
    """Raised when a tool name is already taken in the registry."""


class RegistryFrozenError(RuntimeError):
    """Raised when a frozen registry is modified."""


def build_input_schema(fn: Callable) -> Dict[str, Any]:
    """Derive a JSON schema for the keyword arguments of *fn* from its signature."""
    sig = inspect.signature(fn)
    type_hints = get_type_hints(fn)
    properties: Dict[str, Any] = {}
    required: List[str] = []
    for param_name, param in sig.parameters.items():
        json_type = _JSON_TYPES.get(type_hints.get(param_name), "string")
        properties[param_name] = {"type": json_type}
        if param.default is inspect.Parameter.empty:
            required.append(param_name)
    return {"type": "object", "properties": properties, "required": required}


@dataclass(frozen=True)
class ToolSpec:
    """A registered tool: its public name, description and handler."""

    name: str
    description: str
    handler: ToolHandler
    input_schema: Dict[str, Any] = field(default_factory=dict)

    def descriptor(self) -> ToolDescriptor:
        """Return the public description of this tool."""
        return ToolDescriptor(
            name=self.name, description=self.description, input_schema=self.input_schema
        )


class CapabilityRegistry:
    """Explicit name -> tool mapping, built once and then frozen."""

    def __init__(self) -> None:
        self._tools: Dict[str, ToolSpec] = {}
        self._frozen = False
        self.conflicts: List[str] = []

    # ------------------------------------------------------------------ #
    # Building
    # ------------------------------------------------------------------ #
    def add(self, name: str, handler: ToolHandler, description: str | None = None) -> ToolSpec:
        """
        Register *handler* under *name*.

        Raises
        ------
        ToolNameConflictError
            If *name* is already registered.
        RegistryFrozenError
            If the registry has been frozen.
        """
        if self._frozen:
            raise RegistryFrozenError(f"Cannot add tool '{name}': registry is frozen.")
        if name in self._tools:
            raise ToolNameConflictError(f"Tool '{name}' is already registered.")
        spec = ToolSpec(
            name=name,
            description=(description or inspect.getdoc(handler) or "").strip(),
            handler=handler,
            input_schema=build_input_schema(handler),
        )
        self._tools[name] = spec
        logger.debug("Registering tool '%s'", name)
        return spec

    def freeze(self) -> "CapabilityRegistry":
        """Refuse any further additions."""
        self._frozen = True
        logger.info("Tool registry frozen with %d tools: %s", len(self._tools), self.names())
        return self

    @property
    def frozen(self) -> bool:
        """True once :meth:`freeze` has been called."""
        return self._frozen

    # ------------------------------------------------------------------ #
    # Lookup
    # ------------------------------------------------------------------ #
    def names(self) -> List[str]:
        """Registered tool names, in registration order."""
        return list(self._tools)

    def __len__(self) -> int:
        return len(self._tools)

    def descriptors(self) -> Tuple[ToolDescriptor, ...]:
        """Public descriptions of every registered tool."""
        return tuple(spec.descriptor() for spec in self._tools.values())

    # ------------------------------------------------------------------ #
    # Serving
    # ------------------------------------------------------------------ #
    def install(self, server: Any) -> None:
        """Register every tool on a FastMCP *server*."""
        for spec in self._tools.values():
            server.tool(name=spec.name, description=spec.description)(spec.handler)
        logger.info("Installed %d tools on the capability host", len(self._tools))
