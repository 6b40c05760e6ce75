"""Tool interfaces: tool specs, in-process tools, and the executor boundary the agent calls."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


@dataclass
class ToolParameter:
    name: str
    type: str  # "string" | "integer" | "boolean" | "number" | "array" | "object"
    description: str
    required: bool = True
    enum: list[str] | None = None


@dataclass
class ToolSpec:
    """A tool as declared to the model: name, description and a JSON schema."""

    name: str
    description: str
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )

    @classmethod
    def from_parameters(cls, name: str, description: str, parameters: list[ToolParameter]) -> "ToolSpec":
        properties = {}
        required = []
        for param in parameters:
            prop: dict[str, Any] = {"type": param.type, "description": param.description}
            if param.enum:
                prop["enum"] = param.enum
            properties[param.name] = prop
            if param.required:
                required.append(param.name)

        return cls(
            name=name,
            description=description,
            parameters={"type": "object", "properties": properties, "required": required},
        )


@dataclass
class ToolResult:
    content: str
    is_error: bool = False


class BaseTool(ABC):
    @abstractmethod
    def definition(self) -> ToolSpec:
        """Return the tool's spec for LLM function calling."""
        ...

    @abstractmethod
    async def execute(self, **kwargs: Any) -> str:
        """Execute the tool with the given arguments. Returns a string result."""
        ...


class ToolExecutor(ABC):
    """Host that lists and runs tools on behalf of the agent loop.

    `initialize()` and `shutdown()` bracket the executor's use. `call_tool`
    reports tool-level failures through `ToolResult.is_error` (or by raising
    `ToolExecutionError`); it raises `ToolExecutorUnavailableError` when the
    host itself cannot be used.
    """

    async def initialize(self) -> None:
        return None

    async def shutdown(self) -> None:
        return None

    @abstractmethod
    async def list_tools(self) -> list[ToolSpec]:
        ...

    @abstractmethod
    async def call_tool(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        ...
