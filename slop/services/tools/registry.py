"""Tool registry - in-process tools exposed through the ToolExecutor interface."""

import logging
from typing import Any

from slop.core.errors import ToolExecutionError, ToolExecutorUnavailableError
from slop.services.tools.base import BaseTool, ToolExecutor, ToolResult, ToolSpec

logger = logging.getLogger(__name__)


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: dict[str, BaseTool] = {}

    def register(self, tool: BaseTool) -> None:
        defn = tool.definition()
        self._tools[defn.name] = tool

    def get(self, name: str) -> BaseTool | None:
        return self._tools.get(name)

    def definitions(self) -> list[ToolSpec]:
        return [tool.definition() for tool in self._tools.values()]


class RegistryToolExecutor(ToolExecutor):
    def __init__(self, registry: ToolRegistry | None = None):
        self.registry = registry or ToolRegistry()
        self._initialized = False

    async def initialize(self) -> None:
        self._initialized = True
        logger.info(f"Tool registry ready with {len(self.registry.definitions())} tools")

    async def shutdown(self) -> None:
        self._initialized = False

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise ToolExecutorUnavailableError("Tool registry has not been initialized")

    async def list_tools(self) -> list[ToolSpec]:
        self._ensure_initialized()
        return self.registry.definitions()

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        self._ensure_initialized()
        tool = self.registry.get(name)
        if not tool:
            return ToolResult(content=f"Unknown tool: {name}", is_error=True)
        try:
            return ToolResult(content=await tool.execute(**arguments))
        except Exception as e:
            raise ToolExecutionError(name, str(e)) from e
