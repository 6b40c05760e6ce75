"""Tool executor factory."""

from slop.core.config import settings
from slop.services.tools.base import ToolExecutor


def get_tool_executor() -> ToolExecutor:
    """MCP servers when any are configured, otherwise the in-process registry."""
    if settings.mcp_servers:
        from slop.services.tools.mcp import McpToolExecutor
        return McpToolExecutor(settings.mcp_servers, timeout=settings.mcp_timeout)
    from slop.services.tools.registry import RegistryToolExecutor
    return RegistryToolExecutor()
