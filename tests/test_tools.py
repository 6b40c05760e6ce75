"""Tests for the tool executors: in-process registry and MCP stdio servers."""

import asyncio
import sys
import textwrap
from typing import Any

import pytest

from slop.core.config import McpServerConfig
from slop.core.errors import ToolExecutionError, ToolExecutorUnavailableError
from slop.services.tools.base import ToolResult, ToolSpec
from slop.services.tools.mcp import (
    McpConnectionError,
    McpProtocolError,
    McpServerInfo,
    McpToolExecutor,
    tool_result_from_dict,
)
from slop.services.tools.registry import RegistryToolExecutor, ToolRegistry
from tests.conftest import EchoTool


# Registry


def test_registry_lists_definitions(tool_executor):
    specs = asyncio.run(tool_executor.list_tools())
    names = [s.name for s in specs]
    assert names == ["echo", "explode"]
    echo = specs[0]
    assert echo.parameters["required"] == ["text"]
    assert echo.parameters["properties"]["text"]["type"] == "string"


def test_registry_executes_tool(tool_executor, echo_tool):
    result = asyncio.run(tool_executor.call_tool("echo", {"text": "hi"}))
    assert result == ToolResult(content="echo: hi")
    assert echo_tool.calls == [{"text": "hi"}]


def test_registry_unknown_tool(tool_executor):
    result = asyncio.run(tool_executor.call_tool("missing", {}))
    assert result.is_error
    assert result.content == "Unknown tool: missing"


def test_registry_tool_exception(tool_executor):
    with pytest.raises(ToolExecutionError) as exc:
        asyncio.run(tool_executor.call_tool("explode", {}))
    assert exc.value.tool_name == "explode"


def test_registry_requires_initialize():
    registry = ToolRegistry()
    registry.register(EchoTool())
    executor = RegistryToolExecutor(registry)

    with pytest.raises(ToolExecutorUnavailableError):
        asyncio.run(executor.call_tool("echo", {"text": "x"}))

    asyncio.run(executor.initialize())
    assert asyncio.run(executor.call_tool("echo", {"text": "x"})).content == "echo: x"

    asyncio.run(executor.shutdown())
    with pytest.raises(ToolExecutorUnavailableError):
        asyncio.run(executor.list_tools())


# MCP routing, with transports faked out


class FakeTransport:
    def __init__(self, tools: list[str], fail_with: Exception | None = None):
        self.tools = tools
        self.fail_with = fail_with
        self.calls: list[tuple[str, dict]] = []
        self.connected = False

    async def connect(self) -> McpServerInfo:
        self.connected = True
        return McpServerInfo("fake", "1.0", "2024-11-05")

    async def disconnect(self) -> None:
        self.connected = False

    async def list_tools(self) -> list[ToolSpec]:
        return [ToolSpec(name=name, description=f"{name} tool") for name in self.tools]

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        if self.fail_with:
            raise self.fail_with
        self.calls.append((name, arguments))
        return ToolResult(content=f"{name} ran")


class FakeMcpExecutor(McpToolExecutor):
    def __init__(self, transports: dict[str, FakeTransport]):
        super().__init__({name: McpServerConfig(command=name) for name in transports})
        self.fakes = transports

    def _make_transport(self, config: McpServerConfig):
        return self.fakes[config.command]


def test_mcp_routes_calls_to_owning_server():
    weather = FakeTransport(["getCurrentWeather"])
    writing = FakeTransport(["essay"])
    executor = FakeMcpExecutor({"weather": weather, "writing": writing})

    async def run():
        await executor.initialize()
        names = [t.name for t in await executor.list_tools()]
        result = await executor.call_tool("essay", {"topic": "rivers"})
        return names, result

    names, result = asyncio.run(run())
    assert names == ["getCurrentWeather", "essay"]
    assert result.content == "essay ran"
    assert writing.calls == [("essay", {"topic": "rivers"})]
    assert weather.calls == []


def test_mcp_first_server_wins_duplicate_names():
    first = FakeTransport(["search"])
    second = FakeTransport(["search", "fetch"])
    executor = FakeMcpExecutor({"first": first, "second": second})

    async def run():
        await executor.initialize()
        await executor.call_tool("search", {})
        return [t.name for t in await executor.list_tools()]

    assert asyncio.run(run()) == ["search", "fetch"]
    assert first.calls == [("search", {})]
    assert second.calls == []


def test_mcp_unknown_tool_is_error_result():
    executor = FakeMcpExecutor({"weather": FakeTransport(["getCurrentWeather"])})

    async def run():
        await executor.initialize()
        return await executor.call_tool("nope", {})

    result = asyncio.run(run())
    assert result.is_error
    assert "nope" in result.content


def test_mcp_requires_initialize():
    executor = FakeMcpExecutor({"weather": FakeTransport(["getCurrentWeather"])})
    with pytest.raises(ToolExecutorUnavailableError):
        asyncio.run(executor.call_tool("getCurrentWeather", {}))


def test_mcp_lost_server_is_unavailable():
    transport = FakeTransport(["getCurrentWeather"], fail_with=McpConnectionError("gone"))
    executor = FakeMcpExecutor({"weather": transport})

    async def run():
        await executor.initialize()
        await executor.call_tool("getCurrentWeather", {})

    with pytest.raises(ToolExecutorUnavailableError):
        asyncio.run(run())


def test_mcp_protocol_error_is_tool_failure():
    transport = FakeTransport(["getCurrentWeather"], fail_with=McpProtocolError("bad params"))
    executor = FakeMcpExecutor({"weather": transport})

    async def run():
        await executor.initialize()
        await executor.call_tool("getCurrentWeather", {})

    with pytest.raises(ToolExecutionError):
        asyncio.run(run())


def test_mcp_shutdown_disconnects():
    transport = FakeTransport(["getCurrentWeather"])
    executor = FakeMcpExecutor({"weather": transport})

    async def run():
        await executor.initialize()
        assert transport.connected
        await executor.shutdown()

    asyncio.run(run())
    assert not transport.connected


def test_tool_result_from_dict():
    result = tool_result_from_dict({
        "content": [{"type": "text", "text": "line one"}, {"type": "text", "text": "line two"}],
        "isError": True,
    })
    assert result == ToolResult(content="line one\nline two", is_error=True)


# MCP over a real subprocess

SERVER_SCRIPT = textwrap.dedent(
    """
    import json
    import sys

    for line in sys.stdin:
        msg = json.loads(line)
        if "id" not in msg:
            continue
        method = msg["method"]
        if method == "initialize":
            result = {"protocolVersion": "2024-11-05", "serverInfo": {"name": "echo-server", "version": "1.2.3"}}
        elif method == "tools/list":
            result = {"tools": [{"name": "shout", "description": "Upper-case text",
                                 "inputSchema": {"type": "object", "properties": {"text": {"type": "string"}}}}]}
        elif method == "tools/call":
            # A notification first, to check that unrelated messages are skipped
            print(json.dumps({"jsonrpc": "2.0", "method": "notifications/progress", "params": {}}), flush=True)
            result = {"content": [{"type": "text", "text": msg["params"]["arguments"]["text"].upper()}]}
        else:
            print(json.dumps({"jsonrpc": "2.0", "id": msg["id"],
                              "error": {"code": -32601, "message": "no such method"}}), flush=True)
            continue
        print(json.dumps({"jsonrpc": "2.0", "id": msg["id"], "result": result}), flush=True)
    """
)


def test_mcp_stdio_server(tmp_path):
    script = tmp_path / "server.py"
    script.write_text(SERVER_SCRIPT)
    executor = McpToolExecutor({"echo": McpServerConfig(command=sys.executable, args=["-u", str(script)])}, timeout=10)

    async def run():
        await executor.initialize()
        try:
            specs = await executor.list_tools()
            result = await executor.call_tool("shout", {"text": "hello"})
        finally:
            await executor.shutdown()
        return specs, result

    specs, result = asyncio.run(run())
    assert [s.name for s in specs] == ["shout"]
    assert specs[0].parameters["properties"]["text"]["type"] == "string"
    assert result == ToolResult(content="HELLO")


def test_mcp_missing_command():
    executor = McpToolExecutor({"ghost": McpServerConfig(command="/nonexistent/mcp-server")})
    with pytest.raises(ToolExecutorUnavailableError):
        asyncio.run(executor.initialize())
