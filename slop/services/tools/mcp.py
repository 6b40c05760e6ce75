"""MCP tool host: one stdio subprocess per configured server, JSON-RPC 2.0 line protocol.

Each server is spawned on `initialize()`, handshakes, and reports its tools.
Tool names are routed to the server that advertised them; the first server
to claim a name wins.
"""

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from typing import Any

from slop.core.config import McpServerConfig
from slop.core.errors import ToolExecutionError, ToolExecutorUnavailableError
from slop.services.tools.base import ToolExecutor, ToolResult, ToolSpec

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0  # seconds
DEFAULT_INIT_TIMEOUT = 10.0  # seconds for initialization

# MCP protocol version we support
PROTOCOL_VERSION = "2024-11-05"


class McpTransportError(Exception):
    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(message)
        self.cause = cause


class McpConnectionError(McpTransportError):
    """Error establishing or maintaining the connection to an MCP server."""


class McpProtocolError(McpTransportError):
    """The server answered with a JSON-RPC error or an unparsable message."""


class McpTimeoutError(McpTransportError):
    pass


@dataclass
class McpServerInfo:
    name: str
    version: str
    protocol_version: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "McpServerInfo":
        info = data.get("serverInfo", {})
        return cls(
            name=info.get("name", "unknown"),
            version=info.get("version", "0.0.0"),
            protocol_version=data.get("protocolVersion", PROTOCOL_VERSION),
        )


def tool_result_from_dict(data: dict[str, Any]) -> ToolResult:
    """Flatten an MCP `tools/call` result into a ToolResult."""
    texts = []
    for item in data.get("content", []):
        if item.get("type") == "text":
            texts.append(item.get("text", ""))
        else:
            texts.append(json.dumps(item))
    return ToolResult(content="\n".join(texts), is_error=bool(data.get("isError", False)))


class StdioTransport:
    """Spawns an MCP server as a child process and talks JSON-RPC over stdin/stdout."""

    def __init__(
        self,
        command: list[str],
        environment: dict[str, str] | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        if not command:
            raise ValueError("Command cannot be empty")

        self._command = command
        self._environment = environment or {}
        self._timeout = timeout

        self._process: asyncio.subprocess.Process | None = None
        self._request_id = 0
        self._server_info: McpServerInfo | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def connect(self) -> McpServerInfo:
        if self._process is not None:
            raise McpConnectionError("Transport already connected")

        env = {**os.environ, **self._environment}
        try:
            logger.debug(f"Spawning MCP server: {' '.join(self._command)}")
            self._process = await asyncio.create_subprocess_exec(
                *self._command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except FileNotFoundError as e:
            raise McpConnectionError(f"MCP server command not found: {self._command[0]}", e) from e
        except OSError as e:
            raise McpConnectionError(f"Failed to spawn MCP server: {e}", e) from e

        self._stderr_task = asyncio.create_task(self._read_stderr())

        try:
            init = await self._send_request(
                "initialize",
                {
                    "protocolVersion": PROTOCOL_VERSION,
                    "capabilities": {"tools": {}},
                    "clientInfo": {"name": "slop", "version": "0.1.0"},
                },
                timeout=DEFAULT_INIT_TIMEOUT,
            )
            self._server_info = McpServerInfo.from_dict(init)
            await self._send_notification("notifications/initialized", {})
        except Exception:
            await self.disconnect()
            raise

        logger.info(f"MCP transport connected to {self._server_info.name} v{self._server_info.version}")
        return self._server_info

    async def disconnect(self) -> None:
        """Terminate the subprocess. Safe to call more than once."""
        if self._stderr_task:
            self._stderr_task.cancel()
            try:
                await self._stderr_task
            except asyncio.CancelledError:
                pass
            self._stderr_task = None

        if self._process:
            try:
                self._process.terminate()
                try:
                    await asyncio.wait_for(self._process.wait(), timeout=2.0)
                except TimeoutError:
                    self._process.kill()
                    await self._process.wait()
            except ProcessLookupError:
                pass
            finally:
                self._process = None
                self._server_info = None
                logger.debug("MCP transport disconnected")

    async def list_tools(self) -> list[ToolSpec]:
        response = await self._send_request("tools/list", {})
        return [
            ToolSpec(
                name=tool["name"],
                description=tool.get("description", ""),
                parameters=tool.get("inputSchema") or {"type": "object", "properties": {}},
            )
            for tool in response.get("tools", [])
        ]

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        response = await self._send_request("tools/call", {"name": name, "arguments": arguments})
        return tool_result_from_dict(response)

    async def _send_request(
        self, method: str, params: dict[str, Any], timeout: float | None = None
    ) -> dict[str, Any]:
        async with self._lock:
            process = self._process
            if not process or not process.stdin or not process.stdout or process.returncode is not None:
                raise McpConnectionError("Transport not connected")

            self._request_id += 1
            request_id = self._request_id
            line = json.dumps({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}) + "\n"
            logger.debug(f"MCP request: {method} (id={request_id})")

            try:
                process.stdin.write(line.encode("utf-8"))
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                raise McpConnectionError("MCP server connection lost", e) from e

            effective_timeout = timeout or self._timeout
            while True:
                try:
                    raw = await asyncio.wait_for(process.stdout.readline(), timeout=effective_timeout)
                except TimeoutError:
                    raise McpTimeoutError(f"MCP server did not respond within {effective_timeout}s") from None

                if not raw:
                    if process.returncode is not None:
                        raise McpConnectionError(f"MCP server exited with code {process.returncode}")
                    raise McpConnectionError("MCP server closed connection unexpectedly")

                try:
                    data = json.loads(raw.decode("utf-8"))
                except json.JSONDecodeError as e:
                    raise McpProtocolError(f"Invalid JSON response: {raw[:100]!r}", e) from e

                # Server-initiated notifications may arrive before our response
                if data.get("id") != request_id:
                    logger.debug(f"Ignoring MCP message without matching id: {data.get('method')}")
                    continue

                error = data.get("error")
                if error:
                    raise McpProtocolError(f"MCP error ({error.get('code')}): {error.get('message')}")
                return data.get("result") or {}

    async def _send_notification(self, method: str, params: dict[str, Any]) -> None:
        if not self._process or not self._process.stdin:
            raise McpConnectionError("Transport not connected")
        line = json.dumps({"jsonrpc": "2.0", "method": method, "params": params}) + "\n"
        try:
            self._process.stdin.write(line.encode("utf-8"))
            await self._process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise McpConnectionError("MCP server connection lost", e) from e

    async def _read_stderr(self) -> None:
        if not self._process or not self._process.stderr:
            return
        try:
            while True:
                line = await self._process.stderr.readline()
                if not line:
                    break
                logger.warning(f"MCP stderr: {line.decode('utf-8', errors='replace').rstrip()}")
        except asyncio.CancelledError:
            pass


class McpToolExecutor(ToolExecutor):
    def __init__(self, servers: dict[str, McpServerConfig], timeout: float = DEFAULT_TIMEOUT):
        self.servers = servers
        self.timeout = timeout
        self._transports: dict[str, StdioTransport] = {}
        self._routes: dict[str, str] = {}  # tool name -> server name
        self._tools: list[ToolSpec] = []

    def _make_transport(self, config: McpServerConfig) -> StdioTransport:
        return StdioTransport([config.command, *config.args], environment=config.env, timeout=self.timeout)

    async def initialize(self) -> None:
        for server_name, config in self.servers.items():
            transport = self._make_transport(config)
            try:
                await transport.connect()
                tools = await transport.list_tools()
            except McpTransportError as e:
                await transport.disconnect()
                await self.shutdown()
                raise ToolExecutorUnavailableError(f"MCP server '{server_name}' failed to start: {e}") from e

            self._transports[server_name] = transport
            for tool in tools:
                if tool.name in self._routes:
                    logger.warning(
                        f"Tool {tool.name} from '{server_name}' shadowed by '{self._routes[tool.name]}'"
                    )
                    continue
                self._routes[tool.name] = server_name
                self._tools.append(tool)
            logger.info(f"MCP server '{server_name}' provides {len(tools)} tools")

    async def shutdown(self) -> None:
        for transport in self._transports.values():
            await transport.disconnect()
        self._transports.clear()
        self._routes.clear()
        self._tools.clear()

    async def list_tools(self) -> list[ToolSpec]:
        if self.servers and not self._transports:
            raise ToolExecutorUnavailableError("MCP tool executor has not been initialized")
        return list(self._tools)

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        if self.servers and not self._transports:
            raise ToolExecutorUnavailableError("MCP tool executor has not been initialized")
        server_name = self._routes.get(name)
        if server_name is None:
            return ToolResult(content=f"Unknown tool: {name}", is_error=True)

        transport = self._transports[server_name]
        try:
            return await transport.call_tool(name, arguments)
        except McpConnectionError as e:
            raise ToolExecutorUnavailableError(f"MCP server '{server_name}' is unreachable: {e}") from e
        except McpTransportError as e:
            raise ToolExecutionError(name, str(e)) from e
