"""
MCP stdio client pool.

Starts every configured MCP server as a subprocess, speaks MCP over its
stdin/stdout through the ``mcp`` SDK, lists its tools as ToolDescriptors
and forwards the sandbox's tool calls to the server that owns the tool.

Each connection lives in a task of its own: the SDK's stdio transport
must be entered and exited by the same task, and requests from any task
reach it through the session.

Usage:
    pool = MCPClientPool(config.mcp_servers)
    descriptors = await pool.connect()
    value = await pool.invoke(descriptor, {"a": 2, "b": 3})
    await pool.close()
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import get_default_environment, stdio_client

from mcpexec.config import McpServerConfig
from mcpexec.core.models import ToolDescriptor
from mcpexec.discovery.schema import SchemaParser
from mcpexec.exceptions import MCPServerError, SchemaError, ToolInvocationError
from mcpexec.logging import get_logger

logger = get_logger("mcpexec.mcp")

SHUTDOWN_TIMEOUT = 10.0


def result_value(result: Any) -> Any:
    """Turn a CallToolResult into a plain value for the program.

    A single text block holding JSON becomes that JSON value; other text
    is returned as a string. Results without text fall back to the
    structured content, then to the raw content blocks.
    """
    texts = [block.text for block in result.content if getattr(block, "type", None) == "text"]
    if len(texts) == 1:
        try:
            return json.loads(texts[0])
        except ValueError:
            return texts[0]
    if texts:
        return "\n".join(texts)
    structured = getattr(result, "structuredContent", None)
    if structured is not None:
        return structured
    return [block.model_dump(mode="json") for block in result.content]


class MCPServerConnection:
    """One running MCP server and its client session."""

    def __init__(self, name: str, config: McpServerConfig, parser: SchemaParser):
        self.name = name
        self.config = config
        self.parser = parser
        self.session: ClientSession | None = None
        self.tools: list[ToolDescriptor] = []
        self.rejected: dict[str, str] = {}
        self._ready = asyncio.Event()
        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._error: BaseException | None = None

    @property
    def connected(self) -> bool:
        return self.session is not None

    def _parameters(self) -> StdioServerParameters:
        env = {**get_default_environment(), **self.config.env} if self.config.env else None
        return StdioServerParameters(command=self.config.command, args=list(self.config.args), env=env)

    async def start(self) -> list[ToolDescriptor]:
        """Launch the server and list its tools.

        Raises:
            MCPServerError: The server did not start or initialize in time.
        """
        self._task = asyncio.create_task(self._serve(), name=f"mcp-{self.name}")
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=self.config.connect_timeout_seconds)
        except TimeoutError:
            await self.close()
            raise MCPServerError(self.name, f"no answer within {self.config.connect_timeout_seconds:g}s") from None
        if self._error is not None:
            await self.close()
            raise MCPServerError(self.name, f"{type(self._error).__name__}: {self._error}") from self._error
        return self.tools

    async def _serve(self) -> None:
        try:
            async with stdio_client(self._parameters()) as (read, write):
                async with ClientSession(read, write) as session:
                    await session.initialize()
                    listed = await session.list_tools()
                    self.tools = self._descriptors(listed.tools)
                    self.session = session
                    self._ready.set()
                    await self._stop.wait()
        except Exception as exc:
            if not self._ready.is_set():
                self._error = exc
            else:
                logger.error("MCP server %s stopped: %s", self.name, exc, extra={"tool_name": self.name})
        finally:
            self.session = None
            self._ready.set()

    def _descriptors(self, tools: list[Any]) -> list[ToolDescriptor]:
        descriptors = []
        for tool in tools:
            data = {
                "name": tool.name,
                "description": tool.description or "",
                "inputSchema": tool.inputSchema or {"type": "object", "properties": {}},
                "outputSchema": getattr(tool, "outputSchema", None) or {},
            }
            try:
                descriptors.append(self.parser.parse(data, server=self.name))
            except SchemaError as exc:
                self.rejected[tool.name] = str(exc)
                logger.warning("Rejected tool %s/%s: %s", self.name, tool.name, exc)
        return descriptors

    async def call(self, tool: str, arguments: dict[str, Any]) -> Any:
        """Call ``tool`` on this server.

        Raises:
            ToolInvocationError: The server is gone, timed out or reported an error.
        """
        key = f"{self.name}/{tool}"
        session = self.session
        if session is None:
            raise ToolInvocationError(key, "MCP server is not connected")
        try:
            result = await asyncio.wait_for(
                session.call_tool(tool, arguments), timeout=self.config.call_timeout_seconds
            )
        except TimeoutError:
            raise ToolInvocationError(key, f"no answer within {self.config.call_timeout_seconds:g}s") from None
        if result.isError:
            texts = [block.text for block in result.content if getattr(block, "type", None) == "text"]
            raise ToolInvocationError(key, "\n".join(texts) or "tool reported an error")
        return result_value(result)

    async def close(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        self._stop.set()
        if self.session is None:
            task.cancel()
        done, _ = await asyncio.wait({task}, timeout=SHUTDOWN_TIMEOUT)
        if not done:
            task.cancel()
            logger.warning("MCP server %s did not stop in time", self.name)


class MCPClientPool:
    """Connections to every enabled server in ``mcp_servers``."""

    def __init__(self, servers: dict[str, McpServerConfig], parser: SchemaParser | None = None):
        self.parser = parser or SchemaParser()
        self.configs = {name: cfg for name, cfg in servers.items() if cfg.enabled}
        self.connections: dict[str, MCPServerConnection] = {}
        self.failures: dict[str, str] = {}

    def serves(self, server: str) -> bool:
        return server in self.connections

    async def connect(self) -> list[ToolDescriptor]:
        """Start every server. A server that fails is logged and skipped."""
        descriptors: list[ToolDescriptor] = []
        for name, config in self.configs.items():
            if name in self.connections:
                continue
            connection = MCPServerConnection(name, config, self.parser)
            try:
                tools = await connection.start()
            except MCPServerError as exc:
                self.failures[name] = str(exc)
                logger.error("%s", exc, extra={"tool_name": name})
                continue
            self.connections[name] = connection
            descriptors.extend(tools)
            logger.info(
                "MCP server %s connected: %d tools", name, len(tools),
                extra={"_extra": {"server": name, "tools": [t.name for t in tools]}},
            )
        return descriptors

    async def invoke(self, descriptor: ToolDescriptor, arguments: dict[str, Any]) -> Any:
        """ToolInvoker for tools that belong to a connected server."""
        connection = self.connections.get(descriptor.server)
        if connection is None:
            raise ToolInvocationError(descriptor.key, f"no MCP server named '{descriptor.server}' is connected")
        return await connection.call(descriptor.name, arguments)

    def status(self) -> dict[str, bool]:
        return {name: name in self.connections and self.connections[name].connected for name in self.configs}

    async def close(self) -> None:
        for connection in self.connections.values():
            await connection.close()
        self.connections.clear()

    async def __aenter__(self) -> MCPClientPool:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
