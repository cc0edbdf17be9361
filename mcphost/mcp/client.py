"""MCP protocol client.

Speaks the handful of MCP methods the runtime needs (initialize, tool
listing and tool calls) over any MCPTransport. Result payloads are
validated against the ``mcp.types`` models.
"""

from typing import Any, TypeVar

import structlog
from mcp import types
from pydantic import BaseModel, ValidationError

from mcphost import __version__
from mcphost.mcp.transports import MCPMessage, MCPTransport

logger = structlog.get_logger()

CLIENT_NAME = "mcphost"

_ResultT = TypeVar("_ResultT", bound=BaseModel)


class MCPProtocolError(Exception):
    """Server answered with a JSON-RPC error or a malformed result."""

    def __init__(self, message: str, code: int | None = None, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.data = data


class MCPClient:
    """Client session on top of a transport.

    Example usage:
        client = MCPClient(transport)
        await transport.connect()
        await client.initialize(timeout=30)
        tools = await client.list_tools(timeout=30)
        result = await client.call_tool("echo", {"text": "hi"}, timeout=30)
        await client.close()
    """

    def __init__(self, transport: MCPTransport) -> None:
        self._transport = transport
        self._server_info: types.Implementation | None = None

    @property
    def transport(self) -> MCPTransport:
        return self._transport

    @property
    def server_info(self) -> types.Implementation | None:
        return self._server_info

    async def initialize(self, timeout: float | None = None) -> types.InitializeResult:
        """Perform the initialize handshake.

        Raises:
            MCPProtocolError: If the server rejects the handshake
        """
        data = await self._request(
            "initialize",
            {
                "protocolVersion": types.LATEST_PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": {"name": CLIENT_NAME, "version": __version__},
            },
            timeout,
        )
        result = self._validate(types.InitializeResult, data, "initialize")
        await self._transport.notify("notifications/initialized")
        self._server_info = result.serverInfo

        logger.debug(
            "mcp_session_initialized",
            server=result.serverInfo.name,
            protocol_version=result.protocolVersion,
        )
        return result

    async def list_tools(self, timeout: float | None = None) -> list[types.Tool]:
        """List every tool, following pagination cursors."""
        tools: list[types.Tool] = []
        cursor: str | None = None
        seen: set[str] = set()

        while True:
            params = {"cursor": cursor} if cursor else {}
            data = await self._request("tools/list", params, timeout)
            page = self._validate(types.ListToolsResult, data, "tools/list")
            tools.extend(page.tools)

            cursor = page.nextCursor
            if not cursor or cursor in seen:
                break
            seen.add(cursor)

        return tools

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> types.CallToolResult:
        """Call a tool.

        Raises:
            MCPProtocolError: If the server returns a JSON-RPC error
        """
        data = await self._request(
            "tools/call",
            {"name": name, "arguments": arguments or {}},
            timeout,
        )
        return self._validate(types.CallToolResult, data, "tools/call")

    async def close(self) -> None:
        await self._transport.disconnect()

    async def _request(
        self,
        method: str,
        params: dict[str, Any],
        timeout: float | None,
    ) -> dict[str, Any]:
        response = await self._transport.send(
            MCPMessage(method=method, params=params),
            timeout=timeout,
        )
        if response.error is not None:
            error = response.error
            raise MCPProtocolError(
                f"MCP error: {error.get('message', str(error))}",
                code=error.get("code"),
                data=error.get("data"),
            )
        return response.result if isinstance(response.result, dict) else {}

    @staticmethod
    def _validate(model: type[_ResultT], data: dict[str, Any], method: str) -> _ResultT:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise MCPProtocolError(f"Invalid {method} response: {e}") from e
