"""MCP integration layer - transports, protocol client, runtime and registry."""

from mcphost.mcp.client import MCPClient, MCPProtocolError
from mcphost.mcp.registry import MCPRegistry, RegistryEntry, RegistrySource, detect_auth_type
from mcphost.mcp.runtime import MCPConnection, MCPRuntime, StartResult
from mcphost.mcp.status import AggregateStatus, MCPStatus, StatusKind, StatusManager, aggregate_status
from mcphost.mcp.toolset import (
    MCPConfigError,
    ToolsetSpec,
    build_command,
    build_env_for_config,
    build_headers_for_config,
    create_toolset_from_config,
)
from mcphost.mcp.transports import MCPTransport, StdioTransport, StreamableHttpTransport, create_transport

__all__ = [
    "AggregateStatus",
    "MCPClient",
    "MCPConfigError",
    "MCPConnection",
    "MCPProtocolError",
    "MCPRegistry",
    "MCPRuntime",
    "MCPStatus",
    "MCPTransport",
    "RegistryEntry",
    "RegistrySource",
    "StartResult",
    "StatusKind",
    "StatusManager",
    "StdioTransport",
    "StreamableHttpTransport",
    "ToolsetSpec",
    "aggregate_status",
    "build_command",
    "build_env_for_config",
    "build_headers_for_config",
    "create_toolset_from_config",
    "create_transport",
    "detect_auth_type",
]
