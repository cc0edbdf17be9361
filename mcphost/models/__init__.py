"""Data models."""

from mcphost.models.mcp import (
    AuthType,
    EnvVarConfig,
    ManualSource,
    MCPConfig,
    MCPPackage,
    MCPSource,
    MCPTool,
    OfficialSource,
    PackageArg,
    PackageArgType,
    PackageType,
    SmitherySource,
    ToolDefinition,
    TransportType,
)
from mcphost.models.oauth import OAuthConfig, OAuthToken

__all__ = [
    "AuthType",
    "EnvVarConfig",
    "MCPConfig",
    "MCPPackage",
    "MCPSource",
    "MCPTool",
    "ManualSource",
    "OAuthConfig",
    "OAuthToken",
    "OfficialSource",
    "PackageArg",
    "PackageArgType",
    "PackageType",
    "SmitherySource",
    "ToolDefinition",
    "TransportType",
]
