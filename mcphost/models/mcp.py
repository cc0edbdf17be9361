"""MCP provider configuration models.

An MCPConfig describes one external tool provider: where it comes from,
how to launch or reach it, and how it authenticates. Configs are immutable;
an edit produces a new instance via ``model_copy(update=...)``.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Literal, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field


class PackageType(str, Enum):
    """How a provider is distributed."""

    NPM = "npm"
    DOCKER = "docker"
    HTTP = "http"


class TransportType(str, Enum):
    """Wire transport used to talk to a provider."""

    STDIO = "stdio"
    HTTP = "http"


class AuthType(str, Enum):
    """Authentication scheme a provider expects."""

    NONE = "none"
    API_KEY = "api_key"
    KEYFILE = "keyfile"
    OAUTH = "oauth"


class PackageArgType(str, Enum):
    NAMED = "named"
    POSITIONAL = "positional"


class EnvVarConfig(BaseModel):
    """Environment variable a provider declares."""

    model_config = ConfigDict(frozen=True)

    name: str
    required: bool = False


class PackageArg(BaseModel):
    """Command-line argument a provider package declares."""

    model_config = ConfigDict(frozen=True)

    arg_type: PackageArgType
    name: str
    description: str | None = None
    required: bool = False
    default: str | None = None


class OfficialSource(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["official"] = "official"
    name: str
    version: str


class SmitherySource(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["smithery"] = "smithery"
    qualified_name: str


class ManualSource(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["manual"] = "manual"
    url: str


MCPSource = Annotated[
    Union[OfficialSource, SmitherySource, ManualSource],
    Field(discriminator="type"),
]


class MCPPackage(BaseModel):
    """Package coordinates of a provider."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    package_type: PackageType = Field(alias="type")
    identifier: str
    runtime_hint: str | None = None


class MCPConfig(BaseModel):
    """Configuration of a single MCP provider.

    ``config`` is a free-form settings blob. User-supplied package argument
    values live under ``config["package_args"][<arg name>]``.
    """

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    name: str
    enabled: bool = True
    source: MCPSource
    package: MCPPackage
    transport: TransportType
    auth_type: AuthType = AuthType.NONE
    env_vars: list[EnvVarConfig] = Field(default_factory=list)
    package_args: list[PackageArg] = Field(default_factory=list)
    keyfile_path: Path | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    oauth_token: str | None = None

    def package_arg_value(self, name: str) -> str | None:
        """Get the user-supplied value for a package argument.

        List values are joined with commas so they split the same way as a
        comma-separated string.
        """
        values = self.config.get("package_args")
        if not isinstance(values, dict):
            return None
        value = values.get(name)
        if isinstance(value, str):
            return value
        if isinstance(value, (list, tuple)):
            return ",".join(str(v) for v in value)
        return None


@dataclass(frozen=True)
class MCPTool:
    """Tool advertised by an active provider."""

    name: str
    description: str
    input_schema: dict[str, Any]
    mcp_id: UUID


@dataclass(frozen=True)
class ToolDefinition:
    """LLM-facing tool descriptor, tagged with its provider for routing."""

    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=dict)
    mcp_id: UUID | None = None
