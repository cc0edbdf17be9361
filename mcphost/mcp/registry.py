"""MCP Registry client.

Discovers servers in the official MCP registry and on Smithery, and turns
registry entries into runnable MCPConfig instances.
"""

from enum import Enum
from pathlib import Path
from typing import Any

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from mcphost.config import Settings
from mcphost.models.mcp import (
    AuthType,
    EnvVarConfig,
    ManualSource,
    MCPConfig,
    MCPPackage,
    OfficialSource,
    PackageArg,
    PackageArgType,
    PackageType,
    TransportType,
)

logger = structlog.get_logger()

SMITHERY_SERVER_URL = "https://server.smithery.ai"
SEARCH_LIMIT = 100

_PACKAGE_TYPES = {
    "npm": PackageType.NPM,
    "oci": PackageType.DOCKER,
    "docker": PackageType.DOCKER,
    "http": PackageType.HTTP,
}

_TRANSPORT_TYPES = {
    "stdio": TransportType.STDIO,
    "http": TransportType.HTTP,
    "streamable-http": TransportType.HTTP,
}

_RUNTIME_HINTS = {
    PackageType.NPM: "npx",
    PackageType.DOCKER: "docker",
}

_TOKEN_MARKERS = ("TOKEN", "API_KEY", "_KEY", "_PAT")


class RegistryError(Exception):
    """Error in registry operations."""

    pass


class UnsupportedPackageTypeError(RegistryError):
    pass


class UnsupportedTransportError(RegistryError):
    pass


class UnsupportedRemoteTypeError(RegistryError):
    pass


class RegistryAuthError(RegistryError):
    """Registry requires credentials that were not provided."""

    pass


class RegistryRequestError(RegistryError):
    """Registry request failed or returned an unparseable body."""

    pass


class RegistrySource(str, Enum):
    OFFICIAL = "official"
    SMITHERY = "smithery"


# Wire models


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class RegistryEnvVar(_WireModel):
    name: str
    description: str | None = None
    is_secret: bool = Field(default=False, alias="isSecret")
    is_required: bool = Field(default=False, alias="isRequired")


class RegistryPackageArgument(_WireModel):
    argument_type: str = Field(default="positional", alias="type")
    name: str
    description: str | None = None
    is_required: bool = Field(default=False, alias="isRequired")
    default: str | None = None


class RegistryTransport(_WireModel):
    transport_type: str = Field(alias="type")


class RegistryPackage(_WireModel):
    registry_type: str = Field(alias="registryType")
    identifier: str
    version: str | None = None
    runtime_hint: str | None = Field(default=None, alias="runtimeHint")
    transport: RegistryTransport
    environment_variables: list[RegistryEnvVar] = Field(
        default_factory=list, alias="environmentVariables"
    )
    package_arguments: list[RegistryPackageArgument] = Field(
        default_factory=list, alias="packageArguments"
    )


class RegistryRemote(_WireModel):
    remote_type: str = Field(alias="type")
    url: str


class RegistryRepository(_WireModel):
    url: str | None = None
    source: str | None = None


class RegistryServer(_WireModel):
    name: str
    description: str = ""
    repository: RegistryRepository = Field(default_factory=RegistryRepository)
    version: str = "latest"
    packages: list[RegistryPackage] = Field(default_factory=list)
    remotes: list[RegistryRemote] = Field(default_factory=list)


class RegistryEntry(_WireModel):
    """One server entry with its registry metadata."""

    server: RegistryServer
    meta: dict[str, Any] = Field(default_factory=dict, alias="_meta")


class _OfficialResponse(_WireModel):
    servers: list[RegistryEntry] = Field(default_factory=list)


class _SmitheryServer(_WireModel):
    qualified_name: str = Field(alias="qualifiedName")
    display_name: str | None = Field(default=None, alias="displayName")
    description: str = ""
    verified: bool = False
    use_count: int = Field(default=0, alias="useCount")
    remote: bool = False


class _SmitheryResponse(_WireModel):
    servers: list[_SmitheryServer] = Field(default_factory=list)


class SearchResult(BaseModel):
    entries: list[RegistryEntry]
    source: RegistrySource


def detect_auth_type(env_vars: list[RegistryEnvVar]) -> AuthType:
    """Guess the auth scheme of a package from its declared env vars.

    A CLIENT_ID together with a secret CLIENT_SECRET means OAuth; any other
    secret that looks like a token or key means an API key.
    """
    has_client_id = any("CLIENT_ID" in v.name for v in env_vars)
    has_client_secret = any("CLIENT_SECRET" in v.name and v.is_secret for v in env_vars)
    if has_client_id and has_client_secret:
        return AuthType.OAUTH

    if any(v.is_secret and any(m in v.name for m in _TOKEN_MARKERS) for v in env_vars):
        return AuthType.API_KEY

    return AuthType.NONE


def resolve_smithery_key(key_or_path: str) -> str:
    """Resolve a Smithery API key given either the raw key or a keyfile path.

    Raises:
        RegistryAuthError: If the keyfile cannot be read or the key is empty
    """
    value = key_or_path.strip()
    if value.startswith(("/", "~/", "./")):
        path = Path(value).expanduser()
        try:
            value = path.read_text(encoding="utf-8").strip()
        except OSError as e:
            raise RegistryAuthError(f"Failed to read keyfile {path}: {e}") from e
    if not value:
        raise RegistryAuthError("Smithery API key is empty")
    return value


def _dedupe(entries: list[RegistryEntry]) -> list[RegistryEntry]:
    seen: set[str] = set()
    result = []
    for entry in entries:
        if entry.server.name in seen:
            continue
        seen.add(entry.server.name)
        result.append(entry)
    return result


class MCPRegistry:
    """Registry client and entry converter.

    Example usage:
        registry = MCPRegistry(settings)
        result = await registry.search_registry("github", RegistrySource.OFFICIAL)
        config = MCPRegistry.entry_to_config(result.entries[0])
    """

    def __init__(
        self,
        settings: Settings | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize registry client.

        Args:
            settings: Registry URLs and timeout (defaults to Settings())
            http_transport: Optional httpx transport (mainly for tests)
        """
        settings = settings or Settings()
        self.official_url = settings.registry_official_url
        self.smithery_url = settings.registry_smithery_url
        self.timeout = settings.registry_timeout
        self._http_transport = http_transport

    async def _get_json(
        self,
        label: str,
        url: str,
        params: dict[str, Any],
        headers: dict[str, str] | None = None,
    ) -> Any:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._http_transport,
            ) as client:
                response = await client.get(url, params=params, headers=headers)
        except httpx.HTTPError as e:
            logger.error("registry_request_failed", registry=label, error=str(e))
            raise RegistryRequestError(f"Failed to fetch {label} registry: {e}") from e

        if response.status_code != 200:
            logger.error(
                "registry_request_failed",
                registry=label,
                status_code=response.status_code,
            )
            raise RegistryRequestError(f"{label} registry returned {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            raise RegistryRequestError(f"Failed to parse {label} registry: {e}") from e

    async def search_official(self, query: str) -> list[RegistryEntry]:
        """Search the official registry (server-side search)."""
        data = await self._get_json(
            "official",
            self.official_url,
            {"search": query, "limit": SEARCH_LIMIT},
        )
        return self._parse_official(data)

    async def fetch_official(self) -> list[RegistryEntry]:
        """Fetch the first page of the official registry, for browsing."""
        data = await self._get_json("official", self.official_url, {"limit": SEARCH_LIMIT})
        return self._parse_official(data)

    @staticmethod
    def _parse_official(data: Any) -> list[RegistryEntry]:
        try:
            return _OfficialResponse.model_validate(data).servers
        except ValidationError as e:
            raise RegistryRequestError(f"Failed to parse official registry: {e}") from e

    async def fetch_smithery(self, query: str, key_or_path: str) -> list[RegistryEntry]:
        """Search Smithery.

        Hosted Smithery servers are surfaced as ``smithery-oauth`` remotes
        since the search API does not say which auth they need.

        Args:
            query: Search text
            key_or_path: Smithery API key, or a path to a file holding it
        """
        api_key = resolve_smithery_key(key_or_path)
        data = await self._get_json(
            "smithery",
            self.smithery_url,
            {"q": query},
            headers={"Authorization": f"Bearer {api_key}"},
        )
        try:
            response = _SmitheryResponse.model_validate(data)
        except ValidationError as e:
            raise RegistryRequestError(f"Failed to parse Smithery response: {e}") from e

        entries = []
        for server in response.servers:
            remotes = []
            if server.remote:
                remotes.append(
                    RegistryRemote(
                        remote_type="smithery-oauth",
                        url=f"{SMITHERY_SERVER_URL}/{server.qualified_name}",
                    )
                )
            entries.append(
                RegistryEntry(
                    server=RegistryServer(
                        name=server.display_name or server.qualified_name,
                        description=server.description,
                        remotes=remotes,
                    ),
                    meta={
                        "source": "smithery",
                        "qualified_name": server.qualified_name,
                        "verified": server.verified,
                        "use_count": server.use_count,
                    },
                )
            )
        return entries

    async def search(self, query: str) -> SearchResult:
        """Browse the official registry and filter client-side.

        Matches the query against name, description and repository URL,
        case-insensitively, keeping the first entry per name.
        """
        needle = query.lower()
        matches = [
            e for e in await self.fetch_official()
            if needle in e.server.name.lower()
            or needle in e.server.description.lower()
            or (e.server.repository.url is not None and needle in e.server.repository.url.lower())
        ]
        return SearchResult(entries=_dedupe(matches), source=RegistrySource.OFFICIAL)

    async def search_registry(
        self,
        query: str,
        source: RegistrySource,
        smithery_key: str | None = None,
    ) -> SearchResult:
        """Search the selected registry.

        Raises:
            RegistryAuthError: If Smithery is selected without an API key
            RegistryRequestError: If the registry request fails
        """
        if source is RegistrySource.SMITHERY:
            if not smithery_key:
                raise RegistryAuthError("Smithery API key required")
            entries = await self.fetch_smithery(query, smithery_key)
            return SearchResult(entries=entries, source=source)

        entries = await self.search_official(query)
        logger.debug("registry_searched", registry=source.value, results=len(entries))
        return SearchResult(entries=_dedupe(entries), source=RegistrySource.OFFICIAL)

    @classmethod
    def entry_to_config(cls, entry: RegistryEntry) -> MCPConfig:
        """Convert a registry entry to an MCPConfig.

        Packages are preferred over remotes; only the first of either is used.

        Raises:
            RegistryError: If the entry has neither packages nor remotes
            UnsupportedPackageTypeError: Unknown package registry type
            UnsupportedTransportError: Unknown package transport
            UnsupportedRemoteTypeError: Unknown remote type
        """
        server = entry.server
        if server.packages:
            return cls._package_entry_to_config(server, server.packages[0])
        if server.remotes:
            return cls._remote_entry_to_config(server, server.remotes[0])
        raise RegistryError("Server has neither packages nor remotes")

    @staticmethod
    def _package_entry_to_config(server: RegistryServer, package: RegistryPackage) -> MCPConfig:
        package_type = _PACKAGE_TYPES.get(package.registry_type)
        if package_type is None:
            raise UnsupportedPackageTypeError(
                f"Unsupported registry type: {package.registry_type}"
            )

        transport = _TRANSPORT_TYPES.get(package.transport.transport_type)
        if transport is None:
            raise UnsupportedTransportError(
                f"Unsupported transport type: {package.transport.transport_type}"
            )

        return MCPConfig(
            name=server.name,
            source=OfficialSource(name=server.name, version=server.version),
            package=MCPPackage(
                package_type=package_type,
                identifier=package.identifier,
                runtime_hint=package.runtime_hint or _RUNTIME_HINTS.get(package_type),
            ),
            transport=transport,
            auth_type=detect_auth_type(package.environment_variables),
            env_vars=[
                EnvVarConfig(name=v.name, required=v.is_required)
                for v in package.environment_variables
            ],
            package_args=[
                PackageArg(
                    arg_type=(
                        PackageArgType.NAMED
                        if arg.argument_type == "named"
                        else PackageArgType.POSITIONAL
                    ),
                    name=arg.name,
                    description=arg.description,
                    required=arg.is_required,
                    default=arg.default,
                )
                for arg in package.package_arguments
            ],
        )

    @staticmethod
    def _remote_entry_to_config(server: RegistryServer, remote: RegistryRemote) -> MCPConfig:
        if remote.remote_type in ("http", "streamable-http"):
            auth_type = AuthType.NONE
        elif remote.remote_type == "smithery-oauth":
            auth_type = AuthType.OAUTH
        else:
            raise UnsupportedRemoteTypeError(f"Unsupported remote type: {remote.remote_type}")

        return MCPConfig(
            name=server.name,
            source=ManualSource(url=remote.url),
            package=MCPPackage(package_type=PackageType.HTTP, identifier=remote.url),
            transport=TransportType.HTTP,
            auth_type=auth_type,
        )
