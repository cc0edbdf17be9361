"""Pytest configuration and fixtures.

Provides common fixtures for all tests including:
- Isolated settings and secrets directory
- Encryption
- Provider config factory
- In-memory MCP transport and a transport factory for the runtime
"""

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Callable
from uuid import UUID

import pytest
import pytest_asyncio

from mcphost.config import Settings
from mcphost.core.encryption import SecretEncryption
from mcphost.core.events import EventBus
from mcphost.mcp.runtime import MCPRuntime
from mcphost.mcp.status import StatusManager
from mcphost.mcp.toolset import ToolsetSpec
from mcphost.mcp.transports import MCPConnectionError, MCPMessage, MCPResponse, MCPTransport
from mcphost.models.mcp import (
    MCPConfig,
    MCPPackage,
    OfficialSource,
    PackageType,
    TransportType,
)
from mcphost.services.secrets_service import SecretsManager

FIXTURES_DIR = Path(__file__).parent / "fixtures"

DEFAULT_TOOLS = [
    {
        "name": "echo",
        "description": "Echo the arguments back",
        "inputSchema": {"type": "object", "properties": {"text": {"type": "string"}}},
    },
]


class FakeTransport(MCPTransport):
    """In-memory MCP server speaking just enough of the protocol.

    Tools named in ``hang_tools`` never answer until the transport is
    disconnected; tools in ``error_tools`` answer with a JSON-RPC error.
    """

    def __init__(
        self,
        tools: list[dict[str, Any]] | None = None,
        *,
        fail_connect: bool = False,
        hang_initialize: bool = False,
        hang_tools: tuple[str, ...] = (),
        error_tools: tuple[str, ...] = (),
        page_size: int | None = None,
    ) -> None:
        super().__init__()
        self.tools = DEFAULT_TOOLS if tools is None else tools
        self.fail_connect = fail_connect
        self.hang_initialize = hang_initialize
        self.hang_tools = hang_tools
        self.error_tools = error_tools
        self.page_size = page_size
        self.connected = False
        self.disconnect_calls = 0
        self.requests: list[MCPMessage] = []
        self.notifications: list[str] = []
        self._hanging: set[asyncio.Future[None]] = set()

    async def connect(self) -> None:
        if self.fail_connect:
            raise MCPConnectionError("Failed to start process 'fake-server'")
        self.connected = True

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self.connected = False
        for future in self._hanging:
            if not future.done():
                future.set_exception(MCPConnectionError("Transport closed"))

    def exit(self, reason: str = "MCP server closed connection") -> None:
        """Behave like a server process that died on its own."""
        self.connected = False
        for future in self._hanging:
            if not future.done():
                future.set_exception(MCPConnectionError(reason))
        self._notify_closed(reason)

    async def send(self, message: MCPMessage, timeout: float | None = None) -> MCPResponse:
        if not self.connected:
            raise MCPConnectionError("Not connected")
        if message.id is None:
            message.id = self._next_id()
        self.requests.append(message)
        return await asyncio.wait_for(self._handle(message), timeout=timeout)

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        self.notifications.append(method)

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def _hang(self) -> None:
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._hanging.add(future)
        await future

    async def _handle(self, message: MCPMessage) -> MCPResponse:
        params = message.params or {}

        if message.method == "initialize":
            if self.hang_initialize:
                await self._hang()
            return MCPResponse(
                result={
                    "protocolVersion": params.get("protocolVersion", "2025-06-18"),
                    "capabilities": {"tools": {}},
                    "serverInfo": {"name": "fake-server", "version": "1.0.0"},
                },
                id=message.id,
            )

        if message.method == "tools/list":
            if self.page_size is None:
                return MCPResponse(result={"tools": self.tools}, id=message.id)
            start = int(params.get("cursor", 0))
            end = start + self.page_size
            result: dict[str, Any] = {"tools": self.tools[start:end]}
            if end < len(self.tools):
                result["nextCursor"] = str(end)
            return MCPResponse(result=result, id=message.id)

        if message.method == "tools/call":
            name = params["name"]
            if name in self.hang_tools:
                await self._hang()
            if name in self.error_tools:
                return MCPResponse(
                    error={"code": -32000, "message": f"{name} exploded"},
                    id=message.id,
                )
            return MCPResponse(
                result={
                    "content": [{"type": "text", "text": json.dumps(params.get("arguments", {}))}],
                    "isError": False,
                },
                id=message.id,
            )

        return MCPResponse(
            error={"code": -32601, "message": f"Method not found: {message.method}"},
            id=message.id,
        )


class FakeTransportFactory:
    """Transport factory for the runtime that hands out FakeTransports.

    Per-provider behaviour is configured through ``behaviours[mcp_id]``.
    """

    def __init__(self) -> None:
        self.behaviours: dict[UUID, dict[str, Any]] = {}
        self.specs: dict[UUID, ToolsetSpec] = {}
        self.created: dict[UUID, list[FakeTransport]] = {}

    def __call__(self, config: MCPConfig, spec: ToolsetSpec) -> FakeTransport:
        transport = FakeTransport(**self.behaviours.get(config.id, {}))
        self.specs[config.id] = spec
        self.created.setdefault(config.id, []).append(transport)
        return transport

    def last(self, mcp_id: UUID) -> FakeTransport:
        return self.created[mcp_id][-1]


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings with short timeouts and a private secrets dir."""
    return Settings(
        secrets_dir=tmp_path / "mcp_secrets",
        mcp_spawn_timeout=5,
        mcp_init_timeout=2,
        mcp_tool_timeout=1,
        mcp_shutdown_timeout=1,
        mcp_idle_timeout=1800,
        debug=True,
    )


@pytest.fixture
def encryption() -> SecretEncryption:
    """Create encryption instance with a fresh key."""
    return SecretEncryption(SecretEncryption.generate_key())


@pytest.fixture
def secrets_manager(test_settings: Settings) -> SecretsManager:
    """Create a secrets manager rooted in the test's temp dir."""
    return SecretsManager(test_settings.secrets_dir)


@pytest.fixture
def make_config() -> Callable[..., MCPConfig]:
    """Factory for provider configs (npm package over stdio by default)."""

    def _make(**overrides: Any) -> MCPConfig:
        values: dict[str, Any] = {
            "name": "test-server",
            "source": OfficialSource(name="test/server", version="1.0.0"),
            "package": MCPPackage(
                package_type=PackageType.NPM,
                identifier="@test/mcp-server",
            ),
            "transport": TransportType.STDIO,
        }
        values.update(overrides)
        return MCPConfig(**values)

    return _make


@pytest.fixture
def make_transport() -> Callable[..., FakeTransport]:
    """Factory for standalone in-memory transports."""
    return FakeTransport


@pytest.fixture
def transport_factory() -> FakeTransportFactory:
    return FakeTransportFactory()


@pytest_asyncio.fixture
async def runtime(
    secrets_manager: SecretsManager,
    test_settings: Settings,
    transport_factory: FakeTransportFactory,
):
    """Create a runtime wired to in-memory transports."""
    runtime = MCPRuntime(
        secrets_manager,
        settings=test_settings,
        status_manager=StatusManager(),
        event_bus=EventBus(),
        transport_factory=transport_factory,
    )
    yield runtime
    await runtime.shutdown()


@pytest.fixture
def fake_server_command() -> tuple[str, list[str]]:
    """Command line running the stdio test server with this interpreter."""
    return sys.executable, [str(FIXTURES_DIR / "fake_mcp_server.py")]
