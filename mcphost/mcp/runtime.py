"""MCP runtime.

Owns the table of active provider connections. Starting a provider
resolves its credentials, opens its transport, performs the initialize
handshake and records the tools it advertises; tool calls are routed by
name to the connection that advertises them. Idle connections are
reclaimed by ``cleanup_idle`` or the background sweeper, and a provider
whose server goes away on its own is dropped and marked as errored.

Every status transition is paired with the matching change to the
connection table, and every suspension point is bounded by a timeout.
"""

import asyncio
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

import structlog

from mcphost.config import Settings, get_settings
from mcphost.core.events import EventBus, MCPEvent, MCPEventType
from mcphost.mcp.client import MCPClient, MCPProtocolError
from mcphost.mcp.status import MCPStatus, StatusManager
from mcphost.mcp.toolset import (
    MCPConfigError,
    ToolsetSpec,
    create_toolset_from_config,
    validate_package_args,
)
from mcphost.mcp.transports import (
    MCPTimeoutError,
    MCPTransport,
    MCPTransportError,
    create_transport,
)
from mcphost.models.mcp import MCPConfig, MCPTool, ToolDefinition
from mcphost.services.secrets_service import SecretsManager

logger = structlog.get_logger()

TransportFactory = Callable[[MCPConfig, ToolsetSpec], MCPTransport]


class MCPRuntimeError(Exception):
    """Error in MCP runtime operations."""

    pass


class MissingPackageArgumentError(MCPConfigError):
    """A required package argument has no value and no default."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Missing required package argument: {name}")


class MCPDisabledError(MCPRuntimeError):
    """Start was requested for a disabled configuration."""

    pass


class MCPStartError(MCPRuntimeError):
    """Spawn, connect or handshake failed."""

    pass


class MCPToolNotFoundError(MCPRuntimeError):
    """No active provider advertises the requested tool."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"No MCP provides tool: {name}")


class MCPToolTimeoutError(MCPRuntimeError):
    """Tool call exceeded its deadline."""

    pass


class MCPToolError(MCPRuntimeError):
    """Tool call failed at the protocol or connection level."""

    pass


@dataclass
class StartResult:
    """Outcome of starting one provider."""

    success: bool
    error: str | None = None


@dataclass
class MCPConnection:
    """Active connection to a provider."""

    config: MCPConfig
    client: MCPClient
    tools: list[MCPTool] = field(default_factory=list)
    last_activity: float = field(default_factory=time.monotonic)

    @property
    def mcp_id(self) -> UUID:
        return self.config.id

    def touch(self) -> None:
        self.last_activity = time.monotonic()

    def idle_seconds(self, now: float | None = None) -> float:
        return (time.monotonic() if now is None else now) - self.last_activity


class MCPRuntime:
    """Runtime managing MCP provider connections.

    Handles:
    - Provider start/stop with per-provider status tracking
    - Tool aggregation and call routing
    - Idle connection reclamation
    - Lifecycle events on the event bus

    Example usage:
        async with MCPRuntime(secrets, settings=settings) as runtime:
            results = await runtime.start_all(configs)
            tools = runtime.get_tools()
            result = await runtime.call_tool("read_file", {"path": "/tmp/x"})
    """

    def __init__(
        self,
        secrets: SecretsManager,
        *,
        settings: Settings | None = None,
        status_manager: StatusManager | None = None,
        event_bus: EventBus | None = None,
        transport_factory: TransportFactory | None = None,
    ) -> None:
        """Initialize runtime.

        Args:
            secrets: Secrets store used to resolve provider credentials
            settings: Timeouts and idle policy (defaults to get_settings())
            status_manager: Shared status store (a new one if omitted)
            event_bus: Bus for lifecycle events (a new one if omitted)
            transport_factory: Builds a transport from a resolved toolset
        """
        self._secrets = secrets
        self._settings = settings or get_settings()
        self._status = status_manager or StatusManager()
        self._events = event_bus or EventBus()
        self._transport_factory = transport_factory or self._default_transport_factory

        self._connections: dict[UUID, MCPConnection] = {}
        self._table_lock = asyncio.Lock()
        self._id_locks: dict[UUID, asyncio.Lock] = {}
        self._restart_counts: dict[UUID, int] = {}
        self._drop_tasks: set[asyncio.Task[None]] = set()
        self._sweeper: asyncio.Task[None] | None = None

    @property
    def status_manager(self) -> StatusManager:
        return self._status

    @property
    def event_bus(self) -> EventBus:
        return self._events

    @property
    def settings(self) -> Settings:
        return self._settings

    async def __aenter__(self) -> "MCPRuntime":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()

    def _default_transport_factory(self, config: MCPConfig, spec: ToolsetSpec) -> MCPTransport:
        return create_transport(
            spec.transport,
            command=spec.command,
            args=spec.args,
            env=spec.env,
            url=spec.url,
            headers=spec.headers,
            timeout=self._settings.mcp_tool_timeout,
            shutdown_timeout=self._settings.mcp_shutdown_timeout,
            read_limit=self._settings.mcp_stdio_read_limit,
        )

    def _id_lock(self, mcp_id: UUID) -> asyncio.Lock:
        lock = self._id_locks.get(mcp_id)
        if lock is None:
            lock = self._id_locks[mcp_id] = asyncio.Lock()
        return lock

    def _publish(self, event_type: MCPEventType, config: MCPConfig, **data: Any) -> None:
        self._events.publish(MCPEvent(event_type, config.id, config.name, data))

    # Lifecycle

    async def start_mcp(self, config: MCPConfig) -> None:
        """Start a provider and register its connection.

        Starting a provider that is already active is a no-op.

        Args:
            config: Provider configuration

        Raises:
            MCPDisabledError: If the configuration is disabled (status untouched)
            MissingPackageArgumentError: If a required package argument is unset
            MCPConfigError: If credentials or the command cannot be resolved
            MCPStartError: If spawn, handshake or tool listing fails
        """
        if not config.enabled:
            raise MCPDisabledError(f"MCP '{config.name}' is disabled")

        async with self._id_lock(config.id):
            if config.id in self._connections:
                return

            missing = validate_package_args(config)
            if missing is not None:
                error = MissingPackageArgumentError(missing)
                self._mark_failed(config, str(error))
                raise error

            self._status.set_status(config.id, MCPStatus.starting())
            self._publish(MCPEventType.STARTING, config)
            logger.info("mcp_server_starting", mcp_id=str(config.id), name=config.name)

            try:
                connection = await self._connect(config)
            except MCPConfigError as e:
                self._mark_failed(config, str(e))
                raise
            except (MCPTransportError, MCPProtocolError, ValueError) as e:
                self._mark_failed(config, str(e))
                raise MCPStartError(str(e)) from e
            except asyncio.CancelledError:
                self._mark_failed(config, "Start cancelled")
                raise
            except Exception as e:
                logger.exception("mcp_server_start_crashed", mcp_id=str(config.id))
                self._mark_failed(config, str(e) or type(e).__name__)
                raise MCPStartError(str(e) or type(e).__name__) from e

            async with self._table_lock:
                self._connections[config.id] = connection
            self._status.set_status(config.id, MCPStatus.running())
            self._watch(connection)

        self._publish(MCPEventType.STARTED, config, tool_count=len(connection.tools))
        logger.info(
            "mcp_server_started",
            mcp_id=str(config.id),
            name=config.name,
            transport=config.transport.value,
            tool_count=len(connection.tools),
        )

    async def _connect(self, config: MCPConfig) -> MCPConnection:
        spec = create_toolset_from_config(config, self._secrets)
        transport = self._transport_factory(config, spec)
        client = MCPClient(transport)

        try:
            await self._bounded(transport.connect(), self._settings.mcp_spawn_timeout, "spawn")
            await self._bounded(client.initialize(), self._settings.mcp_init_timeout, "initialize")
            tools = await self._bounded(
                client.list_tools(), self._settings.mcp_init_timeout, "tool listing"
            )
        except BaseException:
            await self._close_client(client, config, reason="start failed")
            raise

        return MCPConnection(
            config=config,
            client=client,
            tools=[
                MCPTool(
                    name=tool.name,
                    description=tool.description or "",
                    input_schema=dict(tool.inputSchema or {}),
                    mcp_id=config.id,
                )
                for tool in tools
            ],
        )

    @staticmethod
    async def _bounded(awaitable: Any, timeout: float, stage: str) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise MCPTimeoutError(f"Timed out after {timeout}s during {stage}") from e

    def _mark_failed(self, config: MCPConfig, reason: str) -> None:
        self._status.set_status(config.id, MCPStatus.error(reason))
        self._publish(MCPEventType.START_FAILED, config, error=reason)
        logger.error(
            "mcp_server_start_failed",
            mcp_id=str(config.id),
            name=config.name,
            error=reason,
        )

    async def start_all(self, configs: Iterable[MCPConfig | None]) -> dict[UUID, StartResult]:
        """Start every enabled configuration concurrently.

        Disabled and missing entries are skipped and get no result. One
        provider failing never prevents the others from starting.

        Returns:
            Mapping of provider id to its start outcome
        """
        targets = [c for c in configs if c is not None and c.enabled]
        outcomes = await asyncio.gather(
            *(self.start_mcp(c) for c in targets),
            return_exceptions=True,
        )

        results: dict[UUID, StartResult] = {}
        for config, outcome in zip(targets, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                results[config.id] = StartResult(success=False, error=str(outcome))
            else:
                results[config.id] = StartResult(success=True)
        return results

    async def stop_mcp(self, mcp_id: UUID) -> bool:
        """Stop a provider. Stopping an inactive provider is a no-op.

        Requests in flight on the connection fail with a connection error.

        Returns:
            True if an active connection was stopped
        """
        async with self._id_lock(mcp_id):
            async with self._table_lock:
                connection = self._connections.pop(mcp_id, None)
            if connection is None:
                return False

            self._status.set_status(mcp_id, MCPStatus.stopped())
            await self._close_client(connection.client, connection.config, reason="stop")

        self._publish(MCPEventType.STOPPED, connection.config)
        logger.info("mcp_server_stopped", mcp_id=str(mcp_id), name=connection.config.name)
        return True

    def _watch(self, connection: MCPConnection) -> None:
        """Drop the connection as soon as its server goes away on its own."""
        transport = connection.client.transport

        def on_close(reason: str) -> None:
            task = asyncio.get_running_loop().create_task(
                self._drop(connection, f"Process exited: {reason}")
            )
            self._drop_tasks.add(task)
            task.add_done_callback(self._drop_tasks.discard)

        transport.set_close_callback(on_close)
        if not transport.is_connected:
            on_close("MCP server closed connection")

    async def _drop(self, connection: MCPConnection, reason: str) -> None:
        """Remove a failed connection and mark its provider as errored.

        A connection that was already stopped keeps its Stopped status.
        """
        async with self._table_lock:
            registered = self._connections.get(connection.mcp_id) is connection
            if registered:
                del self._connections[connection.mcp_id]
        if not registered:
            return
        self._status.set_status(connection.mcp_id, MCPStatus.error(reason))
        self._publish(MCPEventType.UNHEALTHY, connection.config, error=reason)
        logger.warning(
            "mcp_server_unhealthy",
            mcp_id=str(connection.mcp_id),
            name=connection.config.name,
            error=reason,
        )
        await self._close_client(connection.client, connection.config, reason=reason)

    async def _close_client(self, client: MCPClient, config: MCPConfig, *, reason: str) -> None:
        timeout = self._settings.mcp_shutdown_timeout * 2
        try:
            await asyncio.wait_for(client.close(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("mcp_shutdown_timeout", mcp_id=str(config.id), reason=reason)
        except (MCPTransportError, OSError) as e:
            logger.warning(
                "mcp_shutdown_failed",
                mcp_id=str(config.id),
                reason=reason,
                error=str(e),
            )

    async def cleanup_idle(self) -> list[UUID]:
        """Stop every connection idle for longer than the idle timeout.

        A zero idle timeout makes every active connection eligible.

        Returns:
            Ids of the stopped providers
        """
        timeout = self._settings.mcp_idle_timeout
        now = time.monotonic()
        async with self._table_lock:
            idle = [
                c for c in self._connections.values()
                if timeout <= 0 or c.idle_seconds(now) > timeout
            ]

        stopped = []
        for connection in idle:
            logger.info(
                "mcp_idle_timeout",
                mcp_id=str(connection.mcp_id),
                idle_seconds=round(connection.idle_seconds(now), 1),
            )
            if await self.stop_mcp(connection.mcp_id):
                stopped.append(connection.mcp_id)
        return stopped

    async def handle_config_change(self, config: MCPConfig) -> None:
        """React to an edited configuration.

        A disabled provider is stopped. An active provider whose
        configuration changed is restarted right away with the new one.
        Inactive enabled providers are left for the next start.
        """
        connection = self._connections.get(config.id)
        if connection is None:
            return

        if not config.enabled:
            await self.stop_mcp(config.id)
            return

        if connection.config == config:
            return

        self._restart_counts[config.id] = self._restart_counts.get(config.id, 0) + 1
        self._status.set_status(config.id, MCPStatus.restarting())
        self._publish(MCPEventType.RESTARTING, config)
        logger.info("mcp_server_restarting", mcp_id=str(config.id), name=config.name)

        await self.stop_mcp(config.id)
        await self.start_mcp(config)

    async def delete_mcp(self, config: MCPConfig) -> None:
        """Stop a provider and delete its stored credentials."""
        await self.stop_mcp(config.id)
        self._secrets.delete_api_key(config.id)
        self._status.clear(config.id)
        self._restart_counts.pop(config.id, None)
        self._id_locks.pop(config.id, None)
        self._publish(MCPEventType.DELETED, config)
        logger.info("mcp_server_deleted", mcp_id=str(config.id), name=config.name)

    async def shutdown(self) -> None:
        """Stop the idle sweeper and every active connection."""
        await self.stop_idle_sweeper()
        ids = list(self._connections)
        if ids:
            await asyncio.gather(*(self.stop_mcp(i) for i in ids), return_exceptions=True)
        if self._drop_tasks:
            await asyncio.gather(*self._drop_tasks, return_exceptions=True)
        logger.info("mcp_runtime_shutdown", stopped=len(ids))

    # Idle sweeper

    def start_idle_sweeper(self, interval: float | None = None) -> "asyncio.Task[None]":
        """Run cleanup_idle periodically in the background."""
        if self._sweeper is not None and not self._sweeper.done():
            return self._sweeper
        period = interval if interval is not None else self._settings.mcp_idle_sweep_interval
        self._sweeper = asyncio.create_task(self._sweep_loop(period))
        return self._sweeper

    async def stop_idle_sweeper(self) -> None:
        sweeper, self._sweeper = self._sweeper, None
        if sweeper is None:
            return
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.cleanup_idle()
            except MCPRuntimeError as e:
                logger.error("mcp_idle_sweep_failed", error=str(e))

    # Tool routing

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> dict[str, Any]:
        """Call a tool on whichever active provider advertises it.

        When several providers advertise the same name, the one registered
        first wins.

        Args:
            name: Tool name
            arguments: Tool arguments

        Returns:
            The tool result (MCP CallToolResult as a dict)

        Raises:
            MCPToolNotFoundError: If no active provider has the tool
            MCPToolTimeoutError: If the call times out (provider is dropped)
            MCPToolError: If the call fails
        """
        connection = self._find_connection(name)
        if connection is None:
            raise MCPToolNotFoundError(name)

        config = connection.config
        timeout = self._settings.mcp_tool_timeout
        connection.touch()
        self._publish(MCPEventType.TOOL_CALLED, config, tool=name)

        try:
            result = await asyncio.wait_for(
                connection.client.call_tool(name, arguments or {}),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, MCPTimeoutError) as e:
            reason = f"Tool '{name}' timed out after {timeout}s"
            await self._drop(connection, reason)
            raise MCPToolTimeoutError(reason) from e
        except MCPProtocolError as e:
            logger.warning(
                "mcp_tool_failed",
                mcp_id=str(config.id),
                tool_name=name,
                error=str(e),
            )
            raise MCPToolError(f"Tool '{name}' failed: {e}") from e
        except MCPTransportError as e:
            reason = f"Connection lost during tool '{name}': {e}"
            await self._drop(connection, reason)
            raise MCPToolError(reason) from e

        connection.touch()
        self._publish(MCPEventType.TOOL_COMPLETED, config, tool=name, is_error=result.isError)
        logger.debug("mcp_tool_called", mcp_id=str(config.id), tool_name=name)
        return result.model_dump(mode="json", by_alias=True, exclude_none=True)

    def _find_connection(self, tool_name: str) -> MCPConnection | None:
        for connection in list(self._connections.values()):
            if any(tool.name == tool_name for tool in connection.tools):
                return connection
        return None

    def find_tool_provider(self, tool_name: str) -> UUID | None:
        connection = self._find_connection(tool_name)
        return connection.mcp_id if connection else None

    def get_all_tools(self) -> list[MCPTool]:
        """Aggregated tools of every active provider, in registration order."""
        return [t for c in list(self._connections.values()) for t in c.tools]

    def get_tools(self) -> list[ToolDefinition]:
        """Aggregated tools as LLM-facing definitions."""
        return [
            ToolDefinition(
                name=t.name,
                description=t.description,
                parameters=t.input_schema,
                mcp_id=t.mcp_id,
            )
            for t in self.get_all_tools()
        ]

    # Queries

    def active_count(self) -> int:
        return len(self._connections)

    def has_active_mcps(self) -> bool:
        return bool(self._connections)

    def is_active(self, mcp_id: UUID) -> bool:
        return mcp_id in self._connections

    def get_last_used(self, mcp_id: UUID) -> float | None:
        """Monotonic timestamp of a provider's last activity."""
        connection = self._connections.get(mcp_id)
        return connection.last_activity if connection else None

    def get_restart_count(self, mcp_id: UUID) -> int:
        return self._restart_counts.get(mcp_id, 0)
