"""MCP service.

Facade the rest of the application talks to: keeps the current set of
provider configurations, drives the runtime when they change, and exposes
tools and status to the presentation and LLM layers.
"""

from collections.abc import Iterable
from typing import Any
from uuid import UUID

import structlog

from mcphost.mcp.runtime import MCPRuntime, StartResult
from mcphost.mcp.status import AggregateStatus, MCPStatus, StatusKind
from mcphost.models.mcp import MCPConfig, MCPTool, ToolDefinition
from mcphost.services.oauth_service import OAuthManager

logger = structlog.get_logger()


class MCPServiceError(Exception):
    """Error in MCP service operations."""

    pass


class MCPNotConfiguredError(MCPServiceError):
    """No configuration is known for the provider id."""

    def __init__(self, mcp_id: UUID) -> None:
        self.mcp_id = mcp_id
        super().__init__(f"MCP {mcp_id} is not configured")


class MCPService:
    """Service managing the configured MCP providers.

    Example usage:
        service = MCPService(runtime, oauth)
        await service.initialize(configs)
        tools = service.get_tools()
        result = await service.call_tool("search", {"query": "mcp"})
    """

    def __init__(self, runtime: MCPRuntime, oauth: OAuthManager | None = None) -> None:
        self._runtime = runtime
        self._oauth = oauth
        self._configs: dict[UUID, MCPConfig] = {}

    @property
    def runtime(self) -> MCPRuntime:
        return self._runtime

    def list_configs(self) -> list[MCPConfig]:
        return list(self._configs.values())

    def get_config(self, mcp_id: UUID) -> MCPConfig | None:
        return self._configs.get(mcp_id)

    async def initialize(self, configs: Iterable[MCPConfig]) -> dict[UUID, StartResult]:
        """Start every enabled provider.

        Failures are logged and reported per provider; they never abort
        the others.

        Returns:
            Start outcome per enabled provider id
        """
        self._configs = {c.id: c for c in configs}
        results = await self._runtime.start_all(self._configs.values())

        for mcp_id, result in results.items():
            if not result.success:
                logger.warning(
                    "mcp_initialize_failed",
                    mcp_id=str(mcp_id),
                    name=self._configs[mcp_id].name,
                    error=result.error,
                )

        logger.info(
            "mcp_service_initialized",
            configured=len(self._configs),
            active=self._runtime.active_count(),
        )
        return results

    async def reload(self, configs: Iterable[MCPConfig]) -> dict[UUID, StartResult]:
        """Apply a new set of configurations.

        Providers no longer configured are stopped, active ones are
        updated through the runtime's config-change handling, and enabled
        providers that are not running are started.

        Returns:
            Start outcome for each provider that was started
        """
        new_configs = {c.id: c for c in configs}

        for mcp_id in list(self._configs):
            if mcp_id not in new_configs:
                await self._runtime.stop_mcp(mcp_id)
                self._runtime.status_manager.clear(mcp_id)

        for config in new_configs.values():
            if self._runtime.is_active(config.id):
                await self._runtime.handle_config_change(config)

        self._configs = new_configs
        results = await self._runtime.start_all(
            c for c in new_configs.values() if not self._runtime.is_active(c.id)
        )
        logger.info(
            "mcp_service_reloaded",
            configured=len(new_configs),
            active=self._runtime.active_count(),
        )
        return results

    async def set_enabled(self, mcp_id: UUID, enabled: bool) -> MCPConfig:
        """Enable or disable a provider, starting or stopping it as needed.

        Raises:
            MCPNotConfiguredError: If the provider is unknown
        """
        config = self._configs.get(mcp_id)
        if config is None:
            raise MCPNotConfiguredError(mcp_id)

        updated = config.model_copy(update={"enabled": enabled})
        self._configs[mcp_id] = updated

        if enabled:
            await self._runtime.start_mcp(updated)
        else:
            await self._runtime.handle_config_change(updated)
        return updated

    async def restart(self, mcp_id: UUID) -> None:
        """Stop and start a provider with its current configuration.

        Raises:
            MCPNotConfiguredError: If the provider is unknown
        """
        config = self._configs.get(mcp_id)
        if config is None:
            raise MCPNotConfiguredError(mcp_id)

        await self._runtime.stop_mcp(mcp_id)
        await self._runtime.start_mcp(config)

    async def delete_mcp(self, config: MCPConfig) -> None:
        """Stop a provider and forget its credentials, OAuth state and config."""
        await self._runtime.delete_mcp(config)
        if self._oauth is not None:
            self._oauth.delete_mcp(config.id)
        self._configs.pop(config.id, None)

    def get_tools(self) -> list[ToolDefinition]:
        return self._runtime.get_tools()

    def get_available_tools(self, mcp_id: UUID) -> list[MCPTool]:
        """Tools advertised by one provider (empty when it is not active)."""
        return [t for t in self._runtime.get_all_tools() if t.mcp_id == mcp_id]

    def tool_provider(self, tool_name: str) -> UUID | None:
        return self._runtime.find_tool_provider(tool_name)

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> dict[str, Any]:
        """Call a tool on the provider that advertises it."""
        logger.info("mcp_tool_call", tool_name=name)
        return await self._runtime.call_tool(name, arguments)

    def has_active_mcps(self) -> bool:
        return self._runtime.has_active_mcps()

    def active_count(self) -> int:
        return self._runtime.active_count()

    def get_status(self, mcp_id: UUID) -> MCPStatus:
        """Status of a provider; a disabled one that never ran shows Disabled."""
        status = self._runtime.status_manager.get_status(mcp_id)
        config = self._configs.get(mcp_id)
        if config is not None and not config.enabled and status.kind is StatusKind.STOPPED:
            return MCPStatus.disabled()
        return status

    def aggregate_status(self) -> AggregateStatus:
        return self._runtime.status_manager.aggregate()
