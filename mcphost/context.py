"""Application context.

Builds every long-lived component once and hands them out explicitly, so
a context can be created and torn down repeatedly (for example per test)
without state leaking between instances.
"""

from dataclasses import dataclass

import structlog

from mcphost.config import Settings, get_settings
from mcphost.core.encryption import SecretEncryption
from mcphost.core.events import EventBus
from mcphost.core.logging_setup import configure_logging
from mcphost.mcp.registry import MCPRegistry
from mcphost.mcp.runtime import MCPRuntime
from mcphost.mcp.status import StatusManager
from mcphost.services.mcp_service import MCPService
from mcphost.services.oauth_service import OAuthManager
from mcphost.services.secrets_service import SecretsManager

logger = structlog.get_logger()


@dataclass
class AppContext:
    """Wired application components."""

    settings: Settings
    event_bus: EventBus
    secrets: SecretsManager
    oauth: OAuthManager
    status_manager: StatusManager
    runtime: MCPRuntime
    registry: MCPRegistry
    mcp_service: MCPService

    @classmethod
    def create(cls, settings: Settings | None = None, *, setup_logging: bool = False) -> "AppContext":
        """Build a context.

        Args:
            settings: Settings to use (defaults to get_settings())
            setup_logging: Also configure structlog from the settings
        """
        settings = settings or get_settings()
        if setup_logging:
            configure_logging(settings)

        encryption = None
        if settings.encryption_key is not None:
            encryption = SecretEncryption(settings.encryption_key.get_secret_value())

        event_bus = EventBus()
        secrets = SecretsManager(settings.secrets_dir, encryption=encryption)
        oauth = OAuthManager(
            timeout=settings.oauth_timeout,
            callback_host=settings.oauth_callback_host,
        )
        status_manager = StatusManager()
        runtime = MCPRuntime(
            secrets,
            settings=settings,
            status_manager=status_manager,
            event_bus=event_bus,
        )

        logger.info(
            "app_context_created",
            secrets_dir=str(settings.secrets_dir),
            encryption_key=settings.get_masked_key("encryption_key"),
            idle_timeout=settings.mcp_idle_timeout,
        )

        return cls(
            settings=settings,
            event_bus=event_bus,
            secrets=secrets,
            oauth=oauth,
            status_manager=status_manager,
            runtime=runtime,
            registry=MCPRegistry(settings),
            mcp_service=MCPService(runtime, oauth),
        )

    async def aclose(self) -> None:
        """Stop background work and every provider connection."""
        await self.runtime.shutdown()
        logger.info("app_context_closed")

    async def __aenter__(self) -> "AppContext":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
