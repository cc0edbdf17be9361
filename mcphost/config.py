"""Application configuration using pydantic-settings.

All configuration is loaded from environment variables (prefix ``MCPHOST_``)
with sensible defaults. Secrets should NEVER be logged or exposed in error
messages.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_secrets_dir() -> Path:
    return Path.home() / ".local" / "share" / "mcphost" / "mcp_secrets"


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables.

    All settings are immutable after initialization.
    Secrets are wrapped in SecretStr to prevent accidental exposure.
    """

    model_config = SettingsConfigDict(
        env_prefix="MCPHOST_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    # Secrets storage
    secrets_dir: Path = Field(
        default_factory=_default_secrets_dir,
        description="Directory holding per-MCP secrets (created with mode 0700)",
    )
    encryption_key: SecretStr | None = Field(
        default=None,
        description="Optional Fernet key; when set, secrets are encrypted at rest",
    )

    # MCP timeouts (seconds)
    mcp_spawn_timeout: float = Field(default=30.0, gt=0, le=600)
    mcp_init_timeout: float = Field(
        default=30.0,
        gt=0,
        le=600,
        description="Timeout for the initialize handshake and tool listing",
    )
    mcp_tool_timeout: float = Field(default=30.0, gt=0, le=3600)
    mcp_shutdown_timeout: float = Field(default=5.0, gt=0, le=60)
    mcp_stdio_read_limit: int = Field(
        default=16 * 1024 * 1024,
        ge=64 * 1024,
        description="Largest single JSON-RPC line (bytes) accepted from a stdio server",
    )

    # Idle reclamation
    mcp_idle_timeout: float = Field(
        default=30 * 60,
        ge=0,
        description="Inactivity (seconds) after which an active MCP is stopped; 0 evicts on every sweep",
    )
    mcp_idle_sweep_interval: float = Field(default=60.0, gt=0, le=3600)

    # Registry
    registry_official_url: str = Field(
        default="https://registry.modelcontextprotocol.io/v0.1/servers",
        description="Official MCP registry servers endpoint",
    )
    registry_smithery_url: str = Field(
        default="https://registry.smithery.ai/servers",
        description="Smithery registry servers endpoint",
    )
    registry_timeout: float = Field(default=30.0, gt=0, le=300)

    # OAuth
    oauth_timeout: float = Field(default=30.0, gt=0, le=300)
    oauth_callback_host: str = Field(
        default="127.0.0.1",
        description="Loopback address the OAuth redirect receiver binds to",
    )

    # Logging
    debug: bool = Field(default=False)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO"
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        """Accept lower-case level names from the environment."""
        return v.upper() if isinstance(v, str) else v

    def get_masked_key(self, key_name: str) -> str:
        """Get a masked version of a secret setting for logging.

        Only shows first 8 characters followed by '...'
        """
        secret = getattr(self, key_name, None)
        if secret is None:
            return "<not set>"
        if isinstance(secret, SecretStr):
            value = secret.get_secret_value()
        else:
            value = str(secret)
        if len(value) <= 8:
            return "***"
        return f"{value[:8]}..."


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Components accept an explicit Settings instance; this accessor is only
    the fallback used when none is passed in.
    """
    return Settings()
