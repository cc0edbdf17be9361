"""Core layer - encryption, events and logging setup."""

from mcphost.core.encryption import SecretEncryption, mask_secret_value
from mcphost.core.events import EventBus, MCPEvent, MCPEventType
from mcphost.core.logging_setup import configure_logging

__all__ = [
    "EventBus",
    "MCPEvent",
    "MCPEventType",
    "SecretEncryption",
    "configure_logging",
    "mask_secret_value",
]
