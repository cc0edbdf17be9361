"""mcphost - runtime for MCP tool provider connections."""

__version__ = "0.1.0"
