"""Services layer - secrets, OAuth flows and the MCP facade.

MCPService lives in ``mcphost.services.mcp_service``; it is not re-exported
here because the MCP layer itself depends on the secrets service.
"""

from mcphost.services.oauth_service import OAuthManager
from mcphost.services.secrets_service import SecretsManager

__all__ = [
    "OAuthManager",
    "SecretsManager",
]
