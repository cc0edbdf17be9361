"""OAuth service.

Tracks OAuth2 authorization-code flows for MCP providers: per-provider
client configuration, pending flows keyed by their state parameter, and
the tokens obtained once a flow completes.
"""

import secrets
import threading
import time
from typing import Any
from urllib.parse import quote
from uuid import UUID

import httpx
import structlog

from mcphost.core.encryption import mask_secret_value
from mcphost.models.oauth import OAuthConfig, OAuthToken
from mcphost.services.oauth_callback import OAuthCallbackResult, OAuthCallbackServer

logger = structlog.get_logger()

SMITHERY_AUTHORIZE_URL = "https://smithery.ai/server/{qualified_name}/authorize"


class OAuthError(Exception):
    """Base OAuth error."""

    pass


class OAuthConfigNotFoundError(OAuthError):
    """No OAuth configuration registered for the provider."""

    def __init__(self, mcp_id: UUID) -> None:
        self.mcp_id = mcp_id
        super().__init__(f"No OAuth config registered for MCP {mcp_id}")


class OAuthStateError(OAuthError):
    """State parameter does not match any pending flow."""

    pass


class OAuthCodeExchangeError(OAuthError):
    """Failed to exchange authorization code (or refresh token) for tokens."""

    pass


def _pct(value: str) -> str:
    return quote(value, safe="")


def generate_smithery_oauth_url(qualified_name: str, redirect_uri: str) -> str:
    """Build the hosted Smithery authorization URL for a server."""
    base = SMITHERY_AUTHORIZE_URL.format(qualified_name=_pct(qualified_name))
    return f"{base}?redirect_uri={_pct(redirect_uri)}"


class OAuthManager:
    """Manager for provider OAuth flows and tokens.

    Provides:
    - Authorization URL generation with a CSRF state parameter
    - State to provider resolution for the redirect callback
    - Token exchange and refresh (authorization code -> access token)
    - In-memory token storage
    - A loopback receiver that closes the loop on the redirect

    Example usage:
        oauth = OAuthManager()
        oauth.register_config(mcp_id, OAuthConfig(...))
        url = oauth.generate_auth_url(mcp_id)

        # Redirect callback delivers ?code=...&state=...
        token = await oauth.exchange_code(state, code)

        # Or let a loopback receiver catch the redirect
        async with oauth.callback_server() as receiver:
            oauth.register_config(mcp_id, config.model_copy(
                update={"redirect_uri": receiver.redirect_uri}))
            url = oauth.generate_auth_url(mcp_id)
            token = await oauth.complete_flow(mcp_id, receiver, timeout=300)
    """

    def __init__(
        self,
        timeout: float = 30.0,
        http_transport: httpx.AsyncBaseTransport | None = None,
        callback_host: str = "127.0.0.1",
    ) -> None:
        """Initialize OAuth manager.

        Args:
            timeout: Token endpoint request timeout in seconds
            http_transport: Optional httpx transport (mainly for tests)
            callback_host: Loopback address for redirect receivers
        """
        self._timeout = timeout
        self._callback_host = callback_host
        self._http_transport = http_transport
        self._lock = threading.Lock()
        self._configs: dict[UUID, OAuthConfig] = {}
        self._tokens: dict[UUID, OAuthToken] = {}
        self._pending_flows: dict[str, UUID] = {}

    def register_config(self, mcp_id: UUID, config: OAuthConfig) -> None:
        """Register (or replace) the OAuth configuration of a provider."""
        with self._lock:
            self._configs[mcp_id] = config

    def get_config(self, mcp_id: UUID) -> OAuthConfig | None:
        with self._lock:
            return self._configs.get(mcp_id)

    def generate_auth_url(self, mcp_id: UUID) -> str:
        """Start an authorization flow.

        Mints a fresh state value, records it as a pending flow for the
        provider and returns the URL the user should open.

        Args:
            mcp_id: Provider identifier

        Returns:
            Authorization URL

        Raises:
            OAuthConfigNotFoundError: If no config is registered for mcp_id
        """
        state = secrets.token_urlsafe(32)

        with self._lock:
            config = self._configs.get(mcp_id)
            if config is None:
                raise OAuthConfigNotFoundError(mcp_id)
            self._pending_flows[state] = mcp_id

        url = (
            f"{config.auth_url}?response_type=code"
            f"&client_id={_pct(config.client_id)}"
            f"&redirect_uri={_pct(config.redirect_uri)}"
        )
        if config.scopes:
            url += f"&scope={_pct(' '.join(config.scopes))}"
        url += f"&state={_pct(state)}"

        logger.info("oauth_flow_started", mcp_id=str(mcp_id))
        return url

    def get_mcp_for_state(self, state: str) -> UUID | None:
        """Resolve a state value to its provider without clearing the flow."""
        with self._lock:
            return self._pending_flows.get(state)

    def clear_pending_flow(self, state: str) -> None:
        with self._lock:
            self._pending_flows.pop(state, None)

    def store_token(self, mcp_id: UUID, token: OAuthToken) -> None:
        with self._lock:
            self._tokens[mcp_id] = token

    def get_token(self, mcp_id: UUID) -> OAuthToken | None:
        with self._lock:
            return self._tokens.get(mcp_id)

    def has_valid_token(self, mcp_id: UUID) -> bool:
        """Check if the provider has a non-expired token."""
        token = self.get_token(mcp_id)
        return token is not None and not token.is_expired()

    def delete_mcp(self, mcp_id: UUID) -> None:
        """Forget the token, config and pending flows of a provider."""
        with self._lock:
            self._configs.pop(mcp_id, None)
            self._tokens.pop(mcp_id, None)
            stale = [s for s, owner in self._pending_flows.items() if owner == mcp_id]
            for state in stale:
                del self._pending_flows[state]

    async def exchange_code(self, state: str, code: str) -> OAuthToken:
        """Complete a pending flow by exchanging the authorization code.

        The token is stored for the provider and the pending flow cleared.

        Args:
            state: State parameter returned to the redirect URI
            code: Authorization code returned to the redirect URI

        Returns:
            The stored token

        Raises:
            OAuthStateError: If state does not match a pending flow
            OAuthConfigNotFoundError: If the provider's config was removed
            OAuthCodeExchangeError: If the token endpoint rejects the code
        """
        mcp_id = self.get_mcp_for_state(state)
        if mcp_id is None:
            raise OAuthStateError("Unknown or expired OAuth state")

        config = self.get_config(mcp_id)
        if config is None:
            raise OAuthConfigNotFoundError(mcp_id)

        token = await self._request_token(
            config,
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": config.redirect_uri,
            },
        )

        self.store_token(mcp_id, token)
        self.clear_pending_flow(state)
        logger.info(
            "oauth_token_obtained",
            mcp_id=str(mcp_id),
            access_token=mask_secret_value(token.access_token),
        )
        return token

    def callback_server(self, port: int = 0) -> OAuthCallbackServer:
        """Create a loopback redirect receiver (start it with ``async with``)."""
        return OAuthCallbackServer(host=self._callback_host, port=port)

    async def complete_flow(
        self,
        mcp_id: UUID,
        receiver: OAuthCallbackServer,
        timeout: float | None = None,
    ) -> OAuthToken:
        """Wait for the redirect and turn it into a stored token.

        A redirect carrying a token directly (hosted flows) is stored as
        is. One carrying an authorization code goes through exchange_code.

        Raises:
            OAuthCallbackError: If no redirect arrives in time
            OAuthError: If the provider reported an error or sent neither
            OAuthStateError: If the code's state belongs to another flow
        """
        result = await receiver.wait(timeout)
        return await self.apply_callback(mcp_id, result)

    async def apply_callback(self, mcp_id: UUID, result: OAuthCallbackResult) -> OAuthToken:
        """Store the token a redirect delivered, exchanging its code if needed."""
        if result.error is not None:
            logger.warning("oauth_flow_denied", mcp_id=str(mcp_id), error=result.error)
            raise OAuthError(f"Authorization failed: {result.error}")

        if result.token is not None:
            token = OAuthToken(access_token=result.token)
            self.store_token(mcp_id, token)
            logger.info(
                "oauth_token_obtained",
                mcp_id=str(mcp_id),
                access_token=mask_secret_value(token.access_token),
            )
            return token

        if result.code is None:
            raise OAuthError("OAuth callback carried neither a token nor a code")
        if result.state is None or self.get_mcp_for_state(result.state) != mcp_id:
            raise OAuthStateError("OAuth callback state does not match this flow")
        return await self.exchange_code(result.state, result.code)

    async def refresh_token(self, mcp_id: UUID) -> OAuthToken:
        """Refresh a provider's access token.

        A refresh response without a refresh_token keeps the previous one.

        Raises:
            OAuthConfigNotFoundError: If no config is registered
            OAuthError: If there is no refresh token to use
            OAuthCodeExchangeError: If the token endpoint rejects the refresh
        """
        config = self.get_config(mcp_id)
        if config is None:
            raise OAuthConfigNotFoundError(mcp_id)

        current = self.get_token(mcp_id)
        if current is None or not current.refresh_token:
            raise OAuthError(f"No refresh token for MCP {mcp_id}")

        token = await self._request_token(
            config,
            {
                "grant_type": "refresh_token",
                "refresh_token": current.refresh_token,
            },
        )
        if token.refresh_token is None:
            token = token.model_copy(update={"refresh_token": current.refresh_token})

        self.store_token(mcp_id, token)
        logger.info("oauth_token_refreshed", mcp_id=str(mcp_id))
        return token

    async def _request_token(self, config: OAuthConfig, grant: dict[str, str]) -> OAuthToken:
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                transport=self._http_transport,
            ) as client:
                response = await client.post(
                    config.token_url,
                    data={
                        **grant,
                        "client_id": config.client_id,
                        "client_secret": config.client_secret,
                    },
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as e:
            logger.error(
                "oauth_exchange_http_error",
                grant_type=grant["grant_type"],
                error=str(e),
            )
            raise OAuthCodeExchangeError(f"HTTP error during OAuth exchange: {e}") from e

        if response.status_code != 200:
            logger.error(
                "oauth_exchange_failed",
                grant_type=grant["grant_type"],
                status_code=response.status_code,
            )
            raise OAuthCodeExchangeError(
                f"Token endpoint returned {response.status_code}"
            )

        try:
            data: dict[str, Any] = response.json()
        except ValueError as e:
            raise OAuthCodeExchangeError("Token endpoint returned invalid JSON") from e

        if "error" in data or "access_token" not in data:
            error = data.get("error_description") or data.get("error") or "missing access_token"
            raise OAuthCodeExchangeError(f"OAuth exchange failed: {error}")

        expires_at = None
        if data.get("expires_in") is not None:
            expires_at = int(time.time()) + int(data["expires_in"])

        return OAuthToken(
            access_token=data["access_token"],
            token_type=data.get("token_type", "Bearer"),
            refresh_token=data.get("refresh_token"),
            expires_at=expires_at,
            scope=data.get("scope"),
        )
