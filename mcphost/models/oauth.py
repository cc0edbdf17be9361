"""OAuth configuration and token models."""

import time

from pydantic import BaseModel, ConfigDict, Field


class OAuthConfig(BaseModel):
    """OAuth2 authorization-code settings for one provider."""

    model_config = ConfigDict(frozen=True)

    client_id: str
    client_secret: str
    auth_url: str
    token_url: str
    redirect_uri: str
    scopes: list[str] = Field(default_factory=list)


class OAuthToken(BaseModel):
    """OAuth tokens returned from token exchange.

    ``expires_at`` is epoch seconds. A token without it never expires.
    """

    access_token: str
    token_type: str = "Bearer"
    refresh_token: str | None = None
    expires_at: int | None = None
    scope: str | None = None

    def is_expired(self, now: float | None = None) -> bool:
        if self.expires_at is None:
            return False
        current = time.time() if now is None else now
        return current >= self.expires_at
