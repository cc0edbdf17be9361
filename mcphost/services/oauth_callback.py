"""Loopback receiver for OAuth redirects.

A desktop client cannot host a public redirect URI, so a flow points the
provider at ``http://127.0.0.1:<port>/callback`` and this one-shot server
captures the first redirect that arrives there.
"""

import asyncio
from dataclasses import dataclass
from typing import Any

import structlog
from aiohttp import web

logger = structlog.get_logger()

CALLBACK_PATH = "/callback"

_PAGE = (
    "<!DOCTYPE html><html><head><title>{title}</title></head>"
    "<body><h1>{title}</h1><p>You can close this window.</p></body></html>"
)


class OAuthCallbackError(Exception):
    """Callback server could not start, or no redirect arrived in time."""

    pass


@dataclass(frozen=True)
class OAuthCallbackResult:
    """Query parameters delivered to the redirect URI.

    Hosted flows (Smithery) hand back ``token`` directly; authorization
    code flows deliver ``code`` and ``state``.
    """

    token: str | None = None
    code: str | None = None
    state: str | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None and (self.token is not None or self.code is not None)

    @classmethod
    def from_query(cls, query: Any) -> "OAuthCallbackResult":
        return cls(
            token=query.get("access_token") or query.get("token"),
            code=query.get("code"),
            state=query.get("state"),
            error=query.get("error_description") or query.get("error"),
        )


class OAuthCallbackServer:
    """One-shot HTTP listener on an ephemeral loopback port.

    Example usage:
        async with OAuthCallbackServer() as receiver:
            url = generate_smithery_oauth_url(name, receiver.redirect_uri)
            # open url in a browser
            result = await receiver.wait(timeout=300)
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 0) -> None:
        self.host = host
        self._requested_port = port
        self._port: int | None = None
        self._runner: web.AppRunner | None = None
        self._result: asyncio.Future[OAuthCallbackResult] | None = None

    @property
    def port(self) -> int:
        if self._port is None:
            raise OAuthCallbackError("Callback server is not running")
        return self._port

    @property
    def redirect_uri(self) -> str:
        return f"http://{self.host}:{self.port}{CALLBACK_PATH}"

    async def start(self) -> int:
        """Bind the listener and return the port it got."""
        if self._runner is not None:
            return self.port

        app = web.Application()
        app.router.add_get(CALLBACK_PATH, self._handle_callback)
        runner = web.AppRunner(app, access_log=None)
        await runner.setup()
        try:
            site = web.TCPSite(runner, self.host, self._requested_port)
            await site.start()
        except OSError as e:
            await runner.cleanup()
            raise OAuthCallbackError(f"Failed to start callback server: {e}") from e

        self._runner = runner
        self._port = runner.addresses[0][1]
        self._result = asyncio.get_running_loop().create_future()
        logger.info("oauth_callback_listening", host=self.host, port=self._port)
        return self._port

    async def wait(self, timeout: float | None = None) -> OAuthCallbackResult:
        """Wait for the redirect.

        Raises:
            OAuthCallbackError: If the server is not running or the wait times out
        """
        if self._result is None:
            raise OAuthCallbackError("Callback server is not running")
        try:
            return await asyncio.wait_for(asyncio.shield(self._result), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise OAuthCallbackError(
                f"No OAuth callback received within {timeout}s"
            ) from e

    async def stop(self) -> None:
        runner, self._runner = self._runner, None
        if runner is None:
            return
        await runner.cleanup()
        if self._result is not None and not self._result.done():
            self._result.cancel()
        logger.info("oauth_callback_stopped", port=self._port)

    async def __aenter__(self) -> "OAuthCallbackServer":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    async def _handle_callback(self, request: web.Request) -> web.Response:
        result = OAuthCallbackResult.from_query(request.query)
        if self._result is not None and not self._result.done():
            self._result.set_result(result)
            logger.info(
                "oauth_callback_received",
                succeeded=result.succeeded,
                error=result.error,
            )

        title = "Authentication Successful" if result.succeeded else "Authentication Failed"
        return web.Response(
            text=_PAGE.format(title=title),
            content_type="text/html",
            status=200 if result.succeeded else 400,
        )
