"""MCP Transport Adapters.

Provides transport implementations for the supported MCP connection types.
Both transports speak JSON-RPC 2.0 and correlate responses by request id,
so several requests may be in flight on one connection at a time.
"""

import asyncio
import itertools
import json
import os
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from mcphost.models.mcp import TransportType

logger = structlog.get_logger()

_STDERR_LINE_LIMIT = 500
DEFAULT_READ_LIMIT = 16 * 1024 * 1024


class MCPTransportError(Exception):
    """Error in MCP transport operations."""

    pass


class MCPConnectionError(MCPTransportError):
    """Failed to connect to MCP server, or the connection went away."""

    pass


class MCPTimeoutError(MCPTransportError):
    """MCP operation timed out."""

    pass


@dataclass
class MCPMessage:
    """Message for MCP communication.

    ``id`` is assigned by the transport when left as None.
    """

    method: str
    params: dict[str, Any] | None = None
    id: int | str | None = None


@dataclass
class MCPResponse:
    """Response from MCP server."""

    result: Any = None
    error: dict[str, Any] | None = None
    id: int | str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "MCPResponse":
        return cls(
            result=payload.get("result"),
            error=payload.get("error"),
            id=payload.get("id"),
        )


def _encode(message: MCPMessage) -> dict[str, Any]:
    payload: dict[str, Any] = {"jsonrpc": "2.0", "method": message.method}
    if message.params is not None:
        payload["params"] = message.params
    if message.id is not None:
        payload["id"] = message.id
    return payload


class MCPTransport(ABC):
    """Abstract base class for MCP transports.

    Implements the transport layer for MCP communication.
    """

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self._on_close: Callable[[str], None] | None = None

    def set_close_callback(self, callback: Callable[[str], None] | None) -> None:
        """Register a callback fired when the server goes away on its own.

        It receives the reason and is not fired by ``disconnect``.
        """
        self._on_close = callback

    def _notify_closed(self, reason: str) -> None:
        if self._on_close is not None:
            self._on_close(reason)

    def _next_id(self) -> int:
        return next(self._ids)

    @abstractmethod
    async def connect(self) -> None:
        """Establish connection to MCP server.

        Raises:
            MCPConnectionError: If connection fails
        """
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Close connection to MCP server.

        Any request still waiting for a response fails with
        MCPConnectionError. Calling this more than once is harmless.
        """
        pass

    @abstractmethod
    async def send(self, message: MCPMessage, timeout: float | None = None) -> MCPResponse:
        """Send request and wait for its response.

        Args:
            message: Message to send
            timeout: Seconds to wait for the response (None waits forever)

        Returns:
            Server response

        Raises:
            MCPConnectionError: If not connected or the connection is lost
            MCPTimeoutError: If no response arrives in time
        """
        pass

    @abstractmethod
    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        """Send a notification (no response expected)."""
        pass

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Check if transport is connected."""
        pass


class StdioTransport(MCPTransport):
    """Transport for stdio-based MCP servers.

    Spawns the server as a child process and exchanges newline-delimited
    JSON-RPC over its stdin/stdout. A background reader resolves pending
    requests as responses arrive; stderr is drained to debug logs so a
    chatty server can never block on a full pipe.
    """

    def __init__(
        self,
        command: str,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
        shutdown_timeout: float = 5.0,
        read_limit: int = DEFAULT_READ_LIMIT,
    ) -> None:
        """Initialize stdio transport.

        Args:
            command: Command to execute
            args: Command arguments
            env: Extra environment variables, layered over the parent's
            cwd: Working directory for the child
            shutdown_timeout: Seconds to wait for exit before killing
            read_limit: Largest stdout line in bytes
        """
        super().__init__()
        self.command = command
        self.args = args or []
        self.env = env or {}
        self.cwd = cwd
        self.shutdown_timeout = shutdown_timeout
        self.read_limit = read_limit
        self._process: asyncio.subprocess.Process | None = None
        self._pending: dict[int | str, asyncio.Future[MCPResponse]] = {}
        self._write_lock = asyncio.Lock()
        self._reader_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._connected = False

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    async def connect(self) -> None:
        """Start the MCP server process."""
        if self._connected:
            return

        # Must include the full parent environment so PATH resolves npx/docker
        env = os.environ.copy()
        env.update(self.env)

        try:
            self._process = await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=self.cwd,
                limit=self.read_limit,
            )
        except OSError as e:
            raise MCPConnectionError(f"Failed to start process '{self.command}': {e}") from e

        self._connected = True
        self._reader_task = asyncio.create_task(self._read_loop())
        self._stderr_task = asyncio.create_task(self._drain_stderr())
        logger.info(
            "stdio_transport_connected",
            command=self.command,
            pid=self._process.pid,
        )

    async def disconnect(self) -> None:
        """Terminate the MCP server process."""
        process = self._process
        self._connected = False
        self._fail_pending(MCPConnectionError("Transport closed"))

        if process is None:
            return
        self._process = None

        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()

        if process.returncode is None:
            try:
                process.terminate()
                await asyncio.wait_for(process.wait(), timeout=self.shutdown_timeout)
            except ProcessLookupError:
                pass
            except asyncio.TimeoutError:
                logger.warning("stdio_transport_kill", pid=process.pid)
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()

        for task in (self._reader_task, self._stderr_task):
            if task is not None and not task.done():
                task.cancel()
        await asyncio.gather(
            *(t for t in (self._reader_task, self._stderr_task) if t is not None),
            return_exceptions=True,
        )
        self._reader_task = None
        self._stderr_task = None
        logger.info("stdio_transport_disconnected", pid=process.pid)

    async def send(self, message: MCPMessage, timeout: float | None = None) -> MCPResponse:
        """Send message via stdin and wait for the matching response on stdout."""
        if not self.is_connected:
            raise MCPConnectionError("Not connected")

        if message.id is None:
            message.id = self._next_id()
        future: asyncio.Future[MCPResponse] = asyncio.get_running_loop().create_future()
        self._pending[message.id] = future

        try:
            await self._write(_encode(message))
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise MCPTimeoutError(
                f"Request '{message.method}' timed out after {timeout}s"
            ) from e
        finally:
            self._pending.pop(message.id, None)

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        if not self.is_connected:
            raise MCPConnectionError("Not connected")
        await self._write(_encode(MCPMessage(method=method, params=params)))

    @property
    def is_connected(self) -> bool:
        """Check if process is running."""
        return (
            self._connected
            and self._process is not None
            and self._process.returncode is None
        )

    async def _write(self, payload: dict[str, Any]) -> None:
        process = self._process
        if process is None or process.stdin is None:
            raise MCPConnectionError("Subprocess stdin not available")
        data = json.dumps(payload).encode() + b"\n"
        try:
            async with self._write_lock:
                process.stdin.write(data)
                await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise MCPConnectionError("MCP server closed connection") from e

    async def _read_loop(self) -> None:
        process = self._process
        if process is None or process.stdout is None:
            return
        reason = "MCP server closed connection"
        try:
            while True:
                try:
                    line = await process.stdout.readline()
                except (ValueError, asyncio.LimitOverrunError):
                    reason = f"MCP server sent a message larger than {self.read_limit} bytes"
                    logger.error(
                        "stdio_transport_message_too_large",
                        pid=process.pid,
                        limit=self.read_limit,
                    )
                    break
                if not line:
                    break
                try:
                    payload = json.loads(line.decode())
                except (UnicodeDecodeError, json.JSONDecodeError):
                    logger.warning("stdio_transport_invalid_message", pid=process.pid)
                    continue
                if not isinstance(payload, dict):
                    continue
                self._dispatch(payload)
        finally:
            # disconnect() clears _connected before cancelling this task
            unexpected = self._connected
            self._connected = False
            self._fail_pending(MCPConnectionError(reason))
            if unexpected:
                logger.warning("stdio_transport_lost", pid=process.pid, reason=reason)
                self._notify_closed(reason)

    def _dispatch(self, payload: dict[str, Any]) -> None:
        if "result" not in payload and "error" not in payload:
            # Server-initiated request or notification
            logger.debug("stdio_transport_server_message", method=payload.get("method"))
            return
        future = self._pending.get(payload.get("id"))  # type: ignore[arg-type]
        if future is not None and not future.done():
            future.set_result(MCPResponse.from_payload(payload))

    async def _drain_stderr(self) -> None:
        process = self._process
        if process is None or process.stderr is None:
            return
        while True:
            line = await process.stderr.readline()
            if not line:
                break
            logger.debug(
                "stdio_transport_stderr",
                pid=process.pid,
                line=line.decode(errors="replace").rstrip()[:_STDERR_LINE_LIMIT],
            )

    def _fail_pending(self, error: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()


def _parse_sse_messages(text: str) -> list[dict[str, Any]]:
    """Collect JSON payloads from a text/event-stream body."""
    messages: list[dict[str, Any]] = []
    data_lines: list[str] = []

    def flush() -> None:
        if not data_lines:
            return
        try:
            payload = json.loads("\n".join(data_lines))
        except json.JSONDecodeError:
            logger.warning("http_transport_invalid_event")
        else:
            if isinstance(payload, dict):
                messages.append(payload)
        data_lines.clear()

    for line in text.splitlines():
        if not line:
            flush()
        elif line.startswith("data:"):
            data_lines.append(line[5:].lstrip())
    flush()
    return messages


class StreamableHttpTransport(MCPTransport):
    """Transport for streamable HTTP-based MCP servers.

    Every request is a POST to the server URL. The response is either a
    plain JSON-RPC message or a text/event-stream carrying it. The session
    id handed out by the server is echoed back on later requests.
    """

    SESSION_HEADER = "Mcp-Session-Id"

    def __init__(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 30.0,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize HTTP transport.

        Args:
            url: Server URL
            headers: HTTP headers (for auth)
            timeout: Per-request HTTP timeout in seconds
            http_transport: Optional httpx transport (mainly for tests)
        """
        super().__init__()
        self.url = url
        self.headers = headers or {}
        self.timeout = timeout
        self._http_transport = http_transport
        self._client: httpx.AsyncClient | None = None
        self._session_id: str | None = None
        self._inflight: set[asyncio.Task[MCPResponse]] = set()
        self._closed = False

    @property
    def session_id(self) -> str | None:
        return self._session_id

    async def connect(self) -> None:
        """Initialize HTTP client. No request is made until the first send."""
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(
            headers=self.headers,
            timeout=self.timeout,
            transport=self._http_transport,
        )
        self._closed = False
        logger.info("http_transport_connected", url=self.url)

    async def disconnect(self) -> None:
        """Cancel in-flight requests and close HTTP client."""
        self._closed = True
        tasks = list(self._inflight)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self._client is not None:
            client, self._client = self._client, None
            await client.aclose()
            logger.info("http_transport_disconnected", url=self.url)

    async def send(self, message: MCPMessage, timeout: float | None = None) -> MCPResponse:
        """Send message via HTTP POST."""
        if not self.is_connected:
            raise MCPConnectionError("Not connected")

        if message.id is None:
            message.id = self._next_id()

        task = asyncio.ensure_future(self._post(_encode(message), message.id))
        self._inflight.add(task)
        try:
            return await asyncio.wait_for(task, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise MCPTimeoutError(
                f"Request '{message.method}' timed out after {timeout}s"
            ) from e
        except asyncio.CancelledError:
            if self._closed and task.cancelled():
                raise MCPConnectionError("Transport closed") from None
            raise
        finally:
            self._inflight.discard(task)

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        if not self.is_connected:
            raise MCPConnectionError("Not connected")
        await self._post(_encode(MCPMessage(method=method, params=params)), None)

    @property
    def is_connected(self) -> bool:
        """Check if client is initialized."""
        return self._client is not None and not self._closed

    async def _post(self, payload: dict[str, Any], request_id: int | str | None) -> MCPResponse:
        client = self._client
        if client is None:
            raise MCPConnectionError("Not connected")

        headers = {"Accept": "application/json, text/event-stream"}
        if self._session_id:
            headers[self.SESSION_HEADER] = self._session_id

        try:
            response = await client.post(self.url, json=payload, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise MCPConnectionError(
                f"HTTP {e.response.status_code} from MCP server"
            ) from e
        except httpx.HTTPError as e:
            raise MCPConnectionError(f"HTTP request failed: {e}") from e

        session_id = response.headers.get(self.SESSION_HEADER)
        if session_id:
            self._session_id = session_id

        if request_id is None:
            return MCPResponse()

        content_type = response.headers.get("content-type", "")
        if content_type.startswith("text/event-stream"):
            candidates = _parse_sse_messages(response.text)
        else:
            try:
                data = response.json()
            except ValueError as e:
                raise MCPTransportError("Invalid JSON from MCP server") from e
            candidates = data if isinstance(data, list) else [data]

        for candidate in candidates:
            if isinstance(candidate, dict) and candidate.get("id") == request_id:
                return MCPResponse.from_payload(candidate)
        raise MCPTransportError("No response received")


def create_transport(
    transport_type: TransportType | str,
    **kwargs: Any,
) -> MCPTransport:
    """Factory function to create appropriate transport.

    Args:
        transport_type: Type of transport (stdio, http)
        **kwargs: Transport-specific arguments

    Returns:
        Configured transport instance

    Raises:
        ValueError: If transport type is unknown
    """
    kind = transport_type.value if isinstance(transport_type, TransportType) else transport_type
    if kind == "stdio":
        return StdioTransport(
            command=kwargs["command"],
            args=kwargs.get("args"),
            env=kwargs.get("env"),
            cwd=kwargs.get("cwd"),
            shutdown_timeout=kwargs.get("shutdown_timeout", 5.0),
            read_limit=kwargs.get("read_limit", DEFAULT_READ_LIMIT),
        )
    elif kind in ("http", "streamable_http", "streamable-http"):
        return StreamableHttpTransport(
            url=kwargs["url"],
            headers=kwargs.get("headers"),
            timeout=kwargs.get("timeout", 30.0),
            http_transport=kwargs.get("http_transport"),
        )
    else:
        raise ValueError(f"Unknown transport type: {transport_type}")
