"""Streamable HTTP transport to the remote MCP server."""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, AsyncIterator

import httpx
from httpx_sse import EventSource

from relay.transport.base import Inbox, RemoteTransport
from relay.transport.errors import TransportClosed, TransportRejected, UnauthorizedError
from relay.version import __version__

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2025-06-18"
PROBE_ID = "relay-probe"

TokenProvider = Callable[[], Awaitable[str | None]]
UnauthorizedHandler = Callable[[str | None], Awaitable[None]]


class StreamableHttpTransport(RemoteTransport):
    """Streamable HTTP client transport for one remote server.

    Implements the client side of the Streamable HTTP transport:
    - HTTP POST for every outgoing message
    - JSON or SSE response bodies for replies
    - Optional GET stream for server-initiated messages
    - Session management with Mcp-Session-Id headers
    """

    kind = "http"

    def __init__(
        self,
        endpoint: str,
        http_client: httpx.AsyncClient,
        *,
        headers: dict[str, str] | None = None,
        token_provider: TokenProvider | None = None,
        on_unauthorized: UnauthorizedHandler | None = None,
        request_timeout: float = 30.0,
    ) -> None:
        """Initialize the transport.

        Args:
            endpoint: MCP endpoint URL
            http_client: Client used for all requests (hooks already applied)
            headers: Custom headers sent on every request
            token_provider: Returns the current access token, if any
            on_unauthorized: Called with the WWW-Authenticate header when a
                send gets 401; the send is retried once afterwards
            request_timeout: Timeout for non-streaming requests
        """
        self.endpoint = endpoint
        self.headers = dict(headers or {})
        self.request_timeout = request_timeout

        self._http_client = http_client
        self._token_provider = token_provider
        self._on_unauthorized = on_unauthorized

        self._session_id: str | None = None
        self._protocol_version: str | None = None
        self._inbox = Inbox()
        self._stream_tasks: set[asyncio.Task] = set()
        self._server_stream_started = False
        self._connected = False
        self._closed = False

    @property
    def is_open(self) -> bool:
        return self._connected and not self._closed

    @property
    def session_id(self) -> str | None:
        return self._session_id

    # ================================
    # Transport Interface
    # ================================

    async def connect(self) -> None:
        """Check that the server speaks Streamable HTTP and accepts our token.

        Sends a probe ``initialize`` request. A probe session the server
        creates is terminated right away; the real session is established
        by the local client's own ``initialize``.
        """
        if self._closed:
            raise TransportClosed("Transport is closed")

        probe = {
            "jsonrpc": "2.0",
            "id": PROBE_ID,
            "method": "initialize",
            "params": {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": {"name": "relay-probe", "version": __version__},
            },
        }
        headers = await self._build_headers()

        try:
            async with self._http_client.stream(
                "POST",
                self.endpoint,
                json=probe,
                headers=headers,
                timeout=self.request_timeout,
            ) as response:
                self._check_status(response)
                content_type = response.headers.get("content-type", "")
                if not (
                    "application/json" in content_type
                    or "text/event-stream" in content_type
                ):
                    raise TransportRejected(
                        f"Unexpected content type for Streamable HTTP: {content_type}",
                        status_code=response.status_code,
                    )
                probe_session = response.headers.get("mcp-session-id")
        except httpx.RequestError as e:
            raise ConnectionError(f"HTTP request to {self.endpoint} failed: {e}") from e

        if probe_session:
            await self._terminate_session(probe_session, headers)

        self._connected = True
        logger.debug(f"Streamable HTTP transport ready for {self.endpoint}")

    async def send(self, payload: dict[str, Any]) -> None:
        """POST one message to the server.

        Raises:
            TransportClosed: If the transport or its session is gone
            UnauthorizedError: If the server answered 401 (after one retry)
            ConnectionError: On network failures or unexpected statuses
        """
        if self._closed:
            raise TransportClosed("Transport is closed")

        response = await self._post(payload)
        if response.status_code == 401 and self._on_unauthorized is not None:
            www_authenticate = response.headers.get("www-authenticate")
            await response.aclose()
            await self._on_unauthorized(www_authenticate)
            response = await self._post(payload)

        await self._handle_response(payload, response)

        if payload.get("method") == "notifications/initialized":
            self._start_server_stream()

    def messages(self) -> AsyncIterator[dict[str, Any]]:
        return self._inbox.drain()

    async def close(self) -> None:
        """Terminate the session and end message iteration. Safe to call twice."""
        if self._closed:
            return
        self._closed = True

        for task in list(self._stream_tasks):
            task.cancel()
        if self._stream_tasks:
            await asyncio.gather(*self._stream_tasks, return_exceptions=True)
        self._stream_tasks.clear()

        if self._session_id is not None:
            try:
                headers = await self._build_headers()
            except Exception as e:
                logger.debug(f"Could not build headers for session termination: {e}")
                headers = dict(self.headers)
            await self._terminate_session(self._session_id, headers)
            self._session_id = None

        self._inbox.close()
        logger.debug(f"Streamable HTTP transport for {self.endpoint} closed")

    # ================================
    # Response Handling
    # ================================

    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        headers = await self._build_headers()
        request = self._http_client.build_request(
            "POST",
            self.endpoint,
            json=payload,
            headers=headers,
            timeout=self.request_timeout,
        )
        try:
            return await self._http_client.send(request, stream=True)
        except httpx.RequestError as e:
            raise ConnectionError(f"HTTP request to {self.endpoint} failed: {e}") from e

    async def _handle_response(
        self, payload: dict[str, Any], response: httpx.Response
    ) -> None:
        """Route the HTTP response based on status and content type.

        - 200 with application/json: one message (or a batch)
        - 200 with text/event-stream: stream read in the background
        - 202: accepted, nothing to read
        - 404 with a session: session expired, transport is done
        """
        if response.status_code == 200:
            self._capture_session_id(payload, response)
            content_type = response.headers.get("content-type", "")

            if "text/event-stream" in content_type:
                self._spawn_stream_reader(response, "post")
                return

            try:
                await response.aread()
            finally:
                await response.aclose()

            if "application/json" in content_type and response.content:
                try:
                    data = response.json()
                except ValueError as e:
                    raise ConnectionError(f"Invalid JSON from server: {e}") from e
                self._deliver(data)
            return

        body = await response.aread()
        await response.aclose()

        if 200 <= response.status_code < 300:
            logger.debug(f"Server accepted message ({response.status_code})")
            self._capture_session_id(payload, response)
            return

        if response.status_code == 401:
            raise UnauthorizedError(
                "Server rejected credentials (401)",
                www_authenticate=response.headers.get("www-authenticate"),
            )

        if response.status_code == 404 and "mcp-session-id" in response.request.headers:
            logger.info(f"Session {self._session_id} expired")
            self._session_id = None
            await self.close()
            raise TransportClosed("Session expired on the server")

        text = body.decode("utf-8", errors="replace")[:200]
        raise ConnectionError(
            f"Server returned {response.status_code} for "
            f"{payload.get('method', 'response')}: {text or response.reason_phrase}"
        )

    def _capture_session_id(
        self, payload: dict[str, Any], response: httpx.Response
    ) -> None:
        session_id = response.headers.get("mcp-session-id")
        if session_id and session_id != self._session_id:
            self._session_id = session_id
            logger.debug(f"Established session {session_id}")
            if payload.get("method") == "initialize":
                self._server_stream_started = False

    def _deliver(self, data: Any) -> None:
        messages = data if isinstance(data, list) else [data]
        for message in messages:
            if not isinstance(message, dict):
                logger.warning(f"Dropping non-object message from server: {message!r}")
                continue
            self._observe(message)
            self._inbox.put(message)

    def _observe(self, message: dict[str, Any]) -> None:
        """Pick up the negotiated protocol version from the initialize result."""
        result = message.get("result")
        if isinstance(result, dict) and "serverInfo" in result:
            version = result.get("protocolVersion")
            if isinstance(version, str):
                self._protocol_version = version

    def _start_server_stream(self) -> None:
        if self._server_stream_started or self._session_id is None or self._closed:
            return
        self._server_stream_started = True
        task = asyncio.create_task(
            self._open_server_stream(), name="streamable-http-get-open"
        )
        self._stream_tasks.add(task)
        task.add_done_callback(self._stream_tasks.discard)

    async def _open_server_stream(self) -> None:
        """Open the GET stream for server-initiated messages, if offered."""

        headers = await self._build_headers()
        headers["Accept"] = "text/event-stream"
        headers.pop("Content-Type", None)
        request = self._http_client.build_request(
            "GET", self.endpoint, headers=headers, timeout=None
        )
        try:
            response = await self._http_client.send(request, stream=True)
        except httpx.RequestError as e:
            logger.debug(f"Server stream unavailable: {e}")
            return

        content_type = response.headers.get("content-type", "")
        if response.status_code != 200 or "text/event-stream" not in content_type:
            logger.debug(f"Server does not offer a GET stream ({response.status_code})")
            await response.aclose()
            return

        self._spawn_stream_reader(response, "get")

    # ================================
    # SSE streams
    # ================================

    def _spawn_stream_reader(self, response: httpx.Response, origin: str) -> None:
        task = asyncio.create_task(
            self._read_stream(response), name=f"streamable-http-{origin}"
        )
        self._stream_tasks.add(task)
        task.add_done_callback(self._stream_tasks.discard)

    async def _read_stream(self, response: httpx.Response) -> None:
        try:
            async for sse_event in EventSource(response).aiter_sse():
                if sse_event.event not in ("message", "") or not sse_event.data:
                    continue
                try:
                    data = json.loads(sse_event.data)
                except json.JSONDecodeError as e:
                    logger.warning(f"SSE JSON parse error: {e}")
                    continue
                self._deliver(data)
        except asyncio.CancelledError:
            raise
        except httpx.HTTPError as e:
            logger.warning(f"SSE stream from {self.endpoint} failed: {e}")
        finally:
            await response.aclose()

    # ================================
    # Session/headers
    # ================================

    async def _terminate_session(
        self, session_id: str, headers: dict[str, str]
    ) -> None:
        """Attempt graceful session termination via DELETE."""
        headers = dict(headers)
        headers["Mcp-Session-Id"] = session_id
        headers.pop("Content-Type", None)
        try:
            response = await self._http_client.delete(
                self.endpoint, headers=headers, timeout=5.0
            )
        except httpx.HTTPError as e:
            logger.debug(f"Failed to terminate session {session_id}: {e}")
            return

        if response.status_code in (200, 202, 204):
            logger.debug(f"Terminated session {session_id}")
        elif response.status_code == 405:
            logger.debug("Server does not support session termination (405)")
        else:
            logger.debug(
                f"Unexpected response {response.status_code} when terminating "
                f"session {session_id}"
            )

    async def _build_headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
        }
        if self._protocol_version:
            headers["MCP-Protocol-Version"] = self._protocol_version
        if self._session_id:
            headers["Mcp-Session-Id"] = self._session_id

        headers.update(self.headers)

        has_auth = any(name.lower() == "authorization" for name in headers)
        if self._token_provider is not None and not has_auth:
            token = await self._token_provider()
            if token:
                headers["Authorization"] = f"Bearer {token}"
        return headers

    def _check_status(self, response: httpx.Response) -> None:
        status = response.status_code
        if status == 401:
            raise UnauthorizedError(
                f"Server at {self.endpoint} requires authorization (401)",
                www_authenticate=response.headers.get("www-authenticate"),
            )
        if 400 <= status < 500:
            raise TransportRejected(
                f"Server at {self.endpoint} rejected Streamable HTTP ({status})",
                status_code=status,
            )
        if status >= 500:
            raise ConnectionError(f"Server at {self.endpoint} returned {status}")
