"""Legacy HTTP+SSE transport to the remote MCP server."""

import asyncio
import json
import logging
from typing import Any, AsyncIterator
from urllib.parse import urljoin, urlparse

import httpx
from httpx_sse import ServerSentEvent, aconnect_sse

from relay.transport.base import Inbox, RemoteTransport
from relay.transport.errors import TransportClosed, TransportRejected, UnauthorizedError
from relay.transport.streamable_http.transport import TokenProvider, UnauthorizedHandler

logger = logging.getLogger(__name__)


class SseTransport(RemoteTransport):
    """HTTP+SSE client transport (MCP protocol revision 2024-11-05).

    A long-lived GET stream delivers server messages. Its first ``endpoint``
    event names the URL that client messages are POSTed to.
    """

    kind = "sse"

    def __init__(
        self,
        url: str,
        http_client: httpx.AsyncClient,
        *,
        headers: dict[str, str] | None = None,
        token_provider: TokenProvider | None = None,
        on_unauthorized: UnauthorizedHandler | None = None,
        request_timeout: float = 30.0,
        endpoint_timeout: float = 10.0,
    ) -> None:
        self.url = url
        self.headers = dict(headers or {})
        self.request_timeout = request_timeout
        self.endpoint_timeout = endpoint_timeout
        self.endpoint: str | None = None

        self._http_client = http_client
        self._token_provider = token_provider
        self._on_unauthorized = on_unauthorized

        self._inbox = Inbox()
        self._stream_task: asyncio.Task | None = None
        self._endpoint_ready: asyncio.Future[str] | None = None
        self._closed = False

    @property
    def is_open(self) -> bool:
        return self.endpoint is not None and not self._closed

    # ================================
    # Transport Interface
    # ================================

    async def connect(self) -> None:
        """Open the event stream and wait for the ``endpoint`` event."""
        if self._closed:
            raise TransportClosed("Transport is closed")

        self._endpoint_ready = asyncio.get_running_loop().create_future()
        headers = await self._build_headers()
        headers["Accept"] = "text/event-stream"
        self._stream_task = asyncio.create_task(
            self._listen(headers), name=f"sse-stream-{self.url}"
        )

        try:
            self.endpoint = await asyncio.wait_for(
                asyncio.shield(self._endpoint_ready), timeout=self.endpoint_timeout
            )
        except asyncio.TimeoutError as e:
            await self._stop_stream()
            raise TransportRejected(
                f"No endpoint event from {self.url} within {self.endpoint_timeout}s"
            ) from e
        except BaseException:
            await self._stop_stream()
            raise

        logger.debug(f"SSE transport ready, posting to {self.endpoint}")

    async def send(self, payload: dict[str, Any]) -> None:
        """POST one message to the endpoint announced by the server.

        Raises:
            TransportClosed: If the transport is closed or not connected
            UnauthorizedError: If the server answered 401 (after one retry)
            ConnectionError: On network failures or error statuses
        """
        if self._closed or self.endpoint is None:
            raise TransportClosed("Transport is not connected")

        response = await self._post(payload)
        if response.status_code == 401 and self._on_unauthorized is not None:
            await self._on_unauthorized(response.headers.get("www-authenticate"))
            response = await self._post(payload)

        if response.status_code == 401:
            raise UnauthorizedError(
                "Server rejected credentials (401)",
                www_authenticate=response.headers.get("www-authenticate"),
            )
        if not 200 <= response.status_code < 300:
            raise ConnectionError(
                f"Server returned {response.status_code} for "
                f"{payload.get('method', 'response')}: {response.text[:200]}"
            )

    def messages(self) -> AsyncIterator[dict[str, Any]]:
        return self._inbox.drain()

    async def close(self) -> None:
        """Stop the event stream and end message iteration. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        await self._stop_stream()
        self._inbox.close()
        logger.debug(f"SSE transport for {self.url} closed")

    # ================================
    # Stream handling
    # ================================

    async def _listen(self, headers: dict[str, str]) -> None:
        """Read the event stream until it ends, feeding the inbox."""
        try:
            async with aconnect_sse(
                self._http_client, "GET", self.url, headers=headers, timeout=None
            ) as event_source:
                self._check_stream_response(event_source.response)

                async for sse_event in event_source.aiter_sse():
                    self._process_sse_event(sse_event)

            if not self._endpoint_ready.done():
                raise TransportRejected(f"Stream from {self.url} ended before endpoint")
            logger.info(f"SSE stream from {self.url} ended")
            self._inbox.close()

        except asyncio.CancelledError:
            logger.debug(f"SSE listener for {self.url} was cancelled")
            raise
        except (UnauthorizedError, TransportRejected) as e:
            self._fail(e)
        except httpx.HTTPError as e:
            self._fail(ConnectionError(f"SSE stream from {self.url} failed: {e}"))
        finally:
            logger.debug(f"SSE listener for {self.url} closed")

    def _fail(self, error: Exception) -> None:
        if self._endpoint_ready is not None and not self._endpoint_ready.done():
            self._endpoint_ready.set_exception(error)
        else:
            logger.error(f"{error}")
            self._inbox.fail(error)

    def _check_stream_response(self, response: httpx.Response) -> None:
        status = response.status_code
        if status == 401:
            raise UnauthorizedError(
                f"Server at {self.url} requires authorization (401)",
                www_authenticate=response.headers.get("www-authenticate"),
            )
        if 400 <= status < 500:
            raise TransportRejected(
                f"Server at {self.url} rejected SSE ({status})", status_code=status
            )
        if status != 200:
            raise httpx.HTTPStatusError(
                f"Server at {self.url} returned {status}",
                request=response.request,
                response=response,
            )

        content_type = response.headers.get("content-type", "")
        if "text/event-stream" not in content_type:
            raise TransportRejected(
                f"Server at {self.url} returned non-SSE content type: {content_type}",
                status_code=status,
            )

    def _process_sse_event(self, sse_event: ServerSentEvent) -> None:
        if sse_event.event == "endpoint":
            self._resolve_endpoint(sse_event.data.strip())
            return

        if sse_event.event not in ("message", "") or not sse_event.data:
            return

        try:
            message = json.loads(sse_event.data)
        except json.JSONDecodeError as e:
            logger.warning(f"SSE JSON parse error: {e}")
            return

        if isinstance(message, dict):
            self._inbox.put(message)
        else:
            logger.warning(f"Dropping non-object message from server: {message!r}")

    def _resolve_endpoint(self, data: str) -> None:
        endpoint = urljoin(self.url, data)
        base, target = urlparse(self.url), urlparse(endpoint)
        if (base.scheme, base.netloc) != (target.scheme, target.netloc):
            self._fail(
                TransportRejected(f"Endpoint origin does not match stream: {endpoint}")
            )
            return
        if self._endpoint_ready is not None and not self._endpoint_ready.done():
            self._endpoint_ready.set_result(endpoint)

    async def _stop_stream(self) -> None:
        task, self._stream_task = self._stream_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        headers = await self._build_headers()
        try:
            return await self._http_client.post(
                self.endpoint,
                json=payload,
                headers=headers,
                timeout=self.request_timeout,
            )
        except httpx.RequestError as e:
            raise ConnectionError(f"HTTP request to {self.endpoint} failed: {e}") from e

    async def _build_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        headers.update(self.headers)

        has_auth = any(name.lower() == "authorization" for name in headers)
        if self._token_provider is not None and not has_auth:
            token = await self._token_provider()
            if token:
                headers["Authorization"] = f"Bearer {token}"
        return headers
