"""Tests for the legacy HTTP+SSE transport."""

import json
from typing import Any
from unittest.mock import AsyncMock

import httpx
import pytest

from relay.transport.errors import TransportClosed, TransportRejected, UnauthorizedError
from relay.transport.sse.transport import SseTransport

STREAM_URL = "https://mcp.example.com/sse"


def _events(endpoint: str | None, *messages: dict[str, Any]) -> bytes:
    body = f"event: endpoint\ndata: {endpoint}\n\n" if endpoint else ""
    body += "".join(
        f"event: message\ndata: {json.dumps(message)}\n\n" for message in messages
    )
    return body.encode()


class FakeSseServer:
    def __init__(self) -> None:
        self.stream_response = httpx.Response(
            200,
            content=_events("/messages?session_id=abc"),
            headers={"content-type": "text/event-stream"},
        )
        self.post_responses: list[httpx.Response] = []
        self.posts: list[httpx.Request] = []
        self.stream_requests: list[httpx.Request] = []

    def handle(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            self.stream_requests.append(request)
            return self.stream_response
        self.posts.append(request)
        if self.post_responses:
            return self.post_responses.pop(0)
        return httpx.Response(202)


@pytest.fixture
def server() -> FakeSseServer:
    return FakeSseServer()


@pytest.fixture
def on_unauthorized() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
async def transport(server, on_unauthorized):
    async with httpx.AsyncClient(transport=httpx.MockTransport(server.handle)) as c:
        sse = SseTransport(
            STREAM_URL,
            c,
            headers={"X-Tenant": "acme"},
            token_provider=AsyncMock(return_value="access-1"),
            on_unauthorized=on_unauthorized,
            endpoint_timeout=2,
        )
        yield sse
        await sse.close()


class TestConnect:
    async def test_endpoint_event_is_resolved_against_stream_url(
        self, server, transport
    ):
        # Act
        await transport.connect()

        # Assert
        assert transport.is_open
        assert transport.endpoint == "https://mcp.example.com/messages?session_id=abc"
        stream_request = server.stream_requests[0]
        assert stream_request.headers["accept"] == "text/event-stream"
        assert stream_request.headers["authorization"] == "Bearer access-1"

    async def test_401_raises_unauthorized(self, server, transport):
        # Arrange
        server.stream_response = httpx.Response(
            401, headers={"www-authenticate": "Bearer realm=mcp"}
        )

        # Act / Assert
        with pytest.raises(UnauthorizedError) as exc_info:
            await transport.connect()
        assert exc_info.value.www_authenticate == "Bearer realm=mcp"

    @pytest.mark.parametrize("status", [404, 405])
    async def test_missing_endpoint_rejects_transport(self, server, transport, status):
        # Arrange
        server.stream_response = httpx.Response(status)

        # Act / Assert
        with pytest.raises(TransportRejected):
            await transport.connect()

    async def test_non_sse_content_type_rejects_transport(self, server, transport):
        # Arrange
        server.stream_response = httpx.Response(200, json={"hello": "world"})

        # Act / Assert
        with pytest.raises(TransportRejected, match="content type"):
            await transport.connect()

    async def test_server_error_is_retryable(self, server, transport):
        # Arrange
        server.stream_response = httpx.Response(502)

        # Act / Assert
        with pytest.raises(ConnectionError):
            await transport.connect()

    async def test_cross_origin_endpoint_is_rejected(self, server, transport):
        # Arrange
        server.stream_response = httpx.Response(
            200,
            content=_events("https://evil.example.com/messages"),
            headers={"content-type": "text/event-stream"},
        )

        # Act / Assert
        with pytest.raises(TransportRejected, match="origin"):
            await transport.connect()

    async def test_stream_without_endpoint_is_rejected(self, server, transport):
        # Arrange
        server.stream_response = httpx.Response(
            200,
            content=_events(None, {"jsonrpc": "2.0", "method": "x"}),
            headers={"content-type": "text/event-stream"},
        )

        # Act / Assert
        with pytest.raises(TransportRejected, match="before endpoint"):
            await transport.connect()


class TestMessaging:
    async def test_stream_messages_are_delivered_until_stream_ends(
        self, server, transport
    ):
        # Arrange
        first = {"jsonrpc": "2.0", "id": 1, "result": {}}
        second = {"jsonrpc": "2.0", "method": "notifications/message"}
        server.stream_response = httpx.Response(
            200,
            content=_events("/messages", first, second),
            headers={"content-type": "text/event-stream"},
        )

        # Act
        await transport.connect()
        received = [message async for message in transport.messages()]

        # Assert
        assert received == [first, second]

    async def test_send_posts_to_endpoint(self, server, transport):
        # Arrange
        await transport.connect()
        message = {"jsonrpc": "2.0", "id": 1, "method": "ping"}

        # Act
        await transport.send(message)

        # Assert
        post = server.posts[0]
        assert str(post.url) == "https://mcp.example.com/messages?session_id=abc"
        assert json.loads(post.content) == message
        assert post.headers["x-tenant"] == "acme"
        assert post.headers["authorization"] == "Bearer access-1"

    async def test_send_error_status_is_connection_error(self, server, transport):
        # Arrange
        await transport.connect()
        server.post_responses.append(httpx.Response(500, text="boom"))

        # Act / Assert
        with pytest.raises(ConnectionError, match="500"):
            await transport.send({"jsonrpc": "2.0", "id": 1, "method": "ping"})

    async def test_send_401_reauthorizes_and_retries(
        self, server, transport, on_unauthorized
    ):
        # Arrange
        await transport.connect()
        server.post_responses.append(httpx.Response(401))

        # Act
        await transport.send({"jsonrpc": "2.0", "id": 1, "method": "ping"})

        # Assert
        on_unauthorized.assert_awaited_once_with(None)
        assert len(server.posts) == 2

    async def test_send_before_connect_raises(self, transport):
        with pytest.raises(TransportClosed):
            await transport.send({"jsonrpc": "2.0", "id": 1, "method": "ping"})
