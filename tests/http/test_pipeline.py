"""Tests for the outbound HTTP hook pipeline."""

import httpx

from relay.http.pipeline import HttpPipeline, is_oauth_related, redact_headers

SERVER_URL = "https://mcp.example.com/mcp"


def _recording_transport(seen: list[httpx.Request], status: int = 200):
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(status, json={"ok": True})

    return httpx.MockTransport(handler)


class TestHookedTransport:
    def setup_method(self):
        # Arrange
        self.pipeline = HttpPipeline(original_server_url=SERVER_URL)
        self.seen: list[httpx.Request] = []
        self.transport = _recording_transport(self.seen)

    async def test_no_hooks_is_pass_through(self):
        # Act
        async with self.pipeline.build_client(self.transport) as client:
            response = await client.get("https://mcp.example.com/anything?x=1")

        # Assert
        assert response.status_code == 200
        assert str(self.seen[0].url) == "https://mcp.example.com/anything?x=1"

    async def test_request_hooks_rewrite_in_order(self):
        # Arrange
        calls: list[str] = []

        def to_v2(context):
            calls.append(context.url)
            return context.url.replace("/v1/", "/v2/")

        def to_other_host(context):
            calls.append(context.url)
            return context.url.replace("mcp.example.com", "other.example.com")

        self.pipeline.register_request_hook(to_v2)
        self.pipeline.register_request_hook(to_other_host)

        # Act
        async with self.pipeline.build_client(self.transport) as client:
            await client.get("https://mcp.example.com/v1/token")

        # Assert
        assert calls == [
            "https://mcp.example.com/v1/token",
            "https://mcp.example.com/v2/token",
        ]
        request = self.seen[0]
        assert str(request.url) == "https://other.example.com/v2/token"
        assert request.headers["Host"] == "other.example.com"

    async def test_failing_hook_is_skipped(self):
        # Arrange
        def broken(context):
            raise RuntimeError("boom")

        observed = []
        self.pipeline.register_request_hook(broken)
        self.pipeline.register_response_hook(lambda context: observed.append(context))

        # Act
        async with self.pipeline.build_client(self.transport) as client:
            response = await client.get("https://mcp.example.com/token")

        # Assert
        assert response.status_code == 200
        assert observed[0].status == 200
        assert observed[0].is_oauth_related

    async def test_transform_hook_replaces_response(self):
        # Arrange
        self.pipeline.register_response_transform_hook(
            lambda context: httpx.Response(418)
        )
        observed = []
        self.pipeline.register_response_hook(lambda context: observed.append(context))

        # Act
        async with self.pipeline.build_client(self.transport) as client:
            response = await client.get("https://mcp.example.com/mcp")

        # Assert
        assert response.status_code == 418
        assert observed[0].status == 418

    async def test_response_context_redacts_credentials(self):
        # Arrange
        observed = []
        self.pipeline.register_response_hook(lambda context: observed.append(context))

        # Act
        async with self.pipeline.build_client(self.transport) as client:
            await client.get(SERVER_URL, headers={"Authorization": "Bearer secret"})

        # Assert
        assert observed[0].request.headers["authorization"] == "[REDACTED]"
        assert self.seen[0].headers["Authorization"] == "Bearer secret"

    def test_clear_removes_all_hooks(self):
        # Arrange
        self.pipeline.register_request_hook(lambda context: None)
        self.pipeline.register_response_hook(lambda context: None)

        # Act
        self.pipeline.clear()

        # Assert
        assert self.pipeline.request_hooks == []
        assert self.pipeline.response_hooks == []


class TestHelpers:
    def test_is_oauth_related(self):
        assert is_oauth_related(
            "https://a.example.com/.well-known/oauth-authorization-server"
        )
        assert is_oauth_related("https://a.example.com/token")
        assert not is_oauth_related("https://a.example.com/mcp")

    def test_redact_headers(self):
        assert redact_headers({"Authorization": "x", "Accept": "y"}) == {
            "Authorization": "[REDACTED]",
            "Accept": "y",
        }
