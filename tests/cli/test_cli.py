"""Tests for CLI wiring: argument parsing, exit codes and the runtime.

High-impact tests covering:
- Exit status for success, terminal errors and signals
- Runtime transport construction and the 401 -> authorize -> retry path
- Request/response correlation in the diagnostic client
"""

import asyncio
import os
import signal
import sys
from typing import Any
from unittest.mock import AsyncMock

import httpx
import pytest

from relay.auth.models.tokens import TokenSet
from relay.cli import common
from relay.cli.client import DiagnosticSession, RemoteCallFailed
from relay.cli.common import build_parser, build_runtime, run_main
from relay.config import RelaySettings
from relay.transport.base import Inbox, RemoteTransport
from relay.transport.errors import ConnectionFailed, TransportClosed
from relay.transport.sse.transport import SseTransport
from relay.transport.streamable_http.transport import StreamableHttpTransport

SERVER_URL = "https://mcp.example.com/mcp"


@pytest.fixture
def settings(tmp_path) -> RelaySettings:
    return RelaySettings(
        server_url=SERVER_URL,
        headers={"X-Tenant": "acme"},
        config_dir=tmp_path,
        auth_timeout=5,
    )


def _argv(config_dir) -> list[str]:
    return [SERVER_URL, "--config-dir", str(config_dir)]


@pytest.fixture
def quiet_logging(monkeypatch):
    monkeypatch.setattr(common, "configure_logging", lambda settings: None)


class EchoRemote(RemoteTransport):
    """Answers every request with its method name; ``fail`` gets an error."""

    kind = "http"

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self._inbox = Inbox()

    @property
    def is_open(self) -> bool:
        return True

    async def connect(self) -> None:
        pass

    async def send(self, payload: dict[str, Any]) -> None:
        self.sent.append(payload)
        if "id" not in payload:
            return
        # Unrelated traffic arriving before the reply
        self._inbox.put({"jsonrpc": "2.0", "method": "notifications/progress"})
        if payload["method"] == "fail":
            reply = {"id": payload["id"], "error": {"code": -32601, "message": "nope"}}
        elif payload["method"] == "hang-up":
            self._inbox.close()
            return
        else:
            reply = {"id": payload["id"], "result": {"echo": payload["method"]}}
        self._inbox.put({"jsonrpc": "2.0", **reply})

    def messages(self):
        return self._inbox.drain()

    async def close(self) -> None:
        self._inbox.close()


class TestParser:
    def test_positional_and_flags(self):
        args = build_parser("relay-proxy", "test").parse_args(
            [SERVER_URL, "3334", "--header", "A: b", "--allow-http", "--debug"]
        )

        assert args.server_url == SERVER_URL
        assert args.callback_port == 3334
        assert args.header == ["A: b"]
        assert args.allow_http and args.debug
        assert args.transport == "http-first"

    def test_unknown_transport_is_rejected(self):
        with pytest.raises(SystemExit):
            build_parser("relay-proxy", "test").parse_args(
                [SERVER_URL, "--transport", "websocket"]
            )


class TestRunMain:
    def test_success_exits_zero(self, tmp_path, quiet_logging):
        # Arrange
        body = AsyncMock()

        # Act
        status = run_main("relay-proxy", "test", body, _argv(tmp_path))

        # Assert
        assert status == 0
        settings = body.await_args.args[0]
        assert settings.server_url == SERVER_URL
        assert settings.config_dir == tmp_path

    def test_terminal_error_exits_one(self, tmp_path, quiet_logging):
        # Arrange
        body = AsyncMock(side_effect=ConnectionFailed("every transport failed"))

        # Act
        status = run_main("relay-proxy", "test", body, _argv(tmp_path))

        # Assert
        assert status == 1

    def test_invalid_settings_exit_with_usage_error(self, tmp_path, quiet_logging):
        with pytest.raises(SystemExit) as exc_info:
            run_main(
                "relay-proxy",
                "test",
                AsyncMock(),
                ["http://mcp.example.com/mcp", "--config-dir", str(tmp_path)],
            )
        assert exc_info.value.code == 2

    @pytest.mark.skipif(sys.platform == "win32", reason="needs POSIX signals")
    def test_sigterm_exits_zero(self, tmp_path, quiet_logging):
        # Arrange
        async def body(settings):
            os.kill(os.getpid(), signal.SIGTERM)
            await asyncio.sleep(5)

        # Act
        status = run_main("relay-proxy", "test", body, _argv(tmp_path))

        # Assert
        assert status == 0


class TestRuntime:
    async def test_transports_carry_configured_headers(self, settings):
        # Arrange
        runtime = build_runtime(settings, open_browser=AsyncMock())

        # Act
        http = runtime.create_transport("http")
        sse = runtime.create_transport("sse")

        # Assert
        assert isinstance(http, StreamableHttpTransport)
        assert isinstance(sse, SseTransport)
        assert http.headers == sse.headers == {"X-Tenant": "acme"}
        await runtime.aclose()

    async def test_rejected_token_triggers_authorization_and_retry(self, settings):
        # Arrange
        seen_tokens: list[str | None] = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "DELETE":
                return httpx.Response(204)
            token = request.headers.get("authorization")
            seen_tokens.append(token)
            if token != "Bearer fresh":
                return httpx.Response(401, headers={"www-authenticate": "Bearer"})
            return httpx.Response(
                200,
                json={"jsonrpc": "2.0", "id": 0, "result": {"capabilities": {}}},
                headers={"mcp-session-id": "s-1"},
            )

        runtime = build_runtime(
            settings,
            open_browser=AsyncMock(),
            http_transport=httpx.MockTransport(handler),
        )
        await runtime.provider.save_tokens(TokenSet(access_token="stale"))

        async def log_in(rejected_token=None):
            fresh = TokenSet(access_token="fresh")
            await runtime.provider.save_tokens(fresh)
            return fresh

        runtime.coordinator.ensure_authorized = AsyncMock(side_effect=log_in)

        # Act
        remote = await runtime.connect()

        # Assert
        assert remote.kind == "http"
        runtime.coordinator.ensure_authorized.assert_awaited_once_with(
            rejected_token="stale"
        )
        assert seen_tokens == ["Bearer stale", "Bearer fresh"]
        await remote.close()
        await runtime.aclose()


class TestDiagnosticSession:
    def setup_method(self):
        # Arrange
        self.remote = EchoRemote()
        self.session = DiagnosticSession(self.remote)

    async def test_request_returns_matching_result(self):
        # Act
        first = await self.session.request("initialize", {"capabilities": {}})
        second = await self.session.request("tools/list")

        # Assert
        assert first == {"echo": "initialize"}
        assert second == {"echo": "tools/list"}
        assert [message["id"] for message in self.remote.sent] == [0, 1]
        assert "params" not in self.remote.sent[1]

    async def test_error_reply_raises(self):
        with pytest.raises(RemoteCallFailed, match="fail failed: nope"):
            await self.session.request("fail")

    async def test_closed_stream_raises(self):
        with pytest.raises(TransportClosed, match="hang-up"):
            await self.session.request("hang-up")

    async def test_notify_has_no_id(self):
        # Act
        await self.session.notify("notifications/initialized")

        # Assert
        assert self.remote.sent == [
            {"jsonrpc": "2.0", "method": "notifications/initialized"}
        ]
