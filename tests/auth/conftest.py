import asyncio
import json
from typing import Any
from urllib.parse import parse_qs, urlencode, urlparse

import httpx
import pytest

from relay.auth.primitives.pkce import compute_code_challenge
from relay.auth.provider import OAuthClientProvider
from relay.auth.storage import CredentialStore

SERVER_URL = "https://mcp.example.com/mcp"
ORIGIN = "https://mcp.example.com"


class FakeAuthServer:
    """In-memory authorization server plus a scripted browser.

    ``handle`` is an ``httpx.MockTransport`` handler serving metadata,
    registration and token endpoints. ``open_browser`` plays the user: it
    follows the authorization URL by calling the loopback redirect URI.
    """

    def __init__(self) -> None:
        self.registrations: list[dict[str, Any]] = []
        self.token_requests: list[dict[str, str]] = []
        self.browser_urls: list[str] = []
        self.refresh_error: str | None = None
        self.exchange_error: str | None = None
        self.callback_params: dict[str, str | None] | None = None
        self.browser_result = True
        self._codes: dict[str, str] = {}
        self._issued = 0
        self._code_count = 0
        self._callbacks: set[asyncio.Task] = set()

    # httpx.MockTransport handler

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/.well-known/oauth-authorization-server":
            return self._json(
                200,
                {
                    "issuer": ORIGIN,
                    "authorization_endpoint": f"{ORIGIN}/authorize",
                    "token_endpoint": f"{ORIGIN}/token",
                    "registration_endpoint": f"{ORIGIN}/register",
                },
            )
        if path == "/register" and request.method == "POST":
            metadata = json.loads(request.content)
            self.registrations.append(metadata)
            return self._json(
                201,
                {
                    "client_id": f"client-{len(self.registrations)}",
                    "redirect_uris": metadata["redirect_uris"],
                },
            )
        if path == "/token" and request.method == "POST":
            form = {
                key: values[0]
                for key, values in parse_qs(request.content.decode()).items()
            }
            self.token_requests.append(form)
            return self._token(form)
        return self._json(404, {})

    def _token(self, form: dict[str, str]) -> httpx.Response:
        if form["grant_type"] == "refresh_token":
            if self.refresh_error:
                return self._json(400, {"error": self.refresh_error})
            return self._issue_tokens()

        if self.exchange_error:
            return self._json(400, {"error": self.exchange_error})
        challenge = self._codes.pop(form.get("code", ""), None)
        if challenge is None:
            return self._json(400, {"error": "invalid_grant"})
        if compute_code_challenge(form["code_verifier"]) != challenge:
            return self._json(400, {"error": "invalid_grant"})
        return self._issue_tokens()

    def _issue_tokens(self) -> httpx.Response:
        self._issued += 1
        return self._json(
            200,
            {
                "access_token": f"access-{self._issued}",
                "refresh_token": f"refresh-{self._issued}",
                "token_type": "Bearer",
                "expires_in": 3600,
            },
        )

    def _json(self, status: int, body: dict[str, Any]) -> httpx.Response:
        return httpx.Response(status, json=body)

    @property
    def exchanges(self) -> list[dict[str, str]]:
        return [
            form
            for form in self.token_requests
            if form["grant_type"] == "authorization_code"
        ]

    # Browser

    def issue_code(self, code_challenge: str) -> str:
        self._code_count += 1
        code = f"code-{self._code_count}"
        self._codes[code] = code_challenge
        return code

    async def open_browser(self, url: str) -> bool:
        self.browser_urls.append(url)
        query = {
            key: values[0] for key, values in parse_qs(urlparse(url).query).items()
        }

        code = self.issue_code(query["code_challenge"])
        params = {"code": code, "state": query["state"]}
        params.update(self.callback_params or {})
        params = {key: value for key, value in params.items() if value is not None}

        task = asyncio.create_task(
            self._follow_redirect(f"{query['redirect_uri']}?{urlencode(params)}")
        )
        self._callbacks.add(task)
        task.add_done_callback(self._callbacks.discard)
        return self.browser_result

    async def _follow_redirect(self, url: str) -> None:
        async with httpx.AsyncClient() as client:
            await client.get(url)


@pytest.fixture
def auth_server() -> FakeAuthServer:
    return FakeAuthServer()


@pytest.fixture
async def make_provider(tmp_path, auth_server):
    """Factory for providers sharing one config directory and fake server."""
    clients: list[httpx.AsyncClient] = []

    def factory(**kwargs: Any) -> OAuthClientProvider:
        client = httpx.AsyncClient(transport=httpx.MockTransport(auth_server.handle))
        clients.append(client)
        return OAuthClientProvider(
            SERVER_URL, CredentialStore(tmp_path), client, **kwargs
        )

    yield factory

    for client in clients:
        await client.aclose()
