"""Tests for the built-in OAuth URL fixer and response transforms.

High-impact tests covering:
- Each URL rewrite rule
- RELAY_NOFIX pass-through
- 405 -> 404 only on OAuth discovery URLs
"""

import httpx
import pytest

from relay.http.hooks import (
    OAuthUrlFixer,
    UrlPair,
    fix_cross_origin_auth_server,
    fix_double_well_known,
    fix_same_origin_registration,
    fix_same_origin_well_known,
    install_default_hooks,
)
from relay.http.pipeline import HttpPipeline, RequestContext

DOUBLE_WELL_KNOWN = (
    "https://mcp.example.com/.well-known/oauth-authorization-server/tenant/mcp"
    "/.well-known/oauth-authorization-server"
)


class TestUrlRules:
    def test_double_well_known_is_collapsed(self):
        pair = UrlPair(url=DOUBLE_WELL_KNOWN, server_url="https://mcp.example.com/x")

        assert fix_double_well_known(pair) == (
            "https://mcp.example.com/tenant/mcp/.well-known/oauth-authorization-server"
        )

    def test_same_origin_well_known_moves_under_gateway(self):
        pair = UrlPair(
            url="https://gw.example.com/.well-known/oauth-protected-resource?x=1",
            server_url="https://gw.example.com/gateway/tenant",
        )

        assert fix_same_origin_well_known(pair) == (
            "https://gw.example.com/gateway/.well-known/oauth-protected-resource?x=1"
        )

    def test_same_origin_rule_ignores_other_origins(self):
        pair = UrlPair(
            url="https://auth.example.com/.well-known/oauth-protected-resource",
            server_url="https://gw.example.com/gateway/tenant",
        )

        assert fix_same_origin_well_known(pair) is None

    def test_cross_origin_nested_auth_server(self):
        pair = UrlPair(
            url=(
                "https://auth.example.com/.well-known/oauth-authorization-server"
                "/gateway/tenant"
            ),
            server_url="https://mcp.example.com/mcp",
        )

        assert fix_cross_origin_auth_server(pair) == (
            "https://auth.example.com/gateway/.well-known/oauth-authorization-server"
        )

    def test_same_origin_registration_moves_under_server_path(self):
        pair = UrlPair(
            url="https://mcp.example.com/register",
            server_url="https://mcp.example.com/api/mcp/",
        )

        assert fix_same_origin_registration(pair) == (
            "https://mcp.example.com/api/mcp/register"
        )


class TestOAuthUrlFixer:
    def _context(self, url: str) -> RequestContext:
        return RequestContext(
            url=url,
            method="GET",
            headers={},
            original_server_url="https://mcp.example.com/tenant/mcp",
            is_oauth_related=True,
        )

    def test_first_changing_rule_wins(self, monkeypatch):
        # Arrange
        monkeypatch.delenv("RELAY_NOFIX", raising=False)
        fixer = OAuthUrlFixer()

        # Act
        fixed = fixer(self._context(DOUBLE_WELL_KNOWN))

        # Assert
        assert fixed == (
            "https://mcp.example.com/tenant/mcp/.well-known/oauth-authorization-server"
        )

    def test_unrelated_url_is_untouched(self, monkeypatch):
        monkeypatch.delenv("RELAY_NOFIX", raising=False)

        assert OAuthUrlFixer()(self._context("https://cdn.example.com/a.js")) is None

    def test_nofix_disables_rewrites(self, monkeypatch):
        monkeypatch.setenv("RELAY_NOFIX", "1")

        assert OAuthUrlFixer()(self._context(DOUBLE_WELL_KNOWN)) is None


class TestInstalledDefaults:
    async def _fetch(
        self, url: str, status: int = 200
    ) -> tuple[httpx.Request, httpx.Response]:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(status)

        pipeline = install_default_hooks(
            HttpPipeline(original_server_url="https://mcp.example.com/tenant/mcp")
        )
        async with pipeline.build_client(httpx.MockTransport(handler)) as client:
            response = await client.get(url)
        return seen[0], response

    async def test_double_well_known_is_fixed_on_the_wire(self, monkeypatch):
        # Arrange
        monkeypatch.delenv("RELAY_NOFIX", raising=False)

        # Act
        request, _ = await self._fetch(DOUBLE_WELL_KNOWN)

        # Assert
        assert str(request.url) == (
            "https://mcp.example.com/tenant/mcp/.well-known/oauth-authorization-server"
        )

    async def test_nofix_passes_url_through(self, monkeypatch):
        # Arrange
        monkeypatch.setenv("RELAY_NOFIX", "1")

        # Act
        request, _ = await self._fetch(DOUBLE_WELL_KNOWN)

        # Assert
        assert str(request.url) == DOUBLE_WELL_KNOWN

    @pytest.mark.parametrize(
        "url,expected",
        [
            ("https://auth.example.com/.well-known/openid-configuration", 404),
            ("https://mcp.example.com/tenant/mcp", 405),
        ],
    )
    async def test_405_becomes_404_only_for_oauth_urls(
        self, monkeypatch, url, expected
    ):
        # Arrange
        monkeypatch.setenv("RELAY_NOFIX", "1")

        # Act
        _, response = await self._fetch(url, status=405)

        # Assert
        assert response.status_code == expected
