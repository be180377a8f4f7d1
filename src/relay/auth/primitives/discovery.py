"""OAuth 2.1 server discovery primitive.

Implements RFC 9728 (Protected Resource Metadata) and RFC 8414
(Authorization Server Metadata) discovery to find the OAuth endpoints of a
remote MCP server.
"""

from __future__ import annotations

import logging
import re
from urllib.parse import urlparse

import httpx
from pydantic import ValidationError

from relay.auth.models.discovery import (
    AuthorizationServerMetadata,
    DiscoveryResult,
    ProtectedResourceMetadata,
)
from relay.auth.models.errors import (
    AuthorizationServerMetadataError,
    DiscoveryError,
    ProtectedResourceMetadataError,
)

logger = logging.getLogger(__name__)

_RESOURCE_METADATA_PATTERN = re.compile(r'resource_metadata=(?:"([^"]+)"|([^\s,]+))')
_ACCEPT_JSON = {"Accept": "application/json"}


class OAuth2Discovery:
    """Handles OAuth 2.1 server discovery for a remote MCP server.

    Implements the two-step discovery process:
    1. Protected Resource Metadata (RFC 9728) - find authorization servers
    2. Authorization Server Metadata (RFC 8414) - find OAuth endpoints

    Servers that publish neither are given the legacy default endpoints at
    their origin, so discovery itself never blocks an authorization attempt.
    """

    def __init__(self, http_client: httpx.AsyncClient):
        self._http_client = http_client

    async def discover(
        self, server_url: str, www_authenticate: str | None = None
    ) -> DiscoveryResult:
        """Discover OAuth configuration for a server URL.

        Args:
            server_url: Remote MCP server URL
            www_authenticate: WWW-Authenticate header from a 401, if any

        Returns:
            Complete discovery results
        """
        prm: ProtectedResourceMetadata | None = None
        resource_metadata_url = (
            extract_resource_metadata_url(www_authenticate)
            if www_authenticate
            else None
        )

        try:
            if resource_metadata_url:
                logger.debug(
                    "Found resource metadata URL in WWW-Authenticate: "
                    f"{resource_metadata_url}"
                )
                prm = await self._fetch_protected_resource_metadata(
                    resource_metadata_url
                )
            else:
                prm = await self._discover_protected_resource_metadata(server_url)
        except ProtectedResourceMetadataError as e:
            logger.debug(f"No protected resource metadata, using server origin: {e}")

        if prm is not None:
            auth_server_url = str(prm.authorization_servers[0])
        else:
            parsed = urlparse(server_url)
            auth_server_url = f"{parsed.scheme}://{parsed.netloc}"

        try:
            asm = await self._discover_authorization_server_metadata(auth_server_url)
        except AuthorizationServerMetadataError as e:
            logger.info(f"Falling back to default OAuth endpoints: {e}")
            asm = AuthorizationServerMetadata.legacy_defaults(auth_server_url)

        return DiscoveryResult(
            server_url=server_url,
            authorization_server_metadata=asm,
            auth_server_url=auth_server_url,
            protected_resource_metadata=prm,
        )

    async def _discover_protected_resource_metadata(
        self, server_url: str
    ) -> ProtectedResourceMetadata:
        """Try the path-aware, then the root ``oauth-protected-resource`` document.

        Raises:
            ProtectedResourceMetadataError: If no candidate yields valid metadata
        """
        failures = []
        for candidate in protected_resource_metadata_urls(server_url):
            try:
                return await self._fetch_protected_resource_metadata(candidate)
            except ProtectedResourceMetadataError as e:
                failures.append(str(e))

        raise ProtectedResourceMetadataError("; ".join(failures))

    async def _fetch_protected_resource_metadata(
        self, metadata_url: str
    ) -> ProtectedResourceMetadata:
        """Fetch one protected resource metadata document.

        Raises:
            ProtectedResourceMetadataError: On any status, parse or network failure
        """
        response = await self._get(metadata_url, ProtectedResourceMetadataError)
        if response.status_code != 200:
            raise ProtectedResourceMetadataError(
                f"{metadata_url} answered {response.status_code}"
            )

        try:
            metadata = ProtectedResourceMetadata.model_validate_json(response.text)
        except ValidationError as e:
            raise ProtectedResourceMetadataError(
                f"Invalid protected resource metadata at {metadata_url}: {e}"
            ) from e

        logger.debug(
            f"{metadata_url} lists {len(metadata.authorization_servers)} "
            "authorization server(s)"
        )
        return metadata

    async def _discover_authorization_server_metadata(
        self, auth_server_url: str
    ) -> AuthorizationServerMetadata:
        """Walk the RFC 8414 / OIDC candidates until one parses.

        A 5xx answer stops the walk; anything else moves to the next candidate.

        Raises:
            AuthorizationServerMetadataError: If no candidate worked
        """
        candidates = authorization_server_metadata_urls(auth_server_url)

        for candidate in candidates:
            try:
                response = await self._get(candidate, AuthorizationServerMetadataError)
            except AuthorizationServerMetadataError as e:
                logger.debug(f"{e}")
                continue

            if response.status_code >= 500:
                logger.debug(f"{candidate} answered {response.status_code}, giving up")
                break
            if response.status_code != 200:
                continue

            try:
                metadata = AuthorizationServerMetadata.model_validate_json(
                    response.text
                )
            except ValidationError as e:
                logger.debug(f"Ignoring invalid metadata at {candidate}: {e}")
                continue

            logger.debug(f"Using authorization server metadata from {candidate}")
            return metadata

        raise AuthorizationServerMetadataError(
            f"No authorization server metadata for {auth_server_url} "
            f"(tried {', '.join(candidates)})"
        )

    async def _get(self, url: str, error_cls: type[DiscoveryError]) -> httpx.Response:
        logger.debug(f"GET {url}")
        try:
            return await self._http_client.get(url, headers=_ACCEPT_JSON)
        except httpx.RequestError as e:
            raise error_cls(f"Network error fetching {url}: {e}") from e


def _split_url(url: str) -> tuple[str, str]:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}", parsed.path.rstrip("/")


def protected_resource_metadata_urls(server_url: str) -> list[str]:
    """RFC 9728 Section 3 well-known locations, most specific first."""
    origin, path = _split_url(server_url)
    base = f"{origin}/.well-known/oauth-protected-resource"
    return [f"{base}{path}", base] if path else [base]


def authorization_server_metadata_urls(issuer: str) -> list[str]:
    """RFC 8414 Section 3 then OpenID Connect Discovery locations for ``issuer``."""
    origin, path = _split_url(issuer)
    oauth = f"{origin}/.well-known/oauth-authorization-server"
    openid = f"{origin}/.well-known/openid-configuration"
    if not path:
        return [oauth, openid]
    return [
        f"{oauth}{path}",
        oauth,
        f"{openid}{path}",
        f"{origin}{path}/.well-known/openid-configuration",
        openid,
    ]

def extract_resource_metadata_url(www_authenticate: str) -> str | None:
    """Extract the ``resource_metadata`` parameter from a WWW-Authenticate header.

    RFC 9728 Section 5.1. Accepts quoted and unquoted values.
    """
    match = _RESOURCE_METADATA_PATTERN.search(www_authenticate)
    if match:
        return match.group(1) or match.group(2)
    return None
