"""OAuth client provider bound to one remote server.

Wraps discovery, dynamic registration, authorization URL construction and
the token endpoint behind a single object, persisting everything it learns
in the credential store.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from relay.auth.models.discovery import DiscoveryResult
from relay.auth.models.errors import (
    RegistrationError,
    TokenError,
    TokenExchangeFailed,
    TokenRefreshFailed,
)
from relay.auth.models.flow import AuthorizationRequest
from relay.auth.models.registration import ClientCredentials, ClientMetadata
from relay.auth.models.security import PKCEParameters
from relay.auth.models.tokens import RefreshTokenRequest, TokenRequest, TokenSet
from relay.auth.primitives.discovery import OAuth2Discovery
from relay.auth.services.registration import OAuth2Registration
from relay.auth.services.tokens import OAuth2TokenManager
from relay.auth.storage import ClearScope, CredentialStore, server_url_hash
from relay.version import __version__

logger = logging.getLogger(__name__)

DEFAULT_CLIENT_NAME = "relay"


class OAuthClientProvider:
    """OAuth 2.1 public client for a single MCP server.

    Static client information and static client metadata supplied by the
    operator always take precedence over anything discovered or registered
    and are never written over.
    """

    def __init__(
        self,
        server_url: str,
        store: CredentialStore,
        http_client: httpx.AsyncClient,
        *,
        server_hash: str | None = None,
        client_name: str = DEFAULT_CLIENT_NAME,
        static_client_info: ClientCredentials | None = None,
        static_client_metadata: dict[str, Any] | None = None,
        resource: str | None = None,
        scope: str | None = None,
    ) -> None:
        self.server_url = server_url
        self.server_hash = server_hash or server_url_hash(server_url, resource)
        self.client_name = client_name
        self.static_client_info = static_client_info
        self.static_client_metadata = dict(static_client_metadata or {})
        self.resource = resource
        self.scope = scope or self.static_client_metadata.get("scope")
        self.redirect_uri: str | None = None

        self._store = store
        self._discovery = OAuth2Discovery(http_client)
        self._registration = OAuth2Registration(http_client)
        self._token_manager = OAuth2TokenManager(http_client)
        self._discovery_result: DiscoveryResult | None = None
        self._www_authenticate: str | None = None

    # ================================
    # Discovery
    # ================================

    def note_www_authenticate(self, header: str | None) -> None:
        """Remember the challenge from the latest 401 for discovery."""
        if header and header != self._www_authenticate:
            self._www_authenticate = header
            self._discovery_result = None

    async def discover(self) -> DiscoveryResult:
        """Discover (once) the authorization server for this resource."""
        if self._discovery_result is None:
            self._discovery_result = await self._discovery.discover(
                self.server_url, self._www_authenticate
            )
            asm = self._discovery_result.authorization_server_metadata
            logger.debug(
                f"Using authorization endpoint {asm.authorization_endpoint}, "
                f"token endpoint {asm.token_endpoint}"
            )
        return self._discovery_result

    async def resource_param(self) -> str | None:
        """RFC 8707 resource indicator to send, if any."""
        if self.resource:
            return self.resource
        discovery = await self.discover()
        if discovery.should_include_resource_param():
            return discovery.get_resource_url()
        return None

    # ================================
    # Client registration
    # ================================

    async def client_information(self) -> ClientCredentials | None:
        if self.static_client_info is not None:
            return self.static_client_info
        stored = await self._store.load(self.server_hash)
        return stored.client_info

    def client_metadata(self) -> ClientMetadata:
        """Metadata sent on dynamic registration, static overrides applied."""
        if self.redirect_uri is None:
            raise RegistrationError("Redirect URI is not known yet")

        metadata: dict[str, Any] = {
            "client_name": self.client_name,
            "software_id": "relay",
            "software_version": __version__,
            "redirect_uris": [self.redirect_uri],
        }
        if self.scope:
            metadata["scope"] = self.scope
        metadata.update(self.static_client_metadata)
        return ClientMetadata.model_validate(metadata)

    async def register_client(self) -> ClientCredentials:
        """Return usable client credentials, registering if needed.

        Stored dynamic credentials are reused when they were registered for
        the current redirect URI and have not expired.

        Raises:
            RegistrationError: If registration is needed but not possible
        """
        if self.static_client_info is not None:
            return self.static_client_info

        existing = await self.client_information()
        if existing is not None and not existing.is_expired():
            if self.redirect_uri is None or self.redirect_uri in existing.redirect_uris:
                return existing
            logger.info("Stored client was registered for another redirect URI")

        discovery = await self.discover()
        endpoint = discovery.authorization_server_metadata.registration_endpoint
        if not endpoint:
            raise RegistrationError(
                "Authorization server does not support dynamic client registration "
                "and no static client information was provided"
            )

        credentials = await self._registration.register_client(
            endpoint, self.client_metadata()
        )
        await self._store.save(self.server_hash, client_info=credentials)
        return credentials

    # ================================
    # Authorization
    # ================================

    async def authorization_url(self, pkce: PKCEParameters, state: str) -> str:
        client = await self.register_client()
        discovery = await self.discover()

        request = AuthorizationRequest(
            authorization_endpoint=(
                discovery.authorization_server_metadata.authorization_endpoint
            ),
            client_id=client.client_id,
            redirect_uri=self._require_redirect_uri(),
            code_challenge=pkce.code_challenge,
            code_challenge_method=pkce.code_challenge_method,
            state=state,
            resource=await self.resource_param(),
            scope=self.scope,
        )
        return request.build_authorization_url()

    async def save_code_verifier(self, code_verifier: str) -> None:
        await self._store.save(self.server_hash, code_verifier=code_verifier)

    async def code_verifier(self) -> str | None:
        stored = await self._store.load(self.server_hash)
        return stored.code_verifier

    # ================================
    # Tokens
    # ================================

    async def tokens(self) -> TokenSet | None:
        return await self._store.load_tokens(self.server_hash)

    async def save_tokens(self, tokens: TokenSet) -> None:
        await self._store.save(self.server_hash, tokens=tokens)

    async def access_token(self) -> str | None:
        """Current access token, refreshed first when expired.

        Returns None when there is no usable token; never raises for refresh
        failures.
        """
        tokens = await self.tokens()
        if tokens is None:
            return None
        if tokens.is_valid():
            return tokens.access_token
        if not tokens.can_refresh():
            return None

        try:
            refreshed = await self.refresh_token(tokens.refresh_token)
        except TokenRefreshFailed as e:
            logger.warning(f"Token refresh failed: {e}")
            return None
        return refreshed.access_token

    async def authorization_header(self) -> str | None:
        tokens = await self.tokens()
        if tokens is None or not tokens.access_token:
            return None
        return tokens.authorization_header()

    async def exchange_code(self, code: str, code_verifier: str) -> TokenSet:
        """Exchange an authorization code for tokens and persist them.

        Raises:
            TokenExchangeFailed: If the token endpoint rejects the exchange
        """
        client = await self.register_client()
        discovery = await self.discover()

        request = TokenRequest(
            token_endpoint=discovery.authorization_server_metadata.token_endpoint,
            code=code,
            redirect_uri=self._require_redirect_uri(),
            client_id=client.client_id,
            client_secret=client.client_secret,
            code_verifier=code_verifier,
            resource=await self.resource_param(),
        )

        try:
            response = await self._token_manager.exchange_code_for_token(request)
        except TokenError as e:
            raise TokenExchangeFailed(str(e)) from e

        if not response.is_success():
            await self._handle_token_error(response.error)
            raise TokenExchangeFailed(
                f"Token exchange failed: {response.error} "
                f"({response.error_description or 'no description'})",
                error_code=response.error,
            )

        tokens = response.to_token_set()
        await self.save_tokens(tokens)
        logger.info("Obtained access token")
        return tokens

    async def refresh_token(self, refresh_token: str) -> TokenSet:
        """Run the refresh grant and persist the new token set.

        Raises:
            TokenRefreshFailed: If the refresh is rejected or cannot be sent
        """
        client = await self.client_information()
        if client is None:
            raise TokenRefreshFailed("No client information available for refresh")

        try:
            discovery = await self.discover()
            request = RefreshTokenRequest(
                token_endpoint=discovery.authorization_server_metadata.token_endpoint,
                refresh_token=refresh_token,
                client_id=client.client_id,
                client_secret=client.client_secret,
                resource=await self.resource_param(),
            )
            response = await self._token_manager.refresh_access_token(request)
        except (TokenError, httpx.HTTPError) as e:
            raise TokenRefreshFailed(f"Token refresh failed: {e}") from e

        if not response.is_success():
            await self._handle_token_error(response.error)
            raise TokenRefreshFailed(
                f"Token refresh rejected: {response.error}", error_code=response.error
            )

        previous = await self.tokens()
        tokens = response.to_token_set(previous)
        await self.save_tokens(tokens)
        logger.info("Refreshed access token")
        return tokens

    async def invalidate(self, scope: ClearScope) -> None:
        """Discard stored credentials. Static client information is untouched."""
        if scope in ("all", "client") and self.static_client_info is not None:
            if scope == "client":
                return
            await self._store.clear(self.server_hash, "tokens")
            await self._store.clear(self.server_hash, "verifier")
            return
        await self._store.clear(self.server_hash, scope)

    async def _handle_token_error(self, error: str | None) -> None:
        if error == "invalid_client":
            logger.warning("Authorization server rejected client, clearing it")
            await self.invalidate("client")
        elif error == "invalid_grant":
            await self.invalidate("tokens")

    def _require_redirect_uri(self) -> str:
        if self.redirect_uri is None:
            raise RegistrationError("Redirect URI is not known yet")
        return self.redirect_uri
