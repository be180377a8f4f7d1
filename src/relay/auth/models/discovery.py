"""Discovery-related models for OAuth 2.1 server metadata.

Contains models for Protected Resource Metadata (RFC 9728) and
Authorization Server Metadata (RFC 8414) discovery.
"""

from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ProtectedResourceMetadata(BaseModel):
    """OAuth 2.0 Protected Resource Metadata (RFC 9728).

    Metadata returned by MCP servers to indicate their authorization servers
    and resource configuration.
    """

    model_config = ConfigDict(extra="allow")

    resource: str | None = None
    authorization_servers: list[str] = Field(min_length=1)

    bearer_methods_supported: list[str] | None = None
    scopes_supported: list[str] | None = None
    resource_documentation: str | None = None


class AuthorizationServerMetadata(BaseModel):
    """OAuth 2.0 Authorization Server Metadata (RFC 8414).

    Metadata returned by authorization servers describing their endpoints
    and supported capabilities.
    """

    model_config = ConfigDict(extra="allow")

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    response_types_supported: list[str] = Field(default=["code"])

    # PKCE support (required for OAuth 2.1)
    code_challenge_methods_supported: list[str] = Field(default=["S256"])

    # Dynamic registration (RFC 7591)
    registration_endpoint: str | None = None

    revocation_endpoint: str | None = None
    scopes_supported: list[str] | None = None
    grant_types_supported: list[str] = Field(
        default=["authorization_code", "refresh_token"]
    )

    @field_validator("code_challenge_methods_supported")
    @classmethod
    def validate_pkce_support(cls, v: list[str]) -> list[str]:
        if "S256" not in v:
            raise ValueError("Authorization server must support S256 PKCE method")
        return v

    @classmethod
    def legacy_defaults(cls, server_url: str) -> AuthorizationServerMetadata:
        """Default endpoints at the server origin for servers without metadata.

        Mirrors the pre-discovery MCP auth layout (``/authorize``, ``/token``,
        ``/register`` at the root of the server's origin).
        """
        parsed = urlparse(server_url)
        origin = f"{parsed.scheme}://{parsed.netloc}"
        return cls(
            issuer=origin,
            authorization_endpoint=f"{origin}/authorize",
            token_endpoint=f"{origin}/token",
            registration_endpoint=f"{origin}/register",
        )


@dataclass(frozen=True)
class DiscoveryResult:
    """Complete discovery results for a remote server.

    Immutable result containing all metadata needed for the OAuth flow.
    """

    server_url: str
    authorization_server_metadata: AuthorizationServerMetadata
    auth_server_url: str
    protected_resource_metadata: ProtectedResourceMetadata | None = None

    def get_resource_url(self) -> str:
        """Get the resource URL for the RFC 8707 resource parameter.

        Uses the canonical server URL: lower-cased scheme and host, path case
        preserved, trailing slash removed.
        """
        parsed = urlparse(self.server_url)
        canonical = f"{parsed.scheme.lower()}://{parsed.netloc.lower()}"
        if parsed.path and parsed.path != "/":
            canonical += parsed.path.rstrip("/")

        return canonical

    def should_include_resource_param(self) -> bool:
        """Only send ``resource`` when the server advertised RFC 9728 metadata."""
        return self.protected_resource_metadata is not None
