"""Client registration models for OAuth 2.0 Dynamic Client Registration.

Contains models for client metadata (RFC 7591) and the credentials returned
by registration or supplied statically by the operator.
"""

from __future__ import annotations

import time
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator

LOOPBACK_HOSTS = ("localhost", "127.0.0.1", "::1")


class ClientMetadata(BaseModel):
    """OAuth 2.0 Client Metadata for dynamic registration (RFC 7591)."""

    model_config = ConfigDict(extra="allow")

    client_name: str
    redirect_uris: list[str] = Field(min_length=1)

    # Optional metadata
    client_uri: str | None = None
    software_id: str | None = None
    software_version: str | None = None
    scope: str | None = None

    # Public client using PKCE
    token_endpoint_auth_method: str = "none"
    grant_types: list[str] = Field(default=["authorization_code", "refresh_token"])
    response_types: list[str] = Field(default=["code"])

    @field_validator("redirect_uris")
    @classmethod
    def validate_redirect_uris(cls, v: list[str]) -> list[str]:
        """Validate redirect URIs meet OAuth 2.1 security requirements."""
        for uri in v:
            parsed = urlparse(uri)
            if parsed.scheme == "http" and parsed.hostname not in LOOPBACK_HOSTS:
                raise ValueError(f"Redirect URI must use HTTPS or loopback: {uri}")
        return v


class ClientCredentials(BaseModel):
    """OAuth 2.0 client information from registration or static configuration.

    Unknown registration response fields are kept so the persisted record
    round-trips the server's full answer.
    """

    model_config = ConfigDict(extra="allow")

    client_id: str
    client_secret: str | None = None  # None for public clients
    redirect_uris: list[str] = Field(default_factory=list)
    registration_access_token: str | None = None
    registration_client_uri: str | None = None
    client_id_issued_at: int | None = None
    client_secret_expires_at: int | None = None

    def is_expired(self) -> bool:
        """Check if the client secret has expired (0 means never)."""
        if not self.client_secret_expires_at:
            return False
        return time.time() >= self.client_secret_expires_at

    def redirect_port(self) -> int | None:
        """Port of the first loopback redirect URI, if one was registered."""
        for uri in self.redirect_uris:
            parsed = urlparse(uri)
            if parsed.hostname in LOOPBACK_HOSTS and parsed.port:
                return parsed.port
        return None
