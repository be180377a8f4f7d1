"""Token set and token endpoint models for OAuth 2.1.

Contains the persisted token set and the request/response shapes of the
token endpoint.
"""

from __future__ import annotations

import time
from dataclasses import dataclass

from pydantic import BaseModel

EXPIRY_BUFFER_SECONDS = 30.0


class TokenSet(BaseModel):
    """Access token, optional refresh token and absolute expiry.

    Written to the credential store on every successful exchange or refresh
    and read back at connection time.
    """

    access_token: str
    refresh_token: str | None = None
    token_type: str = "Bearer"
    expires_at: float | None = None  # Unix timestamp
    scope: str | None = None

    def is_expired(self, buffer_seconds: float = EXPIRY_BUFFER_SECONDS) -> bool:
        """True when the access token must not be used without a refresh.

        Args:
            buffer_seconds: Treat the token as expired this many seconds early
        """
        if self.expires_at is None:
            return False  # No expiry means token doesn't expire
        return time.time() >= (self.expires_at - buffer_seconds)

    def is_valid(self, buffer_seconds: float = EXPIRY_BUFFER_SECONDS) -> bool:
        return bool(self.access_token) and not self.is_expired(buffer_seconds)

    def can_refresh(self) -> bool:
        return bool(self.refresh_token)

    def authorization_header(self) -> str:
        scheme = "Bearer" if self.token_type.lower() == "bearer" else self.token_type
        return f"{scheme} {self.access_token}"


def _with_optional(data: dict[str, str], **optional: str | None) -> dict[str, str]:
    data.update({key: value for key, value in optional.items() if value})
    return data


@dataclass(frozen=True)
class TokenRequest:
    """Authorization code grant with PKCE (RFC 6749 Section 4.1.3, RFC 7636)."""

    token_endpoint: str
    code: str
    redirect_uri: str
    client_id: str
    code_verifier: str

    client_secret: str | None = None
    grant_type: str = "authorization_code"
    resource: str | None = None
    scope: str | None = None

    def to_form_data(self) -> dict[str, str]:
        data = {
            "grant_type": self.grant_type,
            "code": self.code,
            "redirect_uri": self.redirect_uri,
            "client_id": self.client_id,
            "code_verifier": self.code_verifier,
        }
        return _with_optional(
            data,
            client_secret=self.client_secret,
            resource=self.resource,
            scope=self.scope,
        )


@dataclass(frozen=True)
class RefreshTokenRequest:
    """Refresh token grant (RFC 6749 Section 6)."""

    token_endpoint: str
    refresh_token: str
    client_id: str

    client_secret: str | None = None
    grant_type: str = "refresh_token"
    resource: str | None = None
    scope: str | None = None

    def to_form_data(self) -> dict[str, str]:
        data = {
            "grant_type": self.grant_type,
            "refresh_token": self.refresh_token,
            "client_id": self.client_id,
        }
        return _with_optional(
            data,
            client_secret=self.client_secret,
            resource=self.resource,
            scope=self.scope,
        )


class TokenResponse(BaseModel):
    """Token endpoint answer: success fields (RFC 6749 5.1) or error fields (5.2)."""

    access_token: str | None = None
    token_type: str = "Bearer"
    expires_in: int | None = None
    refresh_token: str | None = None
    scope: str | None = None

    error: str | None = None
    error_description: str | None = None
    error_uri: str | None = None

    def is_success(self) -> bool:
        return self.error is None and self.access_token is not None

    def is_error(self) -> bool:
        return self.error is not None

    def calculate_expires_at(self) -> float | None:
        if self.expires_in is None:
            return None
        return time.time() + self.expires_in

    def to_token_set(self, previous: TokenSet | None = None) -> TokenSet:
        """Convert a successful response to a TokenSet.

        A refresh response that omits the refresh token keeps the previous one
        (RFC 6749 Section 6 allows the server to not rotate it).

        Raises:
            ValueError: If response is not successful
        """
        if not self.is_success():
            raise ValueError("Cannot convert error response to TokenSet")

        refresh_token = self.refresh_token
        if refresh_token is None and previous is not None:
            refresh_token = previous.refresh_token

        return TokenSet(
            access_token=self.access_token,
            refresh_token=refresh_token,
            token_type=self.token_type,
            expires_at=self.calculate_expires_at(),
            scope=self.scope,
        )
