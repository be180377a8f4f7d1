"""Authorization flow models for OAuth 2.1.

Contains the authorization request, the parsed redirect callback and the
transient state that correlates the two.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from urllib.parse import urlencode


@dataclass(frozen=True)
class AuthorizationRequest:
    """Authorization request parameters for OAuth 2.1 flow."""

    authorization_endpoint: str
    client_id: str
    redirect_uri: str
    code_challenge: str
    code_challenge_method: str
    state: str
    resource: str | None = None  # RFC 8707
    scope: str | None = None

    def build_authorization_url(self) -> str:
        """Build the complete authorization URL."""
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "code_challenge": self.code_challenge,
            "code_challenge_method": self.code_challenge_method,
            "state": self.state,
        }

        if self.resource:
            params["resource"] = self.resource
        if self.scope:
            params["scope"] = self.scope

        separator = "&" if "?" in self.authorization_endpoint else "?"
        return f"{self.authorization_endpoint}{separator}{urlencode(params)}"


@dataclass(frozen=True)
class AuthorizationResponse:
    """Query parameters delivered to the redirect URI."""

    code: str | None = None
    state: str | None = None
    error: str | None = None
    error_description: str | None = None
    error_uri: str | None = None

    def is_success(self) -> bool:
        return self.error is None and self.code is not None

    def is_error(self) -> bool:
        return self.error is not None

    @classmethod
    def from_query(cls, query: dict[str, str]) -> AuthorizationResponse:
        return cls(
            code=query.get("code"),
            state=query.get("state"),
            error=query.get("error"),
            error_description=query.get("error_description"),
            error_uri=query.get("error_uri"),
        )


@dataclass
class AuthorizationState:
    """Correlates an outstanding authorization redirect with its callback.

    Lives only in memory for the duration of one attempt. The future is
    resolved by the callback listener.
    """

    state: str
    pending: asyncio.Future[AuthorizationResponse] = field(repr=False)

    @classmethod
    def create(cls, state: str) -> AuthorizationState:
        loop = asyncio.get_running_loop()
        return cls(state=state, pending=loop.create_future())

    def resolve(self, response: AuthorizationResponse) -> bool:
        """Resolve the pending future once. Returns False if already resolved."""
        if self.pending.done():
            return False
        self.pending.set_result(response)
        return True

    def cancel(self) -> None:
        if not self.pending.done():
            self.pending.cancel()
