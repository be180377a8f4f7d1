"""Token endpoint calls: authorization code exchange and refresh.

Requests are form encoded (RFC 6749 Section 4.1.3 / Section 6) and carry the
PKCE verifier (RFC 7636) and resource indicator (RFC 8707) when present.
"""

from __future__ import annotations

import logging

import httpx
from pydantic import ValidationError

from relay.auth.models.errors import TokenError
from relay.auth.models.tokens import (
    RefreshTokenRequest,
    TokenRequest,
    TokenResponse,
)

logger = logging.getLogger(__name__)

_FORM_HEADERS = {
    "Content-Type": "application/x-www-form-urlencoded",
    "Accept": "application/json",
}


class OAuth2TokenManager:
    """Talks to the token endpoint.

    Error answers from the server come back as ``TokenResponse`` objects with
    ``error`` set so callers can react to the error code. Only network and
    parsing failures raise.
    """

    def __init__(self, http_client: httpx.AsyncClient):
        self._http_client = http_client

    async def exchange_code_for_token(
        self, token_request: TokenRequest
    ) -> TokenResponse:
        """Exchange an authorization code and PKCE verifier for tokens.

        Raises:
            TokenError: On network failure or an unparseable success response
        """
        form = token_request.to_form_data()
        logger.debug(
            f"Exchanging authorization code at {token_request.token_endpoint} "
            f"(client_id={form['client_id']}, resource={form.get('resource')})"
        )
        return await self._post(token_request.token_endpoint, form, "token exchange")

    async def refresh_access_token(
        self, refresh_request: RefreshTokenRequest
    ) -> TokenResponse:
        logger.debug(f"Refreshing access token at {refresh_request.token_endpoint}")
        return await self._post(
            refresh_request.token_endpoint,
            refresh_request.to_form_data(),
            "token refresh",
        )

    async def _post(
        self, token_endpoint: str, form: dict[str, str], action: str
    ) -> TokenResponse:
        try:
            response = await self._http_client.post(
                token_endpoint, data=form, headers=_FORM_HEADERS
            )
        except httpx.HTTPError as e:
            raise TokenError(f"HTTP error during {action}: {e}") from e
        return parse_token_response(response)


def parse_token_response(response: httpx.Response) -> TokenResponse:
    """Turn a token endpoint answer into a ``TokenResponse`` (RFC 6749 Section 5).

    Non-200 answers without a JSON body become ``http_<status>`` errors.

    Raises:
        TokenError: If a 200 answer is not a valid token response
    """
    status = response.status_code
    try:
        body = response.json()
    except ValueError as e:
        if status == 200:
            raise TokenError(f"Token response is not JSON: {e}") from e
        return TokenResponse(
            error=f"http_{status}", error_description=response.text[:200] or None
        )

    if not isinstance(body, dict):
        raise TokenError("Token response is not a JSON object")

    if status != 200:
        body.setdefault("error", f"http_{status}")
        logger.warning(
            f"Token endpoint returned {status}: {body['error']} "
            f"({body.get('error_description', 'no description')})"
        )
    elif "access_token" not in body:
        raise TokenError("Token response missing required access_token")

    try:
        return TokenResponse.model_validate(body)
    except ValidationError as e:
        raise TokenError(f"Invalid token response format: {e}") from e
