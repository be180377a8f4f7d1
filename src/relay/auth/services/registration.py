"""RFC 7591 dynamic client registration against the discovered endpoint."""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import ValidationError

from relay.auth.models.errors import RegistrationError
from relay.auth.models.registration import ClientCredentials, ClientMetadata

logger = logging.getLogger(__name__)

# RFC 7591 Section 3.2.2 error codes worth a specific message
_KNOWN_ERRORS = {
    "invalid_client_metadata": "Invalid client metadata",
    "invalid_redirect_uri": "Invalid redirect URI",
    "invalid_software_statement": "Invalid software statement",
    "unapproved_software_statement": "Software statement not approved",
}


class OAuth2Registration:
    """Registers relay as a public client with an authorization server."""

    def __init__(self, http_client: httpx.AsyncClient):
        self._http_client = http_client

    async def register_client(
        self,
        registration_endpoint: str,
        client_metadata: ClientMetadata,
        initial_access_token: str | None = None,
    ) -> ClientCredentials:
        """POST the client metadata and parse the issued credentials.

        Args:
            registration_endpoint: Registration endpoint from server metadata
            client_metadata: Metadata describing relay and its redirect URI
            initial_access_token: Bearer token for servers that protect
                registration (RFC 7591 Section 3.1)

        Raises:
            RegistrationError: On network failure, an error answer, or a
                response without a usable ``client_id``
        """
        headers = {"Accept": "application/json"}
        if initial_access_token:
            headers["Authorization"] = f"Bearer {initial_access_token}"

        logger.debug(f"Registering client at {registration_endpoint}")
        try:
            response = await self._http_client.post(
                registration_endpoint,
                json=client_metadata.model_dump(exclude_none=True, mode="json"),
                headers=headers,
            )
        except httpx.HTTPError as e:
            raise RegistrationError(f"HTTP error during registration: {e}") from e

        if response.status_code not in (200, 201):
            raise _registration_error(response)

        credentials = _parse_credentials(response, client_metadata)
        logger.info(
            f"Registered client {credentials.client_id} at {registration_endpoint}"
        )
        return credentials


def _parse_credentials(
    response: httpx.Response, requested: ClientMetadata
) -> ClientCredentials:
    try:
        body: Any = response.json()
    except ValueError as e:
        raise RegistrationError(f"Registration response is not JSON: {e}") from e

    if not isinstance(body, dict) or not body.get("client_id"):
        raise RegistrationError("Registration response missing required client_id")

    # Servers may omit echoed metadata; keep what we asked for
    body.setdefault("redirect_uris", requested.redirect_uris)
    try:
        return ClientCredentials.model_validate(body)
    except ValidationError as e:
        raise RegistrationError(f"Invalid registration response: {e}") from e


def _registration_error(response: httpx.Response) -> RegistrationError:
    status = response.status_code
    try:
        body = response.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        return RegistrationError(f"Registration failed with HTTP {status}")

    code = body.get("error") or "unknown_error"
    description = body.get("error_description") or "no description"
    logger.error(f"Client registration failed ({status}): {code} - {description}")

    if code in _KNOWN_ERRORS:
        return RegistrationError(f"{_KNOWN_ERRORS[code]}: {description}")
    if status == 401:
        return RegistrationError(
            "Registration endpoint requires authentication (initial access token)"
        )
    if status == 403:
        return RegistrationError("Registration forbidden by the authorization server")
    return RegistrationError(f"Registration failed ({status}): {code} - {description}")
