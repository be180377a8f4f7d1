"""Tests for OAuth 2.0 Dynamic Client Registration (RFC 7591)."""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from relay.auth.models.errors import RegistrationError
from relay.auth.models.registration import ClientCredentials, ClientMetadata
from relay.auth.services.registration import OAuth2Registration

REGISTRATION_ENDPOINT = "https://auth.example.com/register"


class TestClientRegistration:
    def setup_method(self):
        # Arrange
        self.http_client = AsyncMock()
        self.registration = OAuth2Registration(self.http_client)
        self.metadata = ClientMetadata(
            client_name="relay",
            redirect_uris=["http://localhost:3334/oauth/callback"],
            software_id="relay",
        )

    def _mock_response(self, status_code: int, body: dict) -> None:
        mock_response = MagicMock()
        mock_response.status_code = status_code
        mock_response.json.return_value = body
        self.http_client.post.return_value = mock_response

    async def test_successful_registration_returns_credentials(self):
        # Arrange
        self._mock_response(
            201,
            {
                "client_id": "client-123",
                "client_id_issued_at": 1700000000,
                "registration_access_token": "reg-token",
            },
        )

        # Act
        credentials = await self.registration.register_client(
            REGISTRATION_ENDPOINT, self.metadata
        )

        # Assert
        assert credentials.client_id == "client-123"
        assert credentials.client_secret is None
        assert credentials.redirect_uris == ["http://localhost:3334/oauth/callback"]

        sent = self.http_client.post.call_args[1]["json"]
        assert sent["client_name"] == "relay"
        assert sent["token_endpoint_auth_method"] == "none"
        assert sent["grant_types"] == ["authorization_code", "refresh_token"]

    async def test_unknown_response_fields_are_preserved(self):
        # Arrange
        self._mock_response(200, {"client_id": "abc", "vendor_extension": "kept"})

        # Act
        credentials = await self.registration.register_client(
            REGISTRATION_ENDPOINT, self.metadata
        )

        # Assert
        assert credentials.model_dump()["vendor_extension"] == "kept"

    async def test_missing_client_id_raises(self):
        # Arrange
        self._mock_response(201, {"client_secret": "orphan"})

        # Act / Assert
        with pytest.raises(RegistrationError, match="client_id"):
            await self.registration.register_client(
                REGISTRATION_ENDPOINT, self.metadata
            )

    async def test_invalid_redirect_uri_error(self):
        # Arrange
        self._mock_response(
            400,
            {
                "error": "invalid_redirect_uri",
                "error_description": "Loopback not allowed",
            },
        )

        # Act / Assert
        with pytest.raises(RegistrationError, match="Invalid redirect URI"):
            await self.registration.register_client(
                REGISTRATION_ENDPOINT, self.metadata
            )

    async def test_protected_endpoint_error(self):
        # Arrange
        self._mock_response(401, {"error": "unauthorized"})

        # Act / Assert
        with pytest.raises(RegistrationError, match="initial access token"):
            await self.registration.register_client(
                REGISTRATION_ENDPOINT, self.metadata
            )

    async def test_network_failure_raises(self):
        # Arrange
        self.http_client.post.side_effect = httpx.ConnectTimeout("timed out")

        # Act / Assert
        with pytest.raises(RegistrationError, match="HTTP error"):
            await self.registration.register_client(
                REGISTRATION_ENDPOINT, self.metadata
            )


class TestRegistrationModels:
    def test_non_loopback_http_redirect_rejected(self):
        with pytest.raises(ValueError, match="HTTPS or loopback"):
            ClientMetadata(
                client_name="relay", redirect_uris=["http://evil.example.com/cb"]
            )

    def test_redirect_port_from_loopback_uri(self):
        credentials = ClientCredentials(
            client_id="abc",
            redirect_uris=["http://localhost:4567/oauth/callback"],
        )

        assert credentials.redirect_port() == 4567

    def test_secret_expiry_zero_means_never(self):
        credentials = ClientCredentials(client_id="abc", client_secret_expires_at=0)

        assert not credentials.is_expired()

    def test_secret_expiry_in_past(self):
        credentials = ClientCredentials(client_id="abc", client_secret_expires_at=1)

        assert credentials.is_expired()
