"""Exception hierarchy for OAuth 2.1 authorization errors.

Provides specific exception types for each failure mode of the authorization
flow so callers can tell recoverable problems (refresh failures, lock
contention) from terminal ones (denial, state mismatch, timeout).
"""

from __future__ import annotations


class OAuth2Error(Exception):
    """Base exception for all OAuth 2.1 related errors."""

    pass


class DiscoveryError(OAuth2Error):
    """Raised when OAuth server discovery fails."""

    pass


class ProtectedResourceMetadataError(DiscoveryError):
    """Raised when Protected Resource Metadata discovery fails."""

    pass


class AuthorizationServerMetadataError(DiscoveryError):
    """Raised when Authorization Server Metadata discovery fails."""

    pass


class RegistrationError(OAuth2Error):
    """Raised when dynamic client registration fails."""

    pass


class TokenError(OAuth2Error):
    """Raised when token endpoint operations fail."""

    def __init__(self, message: str, error_code: str | None = None):
        super().__init__(message)
        self.error_code = error_code


class TokenExchangeFailed(TokenError):
    """Raised when the authorization code to token exchange fails."""

    pass


class TokenRefreshFailed(TokenError):
    """Raised when a refresh token grant fails.

    Never fatal on its own: the coordinator falls back to a full interactive
    authorization.
    """

    pass


class PKCEError(OAuth2Error):
    """Raised when PKCE parameter generation fails."""

    pass


class AuthorizationFailed(OAuth2Error):
    """Raised when the interactive authorization cannot be completed."""

    pass


class AuthorizationTimedOut(AuthorizationFailed):
    """Raised when no callback (or no token from a peer process) arrived in time."""

    pass


class AuthorizationDenied(AuthorizationFailed):
    """Raised when the user or the authorization server declined the request."""

    def __init__(
        self,
        error: str,
        error_description: str | None = None,
        error_uri: str | None = None,
    ):
        message = f"Authorization denied: {error}"
        if error_description:
            message += f" ({error_description})"
        if error_uri:
            message += f" See: {error_uri}"
        super().__init__(message)
        self.error = error
        self.error_description = error_description
        self.error_uri = error_uri


class AuthorizationCallbackError(AuthorizationFailed):
    """Raised when the callback carried neither a code nor an error."""

    pass


class AuthorizationStateMismatch(AuthorizationCallbackError):
    """Raised when the callback state does not match the pending attempt.

    No token exchange is attempted after this error.
    """

    pass
