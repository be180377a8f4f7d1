"""PKCE (Proof Key for Code Exchange) and state parameter primitives.

Implements RFC 7636 parameter generation plus the state nonce used to
correlate an authorization redirect with the attempt that issued it.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
import string

from relay.auth.models.errors import AuthorizationStateMismatch, PKCEError
from relay.auth.models.security import PKCEParameters

_VERIFIER_ALPHABET = string.ascii_letters + string.digits + "-._~"
_STATE_ALPHABET = string.ascii_letters + string.digits + "-_"


class PKCEManager:
    """Generates PKCE parameters for OAuth 2.1 authorization code flows.

    This implementation follows RFC 7636 requirements:
    - Uses S256 code challenge method (SHA256 + base64url)
    - Generates cryptographically secure code verifiers
    - Never reuses a verifier across attempts
    """

    def generate_parameters(self) -> PKCEParameters:
        """Generate new PKCE parameters for an authorization flow.

        Raises:
            PKCEError: If parameter generation fails
        """
        try:
            code_verifier = self._generate_code_verifier()
            return PKCEParameters(
                code_verifier=code_verifier,
                code_challenge=compute_code_challenge(code_verifier),
                code_challenge_method="S256",
            )
        except Exception as e:
            raise PKCEError(f"Failed to generate PKCE parameters: {e}") from e

    def _generate_code_verifier(self) -> str:
        """Generate a cryptographically secure code verifier.

        RFC 7636 Section 4.1: code verifier must be 43-128 characters long
        and use only unreserved characters:
            [A-Z] / [a-z] / [0-9] / "-" / "." / "_" / "~"

        Returns:
            A 128-character code verifier (maximum length for best security)
        """
        return "".join(secrets.choice(_VERIFIER_ALPHABET) for _ in range(128))


def compute_code_challenge(code_verifier: str) -> str:
    """BASE64URL-ENCODE(SHA256(ASCII(code_verifier))) without padding."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def generate_state() -> str:
    """Generate a 32-character unguessable state nonce."""
    return "".join(secrets.choice(_STATE_ALPHABET) for _ in range(32))


def validate_state(expected: str, actual: str | None) -> None:
    """Validate the callback state against the one issued for the attempt.

    Raises:
        AuthorizationStateMismatch: If state is missing or doesn't match
    """
    if actual is None:
        raise AuthorizationStateMismatch(
            "Authorization callback missing required state parameter"
        )
    if not secrets.compare_digest(expected, actual):
        raise AuthorizationStateMismatch(
            "State parameter mismatch - possible CSRF attack"
        )
