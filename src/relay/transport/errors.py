"""Exception hierarchy for transports and the connection layer."""

from __future__ import annotations


class RelayTransportError(Exception):
    """Base exception for transport and connection failures."""

    pass


class ConnectionFailed(RelayTransportError):
    """Raised when no configured transport kind could be connected."""

    pass


class TransportClosed(RelayTransportError, ConnectionError):
    """Raised when sending on, or reading from, a closed transport."""

    pass


class ForwardingError(RelayTransportError):
    """Raised (and logged) when a single message could not be forwarded.

    Not terminal for the bridge.
    """

    def __init__(self, message: str, payload: dict | None = None):
        super().__init__(message)
        self.payload = payload


class UnauthorizedError(RelayTransportError):
    """Raised when the remote server answered 401."""

    def __init__(self, message: str, www_authenticate: str | None = None):
        super().__init__(message)
        self.www_authenticate = www_authenticate


class TransportRejected(RelayTransportError):
    """Raised when the server refuses this transport kind.

    Covers 404/405 and other non-auth 4xx answers as well as protocol
    mismatches. The connection manager moves on to the next kind.
    """

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
