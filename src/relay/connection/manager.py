"""Transport selection, authorization retry and fallback for the remote side."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum

from relay.transport.base import RemoteTransport, TransportKind
from relay.transport.errors import (
    ConnectionFailed,
    TransportRejected,
    UnauthorizedError,
)

logger = logging.getLogger(__name__)

AuthInitializer = Callable[[str | None], Awaitable[None]]
TransportFactory = Callable[[TransportKind], RemoteTransport]


class TransportStrategy(str, Enum):
    HTTP_FIRST = "http-first"
    SSE_FIRST = "sse-first"
    HTTP_ONLY = "http-only"
    SSE_ONLY = "sse-only"

    @property
    def kinds(self) -> tuple[TransportKind, ...]:
        return {
            TransportStrategy.HTTP_FIRST: ("http", "sse"),
            TransportStrategy.SSE_FIRST: ("sse", "http"),
            TransportStrategy.HTTP_ONLY: ("http",),
            TransportStrategy.SSE_ONLY: ("sse",),
        }[self]


class ConnectionManager:
    """Opens a remote transport, trying each configured kind in order.

    - ``UnauthorizedError`` runs the auth initializer (at most once per
      ``connect`` call, shared by all kinds) and retries the same kind.
    - ``TransportRejected`` moves on to the next kind with the credentials
      already obtained.
    - Network errors are retried with exponential backoff.
    """

    def __init__(
        self,
        transport_factory: TransportFactory,
        strategy: TransportStrategy | str = TransportStrategy.HTTP_FIRST,
        *,
        max_attempts: int = 3,
        backoff: float = 1.0,
    ) -> None:
        self.transport_factory = transport_factory
        self.strategy = TransportStrategy(strategy)
        self.max_attempts = max_attempts
        self.backoff = backoff

    async def connect(self, auth_initializer: AuthInitializer) -> RemoteTransport:
        """Return a connected transport.

        Args:
            auth_initializer: Obtains credentials after a 401. Receives the
                WWW-Authenticate header of the rejection.

        Raises:
            ConnectionFailed: If every kind was rejected or retries ran out
            OAuth2Error: If authorization itself failed terminally
        """
        authorized = False
        failures: list[str] = []

        for kind in self.strategy.kinds:
            attempt = 0
            while True:
                attempt += 1
                transport = self.transport_factory(kind)
                try:
                    await transport.connect()
                    logger.info(f"Connected to remote server using {kind} transport")
                    return transport

                except UnauthorizedError as e:
                    await transport.close()
                    if authorized:
                        failures.append(f"{kind}: still unauthorized after login")
                        logger.warning(f"{kind} transport rejected fresh credentials")
                        break
                    logger.info("Remote server requires authorization")
                    await auth_initializer(e.www_authenticate)
                    authorized = True
                    attempt = 0

                except TransportRejected as e:
                    await transport.close()
                    failures.append(f"{kind}: {e}")
                    logger.info(f"{kind} transport rejected: {e}")
                    break

                except ConnectionError as e:
                    await transport.close()
                    if attempt >= self.max_attempts:
                        failures.append(f"{kind}: {e}")
                        logger.warning(
                            f"{kind} transport failed after {attempt} attempts: {e}"
                        )
                        break
                    delay = self.backoff * (2 ** (attempt - 1))
                    logger.warning(
                        f"{kind} transport failed (attempt {attempt}/"
                        f"{self.max_attempts}): {e}; retrying in {delay:.1f}s"
                    )
                    await asyncio.sleep(delay)

                except BaseException:
                    await transport.close()
                    raise

        raise ConnectionFailed(
            "Could not connect to remote server: " + "; ".join(failures)
        )
