import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from types import TracebackType
from typing import Any, Literal, Self

TransportKind = Literal["http", "sse"]


class Transport(ABC):
    """Abstract bidirectional JSON-RPC message channel.

    Moves envelopes without knowledge of protocol semantics:
    - Send messages via send()
    - Receive messages by iterating over messages()

    Iteration ending normally is the close event; an exception raised from the
    iterator is the error event.
    """

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """True if the transport is open and ready for message processing."""

    @abstractmethod
    async def send(self, payload: dict[str, Any]) -> None:
        """Send a message.

        Args:
            payload: The JSON-RPC message to send

        Raises:
            TransportClosed: If transport is closed
            ConnectionError: If the underlying connection failed
        """

    @abstractmethod
    def messages(self) -> AsyncIterator[dict[str, Any]]:
        """Stream of incoming messages.

        Yields messages as they arrive. Iterator ends when transport closes.

        Raises:
            ConnectionError: When transport connection fails
            asyncio.CancelledError: When iteration is cancelled
        """

    @abstractmethod
    async def close(self) -> None:
        """Close the transport and stop message iteration. Idempotent."""

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()
        return None


class RemoteTransport(Transport):
    """Transport to the remote MCP server that must be connected first."""

    kind: TransportKind

    @abstractmethod
    async def connect(self) -> None:
        """Establish the connection.

        Raises:
            UnauthorizedError: The server answered 401
            TransportRejected: The server does not speak this transport kind
            ConnectionError: Network failure, worth retrying
        """


_CLOSED = object()


class Inbox:
    """Queue of inbound messages that ends with a close or an error event.

    Producers call ``put``; ``close`` ends iteration normally and
    ``fail`` ends it by raising the given exception in the consumer.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._ended = False

    def put(self, message: dict[str, Any]) -> None:
        if not self._ended:
            self._queue.put_nowait(message)

    def close(self) -> None:
        if not self._ended:
            self._ended = True
            self._queue.put_nowait(_CLOSED)

    def fail(self, error: BaseException) -> None:
        if not self._ended:
            self._ended = True
            self._queue.put_nowait(error)

    async def drain(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED or isinstance(item, BaseException):
                # Leave the end marker for any later iteration
                self._queue.put_nowait(item)
                if item is _CLOSED:
                    return
                raise item
            yield item
