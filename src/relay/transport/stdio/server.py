import asyncio
import logging
import sys
from typing import Any, AsyncIterator, TextIO

from relay.transport.base import Transport
from relay.transport.errors import TransportClosed
from relay.transport.stdio.shared import parse_json_message, serialize_message

logger = logging.getLogger(__name__)


class StdioTransport(Transport):
    """Stdio transport facing the local MCP client.

    Reads newline-delimited JSON-RPC from stdin and writes to stdout. The
    local client owns our process lifecycle by launching us as a subprocess;
    EOF on stdin ends message iteration.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader | None = None,
        output: TextIO | None = None,
    ) -> None:
        """Initialize stdio transport.

        Args:
            reader: Stream to read from instead of stdin (tests)
            output: Text stream to write to instead of stdout (tests)
        """
        self._reader = reader
        self._output = output or sys.stdout
        self._closed = False

    @property
    def is_open(self) -> bool:
        return not self._closed

    async def _setup_stdin_reader(self) -> asyncio.StreamReader:
        """Set up async stdin reader using protocol."""
        if self._reader is not None:
            return self._reader

        self._reader = asyncio.StreamReader()
        protocol = asyncio.StreamReaderProtocol(self._reader)
        await asyncio.get_running_loop().connect_read_pipe(
            lambda: protocol, sys.stdin
        )
        return self._reader

    async def send(self, payload: dict[str, Any]) -> None:
        """Write one message line to stdout.

        Raises:
            ValueError: If message is invalid
            TransportClosed: If the transport was closed
            ConnectionError: If stdout is closed or write fails
        """
        if self._closed:
            raise TransportClosed("Stdio transport is closed")

        json_str = serialize_message(payload)
        try:
            self._output.write(json_str + "\n")
            self._output.flush()
        except (OSError, ValueError) as e:
            self._closed = True
            raise ConnectionError(f"Failed to write to stdout: {e}") from e

    def messages(self) -> AsyncIterator[dict[str, Any]]:
        return self._message_iterator()

    async def _message_iterator(self) -> AsyncIterator[dict[str, Any]]:
        reader = await self._setup_stdin_reader()

        while not self._closed:
            try:
                line_bytes = await reader.readline()
            except (OSError, ValueError) as e:
                raise ConnectionError(f"Failed to read from stdin: {e}") from e

            if not line_bytes:
                logger.debug("Local client closed stdin")
                self._closed = True
                return

            line = line_bytes.decode("utf-8", errors="replace")
            message = parse_json_message(line)
            if message is None:
                if line.strip():
                    logger.warning(f"Ignoring invalid JSON from stdin: {line.strip()}")
                continue

            yield message

    async def close(self) -> None:
        """Stop reading and flush stdout. Safe to call multiple times."""
        if self._closed:
            return
        self._closed = True

        if self._reader is not None:
            self._reader.feed_eof()
        try:
            self._output.flush()
        except (OSError, ValueError):
            pass
        logger.debug("Stdio transport closed")
