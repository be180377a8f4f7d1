"""Bidirectional message bridge between the local client and the remote server."""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any

from relay.transport.base import Transport
from relay.transport.errors import ForwardingError, TransportClosed
from relay.version import __version__

logger = logging.getLogger(__name__)

INTERNAL_ERROR = -32603


def tag_client_info(message: dict[str, Any], suffix: str) -> dict[str, Any]:
    """Copy of an ``initialize`` request with ``clientInfo.name`` suffixed."""
    params = message.get("params")
    if not isinstance(params, dict):
        return message
    client_info = params.get("clientInfo")
    if not isinstance(client_info, dict):
        return message

    tagged = copy.deepcopy(message)
    name = client_info.get("name") or "unknown"
    tagged["params"]["clientInfo"]["name"] = f"{name}{suffix}"
    return tagged


class BidirectionalProxy:
    """Pumps messages local -> remote and remote -> local until either side ends.

    Each direction runs as its own task, so ordering is preserved per
    direction. When one side closes or errors, the other side is closed and
    ``bridge`` returns.
    """

    def __init__(self, client_tag: str | None = None) -> None:
        self.client_tag = client_tag or f" (via relay {__version__})"
        self._initialize_tagged = False

    async def bridge(self, local: Transport, remote: Transport) -> None:
        """Run until either direction ends. Never raises for transport events."""
        local_to_remote = asyncio.create_task(
            self._pump(local, remote, "local", "remote"), name="relay-local-to-remote"
        )
        remote_to_local = asyncio.create_task(
            self._pump(remote, local, "remote", "local"), name="relay-remote-to-local"
        )
        tasks = {local_to_remote, remote_to_local}

        try:
            done, pending = await asyncio.wait(
                tasks, return_when=asyncio.FIRST_COMPLETED
            )
            ended = "local" if local_to_remote in done else "remote"
            logger.info(f"{ended.capitalize()} side ended, shutting down bridge")
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self._close_quietly(local, "local")
            await self._close_quietly(remote, "remote")

    async def _pump(
        self,
        source: Transport,
        destination: Transport,
        source_name: str,
        destination_name: str,
    ) -> None:
        try:
            async for message in source.messages():
                if source_name == "local":
                    message = self._prepare_local_message(message)
                logger.debug(
                    f"[{source_name} -> {destination_name}] "
                    f"{message.get('method') or 'response'} id={message.get('id')}"
                )
                forwarded = await self._forward(
                    message, destination, source, destination_name
                )
                if not forwarded:
                    return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error reading from {source_name}: {e}")

    async def _forward(
        self,
        message: dict[str, Any],
        destination: Transport,
        source: Transport,
        destination_name: str,
    ) -> bool:
        """Send one message. Returns False when the bridge must stop."""
        try:
            await destination.send(message)
            return True
        except TransportClosed as e:
            logger.info(f"{destination_name.capitalize()} transport closed: {e}")
            return False
        except Exception as e:
            if not destination.is_open:
                logger.info(f"{destination_name.capitalize()} transport is gone: {e}")
                return False

            error = ForwardingError(
                f"Failed to forward {message.get('method') or 'response'} "
                f"to {destination_name}: {e}",
                payload=message,
            )
            logger.error(f"{error}")
            await self._reply_with_error(message, source, error)
            return True

    async def _reply_with_error(
        self, message: dict[str, Any], source: Transport, error: ForwardingError
    ) -> None:
        """Answer a failed request so the sender does not wait forever."""
        if "method" not in message or "id" not in message:
            return
        reply = {
            "jsonrpc": "2.0",
            "id": message["id"],
            "error": {"code": INTERNAL_ERROR, "message": str(error)},
        }
        try:
            await source.send(reply)
        except Exception as e:
            logger.debug(f"Could not deliver error reply: {e}")

    def _prepare_local_message(self, message: dict[str, Any]) -> dict[str, Any]:
        if not self._initialize_tagged and message.get("method") == "initialize":
            self._initialize_tagged = True
            return tag_client_info(message, self.client_tag)
        return message

    async def _close_quietly(self, transport: Transport, name: str) -> None:
        try:
            await transport.close()
        except Exception as e:
            logger.debug(f"Error closing {name} transport: {e}")
