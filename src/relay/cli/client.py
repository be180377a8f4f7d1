"""relay-client: connect to a remote MCP server and list what it offers.

Uses the same authorization and transport machinery as the proxy, which makes
it the quickest way to check that a server, its OAuth setup and the stored
credentials all work.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import AsyncIterator
from typing import Any

from relay.cli.common import build_runtime, run_main
from relay.config import RelaySettings
from relay.transport.base import RemoteTransport
from relay.transport.errors import RelayTransportError, TransportClosed
from relay.transport.streamable_http.transport import PROTOCOL_VERSION
from relay.version import __version__

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30.0


class RemoteCallFailed(RelayTransportError):
    """Raised when the server answered a request with a JSON-RPC error."""

    pass


class DiagnosticSession:
    """Minimal request/response correlation over a remote transport."""

    def __init__(self, transport: RemoteTransport) -> None:
        self._transport = transport
        self._incoming: AsyncIterator[dict[str, Any]] = transport.messages()
        self._next_id = 0

    async def request(self, method: str, params: dict[str, Any] | None = None) -> Any:
        request_id = self._next_id
        self._next_id += 1

        message: dict[str, Any] = {
            "jsonrpc": "2.0",
            "id": request_id,
            "method": method,
        }
        if params is not None:
            message["params"] = params
        await self._transport.send(message)

        while True:
            try:
                reply = await asyncio.wait_for(
                    anext(self._incoming), timeout=REQUEST_TIMEOUT
                )
            except StopAsyncIteration as e:
                raise TransportClosed(
                    f"Server closed the connection during {method}"
                ) from e

            if reply.get("id") != request_id or "method" in reply:
                logger.debug(f"Ignoring unrelated message: {reply.get('method')}")
                continue
            if "error" in reply:
                error = reply["error"]
                if isinstance(error, dict):
                    error = error.get("message", error)
                raise RemoteCallFailed(f"{method} failed: {error}")
            return reply.get("result")

    async def notify(self, method: str) -> None:
        await self._transport.send({"jsonrpc": "2.0", "method": method})


async def run_client(settings: RelaySettings) -> None:
    runtime = build_runtime(settings)
    try:
        remote = await runtime.connect()
        async with remote:
            session = DiagnosticSession(remote)

            init = await session.request(
                "initialize",
                {
                    "protocolVersion": PROTOCOL_VERSION,
                    "capabilities": {},
                    "clientInfo": {"name": "relay-client", "version": __version__},
                },
            )
            await session.notify("notifications/initialized")
            _print_section("Server", init)

            capabilities = (init or {}).get("capabilities", {})
            listings = (("tools/list", "tools"), ("resources/list", "resources"))
            for method, key in listings:
                if capabilities and key not in capabilities:
                    logger.info(f"Server does not advertise {key}")
                    continue
                try:
                    _print_section(key.capitalize(), await session.request(method))
                except RemoteCallFailed as e:
                    logger.warning(f"{e}")
    finally:
        await runtime.aclose()


def _print_section(title: str, payload: Any) -> None:
    print(f"{title}:")
    print(json.dumps(payload, indent=2, ensure_ascii=False))
    sys.stdout.flush()


def main(argv: list[str] | None = None) -> int:
    return run_main(
        "relay-client",
        "Connect to a remote MCP server with OAuth and list its tools and resources",
        run_client,
        argv,
    )


if __name__ == "__main__":
    sys.exit(main())
