"""relay-proxy: expose a remote OAuth-protected MCP server over local stdio."""

from __future__ import annotations

import logging
import sys

from relay.cli.common import build_runtime, run_main
from relay.config import RelaySettings
from relay.proxy.bridge import BidirectionalProxy
from relay.transport.stdio.server import StdioTransport

logger = logging.getLogger(__name__)


async def run_proxy(settings: RelaySettings) -> None:
    runtime = build_runtime(settings)
    local = StdioTransport()
    try:
        remote = await runtime.connect()
        logger.info(f"Proxy established between stdio and {settings.server_url}")
        await BidirectionalProxy().bridge(local, remote)
    finally:
        await local.close()
        await runtime.aclose()


def main(argv: list[str] | None = None) -> int:
    return run_main(
        "relay-proxy",
        "Bridge a local stdio MCP client to a remote MCP server with OAuth",
        run_proxy,
        argv,
    )


if __name__ == "__main__":
    sys.exit(main())
