"""Argument parsing, logging setup and component wiring shared by the CLIs."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass, field

import httpx
from dotenv import load_dotenv

from relay.auth.coordinator import (
    AuthorizationCoordinator,
    BrowserOpener,
    open_system_browser,
)
from relay.auth.lock import AuthLock
from relay.auth.models.errors import OAuth2Error
from relay.auth.provider import OAuthClientProvider
from relay.auth.storage import CredentialStore
from relay.config import RelaySettings
from relay.connection.manager import ConnectionManager, TransportStrategy
from relay.http.hooks import install_default_hooks
from relay.http.pipeline import HttpPipeline
from relay.transport.base import RemoteTransport, TransportKind
from relay.transport.errors import RelayTransportError
from relay.transport.sse.transport import SseTransport
from relay.transport.streamable_http.transport import StreamableHttpTransport
from relay.version import __version__

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(process)d] %(levelname)s %(name)s: %(message)s"


def build_parser(prog: str, description: str) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=prog, description=description)
    parser.add_argument("server_url", help="Remote MCP server URL")
    parser.add_argument(
        "callback_port",
        nargs="?",
        type=int,
        default=None,
        help="Local port for the OAuth callback (default: reuse or ephemeral)",
    )
    parser.add_argument(
        "--header",
        action="append",
        default=[],
        metavar="'NAME: VALUE'",
        help="Extra header for every request; ${VAR} expands from the environment",
    )
    parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="Interface the OAuth callback listener binds to (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--transport",
        choices=[strategy.value for strategy in TransportStrategy],
        default=TransportStrategy.HTTP_FIRST.value,
        help="Transport kinds to try and in which order (default: http-first)",
    )
    parser.add_argument(
        "--static-oauth-client-info",
        help="Pre-registered client as JSON, or @file.json",
    )
    parser.add_argument(
        "--static-oauth-client-metadata",
        help="Client metadata overrides for registration as JSON, or @file.json",
    )
    parser.add_argument(
        "--allow-http",
        action="store_true",
        help="Allow plain HTTP for non-localhost servers",
    )
    parser.add_argument(
        "--auth-timeout",
        type=float,
        default=None,
        help="Seconds to wait for the browser authorization (default: 300)",
    )
    parser.add_argument(
        "--resource", help="Resource indicator to request tokens for (RFC 8707)"
    )
    parser.add_argument(
        "--config-dir", help="Directory for stored credentials and debug logs"
    )
    parser.add_argument(
        "--debug", action="store_true", help="Verbose logging plus a debug log file"
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    return parser


def configure_logging(settings: RelaySettings) -> None:
    """Log to stderr (stdout carries protocol traffic), plus a file when debugging."""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if settings.debug:
        settings.config_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(settings.debug_log_path, encoding="utf-8"))

    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
    if not settings.debug:
        for noisy in ("httpx", "httpcore", "uvicorn"):
            logging.getLogger(noisy).setLevel(logging.WARNING)


@dataclass
class Runtime:
    """All long-lived components for one remote server."""

    settings: RelaySettings
    pipeline: HttpPipeline
    http_client: httpx.AsyncClient
    provider: OAuthClientProvider
    coordinator: AuthorizationCoordinator
    manager: ConnectionManager = field(init=False)

    def __post_init__(self) -> None:
        self.manager = ConnectionManager(
            self.create_transport, self.settings.transport
        )

    async def authorize(self, www_authenticate: str | None) -> None:
        """Auth initializer handed to the connection manager and transports."""
        self.provider.note_www_authenticate(www_authenticate)
        current = await self.provider.tokens()
        await self.coordinator.ensure_authorized(
            rejected_token=current.access_token if current else None
        )

    def create_transport(self, kind: TransportKind) -> RemoteTransport:
        common = dict(
            headers=self.settings.headers,
            token_provider=self.provider.access_token,
            on_unauthorized=self.authorize,
        )
        if kind == "sse":
            return SseTransport(self.settings.server_url, self.http_client, **common)
        return StreamableHttpTransport(
            self.settings.server_url, self.http_client, **common
        )

    async def connect(self) -> RemoteTransport:
        return await self.manager.connect(self.authorize)

    async def aclose(self) -> None:
        await self.coordinator.close()
        await self.http_client.aclose()


def build_runtime(
    settings: RelaySettings,
    *,
    open_browser: BrowserOpener = open_system_browser,
    http_transport: httpx.AsyncBaseTransport | None = None,
) -> Runtime:
    pipeline = install_default_hooks(
        HttpPipeline(original_server_url=settings.server_url), debug=settings.debug
    )
    http_client = pipeline.build_client(
        http_transport, timeout=httpx.Timeout(30.0), follow_redirects=True
    )

    store = CredentialStore(settings.config_dir)
    provider = OAuthClientProvider(
        settings.server_url,
        store,
        http_client,
        server_hash=settings.server_hash,
        static_client_info=settings.static_client_info,
        static_client_metadata=settings.static_client_metadata,
        resource=settings.resource,
    )
    coordinator = AuthorizationCoordinator(
        provider,
        AuthLock(settings.config_dir, settings.server_hash),
        callback_host=settings.callback_host,
        callback_port=settings.callback_port,
        open_browser=open_browser,
        auth_timeout=settings.auth_timeout,
    )

    return Runtime(
        settings=settings,
        pipeline=pipeline,
        http_client=http_client,
        provider=provider,
        coordinator=coordinator,
    )


def run_main(
    prog: str,
    description: str,
    body: Callable[[RelaySettings], Awaitable[None]],
    argv: list[str] | None = None,
) -> int:
    """Parse arguments, configure logging and run ``body`` until done or signalled.

    Returns:
        Process exit status: 0 on success or signal, 1 on terminal errors
    """
    parser = build_parser(prog, description)
    args = parser.parse_args(argv)
    load_dotenv()

    try:
        settings = RelaySettings.from_args(args)
    except ValueError as e:
        parser.error(str(e))

    configure_logging(settings)
    logger.debug(f"{prog} {__version__} starting for {settings.server_url}")

    try:
        asyncio.run(_run_with_signals(body, settings))
    except (OAuth2Error, RelayTransportError) as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1
    except asyncio.CancelledError:
        logger.info("Interrupted, shut down cleanly")
    return 0


async def _run_with_signals(
    body: Callable[[RelaySettings], Awaitable[None]], settings: RelaySettings
) -> None:
    loop = asyncio.get_running_loop()
    main_task = asyncio.current_task()

    for sig in (signal.SIGINT, signal.SIGTERM):
        with suppress(NotImplementedError):  # Windows lacks add_signal_handler
            loop.add_signal_handler(sig, main_task.cancel)

    await body(settings)
