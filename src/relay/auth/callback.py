"""Loopback HTTP listener that receives the OAuth authorization redirect."""

from __future__ import annotations

import asyncio
import contextlib
import html
import logging
import socket

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse, PlainTextResponse, Response
from starlette.routing import Route

from relay.auth.models.errors import AuthorizationFailed, AuthorizationTimedOut
from relay.auth.models.flow import AuthorizationResponse, AuthorizationState

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/oauth/callback"
WAIT_PATH = "/wait-for-auth"

_SUCCESS_PAGE = """<!DOCTYPE html>
<html>
  <head><title>Authorization complete</title></head>
  <body>
    <h1>Authorization successful</h1>
    <p>You may close this window and return to your MCP client.</p>
  </body>
</html>
"""

_ERROR_PAGE = """<!DOCTYPE html>
<html>
  <head><title>Authorization failed</title></head>
  <body>
    <h1>Authorization failed</h1>
    <p>{error}</p>
  </body>
</html>
"""


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the host process."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class CallbackListener:
    """Serves the redirect URI on the loopback interface.

    Lifecycle: ``start()`` binds and returns the port, ``expect()`` registers
    the attempt whose callback is awaited, ``wait_for_callback()`` blocks until
    the browser lands on the redirect URI, ``stop()`` shuts the server down.
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 0) -> None:
        self.host = host
        self.preferred_port = port
        self.port: int | None = None

        self._expected: AuthorizationState | None = None
        self._completed = False
        self._server: _EmbeddedServer | None = None
        self._serve_task: asyncio.Task | None = None

        self._app = Starlette(
            routes=[
                Route(CALLBACK_PATH, self._handle_callback, methods=["GET"]),
                Route(WAIT_PATH, self._handle_wait, methods=["GET"]),
            ]
        )

    @property
    def redirect_uri(self) -> str:
        if self.port is None:
            raise RuntimeError("Callback listener is not started")
        return f"http://{self._uri_host}:{self.port}{CALLBACK_PATH}"

    @property
    def _uri_host(self) -> str:
        return "localhost" if self.host in ("127.0.0.1", "localhost") else self.host

    @property
    def is_running(self) -> bool:
        return self._serve_task is not None and not self._serve_task.done()

    # ================================
    # Lifecycle
    # ================================

    async def start(self) -> int:
        """Bind the socket and start serving.

        The preferred port is used when free; otherwise an ephemeral port is
        chosen.

        Returns:
            The bound port
        """
        if self.is_running:
            return self.port

        sock = self._bind()
        self.port = sock.getsockname()[1]

        config = uvicorn.Config(
            app=self._app, log_level="warning", access_log=False, lifespan="off"
        )
        self._server = _EmbeddedServer(config)
        self._serve_task = asyncio.create_task(
            self._server.serve(sockets=[sock]), name=f"oauth-callback-{self.port}"
        )

        while not self._server.started:
            if self._serve_task.done():
                raise AuthorizationFailed(
                    f"Callback listener failed to start on port {self.port}"
                )
            await asyncio.sleep(0.01)

        logger.debug(f"Callback listener ready at {self.redirect_uri}")
        return self.port

    async def stop(self) -> None:
        """Stop serving. Safe to call multiple times."""
        if self._expected is not None:
            self._expected.cancel()

        if self._server is not None:
            self._server.should_exit = True
        if self._serve_task is not None:
            try:
                await asyncio.wait_for(self._serve_task, timeout=5.0)
            except asyncio.TimeoutError:
                self._serve_task.cancel()
            except Exception as e:
                logger.debug(f"Callback listener stopped with error: {e}")
            logger.debug(f"Callback listener on port {self.port} stopped")

        self._server = None
        self._serve_task = None

    def _bind(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.host, self.preferred_port))
        except OSError as e:
            if not self.preferred_port:
                sock.close()
                raise AuthorizationFailed(f"Cannot bind callback listener: {e}") from e
            logger.warning(
                f"Callback port {self.preferred_port} unavailable ({e}), "
                "using an ephemeral port"
            )
            sock.bind((self.host, 0))
        return sock

    # ================================
    # Callback handling
    # ================================

    def expect(self, state: AuthorizationState) -> None:
        """Register the attempt the next callback belongs to."""
        self._expected = state
        self._completed = False

    async def wait_for_callback(self, timeout: float) -> AuthorizationResponse:
        """Wait for the redirect to arrive.

        Raises:
            AuthorizationTimedOut: If no callback arrived within ``timeout``
        """
        if self._expected is None:
            raise RuntimeError("No authorization attempt registered")

        try:
            return await asyncio.wait_for(
                asyncio.shield(self._expected.pending), timeout=timeout
            )
        except asyncio.TimeoutError as e:
            raise AuthorizationTimedOut(
                f"No authorization callback received within {timeout:.0f}s"
            ) from e

    async def _handle_callback(self, request: Request) -> Response:
        response = AuthorizationResponse.from_query(dict(request.query_params))

        if self._expected is None:
            logger.warning("Ignoring authorization callback with no pending attempt")
            return HTMLResponse(
                _ERROR_PAGE.format(error="No authorization in progress."),
                status_code=400,
            )

        if not self._expected.resolve(response):
            logger.debug("Ignoring duplicate authorization callback")
        else:
            self._completed = True
            logger.debug("Authorization callback received")

        if response.is_error():
            message = response.error
            if response.error_description:
                message += f": {response.error_description}"
            return HTMLResponse(
                _ERROR_PAGE.format(error=html.escape(message)), status_code=400
            )
        if response.code is None:
            return HTMLResponse(
                _ERROR_PAGE.format(error="Missing authorization code."),
                status_code=400,
            )
        return HTMLResponse(_SUCCESS_PAGE)

    async def _handle_wait(self, request: Request) -> Response:
        if self._completed:
            return PlainTextResponse("Authorization completed", status_code=200)
        return PlainTextResponse("Authorization pending", status_code=202)
