"""Single-flight interactive authorization across local processes.

Any number of relay processes may need a token for the same server at once.
The coordinator makes sure only one of them runs the browser flow: the others
either reuse what is stored, refresh it, or wait for the winner to write a
fresh token set.
"""

from __future__ import annotations

import asyncio
import logging
import webbrowser
from collections.abc import Awaitable, Callable

import httpx

from relay.auth.callback import WAIT_PATH, CallbackListener
from relay.auth.lock import AuthLock
from relay.auth.models.errors import (
    AuthorizationCallbackError,
    AuthorizationDenied,
    AuthorizationFailed,
    AuthorizationTimedOut,
    TokenRefreshFailed,
)
from relay.auth.models.flow import AuthorizationState
from relay.auth.models.tokens import TokenSet
from relay.auth.primitives.pkce import PKCEManager, generate_state, validate_state
from relay.auth.provider import OAuthClientProvider

logger = logging.getLogger(__name__)

BrowserOpener = Callable[[str], Awaitable[bool]]
ListenerFactory = Callable[[str, int], CallbackListener]


async def open_system_browser(url: str) -> bool:
    """Open ``url`` with the platform browser. False when none is available."""
    return await asyncio.to_thread(webbrowser.open, url)


class AuthorizationCoordinator:
    """Obtains a valid token set for one server, at most one browser flow at a time.

    Concurrent ``ensure_authorized`` calls in the same process share one
    in-flight attempt. Across processes the attempt is serialized by an
    ``AuthLock`` and losers poll the credential store for the winner's tokens.
    """

    def __init__(
        self,
        provider: OAuthClientProvider,
        lock: AuthLock,
        *,
        callback_host: str = "127.0.0.1",
        callback_port: int = 0,
        open_browser: BrowserOpener = open_system_browser,
        listener_factory: ListenerFactory = CallbackListener,
        auth_timeout: float = 300.0,
        wait_timeout: float | None = None,
        poll_interval: float = 1.0,
        lock_attempts: int = 3,
        lock_backoff: float = 0.5,
    ) -> None:
        self.provider = provider
        self.lock = lock
        self.callback_host = callback_host
        self.callback_port = callback_port
        self.auth_timeout = auth_timeout
        self.wait_timeout = wait_timeout if wait_timeout is not None else auth_timeout
        self.poll_interval = poll_interval
        self.lock_attempts = lock_attempts
        self.lock_backoff = lock_backoff

        self._open_browser = open_browser
        self._listener_factory = listener_factory
        self._pkce = PKCEManager()
        self._inflight: asyncio.Task[TokenSet] | None = None

    async def ensure_authorized(self, rejected_token: str | None = None) -> TokenSet:
        """Return a usable token set, running the browser flow only if needed.

        Args:
            rejected_token: Access token the server just answered 401 to; a
                stored token equal to it is treated as expired

        Raises:
            AuthorizationTimedOut: No callback, and no peer tokens, in time
            AuthorizationStateMismatch: Callback state did not match
            AuthorizationDenied: The user or server declined
            AuthorizationFailed: Any other terminal failure of the attempt
        """
        if self._inflight is None:
            task = asyncio.create_task(
                self._authorize(rejected_token), name="relay-authorize"
            )
            task.add_done_callback(self._clear_inflight)
            self._inflight = task
        return await asyncio.shield(self._inflight)

    async def close(self) -> None:
        """Cancel an in-flight attempt, releasing the lock and listener."""
        task = self._inflight
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except (asyncio.CancelledError, AuthorizationFailed):
                pass

    def _clear_inflight(self, task: asyncio.Task) -> None:
        if self._inflight is task:
            self._inflight = None

    # ================================
    # Decision steps
    # ================================

    async def _authorize(self, rejected_token: str | None) -> TokenSet:
        baseline = await self.provider.tokens()

        if baseline is not None:
            if baseline.is_valid() and baseline.access_token != rejected_token:
                logger.debug("Using stored access token")
                return baseline
            if baseline.can_refresh():
                try:
                    return await self.provider.refresh_token(baseline.refresh_token)
                except TokenRefreshFailed as e:
                    logger.warning(f"{e}; starting a new authorization")

        if await self.lock.acquire(self.lock_attempts, self.lock_backoff):
            return await self._authorize_locked(baseline)

        logger.info("Another process is authorizing, waiting for its tokens")
        return await self._wait_for_peer(baseline)

    async def _wait_for_peer(self, baseline: TokenSet | None) -> TokenSet:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.wait_timeout
        callback_seen = False

        async with httpx.AsyncClient(timeout=self.poll_interval + 1.0) as client:
            while loop.time() < deadline:
                await asyncio.sleep(self.poll_interval)

                fresh = await self.provider.tokens()
                if _is_newer(fresh, baseline):
                    logger.info("Using tokens obtained by another process")
                    return fresh

                if not callback_seen and await self._peer_has_callback(client):
                    callback_seen = True
                    logger.info(
                        "Another process received the authorization callback, "
                        "waiting for its tokens"
                    )
                    continue

                # The holder finished without tokens or died; take over
                if await self.lock.acquire(attempts=1):
                    return await self._authorize_locked(baseline)

        raise AuthorizationTimedOut(
            f"Timed out after {self.wait_timeout:.0f}s waiting for another "
            "process to finish authorization"
        )

    async def _peer_has_callback(self, client: httpx.AsyncClient) -> bool:
        """Ask the lock holder's callback listener whether the redirect arrived."""
        record = await asyncio.to_thread(self.lock.read_record)
        if record is None or record.callback_port is None:
            return False

        # The listener binds IPv4 only
        host = "127.0.0.1" if self.callback_host == "localhost" else self.callback_host
        url = f"http://{host}:{record.callback_port}{WAIT_PATH}"
        try:
            response = await client.get(url)
        except httpx.HTTPError as e:
            logger.debug(f"Callback listener of {record.holder_pid} unreachable: {e}")
            return False
        return response.status_code == 200

    async def _authorize_locked(self, baseline: TokenSet | None) -> TokenSet:
        try:
            fresh = await self.provider.tokens()
            if _is_newer(fresh, baseline):
                logger.info("Tokens appeared while acquiring the lock")
                return fresh
            return await self._interactive_flow()
        finally:
            await self.lock.release()

    # ================================
    # Browser flow
    # ================================

    async def _interactive_flow(self) -> TokenSet:
        preferred_port = await self._preferred_port()
        listener = self._listener_factory(self.callback_host, preferred_port)
        try:
            port = await listener.start()
            if (
                self.provider.static_client_info is not None
                and preferred_port
                and port != preferred_port
            ):
                raise AuthorizationFailed(
                    f"Callback port {preferred_port} of the static OAuth client "
                    "is in use, free it and retry"
                )
            await self.lock.set_callback_port(port)
            self.provider.redirect_uri = listener.redirect_uri
            await self.provider.register_client()

            pkce = self._pkce.generate_parameters()
            attempt = AuthorizationState.create(generate_state())
            listener.expect(attempt)
            await self.provider.save_code_verifier(pkce.code_verifier)

            url = await self.provider.authorization_url(pkce, attempt.state)
            logger.info(f"Please authorize this client by visiting:\n{url}")
            await self._launch_browser(url)

            response = await listener.wait_for_callback(self.auth_timeout)

            if response.is_error():
                raise AuthorizationDenied(
                    response.error, response.error_description, response.error_uri
                )
            validate_state(attempt.state, response.state)
            if response.code is None:
                raise AuthorizationCallbackError(
                    "Authorization callback carried neither code nor error"
                )

            verifier = await self.provider.code_verifier() or pkce.code_verifier
            return await self.provider.exchange_code(response.code, verifier)
        finally:
            await listener.stop()
            await self.provider.invalidate("verifier")

    async def _preferred_port(self) -> int:
        if self.callback_port:
            return self.callback_port
        client = await self.provider.client_information()
        if client is not None:
            return client.redirect_port() or 0
        return 0

    async def _launch_browser(self, url: str) -> None:
        try:
            opened = await self._open_browser(url)
        except Exception as e:
            raise AuthorizationFailed(f"Failed to launch browser: {e}") from e
        if not opened:
            logger.warning("No browser available, open the URL above manually")


def _is_newer(fresh: TokenSet | None, baseline: TokenSet | None) -> bool:
    if fresh is None or not fresh.is_valid():
        return False
    return baseline is None or fresh.access_token != baseline.access_token
