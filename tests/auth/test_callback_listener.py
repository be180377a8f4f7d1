"""Tests for the loopback OAuth callback listener."""

import socket

import httpx
import pytest

from relay.auth.callback import CallbackListener
from relay.auth.models.errors import AuthorizationTimedOut
from relay.auth.models.flow import AuthorizationState


@pytest.fixture
async def listener():
    callback_listener = CallbackListener()
    await callback_listener.start()
    yield callback_listener
    await callback_listener.stop()


@pytest.fixture
async def http():
    async with httpx.AsyncClient() as client:
        yield client


class TestCallbackListener:
    async def test_binds_ephemeral_port_and_builds_localhost_redirect(self, listener):
        # Assert
        assert listener.port > 0
        assert listener.is_running
        assert listener.redirect_uri == (
            f"http://localhost:{listener.port}/oauth/callback"
        )

    async def test_callback_resolves_pending_attempt(self, listener, http):
        # Arrange
        attempt = AuthorizationState.create("state-1")
        listener.expect(attempt)

        # Act
        page = await http.get(
            listener.redirect_uri, params={"code": "abc", "state": "state-1"}
        )
        response = await listener.wait_for_callback(timeout=5)

        # Assert
        assert page.status_code == 200
        assert "Authorization successful" in page.text
        assert response.code == "abc"
        assert response.state == "state-1"

    async def test_error_callback_shows_error_page(self, listener, http):
        # Arrange
        listener.expect(AuthorizationState.create("state-1"))

        # Act
        page = await http.get(
            listener.redirect_uri,
            params={
                "error": "access_denied",
                "error_description": "<b>no</b>",
                "state": "state-1",
            },
        )
        response = await listener.wait_for_callback(timeout=5)

        # Assert
        assert page.status_code == 400
        assert "access_denied: &lt;b&gt;no&lt;/b&gt;" in page.text
        assert response.error == "access_denied"

    async def test_callback_without_attempt_is_rejected(self, listener, http):
        # Act
        page = await http.get(
            listener.redirect_uri, params={"code": "abc", "state": "x"}
        )

        # Assert
        assert page.status_code == 400

    async def test_wait_endpoint_reports_completion(self, listener, http):
        # Arrange
        listener.expect(AuthorizationState.create("s"))
        wait_url = f"http://127.0.0.1:{listener.port}/wait-for-auth"

        # Act
        before = await http.get(wait_url)
        await http.get(listener.redirect_uri, params={"code": "abc", "state": "s"})
        after = await http.get(wait_url)

        # Assert
        assert before.status_code == 202
        assert after.status_code == 200

    async def test_wait_for_callback_times_out(self, listener):
        # Arrange
        listener.expect(AuthorizationState.create("s"))

        # Act / Assert
        with pytest.raises(AuthorizationTimedOut):
            await listener.wait_for_callback(timeout=0.05)


class TestPortSelection:
    async def test_busy_preferred_port_falls_back_to_ephemeral(self):
        # Arrange
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", 0))
        blocker.listen(1)
        busy_port = blocker.getsockname()[1]
        listener = CallbackListener(port=busy_port)

        # Act
        try:
            port = await listener.start()
        finally:
            await listener.stop()
            blocker.close()

        # Assert
        assert port != busy_port

    async def test_stop_is_idempotent(self):
        # Arrange
        listener = CallbackListener()
        await listener.start()

        # Act
        await listener.stop()
        await listener.stop()

        # Assert
        assert not listener.is_running
