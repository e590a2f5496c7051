"""
Unit tests for the OAuth authenticator: consent flow, expiry, refresh and the
local redirect listener.

The token endpoint is faked at the google-auth transport seam and the browser
round trip at the RedirectReceiver seam; the listener tests bind a real
localhost port.
"""

import socket
import threading
import time
import urllib.request
from unittest.mock import patch

import pytest
from google_auth_oauthlib.flow import InstalledAppFlow

from google_drive_auth import (
    AuthState,
    ClientCredentials,
    LocalRedirectServer,
    OAuthAuthenticator,
    TokenSet,
)
from google_drive_errors import AuthorizationError, RefreshError
from helpers import FakeReceiver, FakeTokenEndpoint, query_param

CREDS = ClientCredentials("client-id.apps.googleusercontent.com", "client-secret")


def _free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


# ---------------------------------------------------------------------------
#  TokenSet
# ---------------------------------------------------------------------------


class TestTokenSet:
    def test_should_compute_absolute_expiry_from_expires_in(self):
        tokens = TokenSet.from_token_response(
            {"access_token": "a", "refresh_token": "r", "expires_in": 3600}, now=1000.0
        )
        assert tokens == TokenSet(access_token="a", refresh_token="r", expires_at=4600.0, expires_in=3600)

    def test_should_keep_previous_refresh_token_when_response_omits_it(self):
        tokens = TokenSet.from_token_response({"access_token": "a", "expires_in": 60}, previous_refresh_token="old")
        assert tokens.refresh_token == "old"


# ---------------------------------------------------------------------------
#  is_token_expired / state_of
# ---------------------------------------------------------------------------


class TestExpiry:
    @pytest.mark.parametrize(
        "now, expected",
        [
            (1000.0, False),  # well before the margin
            (1939.0, False),  # one second before the margin starts
            (1940.0, True),  # exactly expires_at - margin
            (1999.0, True),
            (2500.0, True),
        ],
    )
    def test_should_treat_token_as_expired_within_margin(self, now, expected):
        auth = OAuthAuthenticator(CREDS, receiver=FakeReceiver(), expiry_margin=60)
        assert auth.is_token_expired(2000.0, now=now) is expected

    def test_should_use_current_time_by_default(self):
        auth = OAuthAuthenticator(CREDS, receiver=FakeReceiver())
        assert auth.is_token_expired(time.time() - 10) is True
        assert auth.is_token_expired(time.time() + 3600) is False

    def test_should_report_auth_state(self):
        auth = OAuthAuthenticator(CREDS, receiver=FakeReceiver(), expiry_margin=60)
        assert auth.state_of(TokenSet()) is AuthState.UNAUTHENTICATED
        assert auth.state_of(TokenSet("a", "r", expires_at=5000.0), now=1000.0) is AuthState.FRESH
        assert auth.state_of(TokenSet("a", "r", expires_at=1030.0), now=1000.0) is AuthState.STALE


# ---------------------------------------------------------------------------
#  start_authorization
# ---------------------------------------------------------------------------


class TestStartAuthorization:
    def test_should_request_offline_access_and_exchange_code(self):
        receiver = FakeReceiver(code="the-code")
        auth = OAuthAuthenticator(CREDS, receiver=receiver, redirect_timeout=30)
        token = {"access_token": "at", "refresh_token": "rt", "expires_in": 3599, "token_type": "Bearer"}

        with patch.object(InstalledAppFlow, "fetch_token", return_value=token) as fetch:
            tokens = auth.start_authorization()

        assert tokens.access_token == "at"
        assert tokens.refresh_token == "rt"
        assert tokens.expires_in == 3599
        assert tokens.expires_at == pytest.approx(time.time() + 3599, abs=5)
        assert fetch.call_args.kwargs["code"] == "the-code"

        url = receiver.authorization_urls[0]
        assert query_param(url, "access_type") == "offline"
        assert query_param(url, "prompt") == "consent"
        assert query_param(url, "client_id") == CREDS.client_id
        assert query_param(url, "redirect_uri") == "http://localhost:8586/"
        assert "drive.file" in query_param(url, "scope")
        assert receiver.timeouts == [30]

    def test_should_fail_when_user_cancels(self):
        auth = OAuthAuthenticator(CREDS, receiver=FakeReceiver(error="access_denied"))
        with patch.object(InstalledAppFlow, "fetch_token") as fetch:
            with pytest.raises(AuthorizationError, match="access_denied"):
                auth.start_authorization()
        fetch.assert_not_called()

    def test_should_fail_on_state_mismatch(self):
        auth = OAuthAuthenticator(CREDS, receiver=FakeReceiver(state="forged"))
        with patch.object(InstalledAppFlow, "fetch_token") as fetch:
            with pytest.raises(AuthorizationError, match="state"):
                auth.start_authorization()
        fetch.assert_not_called()

    def test_should_fail_when_redirect_has_no_code(self):
        auth = OAuthAuthenticator(CREDS, receiver=FakeReceiver(code=None))
        with pytest.raises(AuthorizationError, match="code"):
            auth.start_authorization()

    def test_should_wrap_token_endpoint_failure(self):
        auth = OAuthAuthenticator(CREDS, receiver=FakeReceiver())
        with patch.object(InstalledAppFlow, "fetch_token", side_effect=RuntimeError("(invalid_grant) Bad Request")):
            with pytest.raises(AuthorizationError, match="Token exchange failed"):
                auth.start_authorization()

    def test_should_require_client_credentials(self):
        auth = OAuthAuthenticator(ClientCredentials("", ""), receiver=FakeReceiver())
        with pytest.raises(AuthorizationError, match="client ID"):
            auth.start_authorization()


# ---------------------------------------------------------------------------
#  refresh_access_token
# ---------------------------------------------------------------------------


class TestRefreshAccessToken:
    def test_should_return_new_access_token_and_keep_refresh_token(self):
        endpoint = FakeTokenEndpoint({"access_token": "new-at", "expires_in": 3599, "token_type": "Bearer"})
        auth = OAuthAuthenticator(CREDS, receiver=FakeReceiver(), request_factory=lambda: endpoint)

        tokens = auth.refresh_access_token("long-lived")

        assert tokens.access_token == "new-at"
        assert tokens.refresh_token == "long-lived"
        assert tokens.expires_at == pytest.approx(time.time() + 3599, abs=5)
        assert len(endpoint.calls) == 1
        assert endpoint.calls[0].method == "POST"
        assert "refresh_token" in str(endpoint.calls[0].body)

    def test_should_adopt_rotated_refresh_token(self):
        endpoint = FakeTokenEndpoint({"access_token": "new-at", "refresh_token": "rotated", "expires_in": 60})
        auth = OAuthAuthenticator(CREDS, receiver=FakeReceiver(), request_factory=lambda: endpoint)

        assert auth.refresh_access_token("old").refresh_token == "rotated"

    def test_should_raise_refresh_error_when_token_revoked(self):
        endpoint = FakeTokenEndpoint(
            {"error": "invalid_grant", "error_description": "Token has been expired or revoked."}, status=400
        )
        auth = OAuthAuthenticator(CREDS, receiver=FakeReceiver(), request_factory=lambda: endpoint)

        with pytest.raises(RefreshError, match="reconnect"):
            auth.refresh_access_token("revoked")

    def test_should_raise_refresh_error_without_refresh_token(self):
        auth = OAuthAuthenticator(CREDS, receiver=FakeReceiver())
        with pytest.raises(RefreshError):
            auth.refresh_access_token("")


# ---------------------------------------------------------------------------
#  LocalRedirectServer
# ---------------------------------------------------------------------------


class TestLocalRedirectServer:
    def test_should_return_redirect_parameters(self):
        port = _free_port()
        server = LocalRedirectServer(host="127.0.0.1", port=port, open_browser=False)
        result = {}

        def wait():
            result["params"] = server.wait_for_redirect("https://accounts.example/auth", timeout=10)

        waiter = threading.Thread(target=wait)
        waiter.start()

        url = f"http://127.0.0.1:{port}/?code=abc&state=xyz"
        body = None
        for _ in range(100):
            try:
                with urllib.request.urlopen(url, timeout=2) as resp:
                    body = resp.read()
                break
            except OSError:
                time.sleep(0.05)
        waiter.join(10)

        assert body is not None
        assert result["params"] == {"code": "abc", "state": "xyz"}

    def test_should_time_out_and_release_port(self):
        port = _free_port()
        server = LocalRedirectServer(host="127.0.0.1", port=port, open_browser=False)

        with pytest.raises(AuthorizationError, match="Timed out"):
            server.wait_for_redirect("https://accounts.example/auth", timeout=0.2)

        # the port is free again: a second attempt gets as far as timing out too
        with pytest.raises(AuthorizationError, match="Timed out"):
            server.wait_for_redirect("https://accounts.example/auth", timeout=0.2)

    def test_should_report_busy_port(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as busy:
            busy.bind(("127.0.0.1", 0))
            busy.listen(1)
            port = busy.getsockname()[1]
            server = LocalRedirectServer(host="127.0.0.1", port=port, open_browser=False)

            with pytest.raises(AuthorizationError, match="Could not listen"):
                server.wait_for_redirect("https://accounts.example/auth", timeout=0.2)

    def test_should_time_out_while_a_client_holds_an_idle_connection(self):
        port = _free_port()
        server = LocalRedirectServer(host="127.0.0.1", port=port, open_browser=False)
        result = {}

        def wait():
            started = time.monotonic()
            try:
                server.wait_for_redirect("https://accounts.example/auth", timeout=1)
            except AuthorizationError as exc:
                result["error"] = str(exc)
            result["elapsed"] = time.monotonic() - started

        waiter = threading.Thread(target=wait, daemon=True)
        waiter.start()

        idle = None
        for _ in range(100):
            try:
                idle = socket.create_connection(("127.0.0.1", port), timeout=2)
                break
            except OSError:
                time.sleep(0.01)
        try:
            waiter.join(5)
            assert not waiter.is_alive()
        finally:
            if idle is not None:
                idle.close()

        assert idle is not None
        assert "Timed out" in result["error"]
        assert result["elapsed"] < 3
