"""
OAuth 2.0 for Google Drive: authorization-code grant with a local redirect,
expiry detection and silent refresh.

State machine (every transition is an explicit call):

    UNAUTHENTICATED --start_authorization()--> FRESH
    FRESH --(time passes)--> STALE
    STALE --refresh_access_token() ok--> FRESH
    STALE --refresh_access_token() fails--> UNAUTHENTICATED

The browser round trip sits behind RedirectReceiver, so tests can hand back a
redirect without binding a socket.
"""

import calendar
import enum
import time
import webbrowser
import wsgiref.simple_server
import wsgiref.util
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Callable, Optional
from urllib.parse import parse_qs, urlsplit

from google.auth import exceptions as google_auth_exceptions
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow

from google_drive_errors import AuthorizationError, RefreshError, TransportTimeout
from google_drive_logging import setup_logger
from google_drive_transport import REQUEST_TIMEOUT, call_with_timeout

logger = setup_logger(__name__)

# drive.file is enough for files and folders this app creates
UPLOAD_SCOPES = ["https://www.googleapis.com/auth/drive.file"]

AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
TOKEN_URI = "https://oauth2.googleapis.com/token"

REDIRECT_PORT = 8586
REDIRECT_TIMEOUT = 120
EXPIRY_MARGIN = 60
DEFAULT_EXPIRES_IN = 3600

SUCCESS_MESSAGE = "Google Drive connected. You can close this window and return to the app."


@dataclass(frozen=True)
class ClientCredentials:
    client_id: str
    client_secret: str


@dataclass
class TokenSet:
    """
    One generation of OAuth tokens.

    expires_at is absolute epoch seconds; expires_in is informational only.
    """

    access_token: str = ""
    refresh_token: str = ""
    expires_at: float = 0.0
    expires_in: int = 0

    @classmethod
    def from_token_response(cls, data: dict, previous_refresh_token: str = "", now: Optional[float] = None):
        """Build from a token endpoint body; a missing refresh_token keeps the previous one."""
        if now is None:
            now = time.time()
        expires_in = int(data.get("expires_in") or DEFAULT_EXPIRES_IN)
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or previous_refresh_token,
            expires_at=now + expires_in,
            expires_in=expires_in,
        )

    @classmethod
    def from_dict(cls, data: dict):
        return cls(
            access_token=data.get("access_token", ""),
            refresh_token=data.get("refresh_token", ""),
            expires_at=float(data.get("expires_at", 0) or 0),
            expires_in=int(data.get("expires_in", 0) or 0),
        )

    def to_dict(self) -> dict:
        return asdict(self)


class AuthState(enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    FRESH = "fresh"
    STALE = "stale"


# ------------------------
# Redirect receivers
# ------------------------
class RedirectReceiver(ABC):
    """Waits for the provider to redirect the browser back with a code."""

    @property
    @abstractmethod
    def redirect_uri(self) -> str:
        """The redirect URI registered with the consent request."""

    @abstractmethod
    def wait_for_redirect(self, authorization_url: str, timeout: float) -> dict:
        """
        Send the user to authorization_url and block until the redirect
        arrives or `timeout` seconds pass.

        Returns the redirect's query parameters (single values). Raises
        AuthorizationError on timeout.
        """


class _RedirectWSGIApp:
    """Records the first request that carries `code` or `error`."""

    def __init__(self, success_message: str):
        self.last_request_uri = None
        self._success_message = success_message

    def __call__(self, environ, start_response):
        params = parse_qs(environ.get("QUERY_STRING", ""))
        if "code" not in params and "error" not in params:
            # favicon and friends
            start_response("404 Not Found", [("Content-type", "text/plain; charset=utf-8")])
            return [b""]
        if self.last_request_uri is None:
            self.last_request_uri = wsgiref.util.request_uri(environ)
        start_response("200 OK", [("Content-type", "text/plain; charset=utf-8")])
        return [self._success_message.encode("utf-8")]


class _QuietHandler(wsgiref.simple_server.WSGIRequestHandler):
    def log_message(self, format, *args):
        logger.debug("redirect listener: " + format, *args)


class _RedirectServer(wsgiref.simple_server.WSGIServer):
    """WSGIServer whose accepted connections time out with the overall wait."""

    read_timeout = None

    def get_request(self):
        conn, addr = super().get_request()
        conn.settimeout(self.read_timeout)
        return conn, addr

    def handle_error(self, request, client_address):
        # idle or broken connections (pre-connects, favicon probes)
        logger.debug("redirect listener: dropped connection from %s", client_address, exc_info=True)


class LocalRedirectServer(RedirectReceiver):
    """
    One-shot listener on localhost:<port>.

    The socket is bound only inside wait_for_redirect() and is closed on every
    exit path, so a failed attempt never keeps the port busy for the next one.
    """

    def __init__(self, host: str = "localhost", port: int = REDIRECT_PORT, open_browser: bool = True):
        self.host = host
        self.port = port
        self.open_browser = open_browser

    @property
    def redirect_uri(self) -> str:
        return f"http://{self.host}:{self.port}/"

    def wait_for_redirect(self, authorization_url: str, timeout: float = REDIRECT_TIMEOUT) -> dict:
        app = _RedirectWSGIApp(SUCCESS_MESSAGE)
        try:
            server = wsgiref.simple_server.make_server(
                self.host, self.port, app, server_class=_RedirectServer, handler_class=_QuietHandler
            )
        except OSError as exc:
            raise AuthorizationError(f"Could not listen for the OAuth redirect on port {self.port}: {exc}") from exc

        try:
            if self.open_browser:
                webbrowser.open(authorization_url, new=1, autoraise=True)
            logger.info("Waiting up to %ss for the OAuth redirect on %s", timeout, self.redirect_uri)

            deadline = time.monotonic() + timeout
            while app.last_request_uri is None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise AuthorizationError(f"Timed out after {timeout:g}s waiting for Google authorization")
                server.timeout = remaining
                server.read_timeout = remaining
                server.handle_request()
        finally:
            server.server_close()

        query = parse_qs(urlsplit(app.last_request_uri).query)
        return {key: values[0] for key, values in query.items()}


# ------------------------
# Authenticator
# ------------------------
class OAuthAuthenticator:
    """Runs the consent flow and refreshes access tokens for one OAuth client."""

    def __init__(
        self,
        credentials: ClientCredentials,
        receiver: Optional[RedirectReceiver] = None,
        expiry_margin: float = EXPIRY_MARGIN,
        redirect_timeout: float = REDIRECT_TIMEOUT,
        request_timeout: float = REQUEST_TIMEOUT,
        request_factory: Optional[Callable] = None,
        scopes=None,
    ):
        self.credentials = credentials
        self.receiver = receiver or LocalRedirectServer()
        self.expiry_margin = expiry_margin
        self.redirect_timeout = redirect_timeout
        self.request_timeout = request_timeout
        self.scopes = list(scopes or UPLOAD_SCOPES)
        # google-auth transport used for the refresh grant
        self._request_factory = request_factory or Request

    def _client_config(self) -> dict:
        return {
            "installed": {
                "client_id": self.credentials.client_id,
                "client_secret": self.credentials.client_secret,
                "auth_uri": AUTH_URI,
                "token_uri": TOKEN_URI,
                "redirect_uris": [self.receiver.redirect_uri],
            }
        }

    def _new_flow(self) -> InstalledAppFlow:
        return InstalledAppFlow.from_client_config(
            self._client_config(),
            self.scopes,
            redirect_uri=self.receiver.redirect_uri,
        )

    def authorization_url(self, flow: Optional[InstalledAppFlow] = None):
        """Return (url, state) for the consent screen, asking for offline access."""
        flow = flow or self._new_flow()
        return flow.authorization_url(access_type="offline", prompt="consent")

    def start_authorization(self) -> TokenSet:
        """
        Run the full consent flow and return the first TokenSet.

        Raises AuthorizationError if the user cancels, the redirect never
        arrives, or the token endpoint refuses the code.
        """
        if not self.credentials.client_id or not self.credentials.client_secret:
            raise AuthorizationError("Google OAuth client ID and secret must be configured first.")

        flow = self._new_flow()
        auth_url, state = self.authorization_url(flow)

        params = self.receiver.wait_for_redirect(auth_url, self.redirect_timeout)

        if "error" in params:
            raise AuthorizationError(f"Authorization was cancelled or denied: {params['error']}")
        if params.get("state") != state:
            raise AuthorizationError("Authorization response state did not match the request.")
        code = params.get("code")
        if not code:
            raise AuthorizationError("Authorization response did not contain a code.")

        try:
            token = call_with_timeout(
                lambda: flow.fetch_token(code=code, timeout=self.request_timeout),
                self.request_timeout,
                "Token exchange",
            )
        except TransportTimeout:
            raise
        except Exception as exc:
            logger.error("Token exchange failed: %s", exc)
            raise AuthorizationError(f"Token exchange failed: {exc}") from exc

        tokens = TokenSet.from_token_response(token)
        if not tokens.refresh_token:
            logger.warning("Token endpoint did not return a refresh token; silent refresh will not work")
        logger.info("Google Drive authorization complete")
        return tokens

    def is_token_expired(self, expires_at: float, now: Optional[float] = None) -> bool:
        """True once `now` is within expiry_margin seconds of expires_at."""
        if now is None:
            now = time.time()
        return now >= expires_at - self.expiry_margin

    def refresh_access_token(self, refresh_token: str) -> TokenSet:
        """
        Mint a new access token from refresh_token.

        The refresh token is carried over unchanged unless Google rotates it.
        Raises RefreshError when the token is revoked or the endpoint fails;
        the only remedy is to run start_authorization() again.
        """
        if not refresh_token:
            raise RefreshError("No refresh token available. Please reconnect Google Drive.")

        creds = Credentials(
            token=None,
            refresh_token=refresh_token,
            token_uri=TOKEN_URI,
            client_id=self.credentials.client_id,
            client_secret=self.credentials.client_secret,
            scopes=self.scopes,
        )
        request = self._request_factory()
        try:
            call_with_timeout(lambda: creds.refresh(request), self.request_timeout, "Token refresh")
        except (google_auth_exceptions.RefreshError, google_auth_exceptions.TransportError) as exc:
            logger.error("Token refresh failed: %s", exc)
            raise RefreshError("Token refresh failed. Please reconnect Google Drive.") from exc

        now = time.time()
        if creds.expiry is not None:
            # google-auth keeps expiry as naive UTC
            expires_at = float(calendar.timegm(creds.expiry.timetuple()))
        else:
            expires_at = now + DEFAULT_EXPIRES_IN

        return TokenSet(
            access_token=creds.token,
            refresh_token=creds.refresh_token or refresh_token,
            expires_at=expires_at,
            expires_in=max(0, int(expires_at - now)),
        )

    def state_of(self, tokens: TokenSet, now: Optional[float] = None) -> AuthState:
        if not tokens.access_token:
            return AuthState.UNAUTHENTICATED
        if tokens.expires_at and self.is_token_expired(tokens.expires_at, now):
            return AuthState.STALE
        return AuthState.FRESH
