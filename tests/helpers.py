"""Test doubles for Drive HTTP traffic and the Google token endpoint."""

import json
from types import SimpleNamespace
from urllib.parse import parse_qs, urlsplit

from googleapiclient.http import HttpMockSequence

from google_drive_auth import RedirectReceiver
from google_drive_transport import DriveTransport

OK = {"status": "200"}


def ok(payload):
    return (OK, json.dumps(payload))


def status(code, payload=None):
    return ({"status": str(code)}, json.dumps(payload or {"error": {"code": code, "message": "nope"}}))


class RecordingHttp(HttpMockSequence):
    """HttpMockSequence that remembers every request it served."""

    def __init__(self, iterable, log=None):
        super().__init__(iterable)
        self.requests = []
        self.log = log

    def request(self, uri, method="GET", body=None, headers=None, redirections=1, connection_type=None):
        self.requests.append(
            SimpleNamespace(uri=uri, method=method, body=body, headers=dict(headers or {}))
        )
        if self.log is not None:
            self.log.append(("http", method, uri))
        return super().request(uri, method, body, headers, redirections, connection_type)


def make_transport(responses, log=None):
    """DriveTransport whose every call goes to one RecordingHttp; also returns the timeouts asked for."""
    http = RecordingHttp(list(responses), log=log)
    timeouts = []

    def factory(timeout):
        timeouts.append(timeout)
        return http

    return DriveTransport(http_factory=factory), http, timeouts


def query_param(uri, name):
    return parse_qs(urlsplit(uri).query)[name][0]


class FakeTokenEndpoint:
    """Stands in for google.auth.transport.requests.Request."""

    def __init__(self, payload=None, status=200, log=None):
        self.payload = payload or {"access_token": "fresh-token", "expires_in": 3599, "token_type": "Bearer"}
        self.status = status
        self.calls = []
        self.log = log

    def __call__(self, url, method="GET", body=None, headers=None, **kwargs):
        self.calls.append(SimpleNamespace(url=url, method=method, body=body, headers=headers))
        if self.log is not None:
            self.log.append(("token", method, url))
        return SimpleNamespace(status=self.status, data=json.dumps(self.payload).encode("utf-8"), headers={})


class FakeReceiver(RedirectReceiver):
    """Answers the consent URL with a canned redirect, echoing its state."""

    def __init__(self, code="auth-code", error=None, state=None):
        self.code = code
        self.error = error
        self.state = state
        self.authorization_urls = []
        self.timeouts = []

    @property
    def redirect_uri(self):
        return "http://localhost:8586/"

    def wait_for_redirect(self, authorization_url, timeout):
        self.authorization_urls.append(authorization_url)
        self.timeouts.append(timeout)
        state = self.state if self.state is not None else query_param(authorization_url, "state")
        if self.error:
            return {"error": self.error, "state": state}
        params = {"state": state}
        if self.code:
            params["code"] = self.code
        return params
