"""
Deadline-bounded HTTP calls to the Drive v3 API.

Every call runs through call_with_timeout(): the call and a timer race, and
whichever settles first wins. The HTTP object handed to each call carries the
same timeout as its socket timeout, so a call that lost the race still unwinds
on its own shortly afterwards.

- Metadata / control calls: REQUEST_TIMEOUT (15s)
- The multipart upload: UPLOAD_TIMEOUT (60s)
"""

import socket
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable, Optional

import httplib2
from googleapiclient.discovery import build
from googleapiclient.http import HttpRequest
from googleapiclient.model import JsonModel

from google_drive_errors import TransportTimeout
from google_drive_logging import setup_logger

logger = setup_logger(__name__)

DRIVE_API_URL = "https://www.googleapis.com/drive/v3"
DRIVE_UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3"

REQUEST_TIMEOUT = 15
UPLOAD_TIMEOUT = 60


def call_with_timeout(fn: Callable, timeout: float = REQUEST_TIMEOUT, label: str = "Request"):
    """
    Run fn() and return its result, or raise TransportTimeout once `timeout`
    seconds pass without it finishing.

    A socket timeout raised by fn itself is reported the same way, so callers
    only ever see one "too slow" error type.
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="drive-call")
    try:
        future = executor.submit(fn)
        try:
            return future.result(timeout=timeout)
        except (FutureTimeoutError, socket.timeout) as exc:
            future.cancel()
            logger.warning("%s timed out after %ss", label, timeout)
            raise TransportTimeout(timeout, label) from exc
    finally:
        executor.shutdown(wait=False)


def new_http(timeout: float) -> httplib2.Http:
    return httplib2.Http(timeout=timeout)


class DriveTransport:
    """
    Drive v3 service plus a per-call HTTP factory.

    The bearer token is attached per request rather than baked into the HTTP
    object: the caller owns the token lifecycle.
    """

    def __init__(self, http_factory: Optional[Callable[[float], httplib2.Http]] = None):
        self._http_factory = http_factory or new_http
        self._service = None
        self._service_lock = threading.Lock()

    @property
    def service(self):
        with self._service_lock:
            if self._service is None:
                self._service = build(
                    "drive",
                    "v3",
                    http=self._http_factory(REQUEST_TIMEOUT),
                    cache_discovery=False,
                    static_discovery=True,
                )
        return self._service

    def files(self):
        return self.service.files()

    def permissions(self):
        return self.service.permissions()

    def about(self):
        return self.service.about()

    def execute(
        self,
        request: HttpRequest,
        access_token: str,
        timeout: float = REQUEST_TIMEOUT,
        label: str = "Request",
    ):
        """Execute a googleapiclient request as `Bearer access_token` within `timeout`."""
        request.headers["authorization"] = f"Bearer {access_token}"
        http = self._http_factory(timeout)
        return call_with_timeout(lambda: request.execute(http=http), timeout, label)

    def post(
        self,
        uri: str,
        body: bytes,
        content_type: str,
        access_token: str,
        timeout: float = UPLOAD_TIMEOUT,
        label: str = "Upload",
    ):
        """
        POST a prebuilt body (e.g. a multipart/related upload) and return the
        decoded JSON response. Non-2xx statuses raise googleapiclient's HttpError.
        """
        request = HttpRequest(
            None,
            JsonModel().response,
            uri,
            method="POST",
            body=body,
            headers={"content-type": content_type},
        )
        return self.execute(request, access_token, timeout=timeout, label=label)
